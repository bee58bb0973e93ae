"""
CLI interface for Atlas AI.

Provides command-line access to metered search, question generation,
token balances and the weekly refresh sweep.
"""

import logging
import sqlite3
import sys
from functools import partial
from typing import List, Optional

import typer
import yaml
from openai import OpenAIError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from atlas_ai.config.loader import AppConfig, CacheBackend, load_app_config
from atlas_ai.core.cache import InMemoryCacheStore, RedisCacheStore, ResultCache
from atlas_ai.core.costs import SubscriptionTier
from atlas_ai.core.fallback import SemanticFallbackClient
from atlas_ai.core.generation import QuestionGenerator
from atlas_ai.core.interpreter import QueryInterpreter
from atlas_ai.core.ledger import AccountNotFoundError, TokenLedger
from atlas_ai.core.orchestrator import (
    ContentNotFoundError,
    InsufficientTokensError,
    QueryValidationError,
    RetrievalError,
    RetrievalOrchestrator,
    RetrievalResponse,
)
from atlas_ai.core.query import UserPreferences
from atlas_ai.sdk.openai_client import OpenAICompleter
from atlas_ai.storage.repository import (
    AccountRepository,
    ContentRepository,
    fetch_usage_history,
    get_popular_topics,
    get_user_query_stats,
    initialize_schema,
    insert_usage_record,
)

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)

# Exit codes - a denied request is the caller's problem, not a fault
EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_DENIED = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


def _build_orchestrator(config: AppConfig) -> RetrievalOrchestrator:
    """Wire the pipeline from configuration."""
    db_path = config.storage.db_path
    accounts = AccountRepository(db_path)

    completer = None
    if config.llm.enabled:
        try:
            completer = OpenAICompleter(model=config.llm.model, timeout=config.llm.timeout_seconds)
        except OpenAIError as e:
            logger.warning("Language model unavailable, running pattern-only: %s", e)

    if config.cache.backend == CacheBackend.REDIS:
        store = RedisCacheStore(config.cache.redis_url, timeout_seconds=config.cache.timeout_seconds)
    else:
        store = InMemoryCacheStore()
    ttl = config.cache.ttl_seconds

    return RetrievalOrchestrator(
        interpreter=QueryInterpreter(
            fallback=SemanticFallbackClient(completer) if completer else None
        ),
        ledger=TokenLedger(accounts),
        cache=ResultCache(store, default_ttl=ttl, ttl_by_kind={}),
        content=ContentRepository(db_path),
        generator=QuestionGenerator(completer) if completer else None,
        record_usage=partial(insert_usage_record, db_path=db_path),
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log pipeline decisions to stderr"
    )
):
    """Atlas AI CLI."""
    _configure_logging(verbose)
    try:
        config = load_app_config(config_path) if config_path else AppConfig.default()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = {"config": config}

    if ctx.invoked_subcommand is None:
        console.print("Atlas AI - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Atlas AI database."""
    try:
        initialize_schema(_config(ctx).storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-user")
def add_user(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Unique user id"),
    premium: bool = typer.Option(False, "--premium", help="Create on the premium tier"),
    exam_type: Optional[str] = typer.Option(None, "--exam-type", help="Preferred exam type"),
    exam_board: Optional[str] = typer.Option(None, "--exam-board", help="Preferred exam board"),
    subject: Optional[List[str]] = typer.Option(None, "--subject", "-s", help="Preferred subject (repeatable)")
):
    """Create a user with a full weekly token quota."""
    tier = SubscriptionTier.PREMIUM if premium else SubscriptionTier.FREE
    try:
        account = AccountRepository(_config(ctx).storage.db_path).create_user(
            user_id,
            tier=tier,
            preferences=UserPreferences(exam_type=exam_type, exam_board=exam_board, subjects=list(subject or [])),
        )
    except sqlite3.IntegrityError:
        console.print(f"[red]Error:[/] user '{user_id}' already exists")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Created {account.tier.value} user {user_id} with {account.balance} tokens")
    sys.exit(EXIT_CODE_PASS)


def _display_response(response: RetrievalResponse, title: str) -> None:
    query = response.resolved_query
    console.print(f"\n[bold]{title}[/bold]")
    console.print("-" * 40)
    console.print(
        f"Interpreted as: {query.exam_type or 'any'} | {query.exam_board or 'any'} | "
        f"{query.subject or 'any'} | {query.topic or 'any topic'} | {query.request_type}"
    )


def _display_tokens(response: RetrievalResponse) -> None:
    source = "cache" if response.cache_hit else "fresh"
    console.print(
        f"\nTokens used: {response.tokens_used} | Tokens remaining: {response.tokens_remaining} "
        f"[dim]({source})[/]"
    )


def _run_metered(action) -> RetrievalResponse:
    """Run a metered action, mapping pipeline outcomes to exit codes."""
    try:
        return action()
    except QueryValidationError as e:
        console.print(f"[red]Invalid request:[/] {e}")
        sys.exit(EXIT_CODE_DENIED)
    except AccountNotFoundError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_DENIED)
    except InsufficientTokensError as e:
        console.print(
            f"[yellow]Insufficient tokens:[/] {e.tokens_required} required, "
            f"{e.tokens_available} available"
        )
        sys.exit(EXIT_CODE_DENIED)
    except RetrievalError as e:
        console.print(f"[red]Request failed:[/] {e}")
        console.print(f"Tokens charged: {e.tokens_charged}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def search(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User making the request"),
    query: str = typer.Argument(..., help="Free-text study request"),
    page: int = typer.Option(1, "--page", "-p", help="Result page"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Results per page")
):
    """Search study content with a free-text request."""
    config = _config(ctx)
    orchestrator = _build_orchestrator(config)
    response = _run_metered(
        lambda: orchestrator.search(user_id, query, page=page, limit=limit or config.retrieval.page_size)
    )

    _display_response(response, "Search Results")
    if not response.payload:
        console.print("\n[dim]No matching content found.[/]")
    else:
        table = Table()
        table.add_column("ID", justify="right")
        table.add_column("Title")
        table.add_column("Type")
        table.add_column("Subject")
        table.add_column("Topics")
        for item in response.payload:
            table.add_row(
                str(item.get("content_id", "")),
                item.get("title", ""),
                item.get("content_type", ""),
                item.get("subject", ""),
                ", ".join(item.get("topics", [])),
            )
        console.print(table)
    _display_tokens(response)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def generate(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User making the request"),
    query: str = typer.Argument(..., help="Free-text study request"),
    count: Optional[int] = typer.Option(None, "--count", "-n", help="Number of questions")
):
    """Generate practice questions for a free-text request."""
    config = _config(ctx)
    orchestrator = _build_orchestrator(config)
    response = _run_metered(
        lambda: orchestrator.generate_questions(user_id, query, count=count or config.llm.question_count)
    )

    _display_response(response, "Practice Questions")
    for number, question in enumerate(response.payload, start=1):
        console.print(f"\n[bold]{number}. {question['question']}[/bold]")
        for option in question.get("options", []):
            console.print(f"   - {option}")
        console.print(f"   [green]Answer:[/] {question.get('correct_answer', '')}")
        if question.get("explanation"):
            console.print(f"   [dim]{question['explanation']}[/]")
    _display_tokens(response)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to inspect")
):
    """Show a user's token balance, applying any due weekly refill."""
    ledger = TokenLedger(AccountRepository(_config(ctx).storage.db_path))
    try:
        tokens = ledger.balance(user_id)
    except AccountNotFoundError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_DENIED)
    console.print(f"{user_id}: {tokens} tokens")
    sys.exit(EXIT_CODE_PASS)


@app.command("refresh-tokens")
def refresh_tokens(ctx: typer.Context):
    """
    Refill every account whose weekly window has elapsed.

    Intended to be run by an external scheduler (e.g. weekly cron). Safe to
    run at any time: accounts refilled recently are left untouched.
    """
    ledger = TokenLedger(AccountRepository(_config(ctx).storage.db_path))
    try:
        refilled = ledger.refresh_all()
    except sqlite3.Error as e:
        console.print(f"[red]Error refreshing tokens:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Token refresh completed for {refilled} accounts")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to inspect"),
    limit: int = typer.Option(10, "--limit", "-l", help="Records per page"),
    page: int = typer.Option(1, "--page", "-p", help="Page number")
):
    """Show a user's recent requests."""
    try:
        records = fetch_usage_history(user_id, limit=limit, page=page, db_path=_config(ctx).storage.db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Error reading history:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not records:
        console.print("[dim]No requests recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Request history for {user_id}")
    table.add_column("When")
    table.add_column("Query")
    table.add_column("Operation")
    table.add_column("Tokens", justify="right")
    table.add_column("Results", justify="right")
    table.add_column("Status")
    for record in records:
        status = "ok" if record.successful else "failed"
        if record.cache_hit:
            status += " (cached)"
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M"),
            record.raw_query,
            record.operation,
            str(record.tokens_charged),
            str(record.result_count),
            status,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to inspect")
):
    """Show aggregate request statistics for a user."""
    try:
        summary = get_user_query_stats(user_id, db_path=_config(ctx).storage.db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Error reading statistics:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"\n[bold]Request statistics for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Total requests: {summary['total_queries']}")
    console.print(f"Tokens used: {summary['total_tokens_used']}")
    console.print(f"Average latency: {summary['avg_latency_ms']:.0f} ms")
    console.print(f"Success rate: {summary['success_rate'] * 100:.1f}%")
    sys.exit(EXIT_CODE_PASS)


@app.command("popular-topics")
def popular_topics(
    ctx: typer.Context,
    subject: str = typer.Argument(..., help="Subject, e.g. Mathematics"),
    limit: int = typer.Option(10, "--limit", "-l", help="Number of topics")
):
    """Show the most requested topics for a subject."""
    try:
        topics = get_popular_topics(subject, limit=limit, db_path=_config(ctx).storage.db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Error reading topics:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not topics:
        console.print(f"[dim]No topics recorded for {subject}.[/]")
        sys.exit(EXIT_CODE_PASS)
    for topic, hits in topics:
        console.print(f"{hits:>5}  {topic}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def show(
    ctx: typer.Context,
    content_id: int = typer.Argument(..., help="Content record id")
):
    """Show one content record (free, counts a view)."""
    try:
        item = _build_orchestrator(_config(ctx)).get_content(content_id)
    except ContentNotFoundError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_DENIED)
    except sqlite3.Error as e:
        console.print(f"[red]Error reading content:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]{item['title']}[/bold]")
    console.print(
        f"{item['exam_type']} | {item['exam_board']} | {item['subject']} | {item['content_type']}"
    )
    console.print(item["description"])
    if item.get("body"):
        console.print(f"\n{item['body']}")
    console.print(f"\n[dim]{item['views']} views, {item['bookmarks']} bookmarks[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def popular(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-l", help="Number of records")
):
    """Show the most viewed content (free)."""
    try:
        items = _build_orchestrator(_config(ctx)).popular_content(limit)
    except sqlite3.Error as e:
        console.print(f"[red]Error reading content:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not items:
        console.print("[dim]No content yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Popular content")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Subject")
    table.add_column("Views", justify="right")
    for item in items:
        table.add_row(str(item["content_id"]), item["title"], item["subject"], str(item["views"]))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-cache")
def clear_cache(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Exact cache key to invalidate")
):
    """Invalidate a single cached result."""
    try:
        _build_orchestrator(_config(ctx)).clear_cache(key)
    except sqlite3.Error as e:
        console.print(f"[red]Error clearing cache:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Cleared {key}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
