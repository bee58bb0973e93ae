"""
Metered retrieval pipeline.

Entry point that turns a free-text request into a structured response:

    PARSING -> TOKEN_CHECK -> CACHE_LOOKUP -> CACHE_HIT -> RESPOND
                                           -> CACHE_MISS -> EXECUTE -> CACHE_STORE -> RESPOND

TOKEN_CHECK ends in ABORTED when the balance is insufficient; nothing
downstream runs. Any unrecoverable fault ends in FAILED.

Tokens are charged before the cache is consulted, so a cache hit costs the
same as a miss, and tokens charged for a run that later fails are not
refunded.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .cache import KIND_CONTENT, KIND_POPULAR, KIND_QUESTIONS, KIND_SEARCH, ResultCache, build_cache_key
from .completion import CompletionError
from .costs import OperationCategory, category_for_request_type
from .generation import GenerationError, QuestionGenerator
from .interpreter import QueryInterpreter
from .ledger import AccountNotFoundError, TokenLedger
from .query import StructuredQuery, UserPreferences
from atlas_ai.storage.models import UsageRecord
from atlas_ai.storage.repository import ContentRepository

logger = logging.getLogger(__name__)

# Faults raised by the execute step that end the run in FAILED
RETRIEVAL_FAULTS = (sqlite3.Error, CompletionError, GenerationError, TimeoutError, OSError)


class PipelineState(Enum):
    PARSING = "parsing"
    TOKEN_CHECK = "token_check"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    EXECUTE = "execute"
    CACHE_STORE = "cache_store"
    RESPOND = "respond"
    ABORTED = "aborted"
    FAILED = "failed"


class QueryValidationError(ValueError):
    """Raised for a missing or invalid request before any stage runs."""


class InsufficientTokensError(Exception):
    """Raised when the balance cannot cover the requested operation.

    An expected outcome the caller can act on, not a system fault.
    """
    def __init__(self, tokens_required: int, tokens_available: int, category: OperationCategory):
        super().__init__(
            f"Insufficient tokens: {category.value} requires {tokens_required}, "
            f"{tokens_available} available"
        )
        self.tokens_required = tokens_required
        self.tokens_available = tokens_available
        self.category = category


class RetrievalError(Exception):
    """Raised when search or generation fails after tokens were charged.

    The charged tokens stay spent.
    """
    def __init__(self, message: str, tokens_charged: int = 0, state: PipelineState = PipelineState.EXECUTE):
        super().__init__(message)
        self.tokens_charged = tokens_charged
        self.state = state


class ContentNotFoundError(LookupError):
    def __init__(self, content_id: int):
        super().__init__(f"Content not found: {content_id}")
        self.content_id = content_id


@dataclass(frozen=True)
class RetrievalResponse:
    """Structured result of a completed run."""
    resolved_query: StructuredQuery
    payload: List[Dict[str, Any]]
    tokens_used: int
    tokens_remaining: int
    cache_hit: bool = False
    interpretation_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolvedQuery": self.resolved_query.to_wire(),
            "payload": self.payload,
            "tokensUsed": self.tokens_used,
            "tokensRemaining": self.tokens_remaining,
        }


@dataclass
class _Run:
    """Mutable bookkeeping for one pipeline run."""
    user_id: str
    raw_query: str
    operation: str
    started: float = field(default_factory=time.monotonic)
    state: PipelineState = PipelineState.PARSING

    def advance(self, state: PipelineState) -> None:
        logger.debug("%s run for %s: %s -> %s", self.operation, self.user_id, self.state.value, state.value)
        self.state = state

    @property
    def latency_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def _validate_text(raw_text: Any) -> str:
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise QueryValidationError("Please provide a query")
    return raw_text.strip()


class RetrievalOrchestrator:
    """Runs interpretation, metering, caching and retrieval for one request."""

    def __init__(
        self,
        interpreter: QueryInterpreter,
        ledger: TokenLedger,
        cache: ResultCache,
        content: ContentRepository,
        generator: Optional[QuestionGenerator] = None,
        record_usage: Optional[Callable[[UsageRecord], None]] = None,
        preferences: Optional[Callable[[str], Optional[UserPreferences]]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the orchestrator.

        Args:
            interpreter: Free-text query interpreter
            ledger: Token ledger consulted before costly work
            cache: Advisory result cache
            content: Content search collaborator
            generator: Question generator; None disables generation
            record_usage: Sink for usage records; None disables recording
            preferences: Preference lookup (defaults to the ledger's accounts)
            clock: Source of usage-record timestamps
        """
        self.interpreter = interpreter
        self.ledger = ledger
        self.cache = cache
        self.content = content
        self.generator = generator
        self.record_usage = record_usage
        self.preferences = preferences or ledger.accounts.get_preferences
        self.clock = clock

    # -- metered operations -------------------------------------------------

    def search(self, user_id: str, raw_text: str, page: int = 1, limit: int = 10) -> RetrievalResponse:
        """Interpret a request and return matching content.

        Charged by request type: past papers and practice questions cost
        more than notes or general searches.

        Raises:
            QueryValidationError: On empty text or bad pagination
            AccountNotFoundError: If the user does not exist
            InsufficientTokensError: If the balance cannot cover the cost
            RetrievalError: If the content search fails
        """
        if page < 1 or limit < 1:
            raise QueryValidationError("page and limit must be >= 1")

        def execute(query: StructuredQuery) -> List[Dict[str, Any]]:
            return [item.to_dict() for item in self.content.search(query, page=page, limit=limit)]

        return self._run(
            user_id,
            raw_text,
            kind=KIND_SEARCH,
            category=lambda query: category_for_request_type(query.request_type),
            page=page,
            limit=limit,
            execute=execute,
        )

    def generate_questions(self, user_id: str, raw_text: str, count: int = 5) -> RetrievalResponse:
        """Interpret a request and generate practice questions for it.

        Always charged as practice-question generation.

        Raises:
            QueryValidationError: On empty text or non-positive count
            AccountNotFoundError: If the user does not exist
            InsufficientTokensError: If the balance cannot cover the cost
            RetrievalError: If generation fails or is not configured
        """
        if count < 1:
            raise QueryValidationError("count must be >= 1")

        def execute(query: StructuredQuery) -> List[Dict[str, Any]]:
            if self.generator is None:
                raise CompletionError("question generation is not configured")
            return [question.to_dict() for question in self.generator.generate(query, count)]

        return self._run(
            user_id,
            raw_text,
            kind=KIND_QUESTIONS,
            category=lambda query: OperationCategory.PRACTICE_QUESTIONS,
            page=1,
            limit=count,
            execute=execute,
        )

    def _run(
        self,
        user_id: str,
        raw_text: str,
        kind: str,
        category: Callable[[StructuredQuery], OperationCategory],
        page: int,
        limit: int,
        execute: Callable[[StructuredQuery], List[Dict[str, Any]]],
    ) -> RetrievalResponse:
        text = _validate_text(raw_text)
        preferences = self.preferences(user_id)
        if preferences is None:
            raise AccountNotFoundError(user_id)

        run = _Run(user_id=user_id, raw_query=text, operation=kind)
        interpretation = self.interpreter.resolve(text, preferences)
        query = interpretation.query

        run.advance(PipelineState.TOKEN_CHECK)
        charge = self.ledger.charge(user_id, category(query))
        if not charge.ok:
            run.advance(PipelineState.ABORTED)
            raise InsufficientTokensError(charge.tokens_required, charge.tokens_available, charge.category)

        run.advance(PipelineState.CACHE_LOOKUP)
        key = build_cache_key(kind, query, page, limit)
        payload = self.cache.get(key)
        cache_hit = payload is not None

        if cache_hit:
            run.advance(PipelineState.CACHE_HIT)
        else:
            run.advance(PipelineState.CACHE_MISS)
            run.advance(PipelineState.EXECUTE)
            try:
                payload = execute(query)
            except RETRIEVAL_FAULTS as e:
                run.advance(PipelineState.FAILED)
                logger.error(
                    "%s failed for %s after charging %d tokens: %s",
                    kind, user_id, charge.tokens_charged, e, exc_info=True,
                )
                try:
                    self._record(run, query, charge.tokens_charged, 0, False, error=str(e))
                except sqlite3.Error as record_error:
                    logger.error(
                        "Could not record failed %s run for %s: %s",
                        kind, user_id, record_error, exc_info=True,
                    )
                raise RetrievalError(
                    f"{kind} failed: {e}", tokens_charged=charge.tokens_charged
                ) from e
            run.advance(PipelineState.CACHE_STORE)
            self.cache.put(key, payload, self.cache.ttl_for(kind))

        run.advance(PipelineState.RESPOND)
        self._record(run, query, charge.tokens_charged, len(payload), cache_hit)
        return RetrievalResponse(
            resolved_query=query,
            payload=payload,
            tokens_used=charge.tokens_charged,
            tokens_remaining=charge.tokens_remaining,
            cache_hit=cache_hit,
            interpretation_path=interpretation.path,
        )

    def _record(
        self,
        run: _Run,
        query: StructuredQuery,
        tokens_charged: int,
        result_count: int,
        cache_hit: bool,
        error: Optional[str] = None,
    ) -> None:
        if self.record_usage is None:
            return
        self.record_usage(UsageRecord(
            timestamp=self.clock(),
            user_id=run.user_id,
            raw_query=run.raw_query,
            operation=run.operation,
            exam_type=query.exam_type,
            exam_board=query.exam_board,
            subject=query.subject,
            topic=query.topic,
            request_type=query.request_type,
            tokens_charged=tokens_charged,
            result_count=result_count,
            latency_ms=run.latency_ms,
            cache_hit=cache_hit,
            successful=error is None,
            error_message=error,
        ))

    # -- unmetered reads ----------------------------------------------------

    def get_content(self, content_id: int) -> Dict[str, Any]:
        """Fetch one content record, counting a view when it is not cached.

        Raises:
            ContentNotFoundError: If no record has this id
        """
        key = f"{KIND_CONTENT}:{content_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        item = self.content.get_content(content_id)
        if item is None:
            raise ContentNotFoundError(content_id)
        self.content.increment_views(content_id)

        payload = replace(item, views=item.views + 1).to_dict()
        self.cache.put(key, payload, self.cache.ttl_for(KIND_CONTENT))
        return payload

    def popular_content(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most viewed content, cached per limit."""
        key = f"{KIND_POPULAR}:{limit}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        payload = [item.to_dict() for item in self.content.popular(limit)]
        self.cache.put(key, payload, self.cache.ttl_for(KIND_POPULAR))
        return payload

    def clear_cache(self, key: str) -> None:
        self.cache.invalidate(key)
