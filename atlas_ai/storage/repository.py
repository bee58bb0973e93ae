"""
Repository pattern for data access.

Handles database operations and data persistence logic for accounts,
study content and the append-only usage ledger.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from atlas_ai.core.costs import SubscriptionTier, weekly_quota
from atlas_ai.core.query import StructuredQuery, UserPreferences, REQUEST_GENERAL

from .db import DEFAULT_DB_PATH, get_connection
from .models import ContentItem, TokenAccount, UsageRecord


def _like(value: str) -> str:
    """Build a case-insensitive substring pattern with LIKE wildcards escaped."""
    escaped = value.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class AccountRepository:
    """Repository for user accounts, token balances and study preferences."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create_user(
        self,
        user_id: str,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        preferences: Optional[UserPreferences] = None,
        balance: Optional[int] = None,
        last_refreshed_at: Optional[datetime] = None,
    ) -> TokenAccount:
        """Insert a new user with a full weekly quota unless told otherwise.

        Args:
            user_id: Unique user identifier
            tier: Subscription tier
            preferences: Stored study defaults
            balance: Starting balance (defaults to the tier quota)
            last_refreshed_at: Last refill time (defaults to now)

        Returns:
            The created TokenAccount

        Raises:
            sqlite3.IntegrityError: If the user already exists
        """
        preferences = preferences or UserPreferences()
        account = TokenAccount(
            user_id=user_id,
            tier=tier,
            balance=weekly_quota(tier) if balance is None else balance,
            last_refreshed_at=last_refreshed_at or datetime.now(),
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO users
                (user_id, tier, balance, last_refreshed_at,
                 pref_exam_type, pref_exam_board, pref_subjects)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                account.user_id,
                account.tier.value,
                account.balance,
                account.last_refreshed_at.isoformat(),
                preferences.exam_type,
                preferences.exam_board,
                json.dumps(list(preferences.subjects)),
            ))
            conn.commit()
        finally:
            conn.close()
        return account

    def get_account(self, user_id: str) -> Optional[TokenAccount]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT user_id, tier, balance, last_refreshed_at FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return TokenAccount(
            user_id=row[0],
            tier=SubscriptionTier(row[1]),
            balance=row[2],
            last_refreshed_at=datetime.fromisoformat(row[3]),
        )

    def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT pref_exam_type, pref_exam_board, pref_subjects FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return UserPreferences(
            exam_type=row[0],
            exam_board=row[1],
            subjects=json.loads(row[2] or "[]"),
        )

    def list_user_ids(self) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT user_id FROM users ORDER BY user_id").fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows]

    def save_refresh(self, account: TokenAccount, previous_refreshed_at: datetime) -> bool:
        """Persist a refill, only if nobody else refilled the account first.

        The write is conditional on ``last_refreshed_at`` still holding the
        value the refill was computed from, which keeps refills idempotent
        across processes.

        Args:
            account: Account after the refill rule was applied
            previous_refreshed_at: Refill timestamp read before applying it

        Returns:
            True if this call wrote the refill
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE users SET balance = ?, last_refreshed_at = ?
                WHERE user_id = ? AND last_refreshed_at = ?
            """, (
                account.balance,
                account.last_refreshed_at.isoformat(),
                account.user_id,
                previous_refreshed_at.isoformat(),
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def try_debit(self, user_id: str, cost: int) -> Optional[int]:
        """Atomically debit ``cost`` if the stored balance covers it.

        Compare-and-swap at the storage level: the UPDATE only matches while
        ``balance >= cost``, so the balance can never go negative.

        Args:
            user_id: User to debit
            cost: Tokens to remove

        Returns:
            Balance after the debit, or None if the balance was insufficient
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                "UPDATE users SET balance = balance - ? WHERE user_id = ? AND balance >= ?",
                (cost, user_id, cost),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute("SELECT balance FROM users WHERE user_id = ?", (user_id,)).fetchone()
            conn.commit()
            return row[0]
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


_CONTENT_COLUMNS = """
    id, title, description, content_type, exam_board, exam_type,
    subject, topics, body, views, bookmarks
"""


def _row_to_content(row: Tuple) -> ContentItem:
    return ContentItem(
        content_id=row[0],
        title=row[1],
        description=row[2],
        content_type=row[3],
        exam_board=row[4],
        exam_type=row[5],
        subject=row[6],
        topics=json.loads(row[7] or "[]"),
        body=row[8],
        views=row[9],
        bookmarks=row[10],
    )


class ContentRepository:
    """Repository for study content records."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add_content(self, item: ContentItem) -> int:
        """Insert a content record and return its id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO content
                (title, description, content_type, exam_board, exam_type,
                 subject, topics, body, views, bookmarks)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                item.title,
                item.description,
                item.content_type,
                item.exam_board,
                item.exam_type,
                item.subject,
                json.dumps(list(item.topics)),
                item.body,
                item.views,
                item.bookmarks,
            ))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def search(self, query: StructuredQuery, page: int = 1, limit: int = 10) -> List[ContentItem]:
        """Find content matching a structured query.

        Filters:
        - exam type and exam board match exactly
        - subject matches as a case-insensitive substring
        - topic matches topics, title or description as a substring
        - request type selects the content type, except ``general``

        Absent fields apply no filter. Results are ordered by views.

        Args:
            query: Resolved structured query
            page: 1-based page number
            limit: Page size

        Returns:
            List of matching content items
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if limit < 1:
            raise ValueError("limit must be >= 1")

        sql = f"SELECT {_CONTENT_COLUMNS} FROM content"
        conditions = []
        params: List[Any] = []

        if query.exam_type:
            conditions.append("exam_type = ?")
            params.append(query.exam_type)
        if query.exam_board:
            conditions.append("exam_board = ?")
            params.append(query.exam_board)
        if query.subject:
            conditions.append("LOWER(subject) LIKE ? ESCAPE '\\'")
            params.append(_like(query.subject))
        if query.topic:
            conditions.append(
                "(LOWER(topics) LIKE ? ESCAPE '\\' OR LOWER(title) LIKE ? ESCAPE '\\'"
                " OR LOWER(description) LIKE ? ESCAPE '\\')"
            )
            params.extend([_like(query.topic)] * 3)
        if query.request_type and query.request_type != REQUEST_GENERAL:
            conditions.append("content_type = ?")
            params.append(query.request_type)

        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY views DESC, id ASC LIMIT ? OFFSET ?"
        params.extend([limit, (page - 1) * limit])

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [_row_to_content(row) for row in rows]

    def get_content(self, content_id: int) -> Optional[ContentItem]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_CONTENT_COLUMNS} FROM content WHERE id = ?", (content_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_content(row) if row else None

    def increment_views(self, content_id: int) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE content SET views = views + 1 WHERE id = ?", (content_id,))
            conn.commit()
        finally:
            conn.close()

    def popular(self, limit: int = 10) -> List[ContentItem]:
        """Most viewed content first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_CONTENT_COLUMNS} FROM content ORDER BY views DESC, id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_content(row) for row in rows]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the users, content and usage_record tables if they don't exist.

    usage_record is an append-only ledger. No UPDATE or DELETE operations
    should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                tier TEXT NOT NULL,
                balance INTEGER NOT NULL CHECK (balance >= 0),
                last_refreshed_at TEXT NOT NULL,
                pref_exam_type TEXT,
                pref_exam_board TEXT,
                pref_subjects TEXT NOT NULL DEFAULT '[]'
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS content (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                content_type TEXT NOT NULL,
                exam_board TEXT NOT NULL,
                exam_type TEXT NOT NULL,
                subject TEXT NOT NULL,
                topics TEXT NOT NULL DEFAULT '[]',
                body TEXT,
                views INTEGER NOT NULL DEFAULT 0,
                bookmarks INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL,
                raw_query TEXT NOT NULL,
                operation TEXT NOT NULL,
                exam_type TEXT,
                exam_board TEXT,
                subject TEXT,
                topic TEXT,
                request_type TEXT,
                tokens_charged INTEGER NOT NULL,
                result_count INTEGER NOT NULL,
                latency_ms INTEGER NOT NULL,
                cache_hit INTEGER NOT NULL DEFAULT 0,
                successful INTEGER NOT NULL DEFAULT 1,
                error_message TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_user_time ON usage_record (user_id, timestamp)"
        )
        conn.commit()
    finally:
        conn.close()


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage record to the ledger.

    Args:
        record: The usage record to store
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO usage_record
            (timestamp, user_id, raw_query, operation, exam_type, exam_board,
             subject, topic, request_type, tokens_charged, result_count,
             latency_ms, cache_hit, successful, error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.timestamp.isoformat(),
            record.user_id,
            record.raw_query,
            record.operation,
            record.exam_type,
            record.exam_board,
            record.subject,
            record.topic,
            record.request_type,
            record.tokens_charged,
            record.result_count,
            record.latency_ms,
            int(record.cache_hit),
            int(record.successful),
            record.error_message,
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_usage_history(
    user_id: str,
    limit: int = 10,
    page: int = 1,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageRecord]:
    """Fetch a user's usage records, newest first.

    Args:
        user_id: User whose history to read
        limit: Page size
        page: 1-based page number
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        rows = conn.execute("""
            SELECT timestamp, user_id, raw_query, operation, exam_type, exam_board,
                   subject, topic, request_type, tokens_charged, result_count,
                   latency_ms, cache_hit, successful, error_message
            FROM usage_record
            WHERE user_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
        """, (user_id, limit, (page - 1) * limit)).fetchall()
    finally:
        conn.close()

    return [
        UsageRecord(
            timestamp=datetime.fromisoformat(row[0]),
            user_id=row[1],
            raw_query=row[2],
            operation=row[3],
            exam_type=row[4],
            exam_board=row[5],
            subject=row[6],
            topic=row[7],
            request_type=row[8],
            tokens_charged=row[9],
            result_count=row[10],
            latency_ms=row[11],
            cache_hit=bool(row[12]),
            successful=bool(row[13]),
            error_message=row[14],
        )
        for row in rows
    ]


def get_user_query_stats(user_id: str, db_path: str = DEFAULT_DB_PATH) -> Dict[str, float]:
    """Aggregate a user's usage records.

    Returns:
        Dictionary with total_queries, total_tokens_used, avg_latency_ms
        and success_rate
    """
    conn = get_connection(db_path)
    try:
        row = conn.execute("""
            SELECT COUNT(*), SUM(tokens_charged), AVG(latency_ms), AVG(successful)
            FROM usage_record
            WHERE user_id = ?
        """, (user_id,)).fetchone()
    finally:
        conn.close()

    return {
        "total_queries": row[0] or 0,
        "total_tokens_used": row[1] or 0,
        "avg_latency_ms": float(row[2] or 0),
        "success_rate": float(row[3] or 0),
    }


def get_popular_topics(
    subject: str,
    limit: int = 10,
    db_path: str = DEFAULT_DB_PATH
) -> List[Tuple[str, int]]:
    """Most requested topics for a subject as (topic, count) pairs."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute("""
            SELECT topic, COUNT(*) AS hits
            FROM usage_record
            WHERE subject = ? AND topic IS NOT NULL
            GROUP BY topic
            ORDER BY hits DESC, topic ASC
            LIMIT ?
        """, (subject, limit)).fetchall()
    finally:
        conn.close()
    return [(row[0], row[1]) for row in rows]
