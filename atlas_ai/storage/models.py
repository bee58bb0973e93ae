"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from atlas_ai.core.costs import SubscriptionTier


@dataclass
class TokenAccount:
    """Metered token balance owned by a user.

    Mutated only through TokenLedger operations.
    """
    user_id: str
    tier: SubscriptionTier
    balance: int
    last_refreshed_at: datetime

    def __post_init__(self):
        """Validate balance is non-negative."""
        if self.balance < 0:
            raise ValueError("balance cannot be negative")


@dataclass(frozen=True)
class ContentItem:
    """Study content record filterable by the five query fields."""
    title: str
    description: str
    content_type: str
    exam_board: str
    exam_type: str
    subject: str
    topics: List[str] = field(default_factory=list)
    body: Optional[str] = None
    views: int = 0
    bookmarks: int = 0
    content_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one pipeline run.

    Append-only events that correlate a raw query with how it was
    interpreted and what it cost. Once written, never modified.
    """
    timestamp: datetime
    user_id: str
    raw_query: str
    operation: str
    exam_type: Optional[str]
    exam_board: Optional[str]
    subject: Optional[str]
    topic: Optional[str]
    request_type: Optional[str]
    tokens_charged: int
    result_count: int
    latency_ms: int
    cache_hit: bool = False
    successful: bool = True
    error_message: Optional[str] = None
