"""
Structured query representation.

Defines the five-field canonical form of a free-text study request and the
stored preferences used to fill its gaps.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional


# Canonical request types produced by extraction and enrichment
REQUEST_NOTES = "notes"
REQUEST_PAST_PAPER = "pastPaper"
REQUEST_PRACTICE_QUESTIONS = "practiceQuestions"
REQUEST_GENERAL = "general"

REQUEST_TYPES = (
    REQUEST_NOTES,
    REQUEST_PAST_PAPER,
    REQUEST_PRACTICE_QUESTIONS,
    REQUEST_GENERAL,
)

QUERY_FIELDS = ("exam_type", "exam_board", "subject", "topic", "request_type")

# Response-facing names of the query fields
WIRE_NAMES = {
    "exam_type": "examType",
    "exam_board": "examBoard",
    "subject": "subject",
    "topic": "topic",
    "request_type": "requestType",
}


@dataclass(frozen=True)
class StructuredQuery:
    """Canonical representation of a user's study request.

    Every field is optional. An absent field is ``None``, never an empty
    string or a placeholder.
    """
    exam_type: Optional[str] = None
    exam_board: Optional[str] = None
    subject: Optional[str] = None
    topic: Optional[str] = None
    request_type: Optional[str] = None

    def __post_init__(self):
        """Normalize blank strings to absent."""
        for name in QUERY_FIELDS:
            value = getattr(self, name)
            if isinstance(value, str) and not value.strip():
                object.__setattr__(self, name, None)

    @property
    def missing_fields(self) -> List[str]:
        """Names of the fields that are still absent."""
        return [name for name in QUERY_FIELDS if getattr(self, name) is None]

    def with_fields(self, **changes: Optional[str]) -> "StructuredQuery":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_wire(self) -> Dict[str, Optional[str]]:
        """Return the fields under their camelCase response names."""
        return {WIRE_NAMES[name]: getattr(self, name) for name in QUERY_FIELDS}


def is_complete(query: StructuredQuery) -> bool:
    """A query is complete iff all five fields are present."""
    return not query.missing_fields


@dataclass(frozen=True)
class UserPreferences:
    """Stored study defaults for a user."""
    exam_type: Optional[str] = None
    exam_board: Optional[str] = None
    subjects: List[str] = field(default_factory=list)

    @property
    def primary_subject(self) -> Optional[str]:
        """First preferred subject, if any."""
        return self.subjects[0] if self.subjects else None
