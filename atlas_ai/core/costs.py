"""
Token costs and weekly quotas.

Fixed tables for metered operations. Loaded once at import and shared
read-only; neither table is configurable.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from .query import REQUEST_PAST_PAPER, REQUEST_PRACTICE_QUESTIONS


class OperationCategory(Enum):
    """Metered operation categories."""
    BASIC_SEARCH = "basicSearch"
    PAST_PAPER = "pastPaper"
    PRACTICE_QUESTIONS = "practiceQuestions"
    BOOKMARK = "bookmark"


class SubscriptionTier(Enum):
    FREE = "free"
    PREMIUM = "premium"


@dataclass(frozen=True)
class OperationCostTable:
    """Fixed token cost per operation category."""
    costs: Mapping[OperationCategory, int]

    def get_cost(self, category: OperationCategory) -> int:
        """Get the token cost of an operation.

        Args:
            category: Operation category

        Returns:
            Integer token cost

        Raises:
            ValueError: If the category has no cost entry
        """
        if category not in self.costs:
            raise ValueError(f"Unsupported operation: {category}")
        return self.costs[category]


# Fixed cost table - no dynamic loading, no defaults
COST_TABLE = OperationCostTable(MappingProxyType({
    OperationCategory.BASIC_SEARCH: 1,
    OperationCategory.PAST_PAPER: 2,
    OperationCategory.PRACTICE_QUESTIONS: 3,
    OperationCategory.BOOKMARK: 0,
}))

TIER_QUOTAS: Mapping[SubscriptionTier, int] = MappingProxyType({
    SubscriptionTier.FREE: 15,
    SubscriptionTier.PREMIUM: 50,
})

REFILL_INTERVAL = timedelta(days=7)


def weekly_quota(tier: SubscriptionTier) -> int:
    return TIER_QUOTAS[tier]


def category_for_request_type(request_type: str) -> OperationCategory:
    """Map a resolved request type to the category it is charged as.

    Past papers and practice questions have their own categories; notes,
    general and anything else are charged as a basic search.
    """
    if request_type == REQUEST_PAST_PAPER:
        return OperationCategory.PAST_PAPER
    if request_type == REQUEST_PRACTICE_QUESTIONS:
        return OperationCategory.PRACTICE_QUESTIONS
    return OperationCategory.BASIC_SEARCH
