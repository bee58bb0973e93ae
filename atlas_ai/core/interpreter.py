"""
Query interpretation pipeline.

Two-tier resolution of a free-text request:
1. Fast path - deterministic extraction; if every field is found, done
2. Slow path - semantic fallback fills what extraction missed
3. Enrichment - stored preferences fill whatever is still absent
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .enrichment import PreferenceEnricher
from .extraction import PatternExtractor
from .fallback import FallbackResult, SemanticFallbackClient
from .query import StructuredQuery, UserPreferences, is_complete

logger = logging.getLogger(__name__)

PATH_PATTERN = "pattern"
PATH_SEMANTIC = "semantic"
PATH_DEGRADED = "degraded"


@dataclass(frozen=True)
class Interpretation:
    """Resolved query plus the path that produced it."""
    query: StructuredQuery
    path: str
    fallback: Optional[FallbackResult] = None


class QueryInterpreter:
    """Orchestrates extraction, semantic fallback and enrichment."""

    def __init__(
        self,
        fallback: Optional[SemanticFallbackClient] = None,
        extractor: Optional[PatternExtractor] = None,
        enricher: Optional[PreferenceEnricher] = None,
    ):
        """Initialize the interpreter.

        Args:
            fallback: Semantic fallback client; None disables the slow path
            extractor: Deterministic extractor (defaults to PatternExtractor)
            enricher: Preference enricher (defaults to PreferenceEnricher)
        """
        self.fallback = fallback
        self.extractor = extractor or PatternExtractor()
        self.enricher = enricher or PreferenceEnricher()

    def resolve(self, raw_text: str, preferences: Optional[UserPreferences]) -> Interpretation:
        """Interpret free text and report which path was taken."""
        partial = self.extractor.extract(raw_text)

        if is_complete(partial):
            logger.debug("Query resolved on fast path: %s", partial)
            return Interpretation(self.enricher.enrich(partial, preferences), PATH_PATTERN)

        if self.fallback is None:
            return Interpretation(self.enricher.enrich(partial, preferences), PATH_DEGRADED)

        result = self.fallback.complete(raw_text, partial)
        path = PATH_DEGRADED if result.degraded else PATH_SEMANTIC
        if result.degraded:
            logger.info("Query fallback %s: %s", result.status.value, result.reason)
        return Interpretation(self.enricher.enrich(result.query, preferences), path, result)

    def interpret(self, raw_text: str, preferences: Optional[UserPreferences]) -> StructuredQuery:
        """Interpret free text into a fully enriched structured query."""
        return self.resolve(raw_text, preferences).query
