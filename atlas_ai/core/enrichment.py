"""
Preference-based query enrichment.

Fills gaps left by extraction with the user's stored study defaults.
"""

from typing import Optional

from .query import REQUEST_GENERAL, REQUEST_TYPES, StructuredQuery, UserPreferences


def enrich(partial: StructuredQuery, preferences: Optional[UserPreferences]) -> StructuredQuery:
    """Fill absent fields from stored preferences.

    Total function: the result always carries a known request type. Topic has no
    stored default and may remain absent, which retrieval treats as
    "no topic filter".

    Args:
        partial: Query produced by extraction (and possibly the fallback)
        preferences: Stored user defaults, or None

    Returns:
        Fully defaulted StructuredQuery
    """
    preferences = preferences or UserPreferences()
    request_type = partial.request_type
    if request_type not in REQUEST_TYPES:
        request_type = REQUEST_GENERAL

    return StructuredQuery(
        exam_type=partial.exam_type or preferences.exam_type,
        exam_board=partial.exam_board or preferences.exam_board,
        subject=partial.subject or preferences.primary_subject,
        topic=partial.topic,
        request_type=request_type,
    )


class PreferenceEnricher:
    def enrich(
        self, partial: StructuredQuery, preferences: Optional[UserPreferences]
    ) -> StructuredQuery:
        return enrich(partial, preferences)
