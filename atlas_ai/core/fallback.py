"""
Semantic fallback for incomplete queries.

Asks an external language model to fill the fields deterministic extraction
could not find. The model is consulted only on demand and never decides the
outcome of a request: every failure degrades to the deterministic result.

Outcomes:
- RESOLVED: the model returned a usable payload and it was merged
- DEGRADED: the model replied but the reply held no usable payload
- FAILED:   the model could not be reached or timed out
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .completion import CompletionError, TextCompleter
from .payload import extract_payload
from .query import QUERY_FIELDS, REQUEST_TYPES, StructuredQuery

logger = logging.getLogger(__name__)


PROMPT_TEMPLATE = """Parse the following educational query and extract these parameters:
- examType (GCSE, IGCSE, A-level)
- examBoard (Edexcel, AQA, OCR, WJEC, Cambridge)
- subject (e.g., Mathematics, Biology, Physics)
- topic (specific topic within the subject)
- requestType (notes, pastPaper, practiceQuestions, general)

Query: "{query}"

Return ONLY a JSON object with exactly these five fields. If a parameter is not found, set it to null."""

# JSON field name -> StructuredQuery attribute
RESPONSE_FIELDS = {
    "examType": "exam_type",
    "examBoard": "exam_board",
    "subject": "subject",
    "topic": "topic",
    "requestType": "request_type",
}


class FallbackStatus(Enum):
    """Tagged outcome of a fallback attempt."""
    RESOLVED = "resolved"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class FallbackResult:
    """Result of a fallback attempt.

    ``query`` is always usable: on DEGRADED or FAILED it is the untouched
    deterministic partial.
    """
    status: FallbackStatus
    query: StructuredQuery
    reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        """True when the deterministic partial was kept."""
        return self.status is not FallbackStatus.RESOLVED


def build_prompt(raw_text: str) -> str:
    return PROMPT_TEMPLATE.format(query=raw_text.replace('"', "'"))


def merge_fields(partial: StructuredQuery, payload: Dict[str, Any]) -> StructuredQuery:
    """Merge model output into the deterministic partial.

    A model value wins only when it is a non-empty string; anything else
    keeps the pattern-based value. Unknown request types are ignored.
    """
    merged = {}
    for json_name, attr in RESPONSE_FIELDS.items():
        value = payload.get(json_name, payload.get(attr))
        if isinstance(value, str) and value.strip():
            value = value.strip()
            if attr == "request_type" and value not in REQUEST_TYPES:
                continue
            merged[attr] = value
    return partial.with_fields(**merged)


class SemanticFallbackClient:
    """Completes a partial query through an injected language model."""

    def __init__(self, completer: TextCompleter):
        self.completer = completer

    def complete(self, raw_text: str, partial: StructuredQuery) -> FallbackResult:
        """Fill missing fields of ``partial`` using the language model.

        Never raises for model-side problems; they are reported through the
        returned status.

        Args:
            raw_text: Original free-text request
            partial: Deterministic extraction result

        Returns:
            FallbackResult carrying the merged (or untouched) query
        """
        try:
            reply = self.completer.complete(build_prompt(raw_text))
        except (CompletionError, TimeoutError, OSError) as e:
            logger.warning("Query fallback unavailable, using pattern result: %s", e)
            return FallbackResult(FallbackStatus.FAILED, partial, reason=str(e))

        payload = extract_payload(reply or "", kind=dict)
        if payload is None:
            logger.warning("Query fallback reply held no JSON object, using pattern result")
            return FallbackResult(FallbackStatus.DEGRADED, partial, reason="no structured payload in reply")

        if not any(key in payload for key in RESPONSE_FIELDS) and not any(
            key in payload for key in QUERY_FIELDS
        ):
            logger.warning("Query fallback payload has none of the expected fields")
            return FallbackResult(FallbackStatus.DEGRADED, partial, reason="payload missing query fields")

        return FallbackResult(FallbackStatus.RESOLVED, merge_fields(partial, payload))
