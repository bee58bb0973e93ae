"""
Deterministic query extraction.

Pattern-based matcher that turns free text into a partial structured query.

Matching rules:
1. Input is compared case-insensitively
2. Each vocabulary is scanned in list order and the FIRST listed term found
   in the text wins (not the longest term, not the earliest in the text)
3. Terms match on whole words only
4. Topic is read from the text following the matched subject
"""

import re
from typing import Dict, List, Optional, Tuple

from .query import (
    REQUEST_GENERAL,
    REQUEST_NOTES,
    REQUEST_PAST_PAPER,
    REQUEST_PRACTICE_QUESTIONS,
    StructuredQuery,
)


EXAM_TYPES = ["GCSE", "IGCSE", "A-level", "A level", "Alevel", "A Level"]

# Edexcel is listed first: a query naming several boards
# resolves to the earliest board in this list.
EXAM_BOARDS = ["Edexcel", "AQA", "OCR", "WJEC", "Cambridge"]

SUBJECTS = [
    "Mathematics", "Maths", "Math", "Further Mathematics", "Further Maths",
    "Biology", "Chemistry", "Physics", "Combined Science", "Science",
    "English", "English Language", "English Literature",
    "History", "Geography", "Religious Studies", "RS",
    "Computer Science", "Computing", "ICT",
    "Business Studies", "Economics", "Sociology", "Psychology",
    "French", "German", "Spanish", "Latin",
    "Art", "Music", "Drama", "Physical Education", "PE",
]

SUBJECT_ALIASES: Dict[str, str] = {
    "math": "Mathematics",
    "maths": "Mathematics",
    "mathematics": "Mathematics",
}

# (synonym, canonical request type), scanned in order
REQUEST_TYPE_SYNONYMS: List[Tuple[str, str]] = [
    ("notes", REQUEST_NOTES),
    ("note", REQUEST_NOTES),
    ("summary", REQUEST_NOTES),
    ("explanation", REQUEST_NOTES),
    ("explain", REQUEST_NOTES),
    ("past paper", REQUEST_PAST_PAPER),
    ("past papers", REQUEST_PAST_PAPER),
    ("pastpaper", REQUEST_PAST_PAPER),
    ("pastpapers", REQUEST_PAST_PAPER),
    ("exam paper", REQUEST_PAST_PAPER),
    ("exam papers", REQUEST_PAST_PAPER),
    ("practice", REQUEST_PRACTICE_QUESTIONS),
    ("practice questions", REQUEST_PRACTICE_QUESTIONS),
    ("questions", REQUEST_PRACTICE_QUESTIONS),
    ("exercise", REQUEST_PRACTICE_QUESTIONS),
    ("exercises", REQUEST_PRACTICE_QUESTIONS),
    ("flashcard", REQUEST_GENERAL),
    ("flashcards", REQUEST_GENERAL),
    ("revision", REQUEST_GENERAL),
    ("revise", REQUEST_GENERAL),
]

TOPIC_CONNECTORS = ["about", "on", "regarding", "topic of", "topic", "specifically"]

TOPIC_STOP_MARKS = [".", ",", "?", "!"]
TOPIC_STOP_WORDS = ["for", "with"]


def _term_pattern(term: str) -> "re.Pattern[str]":
    return re.compile(r"(?<!\w)" + re.escape(term.lower()) + r"(?!\w)")


_EXAM_TYPE_PATTERNS = [(term, _term_pattern(term)) for term in EXAM_TYPES]
_EXAM_BOARD_PATTERNS = [(term, _term_pattern(term)) for term in EXAM_BOARDS]
_SUBJECT_PATTERNS = [(term, _term_pattern(term)) for term in SUBJECTS]
_REQUEST_TYPE_PATTERNS = [
    (canonical, _term_pattern(term)) for term, canonical in REQUEST_TYPE_SYNONYMS
]
_CONNECTOR_PATTERNS = [_term_pattern(term) for term in TOPIC_CONNECTORS]
_STOP_WORD_PATTERNS = [_term_pattern(term) for term in TOPIC_STOP_WORDS]


def normalize_text(raw_text: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(raw_text.lower().split())


def _first_match(
    text: str, patterns: List[Tuple[str, "re.Pattern[str]"]]
) -> Optional[Tuple[str, "re.Match[str]"]]:
    for value, pattern in patterns:
        match = pattern.search(text)
        if match:
            return value, match
    return None


def _canonical_exam_type(term: str) -> str:
    lowered = term.lower()
    if "igcse" in lowered:
        return "IGCSE"
    if "gcse" in lowered:
        return "GCSE"
    return "A-level"


def _canonical_subject(term: str) -> str:
    return SUBJECT_ALIASES.get(term.lower(), term)


def extract_topic(text_after_subject: str) -> Optional[str]:
    """Read a topic from the text that follows a subject mention.

    The first connector in ``TOPIC_CONNECTORS`` order that occurs in the
    text starts the topic; it ends at the earliest stop mark or stop word.

    Args:
        text_after_subject: Normalized text following the subject term

    Returns:
        Trimmed topic, or None when no connector is found or the topic is empty
    """
    for pattern in _CONNECTOR_PATTERNS:
        match = pattern.search(text_after_subject)
        if not match:
            continue

        candidate = text_after_subject[match.end():]
        cut = len(candidate)
        for mark in TOPIC_STOP_MARKS:
            index = candidate.find(mark)
            if index != -1:
                cut = min(cut, index)
        for stop_pattern in _STOP_WORD_PATTERNS:
            stop = stop_pattern.search(candidate)
            if stop:
                cut = min(cut, stop.start())

        topic = candidate[:cut].strip()
        return topic or None
    return None


def extract(raw_text: str) -> StructuredQuery:
    """Extract a partial structured query from free text.

    Pure function: identical input always yields identical output.

    Args:
        raw_text: Free-text study request

    Returns:
        StructuredQuery with every field that could be matched
    """
    text = normalize_text(raw_text or "")

    exam_type = None
    found = _first_match(text, _EXAM_TYPE_PATTERNS)
    if found:
        exam_type = _canonical_exam_type(found[0])

    exam_board = None
    found = _first_match(text, _EXAM_BOARD_PATTERNS)
    if found:
        exam_board = found[0]

    subject = None
    topic = None
    found = _first_match(text, _SUBJECT_PATTERNS)
    if found:
        term, match = found
        subject = _canonical_subject(term)
        topic = extract_topic(text[match.end():])

    request_type = None
    found = _first_match(text, _REQUEST_TYPE_PATTERNS)
    if found:
        request_type = found[0]

    return StructuredQuery(
        exam_type=exam_type,
        exam_board=exam_board,
        subject=subject,
        topic=topic,
        request_type=request_type,
    )


class PatternExtractor:
    """Callable wrapper around :func:`extract` for injection into the interpreter."""

    def extract(self, raw_text: str) -> StructuredQuery:
        return extract(raw_text)
