"""
Best-effort structured payload extraction.

Language-model replies are free text that usually, but not always, embed a
single JSON object or array. This module finds the first balanced bracketed
substring that parses as JSON.
"""

import json
from typing import Any, Optional

_OPENERS = {"{": "}", "[": "]"}


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index one past the bracket that closes ``text[start]``, or None."""
    stack = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in ("}", "]"):
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return index + 1
    return None


def extract_payload(text: str, kind: Optional[type] = None) -> Optional[Any]:
    """Return the first well-formed JSON payload embedded in ``text``.

    Candidates are tried left to right, starting at each ``{`` or ``[``.
    A candidate that is unbalanced or fails to parse is skipped. A candidate
    nested too deeply to decode is skipped together with everything inside it.

    Args:
        text: Free-text reply
        kind: Optional required type (``dict`` or ``list``); payloads of
            other types are skipped

    Returns:
        Parsed payload, or None if no candidate parses
    """
    if not text:
        return None

    index = 0
    while index < len(text):
        start, char = index, text[index]
        index += 1
        if char not in _OPENERS:
            continue
        if kind is dict and char != "{":
            continue
        if kind is list and char != "[":
            continue

        end = _balanced_end(text, start)
        if end is None:
            continue
        try:
            payload = json.loads(text[start:end])
        except RecursionError:
            # Skip every candidate nested inside this one
            index = end
            continue
        except json.JSONDecodeError:
            continue
        if kind is None or isinstance(payload, kind):
            return payload
    return None
