"""
Language-model completion contract.

Core modules depend on this protocol rather than on a concrete client, so
a real transport and a test fake are interchangeable.
"""

from typing import Protocol


class CompletionError(Exception):
    """Raised when the language-model service cannot produce a reply.

    Covers transport errors, timeouts and empty responses.
    """


class TextCompleter(Protocol):
    """Anything that turns an instruction string into free-text output."""

    def complete(self, prompt: str) -> str:
        ...
