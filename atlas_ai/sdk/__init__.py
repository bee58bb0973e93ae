"""
SDK for Atlas AI.

Provides the language-model transport used by query fallback and
question generation.
"""

from .openai_client import OpenAICompleter

__all__ = ["OpenAICompleter"]
