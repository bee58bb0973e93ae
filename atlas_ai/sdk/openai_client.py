"""
OpenAI completion transport.

Implements the TextCompleter contract on top of OpenAI chat completions.
"""

import logging
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from ..core.completion import CompletionError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_TIMEOUT_SECONDS = 15.0


class OpenAICompleter:
    """Single-turn OpenAI chat client with a hard request timeout.

    Transport failures, timeouts and empty replies are all raised as
    CompletionError so callers handle one exception type.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        temperature: Optional[float] = None,
        client: Optional[Any] = None,
    ):
        """Initialize the completer.

        Args:
            model: OpenAI model name (required)
            timeout: Per-request timeout in seconds
            temperature: Sampling temperature (optional)
            client: Preconstructed OpenAI client (defaults to ``OpenAI()``)

        Raises:
            ValueError: If model is missing/empty or timeout is not positive
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")

        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        # No client-level retries: the pipeline decides what a failure means
        self.client = client or OpenAI(timeout=timeout, max_retries=0)

    def complete(self, prompt: str) -> str:
        """Send one instruction and return the reply text.

        Args:
            prompt: Instruction string

        Returns:
            Reply text

        Raises:
            ValueError: If prompt is empty
            CompletionError: On transport error, timeout or empty reply
        """
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")

        params = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                timeout=self.timeout,
                **params
            )
        except OpenAIError as e:
            raise CompletionError(f"{self.model} request failed: {e}") from e

        if not response.choices:
            raise CompletionError(f"{self.model} returned no choices")
        text = response.choices[0].message.content
        if not text:
            raise CompletionError(f"{self.model} returned an empty reply")

        logger.debug("Completion from %s: %d chars", self.model, len(text))
        return text
