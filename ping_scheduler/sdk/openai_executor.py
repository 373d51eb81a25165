"""
OpenAI-compatible ping executor.

Sends the ping prompt as a single chat completion through the OpenAI client
to an explicitly configured OpenAI-compatible endpoint, such as a gateway in
front of the Anthropic API. It does not touch the web session window.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    OpenAI,
    OpenAIError,
)

from ..core.outcome import PingAttemptOutcome
from .web_executor import resolve_model

logger = logging.getLogger(__name__)

API_PING_TIMEOUT_SECONDS = 45.0


def describe_error(error: Exception) -> str:
    """Error text for a failed completion call.

    Connectivity failures are described with words the retry classifier
    recognizes as network errors.
    """
    if isinstance(error, APITimeoutError):
        return "Request timed out"
    if isinstance(error, APIConnectionError):
        return f"Network connection error: {error}"
    if isinstance(error, AuthenticationError):
        return f"Authentication failed: {error.message}"
    if isinstance(error, APIStatusError):
        return f"HTTP {error.status_code}: {error.message}"
    return str(error) or type(error).__name__


class OpenAIPingExecutor:
    """Ping executor issuing one chat completion per attempt."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[OpenAI] = None,
        timeout: float = API_PING_TIMEOUT_SECONDS,
    ):
        """Initialize the executor.

        Args:
            base_url: OpenAI-compatible endpoint, required unless a client is given
            client: Preconfigured client; built from the environment if omitted
            timeout: Request timeout in seconds

        Raises:
            ValueError: If neither base_url nor client is given
        """
        if client is None and not (base_url and base_url.strip()):
            raise ValueError("base_url is required for the openai ping method")
        self.timeout = timeout
        self.client = client or OpenAI(base_url=base_url, timeout=timeout)

    def _complete(self, prompt: str, model: str):
        return self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=16,
        )

    async def execute(self, prompt: str, model: str) -> PingAttemptOutcome:
        api_model = resolve_model(model)
        command = f"API: {prompt} [{model}]"
        started_at = datetime.now()
        start = time.monotonic()

        try:
            response = await asyncio.to_thread(self._complete, prompt, api_model)
        except OpenAIError as e:
            logger.debug("Completion failed: %s", e)
            return PingAttemptOutcome.failure(
                started_at, time.monotonic() - start, describe_error(e),
                command=command, model=api_model,
            )

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        return PingAttemptOutcome.success(
            started_at, time.monotonic() - start, text,
            command=command, model=api_model,
        )
