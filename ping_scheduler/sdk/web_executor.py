"""
Web session ping executor.

Pings through the claude.ai web session, so the attempt counts against the
same subscription window the usage API reports on. Each ping creates a
temporary conversation, sends the prompt, reads the event stream and deletes
the conversation again.
"""

import asyncio
import json
import locale
import logging
import os
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..core.outcome import PingAttemptOutcome
from ..core.usage import PingUsage
from .usage_client import ClaudeUsageClient, UsageAPIError

logger = logging.getLogger(__name__)

WEB_PING_TIMEOUT_SECONDS = 45.0
DELETE_TIMEOUT_SECONDS = 10.0

# Short model names as configured -> full model identifiers
API_MODEL_NAMES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-6",
}

ROOT_MESSAGE_UUID = "00000000-0000-4000-8000-000000000000"


def resolve_model(model: str) -> str:
    return API_MODEL_NAMES.get(model, model)


def _epoch(value: Any) -> Optional[datetime]:
    """Unix timestamp (number or numeric string) to a naive local datetime."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value))
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _fraction_to_percent(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) * 100.0


def parse_message_limit(payload: Dict[str, Any]) -> Optional[PingUsage]:
    """Read the usage windows carried by a ``message_limit`` event.

    Window utilization arrives as a 0-1 fraction and is converted to the
    0-100 scale used everywhere else.
    """
    limit = payload.get("message_limit")
    if not isinstance(limit, dict):
        limit = payload
    windows = limit.get("windows")
    if not isinstance(windows, dict):
        return None

    five_hour = windows.get("5h") if isinstance(windows.get("5h"), dict) else {}
    seven_day = windows.get("7d") if isinstance(windows.get("7d"), dict) else {}
    return PingUsage(
        session_utilization=_fraction_to_percent(five_hour.get("utilization")),
        session_resets_at=_epoch(five_hour.get("resets_at")),
        weekly_utilization=_fraction_to_percent(seven_day.get("utilization")),
        weekly_resets_at=_epoch(seven_day.get("resets_at")),
    )


def parse_event_stream(body: str) -> Tuple[str, Optional[PingUsage], Optional[str]]:
    """Parse a completion event stream.

    ``data:`` payloads may sit on the same line as the prefix or on the line
    after an empty ``data:``.

    Returns:
        (response text, usage from the ``message_limit`` event, error message)
    """
    text_parts = []
    usage = None
    error = None
    event = ""
    expecting_data = False

    def handle(raw: str) -> None:
        nonlocal usage, error
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.debug("Skipping undecodable %s payload", event or "event")
            return
        if not isinstance(payload, dict):
            return
        if event == "content_block_delta":
            delta = payload.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                text_parts.append(delta["text"])
        elif event == "message_limit":
            usage = parse_message_limit(payload)
        elif event == "error":
            message = payload.get("error") or payload.get("message")
            if isinstance(message, dict):
                message = message.get("message")
            error = str(message) if message else "Unknown streaming error"

    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith("event:"):
            event = stripped[len("event:"):].strip()
            expecting_data = False
        elif stripped.startswith("data:"):
            payload = stripped[len("data:"):].strip()
            if payload:
                handle(payload)
                expecting_data = False
            else:
                expecting_data = True
        elif expecting_data and stripped:
            handle(stripped)
            expecting_data = False
        elif not stripped:
            expecting_data = False

    return "".join(text_parts), usage, error


def _locale_tag() -> str:
    language = locale.getlocale()[0]
    return language.replace("_", "-") if language else "en-US"


class ClaudeWebPingExecutor:
    """Ping executor that talks to the web session through ``ClaudeUsageClient``.

    Sharing the usage client means both see the same cookie and any key the
    server rotates in.
    """

    def __init__(self, client: ClaudeUsageClient, timeout: float = WEB_PING_TIMEOUT_SECONDS):
        self.client = client
        self.timeout = timeout

    async def execute(self, prompt: str, model: str) -> PingAttemptOutcome:
        return await asyncio.to_thread(self._ping, prompt, model)

    def _ping(self, prompt: str, model: str) -> PingAttemptOutcome:
        api_model = resolve_model(model)
        command = f"API: {prompt} [{model}]"
        started_at = datetime.now()
        start = time.monotonic()

        def failure(error_text: str) -> PingAttemptOutcome:
            return PingAttemptOutcome.failure(
                started_at, time.monotonic() - start, error_text,
                command=command, model=api_model,
            )

        conversation = str(uuid.uuid4())
        try:
            created = self.client.request(
                "POST",
                "/chat_conversations",
                json={
                    "uuid": conversation,
                    "name": "",
                    "include_conversation_preferences": True,
                    "is_temporary": True,
                },
                timeout=self.timeout,
            )
        except UsageAPIError as e:
            return failure(f"Create conversation failed: {e}")
        if created.status_code not in (200, 201):
            return failure(
                f"Create conversation failed: HTTP {created.status_code}: {created.text[:200]}"
            )

        try:
            response = self.client.request(
                "POST",
                f"/chat_conversations/{conversation}/completion",
                headers={"Accept": "text/event-stream"},
                json={
                    "prompt": prompt,
                    "parent_message_uuid": ROOT_MESSAGE_UUID,
                    "model": api_model,
                    "timezone": os.environ.get("TZ", "UTC"),
                    "attachments": [],
                    "files": [],
                    "tools": [],
                    "rendering_mode": "messages",
                    "sync_sources": [],
                    "locale": _locale_tag(),
                },
                timeout=self.timeout,
            )
        except UsageAPIError as e:
            return failure(str(e))
        finally:
            self._delete_conversation(conversation)

        if response.status_code != 200:
            return failure(f"HTTP {response.status_code}: {response.text[:200]}")

        text, usage, error = parse_event_stream(response.text)
        if error is not None:
            return failure(f"Error: {error}")
        return PingAttemptOutcome.success(
            started_at, time.monotonic() - start, text.strip(),
            command=command, model=api_model, usage_from_ping=usage,
        )

    def _delete_conversation(self, conversation: str) -> None:
        """Best effort; a leftover temporary conversation is harmless."""
        try:
            self.client.request(
                "DELETE", f"/chat_conversations/{conversation}", timeout=DELETE_TIMEOUT_SECONDS
            )
        except UsageAPIError as e:
            logger.debug("Could not delete conversation %s: %s", conversation, e)
