"""
Usage API client and poller.

Fetches the organization's rolling usage windows and publishes them as
``UsageSnapshot`` objects on a fixed poll interval. The client also carries
the web session (cookie and key rotation) used by the web ping executor.
"""

import asyncio
import logging
import re
import threading
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from ..core.timers import Clock
from ..core.usage import UsageBreakdown, UsageFeed, UsageSnapshot

logger = logging.getLogger(__name__)

USAGE_API_BASE = "https://claude.ai/api/organizations"
USAGE_REQUEST_TIMEOUT_SECONDS = 30

# Optional per-category windows, in display order
BREAKDOWN_FIELDS = (
    ("seven_day_opus", "Opus (7d)"),
    ("seven_day_sonnet", "Sonnet (7d)"),
    ("seven_day_cowork", "Cowork (7d)"),
    ("seven_day_oauth_apps", "OAuth apps (7d)"),
    ("extra_usage", "Extra usage"),
)

_FRACTION_RE = re.compile(r"\.(\d+)")


class UsageAPIError(Exception):
    """The usage API could not be read."""


class UsageAuthError(UsageAPIError):
    """The session key was rejected."""


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into a naive local datetime.

    Fractional seconds are optional and may have any precision.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def extract_session_key(set_cookie: Optional[str]) -> Optional[str]:
    """Pull ``sessionKey`` out of a Set-Cookie header value."""
    if not set_cookie:
        return None
    for part in set_cookie.split(";"):
        part = part.strip()
        if part.startswith("sessionKey="):
            return part[len("sessionKey="):] or None
    return None


def _window(payload: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    window = payload.get(key)
    if isinstance(window, dict) and window.get("utilization") is not None:
        return window
    return None


def _clamp(value: Any) -> float:
    return min(max(float(value), 0.0), 100.0)


def parse_usage_response(payload: Dict[str, Any], fetched_at: datetime) -> UsageSnapshot:
    """Convert a usage API response body into a snapshot.

    Args:
        payload: Decoded JSON body
        fetched_at: When the response was received

    Returns:
        UsageSnapshot with session, weekly and per-category figures

    Raises:
        UsageAPIError: If the body is not a JSON object
    """
    if not isinstance(payload, dict):
        raise UsageAPIError("Usage response must be a JSON object")

    five_hour = _window(payload, "five_hour")
    seven_day = _window(payload, "seven_day")

    breakdowns = []
    for key, label in BREAKDOWN_FIELDS:
        window = _window(payload, key)
        if window is not None:
            breakdowns.append(UsageBreakdown(
                label=label,
                utilization=float(window["utilization"]),
                resets_at=parse_timestamp(window.get("resets_at")),
            ))

    return UsageSnapshot(
        session_utilization=_clamp(five_hour["utilization"]) if five_hour else 0.0,
        fetched_at=fetched_at,
        session_resets_at=parse_timestamp(five_hour.get("resets_at")) if five_hour else None,
        weekly_utilization=float(seven_day["utilization"]) if seven_day else None,
        weekly_resets_at=parse_timestamp(seven_day.get("resets_at")) if seven_day else None,
        breakdowns=tuple(breakdowns),
    )


class ClaudeUsageClient:
    """Blocking client for the organization endpoints of the web session."""

    def __init__(
        self,
        org_id: str,
        session_key: str,
        base_url: str = USAGE_API_BASE,
        session: Optional[requests.Session] = None,
        timeout: float = USAGE_REQUEST_TIMEOUT_SECONDS,
    ):
        """Initialize the client.

        Raises:
            ValueError: If org_id or session_key is empty
        """
        if not org_id or not org_id.strip():
            raise ValueError("org_id is required and cannot be empty")
        if not session_key or not session_key.strip():
            raise ValueError("session_key is required and cannot be empty")
        self.org_id = org_id
        self.session_key = session_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        # requests does not promise a Session is safe to share across threads
        self._lock = threading.Lock()

    @property
    def org_url(self) -> str:
        return f"{self.base_url}/{self.org_id}"

    @property
    def usage_url(self) -> str:
        return f"{self.org_url}/usage"

    def request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        **kwargs
    ) -> requests.Response:
        """Send an authenticated request below the organization URL.

        A rotated ``sessionKey`` in the response is adopted for later
        requests. Status codes other than 401/403 are left to the caller.

        Raises:
            UsageAuthError: On HTTP 401/403
            UsageAPIError: On any transport failure
        """
        all_headers = {
            "Content-Type": "application/json",
            "Cookie": f"sessionKey={self.session_key}",
        }
        all_headers.update(headers or {})
        with self._lock:
            try:
                response = self.session.request(
                    method,
                    f"{self.org_url}{path}",
                    headers=all_headers,
                    timeout=self.timeout if timeout is None else timeout,
                    **kwargs
                )
            except requests.RequestException as e:
                raise UsageAPIError(f"Network error: {e}") from e

        if response.status_code in (401, 403):
            raise UsageAuthError("Auth expired, update session key")

        new_key = extract_session_key(response.headers.get("Set-Cookie"))
        if new_key and new_key != self.session_key:
            logger.info("Session key rotated by server")
            self.session_key = new_key
        return response

    def fetch_usage(self) -> Dict[str, Any]:
        """GET the usage endpoint and return the decoded body.

        Raises:
            UsageAuthError: On HTTP 401/403
            UsageAPIError: On any other transport or HTTP failure
        """
        response = self.request("GET", "/usage")
        if response.status_code != 200:
            raise UsageAPIError(f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise UsageAPIError(f"Invalid JSON in usage response: {e}") from e

    def fetch_snapshot(self, fetched_at: Optional[datetime] = None) -> UsageSnapshot:
        payload = self.fetch_usage()
        try:
            return parse_usage_response(payload, fetched_at or datetime.now())
        except (TypeError, ValueError) as e:
            raise UsageAPIError(f"Malformed usage response: {e}") from e


class UsagePoller(UsageFeed):
    """Usage source that polls ``ClaudeUsageClient`` off the event loop."""

    def __init__(
        self,
        client: ClaudeUsageClient,
        poll_seconds: float,
        clock: Clock = datetime.now,
    ):
        super().__init__()
        if poll_seconds <= 0:
            raise ValueError("poll_seconds must be > 0")
        self._client = client
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._refresh_lock: Optional[asyncio.Lock] = None
        self.last_error: Optional[str] = None

    async def refresh(self) -> Optional[UsageSnapshot]:
        """Fetch now and publish on success.

        Overlapping calls run one at a time, so snapshots are published in
        the order they were fetched. Failures are logged and kept in
        ``last_error``; the previous snapshot is returned.
        """
        if self._refresh_lock is None:
            self._refresh_lock = asyncio.Lock()
        async with self._refresh_lock:
            try:
                snapshot = await asyncio.to_thread(self._client.fetch_snapshot, self._clock())
            except UsageAPIError as e:
                self.last_error = str(e)
                logger.warning("Usage fetch failed: %s", e)
                return self.latest

            self.last_error = None
            logger.debug("Usage: session %.1f%%", snapshot.session_utilization)
            self.publish(snapshot)
            return snapshot

    def start(self) -> None:
        """Start the background polling task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info("Usage polling started. Interval: %ss", self._poll_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Usage polling stopped")

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self._poll_seconds)
