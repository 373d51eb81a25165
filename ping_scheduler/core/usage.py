"""
Usage snapshots and their delivery.

A usage source publishes immutable snapshots of the account's rolling usage
windows. Subscribers (the velocity tracker and the reset-ping coordinator)
register independently and must not rely on delivery order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

SnapshotHandler = Callable[["UsageSnapshot"], None]


@dataclass(frozen=True)
class UsageBreakdown:
    """Per-category long-window usage entry, e.g. ``Opus (7d)``."""
    label: str
    utilization: float
    resets_at: Optional[datetime] = None


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time usage reading from the usage source.
    
    Utilization values are percentages in the range 0-100.
    """
    session_utilization: float
    fetched_at: datetime
    session_resets_at: Optional[datetime] = None
    weekly_utilization: Optional[float] = None
    weekly_resets_at: Optional[datetime] = None
    breakdowns: Tuple[UsageBreakdown, ...] = field(default_factory=tuple)

    def __post_init__(self):
        """Validate utilization is a percentage."""
        if not 0 <= self.session_utilization <= 100:
            raise ValueError("session_utilization must be between 0 and 100")
        # Accept any sequence but store a tuple to keep the snapshot immutable
        object.__setattr__(self, "breakdowns", tuple(self.breakdowns))

    def session_resets_in(self, now: datetime) -> Optional[str]:
        """Human readable time until the session window resets."""
        if self.session_resets_at is None:
            return None
        remaining = (self.session_resets_at - now).total_seconds()
        if remaining <= 0:
            return "now"
        hours = int(remaining) // 3600
        minutes = (int(remaining) % 3600) // 60
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"


@dataclass(frozen=True)
class PingUsage:
    """Usage figures reported back by a ping attempt itself (0-100 scale)."""
    session_utilization: Optional[float] = None
    session_resets_at: Optional[datetime] = None
    weekly_utilization: Optional[float] = None
    weekly_resets_at: Optional[datetime] = None


class UsageFeed:
    """Subscription registry for usage snapshots.
    
    Concrete sources (see ``ping_scheduler.sdk.usage_client.UsagePoller``)
    subclass this and call ``publish`` whenever a fresh snapshot arrives.
    Used directly, ``refresh`` simply returns the latest snapshot.
    """

    def __init__(self):
        self._handlers: List[SnapshotHandler] = []
        self._latest: Optional[UsageSnapshot] = None

    @property
    def latest(self) -> Optional[UsageSnapshot]:
        return self._latest

    def subscribe(self, handler: SnapshotHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, snapshot: UsageSnapshot) -> None:
        """Deliver a snapshot to every subscriber.
        
        A failing subscriber is logged and does not prevent delivery to the
        remaining ones.
        """
        self._latest = snapshot
        for handler in list(self._handlers):
            try:
                handler(snapshot)
            except Exception:
                logger.exception("Usage subscriber %r failed", handler)

    async def refresh(self) -> Optional[UsageSnapshot]:
        return self._latest

    def start(self) -> None:
        """Begin producing snapshots. A plain feed is push-only."""

    async def stop(self) -> None:
        """Stop producing snapshots."""
