"""
Single-slot deadlines on the asyncio event loop.

A ``Deadline`` holds at most one pending callback. Arming it always cancels
whatever was pending before, which is how the scheduler keeps the
one-deadline-per-kind invariant without any locking.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class Deadline:
    """Cancellable one-shot timer addressed by wall-clock instant."""

    def __init__(
        self,
        name: str,
        clock: Clock = datetime.now,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.name = name
        self._clock = clock
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fire_at: Optional[datetime] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def fire_at(self) -> Optional[datetime]:
        """Wall-clock instant of the pending callback, or None."""
        return self._fire_at

    def arm_at(self, when: datetime, callback: Callable[[], None]) -> None:
        """Fire ``callback`` at ``when``, replacing any pending callback.

        Instants already in the past fire on the next loop iteration.
        """
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        delay = max((when - self._clock()).total_seconds(), 0.0)
        self._fire_at = when
        self._handle = loop.call_later(delay, self._run, callback)
        logger.debug("%s armed for %s (in %.1fs)", self.name, when, delay)

    def arm_in(self, seconds: float, callback: Callable[[], None]) -> None:
        """Fire ``callback`` after ``seconds``, replacing any pending callback."""
        self.arm_at(self._clock() + timedelta(seconds=seconds), callback)

    def cancel(self) -> None:
        """Drop the pending callback, if any."""
        if self._handle is not None:
            self._handle.cancel()
            logger.debug("%s cancelled", self.name)
        self._handle = None
        self._fire_at = None

    def _run(self, callback: Callable[[], None]) -> None:
        self._handle = None
        self._fire_at = None
        callback()
