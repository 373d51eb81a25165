"""
Engine assembly.

Wires one usage source to the velocity tracker and the reset-ping coordinator
(independent subscribers) and both to the scheduler, which owns ping
execution and history recording.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from .interfaces import HistorySink, PingExecutor, SampleStore
from .reset_ping import ResetPingCoordinator
from .scheduler import Scheduler
from .timers import Clock
from .usage import UsageFeed
from .velocity import VelocityTracker
from ping_scheduler.config.loader import Settings

logger = logging.getLogger(__name__)


class PingEngine:
    """Owns the scheduler, the reset-ping coordinator and the velocity tracker."""

    def __init__(
        self,
        settings: Settings,
        executor: PingExecutor,
        history: HistorySink,
        usage_source: UsageFeed,
        sample_store: Optional[SampleStore] = None,
        clock: Clock = datetime.now,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.usage_source = usage_source
        self.tracker = VelocityTracker(sample_store, clock=clock)
        self.scheduler = Scheduler(settings, executor, history, clock=clock, loop=loop)
        self.reset_pings = ResetPingCoordinator(
            usage_source,
            run_ping=self.scheduler.execute_ping,
            next_regular_fire=lambda: self.scheduler.state.next_fire_at,
            history=history,
            clock=clock,
            loop=loop,
        )
        self._unsubscribers: List[Callable[[], None]] = []

    def start(self) -> None:
        """Subscribe to usage, start regular scheduling if enabled and arm the startup ping."""
        if not self._unsubscribers:
            self._unsubscribers = [
                self.usage_source.subscribe(self.tracker.record_snapshot),
                self.usage_source.subscribe(self.reset_pings.on_snapshot),
            ]
        if self.scheduler.settings.schedule.enabled:
            self.scheduler.start()
        self.scheduler.on_startup()
        self.usage_source.start()
        logger.info("Ping engine started")

    def on_suspend(self) -> None:
        self.scheduler.on_suspend()

    def on_resume(self) -> None:
        self.scheduler.on_resume()

    def apply_settings(self, settings: Settings) -> None:
        self.scheduler.update_settings(settings)

    async def shutdown(self) -> None:
        """Stop polling, cancel every timer and wait for in-flight pings."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.usage_source.stop()
        await self.reset_pings.shutdown()
        if self.scheduler.state.running:
            self.scheduler.stop()
        await self.scheduler.shutdown()
        logger.info("Ping engine stopped")
