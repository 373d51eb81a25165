"""
Reset-aligned pings.

When a usage snapshot shows substantial session consumption and a known reset
instant, a ping is armed for that instant so the next window starts as soon as
the old one expires. After firing, usage is re-read to confirm the reset took
effect; unconfirmed resets are retried a bounded number of times.

Runs independently of whether regular scheduling is enabled.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Coroutine, Optional, Set

from .constants import (
    RESET_ACTIVATION_THRESHOLD,
    RESET_COALESCE_SECONDS,
    RESET_CONFIRM_DROP_RATIO,
    RESET_MAX_RETRIES,
    RESET_RETRY_DELAY_SECONDS,
    RESET_SAME_TARGET_SECONDS,
    RESET_VERIFY_DELAY_SECONDS,
)
from .interfaces import HistorySink, UsageSource
from .outcome import PingAttemptOutcome
from .timers import Clock, Deadline
from .usage import UsageSnapshot

logger = logging.getLogger(__name__)

RunPing = Callable[[str], Awaitable[PingAttemptOutcome]]


@dataclass
class ResetPingState:
    """The armed reset target and its verification progress."""
    scheduled_reset_at: Optional[datetime] = None
    pre_reset_utilization: float = 0.0
    retry_count: int = 0


def reset_confirmed(pre_reset_utilization: float, current_utilization: float) -> bool:
    """Whether usage after a reset ping shows the window actually rolled over.

    Confirmed when utilization dropped by at least half, or is already below
    the activation threshold.
    """
    if current_utilization < RESET_ACTIVATION_THRESHOLD:
        return True
    return current_utilization <= pre_reset_utilization * (1 - RESET_CONFIRM_DROP_RATIO)


class ResetPingCoordinator:
    """Arms, fires and verifies pings aligned with the session reset."""

    def __init__(
        self,
        usage_source: UsageSource,
        run_ping: RunPing,
        next_regular_fire: Callable[[], Optional[datetime]],
        history: HistorySink,
        clock: Clock = datetime.now,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """Initialize the coordinator.

        Args:
            usage_source: Source re-read right before firing and when verifying
            run_ping: Executes one attempt with the given trigger label and
                records it
            next_regular_fire: Returns the scheduler's pending regular
                deadline, if any
            history: Sink for the retry-exhaustion event
            clock: Wall-clock source
            loop: Event loop for timers and tasks
        """
        self._usage = usage_source
        self._run_ping = run_ping
        self._next_regular_fire = next_regular_fire
        self._history = history
        self._clock = clock
        self._loop = loop

        self.state = ResetPingState()
        self._fire_deadline = Deadline("reset ping", clock, loop)
        self._verify_deadline = Deadline("reset verify", clock, loop)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def armed(self) -> bool:
        return self._fire_deadline.armed

    def on_snapshot(self, snapshot: UsageSnapshot) -> None:
        """Consider arming a reset ping for the snapshot's reset instant."""
        reset_at = snapshot.session_resets_at
        if reset_at is None:
            return

        target = self.state.scheduled_reset_at
        if target is not None and abs((reset_at - target).total_seconds()) <= RESET_SAME_TARGET_SECONDS:
            return

        if snapshot.session_utilization <= RESET_ACTIVATION_THRESHOLD:
            return

        self.state = ResetPingState(
            scheduled_reset_at=reset_at,
            pre_reset_utilization=snapshot.session_utilization,
        )
        self._verify_deadline.cancel()
        self._fire_deadline.arm_at(reset_at, self._on_fire_deadline)
        logger.info(
            "Reset ping armed for %s (session at %.1f%%)",
            reset_at.strftime("%H:%M:%S"), snapshot.session_utilization,
        )

    def cancel(self) -> None:
        self._fire_deadline.cancel()
        self._verify_deadline.cancel()

    async def shutdown(self) -> None:
        self.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_fire_deadline(self) -> None:
        self._spawn(self._fire(self.state))

    async def _fire(self, state: ResetPingState) -> None:
        now = self._clock()
        next_regular = self._next_regular_fire()
        if next_regular is not None and abs((next_regular - now).total_seconds()) <= RESET_COALESCE_SECONDS:
            logger.info("Reset ping skipped: regular ping due at %s", next_regular.strftime("%H:%M:%S"))
            return

        await self._usage.refresh()
        if self.state is not state:
            return

        logger.info("Reset ping firing (attempt %d)", state.retry_count + 1)
        await self._run_ping("reset")
        if self.state is not state:
            return

        self._verify_deadline.arm_in(
            RESET_VERIFY_DELAY_SECONDS, lambda: self._spawn(self._verify(state))
        )

    async def _verify(self, state: ResetPingState) -> None:
        snapshot = await self._usage.refresh()
        if self.state is not state:
            return
        if snapshot is None:
            snapshot = self._usage.latest

        if snapshot is not None and reset_confirmed(state.pre_reset_utilization, snapshot.session_utilization):
            logger.info(
                "Reset confirmed: session %.1f%% -> %.1f%%",
                state.pre_reset_utilization, snapshot.session_utilization,
            )
            return

        state.retry_count += 1
        if state.retry_count < RESET_MAX_RETRIES:
            logger.info(
                "Reset not confirmed; retrying in %ds (%d/%d)",
                RESET_RETRY_DELAY_SECONDS, state.retry_count, RESET_MAX_RETRIES,
            )
            self._fire_deadline.arm_in(RESET_RETRY_DELAY_SECONDS, self._on_fire_deadline)
            return

        logger.warning("Reset ping gave up after %d attempts", state.retry_count)
        try:
            self._history.record_event(f"Reset ping gave up after {state.retry_count} attempts")
        except Exception:
            logger.exception("Failed to record reset exhaustion event")

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
