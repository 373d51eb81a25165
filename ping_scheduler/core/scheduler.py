"""
Regular ping scheduling.

The scheduler owns the single "next ping" deadline and arbitrates the
interval, startup and wake triggers. All state changes happen on the asyncio
event loop: deadlines fire as loop callbacks, and ping attempts are awaited in
tasks that resume on the loop before touching any state.

State machine:
    Stopped  --start()-->  Scheduled(next_fire_at)
    Scheduled --deadline--> Firing --outcome--> Scheduled
    any      --stop()-->   Stopped

An in-flight attempt is never aborted. ``stop()`` only suppresses the
rescheduling decision that follows it.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, time
from enum import Enum
from typing import Coroutine, Optional, Set

from .constants import SETTINGS_DEBOUNCE_SECONDS, SETTLE_DELAY_SECONDS
from .interfaces import HistorySink, PingExecutor
from .outcome import PingAttemptOutcome
from .retry import RetryContext, RetryState, is_network_error
from .timers import Clock, Deadline
from .window import compute_next_fire, is_allowed_now
from ping_scheduler.config.loader import ScheduleMode, ScheduleSettings, Settings

logger = logging.getLogger(__name__)


class SchedulerPhase(Enum):
    """Lifecycle phase of the regular schedule."""
    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    FIRING = "firing"


@dataclass
class ScheduleState:
    """Scheduler-owned view of the regular schedule.

    ``next_fire_at`` is None exactly when the scheduler is not running.
    """
    enabled: bool
    mode: ScheduleMode
    interval_minutes: int
    window_start: time
    window_end: time
    next_fire_at: Optional[datetime] = None
    running: bool = False

    @classmethod
    def from_settings(cls, schedule: ScheduleSettings) -> "ScheduleState":
        return cls(
            enabled=schedule.enabled,
            mode=schedule.mode,
            interval_minutes=schedule.interval_minutes,
            window_start=schedule.window_start,
            window_end=schedule.window_end,
        )

    def apply(self, schedule: ScheduleSettings) -> None:
        self.enabled = schedule.enabled
        self.mode = schedule.mode
        self.interval_minutes = schedule.interval_minutes
        self.window_start = schedule.window_start
        self.window_end = schedule.window_end


def _timing_changed(old: ScheduleSettings, new: ScheduleSettings) -> bool:
    return (
        old.mode != new.mode
        or old.interval_minutes != new.interval_minutes
        or old.window_start != new.window_start
        or old.window_end != new.window_end
    )


class Scheduler:
    """Drives regular, startup, wake and manual pings.

    Every executed attempt is forwarded to the history sink exactly once,
    whatever its outcome.
    """

    def __init__(
        self,
        settings: Settings,
        executor: PingExecutor,
        history: HistorySink,
        clock: Clock = datetime.now,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._settings = settings
        self._executor = executor
        self._history = history
        self._clock = clock
        self._loop = loop

        self.state = ScheduleState.from_settings(settings.schedule)
        self._firing = False
        self._suspended = False

        self._regular = Deadline("regular ping", clock, loop)
        self._debounce = Deadline("settings debounce", clock, loop)
        self._wake_settle = Deadline("wake settle", clock, loop)
        self._startup_settle = Deadline("startup settle", clock, loop)
        self._retry_deadline = Deadline("network retry", clock, loop)
        self._retry: Optional[RetryState] = None

        self._tasks: Set[asyncio.Task] = set()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def phase(self) -> SchedulerPhase:
        if not self.state.running:
            return SchedulerPhase.STOPPED
        if self._firing:
            return SchedulerPhase.FIRING
        return SchedulerPhase.SCHEDULED

    @property
    def retry_state(self) -> Optional[RetryState]:
        """The wake/startup retry run in progress, if any."""
        return self._retry

    def start(self) -> None:
        """Begin regular scheduling. No-op when already running."""
        if self.state.running:
            return
        self._cancel_retry()
        self.state.running = True
        logger.info("Scheduler started")
        self._record_event("Scheduler started")
        self._schedule_next()

    def stop(self) -> None:
        """Cancel the pending deadline. An attempt already in flight still completes and is recorded."""
        self.state.running = False
        self._regular.cancel()
        self._debounce.cancel()
        self.state.next_fire_at = None
        logger.info("Scheduler stopped")
        self._record_event("Scheduler stopped")

    def reschedule(self) -> None:
        """Recompute the next deadline from the current instant."""
        self._regular.cancel()
        if not self.state.running:
            self.state.next_fire_at = None
            return
        self._schedule_next()

    def update_settings(self, settings: Settings) -> None:
        """Apply new settings.

        Toggling ``enabled`` starts or stops immediately. Interval, mode and
        window edits are debounced and then recompute the deadline from now;
        progress toward the old deadline is discarded.
        """
        old = self._settings
        self._settings = settings
        self.state.apply(settings.schedule)

        if old.schedule.enabled != settings.schedule.enabled:
            self._debounce.cancel()
            if settings.schedule.enabled:
                self.start()
            else:
                self.stop()
            return

        if _timing_changed(old.schedule, settings.schedule):
            self._debounce.arm_in(SETTINGS_DEBOUNCE_SECONDS, self._apply_timing_change)

    def _apply_timing_change(self) -> None:
        if self.state.running:
            logger.info("Schedule settings changed, rescheduling")
            self.reschedule()

    async def shutdown(self) -> None:
        """Cancel every pending deadline and wait for in-flight attempts.

        Attempts that finish after this point are still recorded but never
        reschedule.
        """
        self.state.running = False
        self.state.next_fire_at = None
        for deadline in (self._regular, self._debounce, self._wake_settle,
                         self._startup_settle, self._retry_deadline):
            deadline.cancel()
        self._retry = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule_next(self) -> None:
        now = self._clock()
        fire_at = compute_next_fire(now, self._settings.schedule)
        if not is_allowed_now(now, self._settings.schedule):
            logger.info("Outside time window. Next ping at %s", fire_at.strftime("%Y-%m-%d %H:%M"))
        else:
            logger.info("Next ping at %s", fire_at.strftime("%Y-%m-%d %H:%M:%S"))
        self.state.next_fire_at = fire_at
        self._regular.arm_at(fire_at, self._on_regular_deadline)

    def _on_regular_deadline(self) -> None:
        self._firing = True
        self._spawn(self._fire_regular())

    async def _fire_regular(self) -> None:
        try:
            if not is_allowed_now(self._clock(), self._settings.schedule):
                logger.info("Skipping ping: outside time window")
                self.reschedule()
                return

            logger.info("Scheduled ping firing")
            await self.execute_ping("scheduled")

            if self._suspended:
                logger.info("System asleep after ping; rescheduling on wake")
            elif self.state.running:
                self.reschedule()
            else:
                logger.info("Scheduler stopped during ping; not rescheduling")
        finally:
            self._firing = False

    async def execute_ping(self, trigger: str) -> PingAttemptOutcome:
        """Run one attempt and forward its outcome to the history sink.

        Executor exceptions become an error outcome so that nothing escapes
        unrecorded.
        """
        ping = self._settings.ping
        started = self._clock()
        try:
            outcome = await self._executor.execute(ping.prompt, ping.model)
        except Exception as e:
            logger.error("Ping executor raised: %s", e, exc_info=True)
            elapsed = max((self._clock() - started).total_seconds(), 0.0)
            outcome = PingAttemptOutcome.failure(
                started, elapsed, str(e) or type(e).__name__, model=ping.model
            )

        outcome = replace(outcome, trigger=trigger)
        self._record(outcome)

        if outcome.ok:
            logger.info("%s ping succeeded (%.1fs)", trigger.capitalize(), outcome.duration_seconds)
        else:
            logger.info("%s ping failed: %s", trigger.capitalize(), outcome.error_text or "unknown error")
        return outcome

    async def ping_now(self) -> PingAttemptOutcome:
        """Manual ping. Leaves the regular deadline untouched."""
        return await self.execute_ping("manual")

    def on_suspend(self) -> None:
        """Drop pending timers; they do not survive sleep."""
        logger.info("System going to sleep")
        self._record_event("System sleep")
        self._suspended = True
        self._regular.cancel()
        self._wake_settle.cancel()
        self._startup_settle.cancel()
        self._cancel_retry()

    def on_resume(self) -> None:
        """Wait for the network to settle, then ping on wake or reschedule."""
        logger.info("System woke up")
        self._record_event("System wake")
        self._suspended = False
        self._wake_settle.arm_in(SETTLE_DELAY_SECONDS, self._after_wake_settle)

    def _after_wake_settle(self) -> None:
        if self._settings.triggers.ping_on_wake:
            logger.info("Wake ping firing")
            self._begin_retry_protocol(RetryContext.WAKE)
        elif self.state.running:
            self.reschedule()

    def on_startup(self) -> None:
        """Schedule the startup ping if configured. Regular scheduling is independent."""
        if self._settings.triggers.ping_on_startup:
            self._startup_settle.arm_in(
                SETTLE_DELAY_SECONDS,
                lambda: self._begin_retry_protocol(RetryContext.STARTUP),
            )

    def _begin_retry_protocol(self, context: RetryContext) -> None:
        self._cancel_retry()
        retry = RetryState(context=context)
        self._retry = retry
        self._spawn(self._retry_attempt(retry))

    async def _retry_attempt(self, retry: RetryState) -> None:
        retry.attempt += 1
        outcome = await self.execute_ping(retry.context.value)

        if self._retry is not retry:
            # Superseded or cancelled while the attempt was in flight
            return

        if outcome.ok:
            self._finish_retry(retry)
        elif not is_network_error(outcome.error_text):
            logger.info("%s ping failed with a non-network error; not retrying", retry.context.value)
            self._finish_retry(retry)
        elif retry.exhausted:
            logger.warning(
                "%s ping gave up after %d attempts", retry.context.value, retry.attempt
            )
            self._finish_retry(retry)
        else:
            delay = retry.next_delay()
            logger.info(
                "%s ping network failure (attempt %d/%d); retrying in %.0fs",
                retry.context.value, retry.attempt, retry.max_attempts, delay,
            )
            self._retry_deadline.arm_in(delay, lambda: self._spawn(self._retry_attempt(retry)))

    def _finish_retry(self, retry: RetryState) -> None:
        self._retry = None
        if retry.context is RetryContext.WAKE and self.state.running:
            self.reschedule()

    def _cancel_retry(self) -> None:
        self._retry_deadline.cancel()
        self._retry = None

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scheduler task failed", exc_info=task.exception())

    def _record(self, outcome: PingAttemptOutcome) -> None:
        try:
            self._history.record(outcome)
        except Exception:
            logger.exception("Failed to record ping outcome")

    def _record_event(self, text: str) -> None:
        try:
            self._history.record_event(text)
        except Exception:
            logger.exception("Failed to record event %r", text)
