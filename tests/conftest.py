"""
Shared test doubles.

Scheduler tests run on virtual time: ``VirtualLoop`` collects ``call_later``
callbacks in a heap keyed by wall-clock instant and only fires them when a
test advances the ``FakeClock``. Tasks still run on the real event loop.
"""

import asyncio
import heapq
import itertools
from datetime import datetime, time, timedelta
from typing import List, Optional

import pytest

from ping_scheduler.config.loader import (
    ScheduleMode,
    ScheduleSettings,
    Settings,
    TriggerSettings,
)
from ping_scheduler.core.outcome import PingAttemptOutcome

# A Monday morning
START = datetime(2025, 1, 6, 8, 0, 0)


class FakeClock:
    """Callable wall clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class VirtualHandle:
    def __init__(self, when: datetime, seq: int, callback, args):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def __lt__(self, other: "VirtualHandle") -> bool:
        return (self.when, self.seq) < (other.when, other.seq)


class VirtualLoop:
    """Just enough of an event loop for ``Deadline`` and task spawning."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._heap: List[VirtualHandle] = []
        self._seq = itertools.count()

    def call_later(self, delay, callback, *args):
        handle = VirtualHandle(
            self.clock.now + timedelta(seconds=delay), next(self._seq), callback, args
        )
        heapq.heappush(self._heap, handle)
        return handle

    def create_task(self, coro):
        return asyncio.get_running_loop().create_task(coro)

    @property
    def pending(self) -> List[VirtualHandle]:
        return sorted(h for h in self._heap if not h.cancelled)

    async def settle(self):
        """Let spawned tasks run until they block."""
        for _ in range(20):
            await asyncio.sleep(0)

    async def advance(self, seconds: float):
        """Move the clock forward, firing due callbacks in order."""
        target = self.clock.now + timedelta(seconds=seconds)
        await self.settle()
        while True:
            while self._heap and self._heap[0].cancelled:
                heapq.heappop(self._heap)
            if not self._heap or self._heap[0].when > target:
                break
            handle = heapq.heappop(self._heap)
            self.clock.now = max(self.clock.now, handle.when)
            handle.callback(*handle.args)
            await self.settle()
        self.clock.now = target


class FakeExecutor:
    """Scripted ping executor.

    Each scripted result is None (success), an error string (failure) or an
    exception instance (raised). Unscripted calls succeed.
    """

    def __init__(self, clock: Optional[FakeClock] = None, results=None):
        self.clock = clock or FakeClock()
        self.results = list(results or [])
        self.calls = []
        self.gate: Optional[asyncio.Event] = None

    async def execute(self, prompt: str, model: str) -> PingAttemptOutcome:
        self.calls.append((prompt, model))
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        if result is None:
            return PingAttemptOutcome.success(self.clock(), 1.0, "pong", model=model)
        return PingAttemptOutcome.failure(self.clock(), 1.0, result, model=model)


class FakeHistory:
    """In-memory history sink."""

    def __init__(self):
        self.outcomes: List[PingAttemptOutcome] = []
        self.events: List[str] = []

    def record(self, outcome: PingAttemptOutcome) -> None:
        self.outcomes.append(outcome)

    def record_event(self, text: str) -> None:
        self.events.append(text)

    @property
    def triggers(self) -> List[str]:
        return [o.trigger for o in self.outcomes]


def make_settings(
    enabled: bool = True,
    mode: ScheduleMode = ScheduleMode.ALL_DAY,
    interval_minutes: int = 60,
    window_start: time = time(6, 0),
    window_end: time = time(10, 0),
    ping_on_wake: bool = True,
    ping_on_startup: bool = True,
) -> Settings:
    return Settings(
        schedule=ScheduleSettings(
            enabled=enabled,
            mode=mode,
            interval_minutes=interval_minutes,
            window_start=window_start,
            window_end=window_end,
        ),
        triggers=TriggerSettings(ping_on_wake=ping_on_wake, ping_on_startup=ping_on_startup),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vloop(clock):
    return VirtualLoop(clock)


@pytest.fixture
def executor(clock):
    return FakeExecutor(clock)


@pytest.fixture
def history():
    return FakeHistory()
