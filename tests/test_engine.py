"""
Tests for engine assembly: usage fan-out, startup and shutdown.
"""

import asyncio
from datetime import timedelta

from conftest import START, FakeExecutor, FakeHistory, make_settings
from ping_scheduler.core.engine import PingEngine
from ping_scheduler.core.scheduler import SchedulerPhase
from ping_scheduler.core.usage import UsageFeed, UsageSnapshot


def _snapshot(utilization, fetched_at=START, resets_at=START + timedelta(minutes=30)):
    return UsageSnapshot(
        session_utilization=utilization,
        fetched_at=fetched_at,
        session_resets_at=resets_at,
    )


class TestPingEngine:
    """Test how the engine wires its parts together."""

    def _engine(self, clock, vloop, **settings):
        self.executor = FakeExecutor(clock)
        self.history = FakeHistory()
        self.feed = UsageFeed()
        return PingEngine(
            make_settings(**settings),
            executor=self.executor,
            history=self.history,
            usage_source=self.feed,
            clock=clock,
            loop=vloop,
        )

    def test_start_schedules_and_pings_on_startup(self, clock, vloop):
        async def scenario():
            engine = self._engine(clock, vloop)
            engine.start()

            assert engine.scheduler.phase == SchedulerPhase.SCHEDULED
            assert engine.scheduler.state.next_fire_at == START + timedelta(hours=1)
            assert "Scheduler started" in self.history.events

            await vloop.advance(6)
            assert self.history.triggers == ["startup"]
            await engine.shutdown()

        asyncio.run(scenario())

    def test_disabled_schedule_still_pings_on_startup(self, clock, vloop):
        async def scenario():
            engine = self._engine(clock, vloop, enabled=False)
            engine.start()

            assert engine.scheduler.phase == SchedulerPhase.STOPPED
            await vloop.advance(6)
            assert self.history.triggers == ["startup"]
            await engine.shutdown()

        asyncio.run(scenario())

    def test_snapshot_reaches_both_subscribers(self, clock, vloop):
        async def scenario():
            engine = self._engine(clock, vloop, ping_on_startup=False)
            engine.start()

            self.feed.publish(_snapshot(40.0))

            assert len(engine.tracker.samples) == 1
            assert engine.reset_pings.armed
            await engine.shutdown()

        asyncio.run(scenario())

    def test_reset_ping_runs_through_scheduler(self, clock, vloop):
        async def scenario():
            engine = self._engine(clock, vloop, ping_on_startup=False)
            engine.start()
            self.feed.publish(_snapshot(40.0))

            await vloop.advance(30 * 60 + 1)

            assert self.history.triggers == ["reset"]
            await engine.shutdown()

        asyncio.run(scenario())

    def test_shutdown_unsubscribes_and_stops(self, clock, vloop):
        async def scenario():
            engine = self._engine(clock, vloop)
            engine.start()
            self.feed.publish(_snapshot(40.0))

            await engine.shutdown()

            assert engine.scheduler.phase == SchedulerPhase.STOPPED
            assert "Scheduler stopped" in self.history.events
            assert not engine.reset_pings.armed

            self.feed.publish(_snapshot(50.0, fetched_at=START + timedelta(minutes=5)))
            assert len(engine.tracker.samples) == 1

            await vloop.advance(2 * 60 * 60)
            assert self.history.triggers == []

        asyncio.run(scenario())

    def test_sleep_and_wake_forwarded(self, clock, vloop):
        async def scenario():
            engine = self._engine(clock, vloop, ping_on_startup=False)
            engine.start()

            engine.on_suspend()
            engine.on_resume()
            await vloop.advance(6)

            assert self.history.events[-2:] == ["System sleep", "System wake"]
            assert self.history.triggers == ["wake"]
            await engine.shutdown()

        asyncio.run(scenario())

    def test_apply_settings_can_disable(self, clock, vloop):
        async def scenario():
            engine = self._engine(clock, vloop, ping_on_startup=False)
            engine.start()

            engine.apply_settings(make_settings(enabled=False, ping_on_startup=False))

            assert engine.scheduler.phase == SchedulerPhase.STOPPED
            await vloop.advance(2 * 60 * 60)
            assert self.history.triggers == []
            await engine.shutdown()

        asyncio.run(scenario())
