"""
Unit tests for reset-aligned pings.

Tests arming rules, coalescing with the regular schedule, post-ping
verification and bounded retries.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import START, FakeHistory
from ping_scheduler.core.outcome import PingAttemptOutcome
from ping_scheduler.core.reset_ping import ResetPingCoordinator, reset_confirmed
from ping_scheduler.core.usage import UsageFeed, UsageSnapshot

RESET_AT = START + timedelta(minutes=30)


def _snapshot(utilization, resets_at=RESET_AT, fetched_at=START):
    return UsageSnapshot(
        session_utilization=utilization,
        fetched_at=fetched_at,
        session_resets_at=resets_at,
    )


class Harness:
    """Coordinator plus the collaborators it talks to."""

    def __init__(self, clock, vloop, next_regular=None):
        self.clock = clock
        self.feed = UsageFeed()
        self.history = FakeHistory()
        self.pings = []
        self.next_regular = next_regular
        # Utilization the feed reports after each reset ping
        self.after_ping = None
        self.coordinator = ResetPingCoordinator(
            self.feed,
            run_ping=self._run_ping,
            next_regular_fire=lambda: self.next_regular,
            history=self.history,
            clock=clock,
            loop=vloop,
        )

    async def _run_ping(self, trigger):
        self.pings.append(trigger)
        outcome = PingAttemptOutcome.success(self.clock(), 0.5, trigger=trigger)
        self.history.record(outcome)
        if self.after_ping is not None:
            self.feed.publish(_snapshot(self.after_ping, RESET_AT + timedelta(hours=5), self.clock()))
        return outcome


class TestArming:
    """Test when a reset ping gets armed."""

    def test_arms_above_threshold(self, clock, vloop):
        h = Harness(clock, vloop)
        h.coordinator.on_snapshot(_snapshot(45.0))

        assert h.coordinator.armed
        assert h.coordinator.state.scheduled_reset_at == RESET_AT
        assert h.coordinator.state.pre_reset_utilization == 45.0
        assert h.coordinator.state.retry_count == 0

    def test_ignores_low_utilization(self, clock, vloop):
        h = Harness(clock, vloop)
        h.coordinator.on_snapshot(_snapshot(20.0))
        assert not h.coordinator.armed

    def test_ignores_missing_reset_time(self, clock, vloop):
        h = Harness(clock, vloop)
        h.coordinator.on_snapshot(_snapshot(80.0, resets_at=None))
        assert not h.coordinator.armed

    def test_same_target_within_a_minute_not_rearmed(self, clock, vloop):
        h = Harness(clock, vloop)
        h.coordinator.on_snapshot(_snapshot(50.0))
        h.coordinator.on_snapshot(_snapshot(60.0, resets_at=RESET_AT + timedelta(seconds=30)))

        assert h.coordinator.state.scheduled_reset_at == RESET_AT
        assert h.coordinator.state.pre_reset_utilization == 50.0
        assert len(vloop.pending) == 1

    def test_new_target_replaces_old(self, clock, vloop):
        h = Harness(clock, vloop)
        h.coordinator.on_snapshot(_snapshot(50.0))
        later = RESET_AT + timedelta(minutes=2)
        h.coordinator.on_snapshot(_snapshot(60.0, resets_at=later))

        assert h.coordinator.state.scheduled_reset_at == later
        assert h.coordinator.state.pre_reset_utilization == 60.0
        assert len(vloop.pending) == 1


class TestFiring:
    """Test the fire, verify and retry sequence."""

    def test_skipped_when_regular_ping_imminent(self, clock, vloop):
        """Reset at T with the regular deadline at T+90s: nothing fires, nothing recorded."""
        async def scenario():
            h = Harness(clock, vloop, next_regular=RESET_AT + timedelta(seconds=90))
            h.coordinator.on_snapshot(_snapshot(70.0))
            await vloop.advance(30 * 60 + 120)

            assert h.pings == []
            assert h.history.outcomes == []
            assert h.history.events == []

        asyncio.run(scenario())

    def test_fires_when_regular_ping_far_away(self, clock, vloop):
        async def scenario():
            h = Harness(clock, vloop, next_regular=RESET_AT + timedelta(minutes=10))
            h.after_ping = 2.0
            h.coordinator.on_snapshot(_snapshot(70.0))
            await vloop.advance(30 * 60)

            assert h.pings == ["reset"]

        asyncio.run(scenario())

    def test_confirmed_reset_stops(self, clock, vloop):
        async def scenario():
            h = Harness(clock, vloop)
            h.after_ping = 3.0
            h.coordinator.on_snapshot(_snapshot(70.0))
            await vloop.advance(30 * 60 + 300)

            assert h.pings == ["reset"]
            assert h.coordinator.state.retry_count == 0
            assert vloop.pending == []

        asyncio.run(scenario())

    def test_unconfirmed_reset_retries_then_gives_up(self, clock, vloop):
        async def scenario():
            h = Harness(clock, vloop)
            h.feed.publish(_snapshot(80.0))
            h.coordinator.on_snapshot(_snapshot(80.0))

            # Fire at R, verify at R+10s, retry at R+40s, ...
            await vloop.advance(30 * 60)
            assert h.pings == ["reset"]
            await vloop.advance(40)
            assert h.pings == ["reset", "reset"]
            await vloop.advance(600)

            assert h.pings == ["reset", "reset", "reset"]
            assert h.coordinator.state.retry_count == 3
            assert h.history.events == ["Reset ping gave up after 3 attempts"]
            assert vloop.pending == []

        asyncio.run(scenario())

    def test_target_kept_after_firing(self, clock, vloop):
        """A repeated snapshot for the same reset does not re-arm after it fired."""
        async def scenario():
            h = Harness(clock, vloop)
            h.after_ping = 1.0
            h.coordinator.on_snapshot(_snapshot(70.0))
            await vloop.advance(30 * 60 + 60)

            h.coordinator.on_snapshot(_snapshot(70.0))
            assert not h.coordinator.armed

        asyncio.run(scenario())


class TestResetConfirmed:
    """Test the confirmation rule."""

    @pytest.mark.parametrize("pre,current,expected", [
        (80.0, 40.0, True),
        (80.0, 41.0, False),
        (80.0, 19.9, True),
        (30.0, 25.0, False),
        (30.0, 15.0, True),
    ])
    def test_rule(self, pre, current, expected):
        assert reset_confirmed(pre, current) is expected
