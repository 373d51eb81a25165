"""
Unit tests for single-slot deadlines.
"""

import asyncio
from datetime import timedelta

from conftest import START
from ping_scheduler.core.timers import Deadline


class TestDeadline:
    """Test arm/cancel semantics."""

    def test_arm_replaces_pending(self, clock, vloop):
        fired = []
        deadline = Deadline("test", clock, vloop)
        deadline.arm_in(10, lambda: fired.append("first"))
        deadline.arm_in(20, lambda: fired.append("second"))

        assert len(vloop.pending) == 1
        assert deadline.fire_at == START + timedelta(seconds=20)

        asyncio.run(vloop.advance(60))
        assert fired == ["second"]
        assert not deadline.armed
        assert deadline.fire_at is None

    def test_cancel(self, clock, vloop):
        fired = []
        deadline = Deadline("test", clock, vloop)
        deadline.arm_in(10, lambda: fired.append(True))
        deadline.cancel()

        assert not deadline.armed
        asyncio.run(vloop.advance(60))
        assert fired == []

    def test_past_instant_fires_immediately(self, clock, vloop):
        fired = []
        deadline = Deadline("test", clock, vloop)
        deadline.arm_at(START - timedelta(minutes=5), lambda: fired.append(clock()))

        asyncio.run(vloop.advance(0))
        assert fired == [START]

    def test_rearm_from_callback(self, clock, vloop):
        fired = []
        deadline = Deadline("test", clock, vloop)

        def tick():
            fired.append(clock())
            if len(fired) < 3:
                deadline.arm_in(10, tick)

        deadline.arm_in(10, tick)
        asyncio.run(vloop.advance(100))
        assert fired == [START + timedelta(seconds=s) for s in (10, 20, 30)]

    def test_real_event_loop(self):
        """Works against asyncio's own loop when none is injected."""
        async def scenario():
            fired = asyncio.Event()
            deadline = Deadline("test")
            deadline.arm_in(0.01, fired.set)
            await asyncio.wait_for(fired.wait(), timeout=1)

        asyncio.run(scenario())
