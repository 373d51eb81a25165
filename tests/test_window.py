"""
Unit tests for time-window arithmetic.
"""

from datetime import datetime, time, timedelta

import pytest

from ping_scheduler.config.loader import ScheduleMode, ScheduleSettings
from ping_scheduler.core.window import (
    compute_next_fire,
    is_allowed_now,
    is_within_window,
    next_window_start,
)


def _at(hour, minute=0, day=6):
    return datetime(2025, 1, day, hour, minute)


class TestWindowMembership:
    """Test half-open window membership."""

    @pytest.mark.parametrize("now,expected", [
        (_at(6, 0), True),
        (_at(9, 59), True),
        (_at(10, 0), False),
        (_at(5, 59), False),
        (_at(11, 0), False),
    ])
    def test_same_day_window(self, now, expected):
        assert is_within_window(now, time(6, 0), time(10, 0)) is expected

    @pytest.mark.parametrize("now,expected", [
        (_at(23, 30), True),
        (_at(1, 0), True),
        (_at(22, 0), True),
        (_at(2, 0), False),
        (_at(12, 0), False),
    ])
    def test_window_wrapping_midnight(self, now, expected):
        assert is_within_window(now, time(22, 0), time(2, 0)) is expected

    def test_empty_window(self):
        assert not is_within_window(_at(8, 0), time(8, 0), time(8, 0))


class TestNextFire:
    """Test next deadline computation."""

    def test_all_day_is_now_plus_interval(self):
        schedule = ScheduleSettings(enabled=True, interval_minutes=90)
        now = _at(13, 17)
        assert compute_next_fire(now, schedule) == now + timedelta(minutes=90)

    def test_outside_window_after_close_is_tomorrow(self):
        schedule = ScheduleSettings(
            mode=ScheduleMode.TIME_WINDOW, window_start=time(6, 0), window_end=time(10, 0)
        )
        assert compute_next_fire(_at(11, 0), schedule) == _at(6, 0, day=7)

    def test_outside_window_before_open_is_today(self):
        schedule = ScheduleSettings(
            mode=ScheduleMode.TIME_WINDOW, window_start=time(6, 0), window_end=time(10, 0)
        )
        assert compute_next_fire(_at(5, 30), schedule) == _at(6, 0)

    def test_inside_window_uses_interval(self):
        schedule = ScheduleSettings(
            mode=ScheduleMode.TIME_WINDOW, interval_minutes=30,
            window_start=time(6, 0), window_end=time(10, 0),
        )
        assert compute_next_fire(_at(7, 0), schedule) == _at(7, 30)

    def test_next_window_start_strictly_after_now(self):
        assert next_window_start(_at(6, 0), time(6, 0)) == _at(6, 0, day=7)

    def test_all_day_always_allowed(self):
        assert is_allowed_now(_at(3, 0), ScheduleSettings())

    def test_deterministic_for_same_instant(self):
        schedule = ScheduleSettings(interval_minutes=45)
        now = _at(9, 0)
        assert compute_next_fire(now, schedule) == compute_next_fire(now, schedule)
