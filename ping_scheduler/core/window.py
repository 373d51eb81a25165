"""
Time-window arithmetic for the regular schedule.

Pure functions: every caller passes the current instant explicitly, so the
results are deterministic for the same inputs.
"""

from datetime import datetime, time, timedelta

from ping_scheduler.config.loader import ScheduleMode, ScheduleSettings


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def is_within_window(now: datetime, start: time, end: time) -> bool:
    """Whether ``now`` falls inside the half-open window ``[start, end)``.

    A window whose start is later than its end spans midnight, e.g.
    22:00-02:00 contains 23:30 and 01:00 but not 12:00. A window whose start
    equals its end is empty.
    """
    current = now.hour * 60 + now.minute
    start_total = _minutes(start)
    end_total = _minutes(end)

    if start_total <= end_total:
        return start_total <= current < end_total
    # Wraps past midnight
    return current >= start_total or current < end_total


def next_window_start(now: datetime, start: time) -> datetime:
    """The next instant strictly after ``now`` at which the window opens."""
    today_start = now.replace(hour=start.hour, minute=start.minute, second=0, microsecond=0)
    if today_start > now:
        return today_start
    return today_start + timedelta(days=1)


def is_allowed_now(now: datetime, schedule: ScheduleSettings) -> bool:
    """Whether a regular ping may fire at ``now`` under ``schedule``."""
    if schedule.mode is ScheduleMode.ALL_DAY:
        return True
    return is_within_window(now, schedule.window_start, schedule.window_end)


def compute_next_fire(now: datetime, schedule: ScheduleSettings) -> datetime:
    """Next regular deadline computed from ``now``.

    Progress toward any earlier deadline is discarded: the result depends
    only on ``now`` and the settings.

    Args:
        now: Current wall-clock instant
        schedule: Schedule settings

    Returns:
        ``now + interval``, or the next window start when in time-window mode
        and ``now`` is outside the window
    """
    if not is_allowed_now(now, schedule):
        return next_window_start(now, schedule.window_start)
    return now + timedelta(seconds=schedule.interval_seconds)
