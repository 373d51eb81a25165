"""
Core modules for Ping Scheduler.

This package contains the scheduling state machine, the reset-ping
coordinator and the usage velocity tracker.
"""
