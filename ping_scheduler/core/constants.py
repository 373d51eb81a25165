"""
Fixed engine constants.

Thresholds, delays and cost weights used by the scheduler, the reset-ping
coordinator and the velocity tracker. These are deliberately not part of the
user configuration.
"""

from typing import Dict, Tuple

# Scheduler
SETTLE_DELAY_SECONDS = 5.0          # Wait for the network after wake / at startup
SETTINGS_DEBOUNCE_SECONDS = 0.5     # Coalesce rapid settings edits

# Wake / startup network retry
NETWORK_RETRY_DELAYS: Tuple[float, ...] = (15.0, 30.0, 60.0, 120.0)
NETWORK_RETRY_MAX_ATTEMPTS = len(NETWORK_RETRY_DELAYS) + 1

# Lowercase substrings that mark an error as a connectivity failure.
NETWORK_ERROR_KEYWORDS: Tuple[str, ...] = (
    "timeout",
    "timed out",
    "offline",
    "network",
    "dns",
    "unreachable",
    "no internet",
    "connection",
    "could not resolve",
    "not connected",
)

# Reset-triggered ping
RESET_ACTIVATION_THRESHOLD = 20.0   # Only arm when session utilization is above this (%)
RESET_SAME_TARGET_SECONDS = 60.0    # Reset times closer than this are the same target
RESET_COALESCE_SECONDS = 120.0      # Skip if the regular ping is due within this window
RESET_MAX_RETRIES = 3
RESET_RETRY_DELAY_SECONDS = 30.0
RESET_VERIFY_DELAY_SECONDS = 10.0   # Settle time before re-checking utilization
RESET_CONFIRM_DROP_RATIO = 0.5      # A drop of at least 50% confirms the reset

# Velocity tracker
DEDUP_WINDOW_SECONDS = 30.0
DEDUP_MIN_DELTA = 0.01
MODEL_DETECTION_THRESHOLD = 0.05
FALLBACK_ATTRIBUTION_THRESHOLD = 0.5
VELOCITY_NOISE_THRESHOLD = 0.1
VELOCITY_MIN_ACTIVE_SECONDS = 60.0
SESSION_DROP_THRESHOLD = 10.0
SESSION_RESET_JUMP_SECONDS = 3600.0
RECENT_RETENTION_DAYS = 7
ADVISORY_THRESHOLD_HOURS = 1.0

# Relative cost of each model category; the pairwise ratio is target / current.
MODEL_COST_WEIGHTS: Dict[str, float] = {
    "haiku": 1.0,
    "sonnet": 3.0,
    "opus": 5.0,
}

# Category with no dedicated usage breakdown; absorbs unattributed increases.
FALLBACK_MODEL = "haiku"


def cost_ratio(current: str, target: str) -> float:
    """Velocity multiplier when switching consumption from ``current`` to ``target``.

    Raises:
        ValueError: If either model is unknown
    """
    if current not in MODEL_COST_WEIGHTS:
        raise ValueError(f"Unknown model: {current}")
    if target not in MODEL_COST_WEIGHTS:
        raise ValueError(f"Unknown model: {target}")
    return MODEL_COST_WEIGHTS[target] / MODEL_COST_WEIGHTS[current]
