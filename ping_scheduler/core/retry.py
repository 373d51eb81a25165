"""
Network-failure classification and retry bookkeeping.

Only connectivity failures are worth retrying: an expired credential or a
malformed request fails the same way no matter how long we wait.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .constants import NETWORK_ERROR_KEYWORDS, NETWORK_RETRY_DELAYS, NETWORK_RETRY_MAX_ATTEMPTS


class RetryContext(Enum):
    """What started a network-retry protocol run."""
    WAKE = "wake"
    STARTUP = "startup"


def is_network_error(error_text: Optional[str]) -> bool:
    """Whether an error message describes a connectivity failure."""
    if not error_text:
        return False
    lowered = error_text.lower()
    return any(keyword in lowered for keyword in NETWORK_ERROR_KEYWORDS)


@dataclass
class RetryState:
    """Progress of one wake/startup retry run. Discarded when the run ends."""
    context: RetryContext
    attempt: int = 0
    max_attempts: int = NETWORK_RETRY_MAX_ATTEMPTS
    delay_schedule: Tuple[float, ...] = NETWORK_RETRY_DELAYS

    def __post_init__(self):
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if not self.delay_schedule:
            raise ValueError("delay_schedule cannot be empty")

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        """Delay before the next attempt; the last entry repeats if attempts outrun the schedule."""
        index = min(max(self.attempt - 1, 0), len(self.delay_schedule) - 1)
        return self.delay_schedule[index]
