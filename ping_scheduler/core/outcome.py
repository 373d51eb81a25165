"""
Ping attempt outcomes.

Produced by a ping executor, consumed by the scheduler and forwarded verbatim
to the history sink.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .usage import PingUsage


class PingStatus(Enum):
    """Result of a single ping attempt."""
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class PingAttemptOutcome:
    """Immutable result of one ping attempt."""
    status: PingStatus
    timestamp: datetime
    duration_seconds: float
    error_text: Optional[str] = None
    usage_from_ping: Optional[PingUsage] = None
    response: str = ""
    command: str = ""
    model: Optional[str] = None
    trigger: str = "scheduled"

    def __post_init__(self):
        if self.duration_seconds < 0:
            raise ValueError("duration_seconds cannot be negative")

    @property
    def ok(self) -> bool:
        return self.status is PingStatus.SUCCESS

    @classmethod
    def success(
        cls,
        started_at: datetime,
        duration_seconds: float,
        response: str = "",
        **kwargs
    ) -> "PingAttemptOutcome":
        return cls(
            status=PingStatus.SUCCESS,
            timestamp=started_at,
            duration_seconds=duration_seconds,
            response=response,
            **kwargs
        )

    @classmethod
    def failure(
        cls,
        started_at: datetime,
        duration_seconds: float,
        error_text: str,
        **kwargs
    ) -> "PingAttemptOutcome":
        return cls(
            status=PingStatus.ERROR,
            timestamp=started_at,
            duration_seconds=duration_seconds,
            error_text=error_text,
            **kwargs
        )
