"""
Data models for storage layer.

Defines the persisted usage samples and ping history records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from ping_scheduler.core.outcome import PingAttemptOutcome


@dataclass(frozen=True)
class ModelSnapshot:
    """Long-window utilization of a single model category (0-100)."""
    model: str
    utilization: float


@dataclass(frozen=True)
class Sample:
    """Immutable usage measurement kept by the velocity tracker.
    
    Samples form an append-only series ordered by timestamp. Only pruning
    ever removes them.
    """
    timestamp: datetime
    session_utilization: float
    session_resets_at: Optional[datetime] = None
    model_snapshots: Tuple[ModelSnapshot, ...] = field(default_factory=tuple)
    detected_model: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "model_snapshots", tuple(self.model_snapshots))

    def utilization_for(self, model: str) -> Optional[float]:
        """Long-window utilization recorded for ``model``, if any."""
        for snapshot in self.model_snapshots:
            if snapshot.model == model:
                return snapshot.utilization
        return None


@dataclass(frozen=True)
class PingRecord:
    """Entry in the append-only ping history.
    
    Either the outcome of an executed ping (``kind == "ping"``) or a
    free-text system event (``kind == "system"``).
    """
    timestamp: datetime
    kind: str
    status: str
    duration_seconds: float = 0.0
    trigger: Optional[str] = None
    model: Optional[str] = None
    response: str = ""
    error_text: Optional[str] = None
    usage_session_pct: Optional[float] = None
    usage_weekly_pct: Optional[float] = None
    id: Optional[int] = None

    @property
    def is_system_event(self) -> bool:
        return self.kind == "system"

    @property
    def brief_description(self) -> str:
        if self.is_system_event:
            return self.response
        trigger = (self.trigger or "ping").upper()
        result = "OK" if self.status == "success" else (self.error_text or "Error")
        return f"[{trigger}] {result}"

    @classmethod
    def from_outcome(cls, outcome: PingAttemptOutcome) -> "PingRecord":
        usage = outcome.usage_from_ping
        return cls(
            timestamp=outcome.timestamp,
            kind="ping",
            status=outcome.status.value,
            duration_seconds=outcome.duration_seconds,
            trigger=outcome.trigger,
            model=outcome.model,
            response=outcome.response,
            error_text=outcome.error_text,
            usage_session_pct=usage.session_utilization if usage else None,
            usage_weekly_pct=usage.weekly_utilization if usage else None,
        )

    @classmethod
    def system_event(cls, message: str, timestamp: Optional[datetime] = None) -> "PingRecord":
        return cls(
            timestamp=timestamp or datetime.now(),
            kind="system",
            status="system",
            response=message,
        )
