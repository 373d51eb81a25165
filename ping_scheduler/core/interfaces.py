"""
Narrow collaborator interfaces.

The scheduler and the velocity tracker depend only on these protocols, never
on concrete executors, stores or usage clients.
"""

from typing import Callable, List, Optional, Protocol, Sequence

from .outcome import PingAttemptOutcome
from .usage import UsageSnapshot
from ping_scheduler.storage.models import Sample


class PingExecutor(Protocol):
    """Performs one ping attempt off the event loop."""

    async def execute(self, prompt: str, model: str) -> PingAttemptOutcome:
        ...


class HistorySink(Protocol):
    """Append-only record of attempt outcomes and system events."""

    def record(self, outcome: PingAttemptOutcome) -> None:
        ...

    def record_event(self, text: str) -> None:
        ...


class UsageSource(Protocol):
    """Publishes usage snapshots to independent subscribers."""

    @property
    def latest(self) -> Optional[UsageSnapshot]:
        ...

    def subscribe(self, handler: Callable[[UsageSnapshot], None]) -> Callable[[], None]:
        ...

    async def refresh(self) -> Optional[UsageSnapshot]:
        ...


class SampleStore(Protocol):
    """Read-once, write-all persistence for the sample series."""

    def load(self) -> List[Sample]:
        ...

    def save(self, samples: Sequence[Sample]) -> None:
        ...


class PowerStateListener(Protocol):
    """Hooks the hosting environment calls around system sleep."""

    def on_suspend(self) -> None:
        ...

    def on_resume(self) -> None:
        ...
