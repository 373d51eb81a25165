"""
Usage velocity tracking.

Turns the stream of usage snapshots into a de-duplicated, pruned sample
series and derives from it:
- velocity (percentage points per hour over actively-consuming intervals)
  for the current session, the trailing 7 days and the full history
- estimated time until the session window is exhausted
- per-model projections and a cheaper-model advisory
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .constants import (
    ADVISORY_THRESHOLD_HOURS,
    DEDUP_MIN_DELTA,
    DEDUP_WINDOW_SECONDS,
    FALLBACK_ATTRIBUTION_THRESHOLD,
    FALLBACK_MODEL,
    MODEL_COST_WEIGHTS,
    MODEL_DETECTION_THRESHOLD,
    RECENT_RETENTION_DAYS,
    SESSION_DROP_THRESHOLD,
    SESSION_RESET_JUMP_SECONDS,
    VELOCITY_MIN_ACTIVE_SECONDS,
    VELOCITY_NOISE_THRESHOLD,
    cost_ratio,
)
from .interfaces import SampleStore
from .timers import Clock
from .usage import UsageSnapshot
from ping_scheduler.storage.models import ModelSnapshot, Sample

logger = logging.getLogger(__name__)

CALCULATING = "calculating..."
NOT_CONSUMING = "not actively consuming"


def model_for_label(label: str) -> Optional[str]:
    """Map a breakdown label such as ``Opus (7d)`` to a model name.

    Labels whose first word is not a known model (``Cowork``, ``Extra usage``)
    map to None.
    """
    words = label.strip().split()
    if not words:
        return None
    candidate = words[0].lower()
    return candidate if candidate in MODEL_COST_WEIGHTS else None


def model_snapshots_from(snapshot: UsageSnapshot) -> Tuple[ModelSnapshot, ...]:
    """Per-model long-window utilization carried by a usage snapshot."""
    result = []
    for breakdown in snapshot.breakdowns:
        model = model_for_label(breakdown.label)
        if model is not None:
            result.append(ModelSnapshot(model=model, utilization=breakdown.utilization))
    return tuple(result)


def is_duplicate(previous: Optional[Sample], candidate: Sample) -> bool:
    """Whether ``candidate`` repeats ``previous`` closely enough to drop it."""
    if previous is None:
        return False
    elapsed = abs((candidate.timestamp - previous.timestamp).total_seconds())
    delta = abs(candidate.session_utilization - previous.session_utilization)
    return elapsed < DEDUP_WINDOW_SECONDS and delta < DEDUP_MIN_DELTA


def detect_active_model(
    previous: Optional[Sample],
    model_snapshots: Sequence[ModelSnapshot],
    session_utilization: float,
) -> Optional[str]:
    """Infer which model is consuming the session window.

    The model whose long-window utilization rose the most (above a small
    threshold) wins. With no per-model movement, a session increase is
    attributed to the fallback model, which has no breakdown of its own.
    Otherwise the previous attribution sticks.

    The result is a best-effort guess, not an authoritative signal.
    """
    if previous is None:
        return None

    best_model = None
    best_delta = MODEL_DETECTION_THRESHOLD
    for snapshot in model_snapshots:
        before = previous.utilization_for(snapshot.model)
        if before is None:
            continue
        delta = snapshot.utilization - before
        if delta > best_delta:
            best_model = snapshot.model
            best_delta = delta

    if best_model is not None:
        return best_model
    if session_utilization - previous.session_utilization > FALLBACK_ATTRIBUTION_THRESHOLD:
        return FALLBACK_MODEL
    return previous.detected_model


def prune_samples(samples: Sequence[Sample], now: datetime) -> List[Sample]:
    """Keep recent samples verbatim and compact older ones to one per hour.

    Samples within the retention period are all kept. Older samples keep the
    first sample of each (calendar day, hour) bucket.
    """
    cutoff = now - timedelta(days=RECENT_RETENTION_DAYS)
    seen_buckets = set()
    kept = []
    for sample in samples:
        if sample.timestamp >= cutoff:
            kept.append(sample)
            continue
        bucket = (sample.timestamp.date(), sample.timestamp.hour)
        if bucket not in seen_buckets:
            seen_buckets.add(bucket)
            kept.append(sample)
    return kept


def current_session(samples: Sequence[Sample]) -> List[Sample]:
    """Samples belonging to the current session window.

    Scanning from newest to oldest, the session begins at the nearest point
    where utilization dropped by more than 10 points, or where the reported
    reset instant jumped forward by more than an hour.
    """
    for index in range(len(samples) - 1, 0, -1):
        earlier = samples[index - 1]
        later = samples[index]
        if earlier.session_utilization - later.session_utilization > SESSION_DROP_THRESHOLD:
            return list(samples[index:])
        if earlier.session_resets_at is not None and later.session_resets_at is not None:
            jump = (later.session_resets_at - earlier.session_resets_at).total_seconds()
            if jump > SESSION_RESET_JUMP_SECONDS:
                return list(samples[index:])
    return list(samples)


def compute_velocity(samples: Sequence[Sample]) -> Optional[float]:
    """Consumption rate in percentage points per hour.

    Only consecutive intervals whose increase exceeds the noise threshold
    count, both in the numerator and in the elapsed time.

    Returns:
        Velocity, or None when there is not enough active data
    """
    if len(samples) < 2:
        return None

    total_delta = 0.0
    active_seconds = 0.0
    for earlier, later in zip(samples, samples[1:]):
        delta = later.session_utilization - earlier.session_utilization
        if delta > VELOCITY_NOISE_THRESHOLD:
            total_delta += delta
            active_seconds += (later.timestamp - earlier.timestamp).total_seconds()

    if active_seconds <= VELOCITY_MIN_ACTIVE_SECONDS or total_delta <= 0:
        return None
    return total_delta / (active_seconds / 3600)


def hours_remaining(utilization: float, velocity: Optional[float]) -> Optional[float]:
    """Hours until 100% at ``velocity``, or None when undefined."""
    if velocity is None or velocity <= 0 or utilization >= 100:
        return None
    return (100 - utilization) / velocity


@dataclass(frozen=True)
class ModelProjection:
    """Session velocity rescaled to another model's cost."""
    model: str
    velocity: Optional[float]
    hours_remaining: Optional[float]


@dataclass(frozen=True)
class ModelAdvisory:
    """Suggestion to switch to a cheaper model to stretch the session."""
    current_model: str
    suggested_model: str
    current_hours_remaining: float
    suggested_hours_remaining: float

    @property
    def message(self) -> str:
        return (
            f"{self.current_model.capitalize()} runs out in {format_hours(self.current_hours_remaining)}; "
            f"{self.suggested_model.capitalize()} would last {format_hours(self.suggested_hours_remaining)}"
        )


def project_models(
    session_velocity: Optional[float],
    current_model: str,
    utilization: float,
) -> Dict[str, ModelProjection]:
    """Project the session velocity onto every known model.

    Args:
        session_velocity: Observed velocity under ``current_model``
        current_model: Model the observed velocity is attributed to
        utilization: Current session utilization

    Returns:
        Dict mapping model name to its projection
    """
    projections = {}
    for model in MODEL_COST_WEIGHTS:
        velocity = None
        if session_velocity is not None:
            velocity = session_velocity * cost_ratio(current_model, model)
        projections[model] = ModelProjection(
            model=model,
            velocity=velocity,
            hours_remaining=hours_remaining(utilization, velocity),
        )
    return projections


def budget_advisory(
    projections: Dict[str, ModelProjection],
    current_model: str,
) -> Optional[ModelAdvisory]:
    """Suggest the cheapest model that would outlast the current one.

    Only triggers when the current model's projected remaining time is
    positive but under the advisory threshold.
    """
    current = projections.get(current_model)
    if current is None or current.hours_remaining is None:
        return None
    if not 0 < current.hours_remaining < ADVISORY_THRESHOLD_HOURS:
        return None

    for model in sorted(MODEL_COST_WEIGHTS, key=MODEL_COST_WEIGHTS.get):
        if model == current_model:
            break
        candidate = projections.get(model)
        if candidate is None or candidate.hours_remaining is None:
            continue
        if candidate.hours_remaining > current.hours_remaining:
            return ModelAdvisory(
                current_model=current_model,
                suggested_model=model,
                current_hours_remaining=current.hours_remaining,
                suggested_hours_remaining=candidate.hours_remaining,
            )
    return None


def format_hours(hours: float) -> str:
    total_minutes = int(round(hours * 60))
    h, m = divmod(total_minutes, 60)
    if h > 0:
        return f"{h}h {m}m"
    return f"{m}m"


def format_velocity(velocity: Optional[float]) -> str:
    if velocity is None:
        return CALCULATING
    if velocity <= 0:
        return NOT_CONSUMING
    return f"{velocity:.1f}%/hr"


@dataclass(frozen=True)
class VelocityReport:
    """Derived metrics as of the most recent accepted sample."""
    session_velocity: Optional[float] = None
    weekly_velocity: Optional[float] = None
    all_time_velocity: Optional[float] = None
    session_hours_remaining: Optional[float] = None
    current_utilization: Optional[float] = None
    session_sample_count: int = 0
    total_sample_count: int = 0
    detected_model: Optional[str] = None
    projections: Dict[str, ModelProjection] = field(default_factory=dict)
    advisory: Optional[ModelAdvisory] = None

    @property
    def calculating(self) -> bool:
        return self.total_sample_count < 2

    @property
    def time_remaining_text(self) -> str:
        if self.session_hours_remaining is None:
            if self.session_velocity is not None and self.session_velocity <= 0:
                return NOT_CONSUMING
            return CALCULATING
        return f"~{format_hours(self.session_hours_remaining)} left"

    @property
    def session_velocity_text(self) -> str:
        return format_velocity(self.session_velocity)

    @property
    def weekly_velocity_text(self) -> str:
        return format_velocity(self.weekly_velocity)

    @property
    def all_time_velocity_text(self) -> str:
        return format_velocity(self.all_time_velocity)


def build_report(samples: Sequence[Sample], now: datetime) -> VelocityReport:
    """Compute every derived metric for ``samples``."""
    if len(samples) < 2:
        return VelocityReport(
            current_utilization=samples[-1].session_utilization if samples else None,
            session_sample_count=len(samples),
            total_sample_count=len(samples),
            detected_model=samples[-1].detected_model if samples else None,
        )

    latest = samples[-1]
    session = current_session(samples)
    week_cutoff = now - timedelta(days=RECENT_RETENTION_DAYS)
    weekly = [s for s in samples if s.timestamp >= week_cutoff]

    session_velocity = compute_velocity(session)
    # Categories written by other versions fall back like an undetected one
    model = latest.detected_model if latest.detected_model in MODEL_COST_WEIGHTS else FALLBACK_MODEL
    projections = project_models(session_velocity, model, latest.session_utilization)

    return VelocityReport(
        session_velocity=session_velocity,
        weekly_velocity=compute_velocity(weekly),
        all_time_velocity=compute_velocity(samples),
        session_hours_remaining=hours_remaining(latest.session_utilization, session_velocity),
        current_utilization=latest.session_utilization,
        session_sample_count=len(session),
        total_sample_count=len(samples),
        detected_model=latest.detected_model,
        projections=projections,
        advisory=budget_advisory(projections, model),
    )


class VelocityTracker:
    """Maintains the sample series and its derived metrics.

    Sample store failures are logged and the tracker carries on in memory.
    """

    def __init__(self, store: Optional[SampleStore] = None, clock: Clock = datetime.now):
        self._store = store
        self._clock = clock
        self._samples: List[Sample] = self._load()
        self.report = build_report(self._samples, clock())

    @property
    def samples(self) -> Tuple[Sample, ...]:
        return tuple(self._samples)

    def _load(self) -> List[Sample]:
        if self._store is None:
            return []
        try:
            samples = sorted(self._store.load(), key=lambda s: s.timestamp)
        except (sqlite3.Error, OSError, ValueError) as e:
            logger.warning("Could not load usage samples, starting empty: %s", e)
            return []
        logger.debug("Loaded %d usage samples", len(samples))
        return samples

    def _save(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self._samples)
        except (sqlite3.Error, OSError, ValueError) as e:
            logger.warning("Could not persist usage samples: %s", e)

    def record_snapshot(self, snapshot: UsageSnapshot) -> bool:
        """Record a usage snapshot as a sample.

        Returns:
            True if the sample was accepted, False if it was a duplicate or
            older than the newest stored sample
        """
        previous = self._samples[-1] if self._samples else None
        if previous is not None and snapshot.fetched_at < previous.timestamp:
            logger.debug(
                "Out-of-order usage sample dropped (%s before %s)",
                snapshot.fetched_at, previous.timestamp,
            )
            return False

        snapshots = model_snapshots_from(snapshot)
        candidate = Sample(
            timestamp=snapshot.fetched_at,
            session_utilization=snapshot.session_utilization,
            session_resets_at=snapshot.session_resets_at,
            model_snapshots=snapshots,
        )
        if is_duplicate(previous, candidate):
            logger.debug("Duplicate usage sample dropped")
            return False

        detected = detect_active_model(previous, snapshots, snapshot.session_utilization)
        self._samples.append(Sample(
            timestamp=candidate.timestamp,
            session_utilization=candidate.session_utilization,
            session_resets_at=candidate.session_resets_at,
            model_snapshots=snapshots,
            detected_model=detected,
        ))
        self._samples = prune_samples(self._samples, self._clock())
        self._save()
        self.recalculate()
        return True

    def recalculate(self) -> VelocityReport:
        self.report = build_report(self._samples, self._clock())
        return self.report
