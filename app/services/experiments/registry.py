import copy
import re
import threading
import uuid
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import structlog

from app.services.experiments.domain import (
    Arm,
    ArmCounts,
    Assignment,
    ExperimentConfig,
    ExperimentKind,
    ExperimentSnapshot,
    ExperimentStatus,
    SignificanceResult,
    VariantSpec,
)
from app.services.experiments.errors import ExperimentNotFound, InsufficientData, InvalidConfig
from app.services.experiments.stats import two_proportion_test

logger = structlog.get_logger()

METRIC_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # Naive datetimes (e.g. read back from SQLite) are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ExperimentState:
    """
    Mutable record for one experiment.

    Every field below ``lock`` may only be read or written while ``lock``
    is held. ``ExperimentRegistry.locked`` is the way to get at it.
    """

    id: str
    name: str
    description: str
    kind: ExperimentKind
    target_metric: str
    variant_configs: Dict[Arm, Dict[str, Any]]
    start_time: datetime
    end_time: datetime
    min_sample_size: int
    significance_threshold: float
    confidence_level: float
    created_at: datetime
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    winner: Optional[Arm] = None
    counts: Dict[Arm, ArmCounts] = field(
        default_factory=lambda: {arm: ArmCounts() for arm in Arm}
    )
    metric_samples: Dict[Arm, Dict[str, List[float]]] = field(
        default_factory=lambda: {arm: {} for arm in Arm}
    )
    significance: Optional[SignificanceResult] = None
    assignments: Dict[str, Assignment] = field(default_factory=dict)
    late_events: int = 0
    completed_at: Optional[datetime] = None
    version: int = 0

    def touch(self) -> None:
        # Counts persisted changes; late_events alone never bumps it
        self.version += 1

    def snapshot(self) -> ExperimentSnapshot:
        return ExperimentSnapshot(
            id=self.id,
            name=self.name,
            description=self.description,
            kind=self.kind,
            target_metric=self.target_metric,
            variant_configs=copy.deepcopy(self.variant_configs),
            start_time=self.start_time,
            end_time=self.end_time,
            status=self.status,
            min_sample_size=self.min_sample_size,
            significance_threshold=self.significance_threshold,
            confidence_level=self.confidence_level,
            counts={arm: ArmCounts(c.exposed, c.converted) for arm, c in self.counts.items()},
            metric_samples={
                arm: {name: list(values) for name, values in samples.items()}
                for arm, samples in self.metric_samples.items()
            },
            significance=self.significance,
            winner=self.winner,
            participants=len(self.assignments),
            late_events=self.late_events,
            version=self.version,
            created_at=self.created_at,
            completed_at=self.completed_at,
        )


def parse_variants(variants: Optional[Sequence[VariantSpec]]) -> Dict[Arm, Dict[str, Any]]:
    if variants is None:
        return {Arm.CONTROL: {}, Arm.VARIANT: {}}

    if isinstance(variants, (str, bytes)) or isinstance(variants, Mapping):
        raise InvalidConfig("variants must be a sequence of arm definitions")

    variants = list(variants)
    if len(variants) != len(Arm):
        raise InvalidConfig(
            f"Experiment must define exactly two arms (control, variant), got {len(variants)}"
        )

    configs: Dict[Arm, Dict[str, Any]] = {}
    for entry in variants:
        if isinstance(entry, str):
            name, arm_config = entry, {}
        elif isinstance(entry, Mapping):
            name = entry.get("name", entry.get("id"))
            arm_config = entry.get("config") or {}
            if not isinstance(arm_config, Mapping):
                raise InvalidConfig(f"Config for arm {name!r} must be a mapping")
        else:
            raise InvalidConfig(f"Unsupported arm definition: {entry!r}")

        try:
            arm = Arm(name)
        except ValueError:
            raise InvalidConfig(
                f"Unknown arm {name!r}; arms must be 'control' and 'variant'"
            ) from None

        if arm in configs:
            raise InvalidConfig(f"Arm {arm.value!r} is defined more than once")
        configs[arm] = dict(arm_config)

    return configs


class ExperimentRegistry:
    """
    Owns every experiment and its lifecycle.

    The registry-wide lock only protects the id -> state map. All state of a
    single experiment is serialized by that experiment's own lock, so work on
    different experiments proceeds in parallel.
    """

    def __init__(
        self,
        min_sample_size: int = 100,
        significance_threshold: float = 0.05,
        confidence_level: float = 0.95,
        default_duration_days: int = 14,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.min_sample_size = min_sample_size
        self.significance_threshold = significance_threshold
        self.confidence_level = confidence_level
        self.default_duration = timedelta(days=default_duration_days)
        self.clock = clock
        self._experiments: Dict[str, ExperimentState] = {}
        self._lock = threading.Lock()

    def create(self, config: ExperimentConfig) -> str:
        state = self._build_state(config)

        with self._lock:
            self._experiments[state.id] = state

        logger.info(
            "experiment_created",
            experiment_id=state.id,
            name=state.name,
            kind=state.kind.value,
            target_metric=state.target_metric,
            min_sample_size=state.min_sample_size,
            significance_threshold=state.significance_threshold,
            end_time=state.end_time.isoformat(),
        )
        return state.id

    def restore(self, snapshot: ExperimentSnapshot, assignments: Sequence[Assignment]) -> None:
        """Re-insert a previously persisted experiment, e.g. at startup."""
        state = ExperimentState(
            id=snapshot.id,
            name=snapshot.name,
            description=snapshot.description,
            kind=snapshot.kind,
            target_metric=snapshot.target_metric,
            variant_configs=copy.deepcopy(snapshot.variant_configs),
            start_time=ensure_utc(snapshot.start_time),
            end_time=ensure_utc(snapshot.end_time),
            min_sample_size=snapshot.min_sample_size,
            significance_threshold=snapshot.significance_threshold,
            confidence_level=snapshot.confidence_level,
            created_at=ensure_utc(snapshot.created_at),
            status=snapshot.status,
            winner=snapshot.winner,
            significance=snapshot.significance,
            late_events=snapshot.late_events,
            completed_at=ensure_utc(snapshot.completed_at) if snapshot.completed_at else None,
            version=snapshot.version,
        )
        for arm in Arm:
            counts = snapshot.counts.get(arm, ArmCounts())
            state.counts[arm] = ArmCounts(counts.exposed, counts.converted)
            state.metric_samples[arm] = {
                name: list(values)
                for name, values in snapshot.metric_samples.get(arm, {}).items()
            }
        for assignment in assignments:
            state.assignments[assignment.user_id] = copy.copy(assignment)

        with self._lock:
            if snapshot.id in self._experiments:
                raise ValueError(f"Experiment {snapshot.id} is already registered")
            self._experiments[snapshot.id] = state

        logger.info(
            "experiment_restored",
            experiment_id=state.id,
            status=state.status.value,
            participants=len(state.assignments),
        )

    @contextmanager
    def locked(self, experiment_id: str) -> Iterator[ExperimentState]:
        """Hold the experiment's lock and yield its mutable state."""
        state = self._lookup(experiment_id)
        with state.lock:
            yield state

    def get(self, experiment_id: str) -> ExperimentSnapshot:
        with self.locked(experiment_id) as state:
            return state.snapshot()

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        with self.locked(experiment_id) as state:
            assignment = state.assignments.get(user_id)
            return copy.copy(assignment) if assignment else None

    def list_active(self, kind: Optional[ExperimentKind] = None) -> List[ExperimentSnapshot]:
        return [
            snapshot
            for snapshot in self.list_all()
            if snapshot.status == ExperimentStatus.ACTIVE and (kind is None or snapshot.kind == kind)
        ]

    def list_all(self) -> List[ExperimentSnapshot]:
        with self._lock:
            states = list(self._experiments.values())

        snapshots = []
        for state in states:
            with state.lock:
                snapshots.append(state.snapshot())
        return sorted(snapshots, key=lambda s: s.created_at)

    def evaluate(self, experiment_id: str) -> bool:
        with self.locked(experiment_id) as state:
            return self.evaluate_state(state)

    def evaluate_state(self, state: ExperimentState) -> bool:
        """
        Decide whether the experiment has a winner. Caller must hold ``state.lock``.

        Returns True only when this call moved the experiment to COMPLETED.
        """
        if state.status == ExperimentStatus.COMPLETED:
            return False

        control = state.counts[Arm.CONTROL]
        variant = state.counts[Arm.VARIANT]

        # No decision is attempted until both arms reach the minimum sample
        if control.exposed < state.min_sample_size or variant.exposed < state.min_sample_size:
            return False

        try:
            result = two_proportion_test(
                variant.converted,
                variant.exposed,
                control.converted,
                control.exposed,
                threshold=state.significance_threshold,
                confidence_level=state.confidence_level,
            )
        except InsufficientData as e:
            logger.warning("experiment_evaluation_skipped", experiment_id=state.id, reason=str(e))
            return False

        state.significance = result
        state.touch()

        if result.p_value >= state.significance_threshold:
            return False

        state.winner = (
            Arm.VARIANT if variant.conversion_rate > control.conversion_rate else Arm.CONTROL
        )
        state.status = ExperimentStatus.COMPLETED
        state.completed_at = self.clock()

        logger.info(
            "experiment_completed",
            experiment_id=state.id,
            name=state.name,
            winner=state.winner.value,
            z_score=round(result.z_score, 4),
            p_value=result.p_value,
            control_exposed=control.exposed,
            control_converted=control.converted,
            variant_exposed=variant.exposed,
            variant_converted=variant.converted,
        )
        return True

    def _lookup(self, experiment_id: str) -> ExperimentState:
        with self._lock:
            state = self._experiments.get(experiment_id)
        if state is None:
            raise ExperimentNotFound(experiment_id)
        return state

    def _build_state(self, config: ExperimentConfig) -> ExperimentState:
        if not config.name or not config.name.strip():
            raise InvalidConfig("Experiment name is required")

        if not config.target_metric or not METRIC_NAME_PATTERN.match(config.target_metric):
            raise InvalidConfig(
                f"target_metric must be a non-empty identifier, got {config.target_metric!r}"
            )

        try:
            kind = ExperimentKind(config.kind)
        except ValueError:
            raise InvalidConfig(f"Unknown experiment kind {config.kind!r}") from None

        variant_configs = parse_variants(config.variants)
        start_time, end_time = self._resolve_window(config)

        min_sample_size = (
            self.min_sample_size if config.min_sample_size is None else config.min_sample_size
        )
        if isinstance(min_sample_size, bool) or not isinstance(min_sample_size, int):
            raise InvalidConfig("min_sample_size must be an integer")
        if min_sample_size < 1:
            raise InvalidConfig("min_sample_size must be at least 1")

        threshold = (
            self.significance_threshold
            if config.significance_threshold is None
            else config.significance_threshold
        )
        if not 0 < threshold < 1:
            raise InvalidConfig("significance_threshold must be between 0 and 1")

        confidence_level = (
            self.confidence_level if config.confidence_level is None else config.confidence_level
        )
        if not 0 < confidence_level < 1:
            raise InvalidConfig("confidence_level must be between 0 and 1")

        return ExperimentState(
            id=f"exp_{uuid.uuid4().hex}",
            name=config.name.strip(),
            description=config.description or "",
            kind=kind,
            target_metric=config.target_metric,
            variant_configs=variant_configs,
            start_time=start_time,
            end_time=end_time,
            min_sample_size=min_sample_size,
            significance_threshold=threshold,
            confidence_level=confidence_level,
            created_at=self.clock(),
        )

    def _resolve_window(self, config: ExperimentConfig) -> Tuple[datetime, datetime]:
        start_time = ensure_utc(config.start_time) if config.start_time else self.clock()
        end_time = (
            ensure_utc(config.end_time) if config.end_time else start_time + self.default_duration
        )

        if end_time <= start_time:
            raise InvalidConfig("end_time must be after start_time")

        return start_time, end_time
