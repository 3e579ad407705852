import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union


class Arm(str, enum.Enum):
    """The two arms of an experiment. There is no third arm."""

    CONTROL = "control"
    VARIANT = "variant"


class ExperimentKind(str, enum.Enum):
    QUESTION_VARIATION = "question_variation"
    FLOW_CHANGE = "flow_change"
    UI_MODIFICATION = "ui_modification"


class ExperimentStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class ArmCounts:
    exposed: int = 0
    converted: int = 0

    @property
    def conversion_rate(self) -> float:
        if self.exposed == 0:
            return 0.0
        return self.converted / self.exposed


@dataclass(frozen=True)
class SignificanceResult:
    z_score: float
    p_value: float
    confidence_interval: Tuple[float, float]
    is_significant: bool


# A variant entry is either an arm name or a mapping like {"name": "variant", "config": {...}}
VariantSpec = Union[str, Dict[str, Any]]


@dataclass
class ExperimentConfig:
    """
    Operator-supplied experiment definition.

    Optional numeric parameters fall back to the engine defaults
    (see ``Settings.EXPERIMENT_*``) when left as None.
    """

    name: str
    target_metric: str
    description: str = ""
    kind: ExperimentKind = ExperimentKind.QUESTION_VARIATION
    variants: Optional[Sequence[VariantSpec]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    min_sample_size: Optional[int] = None
    significance_threshold: Optional[float] = None
    confidence_level: Optional[float] = None


@dataclass
class Assignment:
    experiment_id: str
    user_id: str
    arm: Arm
    assigned_at: datetime
    session_id: Optional[str] = None
    converted: bool = False


@dataclass
class MetricSummary:
    count: int
    mean: float


@dataclass(frozen=True)
class ArmReport:
    arm: Arm
    exposed: int
    converted: int
    conversion_rate: float
    rate_interval: Tuple[float, float]
    metrics: Dict[str, MetricSummary] = field(default_factory=dict)


@dataclass(frozen=True)
class ExperimentSnapshot:
    """Point-in-time, read-only copy of an experiment's state."""

    id: str
    name: str
    description: str
    kind: ExperimentKind
    target_metric: str
    variant_configs: Dict[Arm, Dict[str, Any]]
    start_time: datetime
    end_time: datetime
    status: ExperimentStatus
    min_sample_size: int
    significance_threshold: float
    confidence_level: float
    counts: Dict[Arm, ArmCounts]
    metric_samples: Dict[Arm, Dict[str, List[float]]]
    significance: Optional[SignificanceResult]
    winner: Optional[Arm]
    participants: int
    late_events: int
    version: int
    created_at: datetime
    completed_at: Optional[datetime] = None

    def is_overdue(self, now: datetime) -> bool:
        return self.status == ExperimentStatus.ACTIVE and now > self.end_time
