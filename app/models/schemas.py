import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from app.services.experiments.domain import ArmReport, ExperimentSnapshot
from app.services.experiments.service import ExperimentSummary


class ArmEnum(str, Enum):
    CONTROL = "control"
    VARIANT = "variant"


class ExperimentKindEnum(str, Enum):
    QUESTION_VARIATION = "question_variation"
    FLOW_CHANGE = "flow_change"
    UI_MODIFICATION = "ui_modification"


class ExperimentStatusEnum(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class CreateExperimentRequest(BaseModel):
    # Arm count, dates and metric format are checked by the engine (InvalidConfig -> 400)
    name: str = Field(..., max_length=200)
    description: Optional[str] = None
    kind: ExperimentKindEnum = ExperimentKindEnum.QUESTION_VARIATION
    target_metric: str = Field(
        ..., description="Primary conversion metric (e.g., 'assessment_completed')"
    )
    variants: Optional[List[Union[str, Dict[str, Any]]]] = Field(
        None, description="Exactly two arms: 'control' and 'variant', as names or {name, config}"
    )
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    min_sample_size: Optional[int] = Field(None, description="Per-arm exposures before deciding")
    significance_threshold: Optional[float] = Field(None, description="p-value cutoff")
    confidence_level: Optional[float] = None


class AssignRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class AssignResponse(BaseModel):
    experiment_id: str
    user_id: str
    arm: ArmEnum


class AssignmentResponse(BaseModel):
    experiment_id: str
    user_id: str
    arm: ArmEnum
    session_id: Optional[str] = None
    converted: bool
    assigned_at: datetime


class ConversionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    metrics: Dict[str, Any] = Field(default_factory=dict)


class ConversionResponse(BaseModel):
    accepted: bool = True


class SignificanceResponse(BaseModel):
    z_score: float
    p_value: float
    confidence_interval_lower: float
    confidence_interval_upper: float
    is_significant: bool


class MetricSummaryResponse(BaseModel):
    count: int
    mean: float


class ArmResponse(BaseModel):
    arm: ArmEnum
    exposed: int
    converted: int
    conversion_rate: float
    rate_interval: Tuple[float, float]
    config: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, MetricSummaryResponse] = Field(default_factory=dict)


class ExperimentResponse(BaseModel):
    id: str
    name: str
    description: str
    kind: ExperimentKindEnum
    target_metric: str
    status: ExperimentStatusEnum
    winner: Optional[ArmEnum] = None
    start_time: datetime
    end_time: datetime
    completed_at: Optional[datetime] = None
    min_sample_size: int
    significance_threshold: float
    confidence_level: float
    participants: int
    late_events: int
    arms: List[ArmResponse]
    significance: Optional[SignificanceResponse] = None
    created_at: datetime


class ExperimentListResponse(BaseModel):
    experiments: List[ExperimentResponse]
    total: int


class ExperimentSummaryResponse(BaseModel):
    experiment: ExperimentResponse
    absolute_lift: float  # Percentage points
    relative_lift: Optional[float] = None  # Percentage; None when control rate is 0
    is_overdue: bool
    recommendations: List[str]


class SampleSizeRequest(BaseModel):
    baseline_rate: float = Field(..., gt=0, lt=1, description="Control conversion rate (0-1)")
    minimum_detectable_effect: float = Field(..., gt=0, description="MDE in percentage points")
    alpha: float = Field(0.05, gt=0, lt=1)
    power: float = Field(0.80, gt=0, lt=1)


class SampleSizeResponse(BaseModel):
    sample_size_per_arm: int
    total_sample_size: int


def to_experiment_response(
    snapshot: ExperimentSnapshot, arm_reports: List[ArmReport]
) -> ExperimentResponse:
    significance = None
    if snapshot.significance is not None:
        lower, upper = snapshot.significance.confidence_interval
        significance = SignificanceResponse(
            z_score=snapshot.significance.z_score,
            p_value=snapshot.significance.p_value,
            confidence_interval_lower=lower,
            confidence_interval_upper=upper,
            is_significant=snapshot.significance.is_significant,
        )

    arms = [
        ArmResponse(
            arm=ArmEnum(report.arm.value),
            exposed=report.exposed,
            converted=report.converted,
            conversion_rate=report.conversion_rate,
            rate_interval=report.rate_interval,
            config=snapshot.variant_configs.get(report.arm, {}),
            metrics={
                name: MetricSummaryResponse(count=m.count, mean=m.mean)
                for name, m in report.metrics.items()
            },
        )
        for report in arm_reports
    ]

    return ExperimentResponse(
        id=snapshot.id,
        name=snapshot.name,
        description=snapshot.description,
        kind=ExperimentKindEnum(snapshot.kind.value),
        target_metric=snapshot.target_metric,
        status=ExperimentStatusEnum(snapshot.status.value),
        winner=ArmEnum(snapshot.winner.value) if snapshot.winner else None,
        start_time=snapshot.start_time,
        end_time=snapshot.end_time,
        completed_at=snapshot.completed_at,
        min_sample_size=snapshot.min_sample_size,
        significance_threshold=snapshot.significance_threshold,
        confidence_level=snapshot.confidence_level,
        participants=snapshot.participants,
        late_events=snapshot.late_events,
        arms=arms,
        significance=significance,
        created_at=snapshot.created_at,
    )


def to_summary_response(summary: ExperimentSummary) -> ExperimentSummaryResponse:
    return ExperimentSummaryResponse(
        experiment=to_experiment_response(summary.experiment, summary.arms),
        absolute_lift=summary.absolute_lift,
        relative_lift=summary.relative_lift if math.isfinite(summary.relative_lift) else None,
        is_overdue=summary.is_overdue,
        recommendations=summary.recommendations,
    )
