from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import structlog

from app.config import Settings
from app.services.experiments.assigner import VariantAssigner
from app.services.experiments.domain import (
    Arm,
    ArmReport,
    Assignment,
    ExperimentConfig,
    ExperimentKind,
    ExperimentSnapshot,
    MetricSummary,
)
from app.services.experiments.events import EventDispatcher, EventSink, LoggingEventSink
from app.services.experiments.randomness import RandomSource, SystemRandomSource
from app.services.experiments.recommendations import build_recommendations
from app.services.experiments.recorder import ConversionRecorder, ConversionResult
from app.services.experiments.registry import ExperimentRegistry
from app.services.experiments.stats import calculate_lift, calculate_rate_interval

logger = structlog.get_logger()


@dataclass(frozen=True)
class ExperimentSummary:
    experiment: ExperimentSnapshot
    arms: List[ArmReport]
    absolute_lift: float  # Percentage points, variant minus control
    relative_lift: float  # Percentage
    is_overdue: bool
    recommendations: List[str]


def build_arm_reports(snapshot: ExperimentSnapshot) -> List[ArmReport]:
    reports = []
    for arm in Arm:
        counts = snapshot.counts[arm]
        metrics: Dict[str, MetricSummary] = {}
        for name, values in snapshot.metric_samples[arm].items():
            if values:
                metrics[name] = MetricSummary(count=len(values), mean=sum(values) / len(values))

        reports.append(
            ArmReport(
                arm=arm,
                exposed=counts.exposed,
                converted=counts.converted,
                conversion_rate=counts.conversion_rate,
                rate_interval=calculate_rate_interval(
                    counts.converted, counts.exposed, snapshot.confidence_level
                ),
                metrics=metrics,
            )
        )
    return reports


class ExperimentService:
    """
    Entry point to the experimentation engine for HTTP handlers and other callers.

    Composes the registry, the assigner, the conversion recorder and the
    event dispatcher. One instance lives for the whole process and is
    started and stopped by the application lifespan.
    """

    def __init__(
        self,
        registry: ExperimentRegistry,
        random_source: RandomSource,
        dispatcher: EventDispatcher,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.assigner = VariantAssigner(registry, random_source, dispatcher)
        self.recorder = ConversionRecorder(registry, dispatcher)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sink: Optional[EventSink] = None,
        random_source: Optional[RandomSource] = None,
    ) -> "ExperimentService":
        registry = ExperimentRegistry(
            min_sample_size=settings.EXPERIMENT_MIN_SAMPLE_SIZE,
            significance_threshold=settings.EXPERIMENT_SIGNIFICANCE_THRESHOLD,
            confidence_level=settings.EXPERIMENT_CONFIDENCE_LEVEL,
            default_duration_days=settings.EXPERIMENT_DEFAULT_DURATION_DAYS,
        )
        dispatcher = EventDispatcher(
            sink or LoggingEventSink(), max_queue_size=settings.EVENT_QUEUE_MAX_SIZE
        )
        return cls(
            registry=registry,
            random_source=random_source or SystemRandomSource(settings.RANDOM_SEED),
            dispatcher=dispatcher,
        )

    def start(self) -> None:
        self.dispatcher.start()

    def stop(self) -> None:
        self.dispatcher.stop()

    def create_experiment(self, config: ExperimentConfig) -> str:
        return self.registry.create(config)

    def assign(self, experiment_id: str, user_id: str, session_id: Optional[str] = None) -> Arm:
        return self.assigner.assign(experiment_id, user_id, session_id)

    def record_conversion(
        self, experiment_id: str, user_id: str, outcome: Optional[Mapping] = None
    ) -> ConversionResult:
        result = self.recorder.record_conversion(experiment_id, user_id, outcome)
        if not result.accepted:
            logger.debug(
                "experiment_conversion_ignored",
                experiment_id=experiment_id,
                reason=result.reason,
            )
        return result

    def get_experiment(self, experiment_id: str) -> ExperimentSnapshot:
        return self.registry.get(experiment_id)

    def list_active_experiments(
        self, kind: Optional[ExperimentKind] = None
    ) -> List[ExperimentSnapshot]:
        return self.registry.list_active(kind)

    def list_experiments(self) -> List[ExperimentSnapshot]:
        return self.registry.list_all()

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        return self.registry.get_assignment(experiment_id, user_id)

    def get_summary(self, experiment_id: str) -> ExperimentSummary:
        snapshot = self.registry.get(experiment_id)
        now = self.registry.clock()

        absolute_lift, relative_lift = calculate_lift(
            snapshot.counts[Arm.CONTROL].conversion_rate,
            snapshot.counts[Arm.VARIANT].conversion_rate,
        )

        return ExperimentSummary(
            experiment=snapshot,
            arms=build_arm_reports(snapshot),
            absolute_lift=absolute_lift,
            relative_lift=relative_lift,
            is_overdue=snapshot.is_overdue(now),
            recommendations=build_recommendations(snapshot, now),
        )
