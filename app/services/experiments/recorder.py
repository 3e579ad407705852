import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, Optional

import structlog

from app.services.experiments.domain import Arm, ExperimentStatus
from app.services.experiments.errors import ExperimentNotFound
from app.services.experiments.events import CONVERSION_EVENT, EventDispatcher
from app.services.experiments.registry import ExperimentRegistry

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConversionResult:
    accepted: bool
    arm: Optional[Arm] = None
    completed_experiment: bool = False
    reason: Optional[str] = None

    @classmethod
    def ignored(cls, reason: str) -> "ConversionResult":
        return cls(accepted=False, reason=reason)


def extract_numeric_metrics(outcome: Optional[Mapping]) -> Dict[str, float]:
    """Keep only finite numeric values from ``outcome["metrics"]``."""
    if not outcome:
        return {}

    metrics = outcome.get("metrics")
    if not isinstance(metrics, Mapping):
        return {}

    numeric = {}
    for name, value in metrics.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if not math.isfinite(value):
            continue
        numeric[str(name)] = float(value)

    return numeric


class ConversionRecorder:
    def __init__(self, registry: ExperimentRegistry, dispatcher: Optional[EventDispatcher] = None):
        self.registry = registry
        self.dispatcher = dispatcher

    def record_conversion(
        self, experiment_id: str, user_id: str, outcome: Optional[Mapping] = None
    ) -> ConversionResult:
        """
        Attribute a conversion to the user's assignment and re-evaluate.

        Conversions that cannot be attributed (unknown experiment, unassigned
        user, completed experiment) are ignored, never raised. Each assignment
        counts as converted at most once; metric samples are appended on every
        accepted conversion.
        """
        metrics = extract_numeric_metrics(outcome)

        try:
            with self.registry.locked(experiment_id) as state:
                assignment = state.assignments.get(user_id)
                if assignment is None:
                    return ConversionResult.ignored("unassigned")

                if state.status == ExperimentStatus.COMPLETED:
                    state.late_events += 1
                    logger.info(
                        "experiment_conversion_rejected",
                        experiment_id=experiment_id,
                        reason="experiment_completed",
                    )
                    return ConversionResult.ignored("experiment_completed")

                arm = assignment.arm
                if not assignment.converted:
                    assignment.converted = True
                    state.counts[arm].converted += 1

                samples = state.metric_samples[arm]
                for name, value in metrics.items():
                    samples.setdefault(name, []).append(value)

                state.touch()
                completed = self.registry.evaluate_state(state)
        except ExperimentNotFound:
            return ConversionResult.ignored("unknown_experiment")

        if self.dispatcher is not None:
            self.dispatcher.publish(
                CONVERSION_EVENT,
                {
                    "experiment_id": experiment_id,
                    "user_id": user_id,
                    "arm": arm.value,
                    "conversion_data": {"metrics": metrics},
                },
            )

        return ConversionResult(accepted=True, arm=arm, completed_experiment=completed)
