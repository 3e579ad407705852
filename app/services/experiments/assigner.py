from typing import Optional

import structlog

from app.services.experiments.domain import Arm, Assignment, ExperimentStatus
from app.services.experiments.events import ASSIGNMENT_EVENT, EventDispatcher
from app.services.experiments.randomness import RandomSource
from app.services.experiments.registry import ExperimentRegistry

logger = structlog.get_logger()

# 50/50 split: draws below this value go to control
CONTROL_SHARE = 0.5


class VariantAssigner:
    def __init__(
        self,
        registry: ExperimentRegistry,
        random_source: RandomSource,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        self.registry = registry
        self.random_source = random_source
        self.dispatcher = dispatcher

    def assign(self, experiment_id: str, user_id: str, session_id: Optional[str] = None) -> Arm:
        """
        Return the user's arm, creating the assignment on first call.

        Lookup, draw, store and the exposure increment all happen under the
        experiment lock, so concurrent first calls for one user yield one
        assignment and one exposure. Completed experiments serve control to
        everyone without drawing.

        Raises:
            ExperimentNotFound: if the experiment id is unknown
        """
        with self.registry.locked(experiment_id) as state:
            if state.status == ExperimentStatus.COMPLETED:
                state.late_events += 1
                return Arm.CONTROL

            existing = state.assignments.get(user_id)
            if existing is not None:
                return existing.arm

            arm = Arm.CONTROL if self.random_source.uniform() < CONTROL_SHARE else Arm.VARIANT
            state.assignments[user_id] = Assignment(
                experiment_id=experiment_id,
                user_id=user_id,
                arm=arm,
                assigned_at=self.registry.clock(),
                session_id=session_id,
            )
            state.counts[arm].exposed += 1
            state.touch()
            experiment_name = state.name

        logger.debug("experiment_user_assigned", experiment_id=experiment_id, arm=arm.value)

        if self.dispatcher is not None:
            self.dispatcher.publish(
                ASSIGNMENT_EVENT,
                {
                    "experiment_id": experiment_id,
                    "user_id": user_id,
                    "session_id": session_id,
                    "arm": arm.value,
                    "experiment_name": experiment_name,
                },
            )

        return arm
