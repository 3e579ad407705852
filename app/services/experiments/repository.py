from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.experiment import AssignmentRecord, ExperimentRecord
from app.services.experiments.domain import (
    Arm,
    ArmCounts,
    Assignment,
    ExperimentKind,
    ExperimentSnapshot,
    ExperimentStatus,
    SignificanceResult,
)

logger = structlog.get_logger()


def _significance_to_json(result: Optional[SignificanceResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    return {
        "z_score": result.z_score,
        "p_value": result.p_value,
        "confidence_interval": list(result.confidence_interval),
        "is_significant": result.is_significant,
    }


def _significance_from_json(data: Optional[Dict[str, Any]]) -> Optional[SignificanceResult]:
    if not data:
        return None
    lower, upper = data["confidence_interval"]
    return SignificanceResult(
        z_score=data["z_score"],
        p_value=data["p_value"],
        confidence_interval=(lower, upper),
        is_significant=data["is_significant"],
    )


def snapshot_values(snapshot: ExperimentSnapshot) -> Dict[str, Any]:
    """Column values for an ``experiments`` row, everything but the id."""
    return {
        "name": snapshot.name,
        "description": snapshot.description,
        "kind": snapshot.kind.value,
        "target_metric": snapshot.target_metric,
        "variant_configs": {arm.value: cfg for arm, cfg in snapshot.variant_configs.items()},
        "min_sample_size": snapshot.min_sample_size,
        "significance_threshold": snapshot.significance_threshold,
        "confidence_level": snapshot.confidence_level,
        "start_time": snapshot.start_time,
        "end_time": snapshot.end_time,
        "completed_at": snapshot.completed_at,
        "status": snapshot.status.value,
        "winner": snapshot.winner.value if snapshot.winner else None,
        "control_exposed": snapshot.counts[Arm.CONTROL].exposed,
        "control_converted": snapshot.counts[Arm.CONTROL].converted,
        "variant_exposed": snapshot.counts[Arm.VARIANT].exposed,
        "variant_converted": snapshot.counts[Arm.VARIANT].converted,
        "metric_samples": {arm.value: s for arm, s in snapshot.metric_samples.items()},
        "significance": _significance_to_json(snapshot.significance),
        "late_events": snapshot.late_events,
        "version": snapshot.version,
        "created_at": snapshot.created_at,
    }


def record_to_snapshot(record: ExperimentRecord) -> ExperimentSnapshot:
    variant_configs = record.variant_configs or {}
    metric_samples = record.metric_samples or {}

    return ExperimentSnapshot(
        id=record.id,
        name=record.name,
        description=record.description or "",
        kind=ExperimentKind(record.kind),
        target_metric=record.target_metric,
        variant_configs={arm: dict(variant_configs.get(arm.value) or {}) for arm in Arm},
        start_time=record.start_time,
        end_time=record.end_time,
        status=ExperimentStatus(record.status),
        min_sample_size=record.min_sample_size,
        significance_threshold=record.significance_threshold,
        confidence_level=record.confidence_level,
        counts={
            Arm.CONTROL: ArmCounts(record.control_exposed, record.control_converted),
            Arm.VARIANT: ArmCounts(record.variant_exposed, record.variant_converted),
        },
        metric_samples={
            arm: {name: list(values) for name, values in (metric_samples.get(arm.value) or {}).items()}
            for arm in Arm
        },
        significance=_significance_from_json(record.significance),
        winner=Arm(record.winner) if record.winner else None,
        participants=len(record.assignments),
        late_events=record.late_events,
        version=record.version,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )


def record_to_assignment(record: AssignmentRecord) -> Assignment:
    return Assignment(
        experiment_id=record.experiment_id,
        user_id=record.user_id,
        arm=Arm(record.arm),
        assigned_at=record.assigned_at,
        session_id=record.session_id,
        converted=bool(record.converted),
    )


class ExperimentRepository:
    """Durable storage of experiment snapshots and assignments."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def save_experiment(self, snapshot: ExperimentSnapshot) -> bool:
        """
        Upsert the snapshot. Returns False when the stored row is already at
        the same or a newer version.
        """
        values = snapshot_values(snapshot)

        for attempt in range(2):
            # Conditional on version: a stale snapshot matches no row
            result = await self.db.execute(
                update(ExperimentRecord)
                .where(
                    ExperimentRecord.id == snapshot.id,
                    ExperimentRecord.version < snapshot.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                await self.db.commit()
                return True

            exists = await self.db.scalar(
                select(ExperimentRecord.id).where(ExperimentRecord.id == snapshot.id)
            )
            if exists is not None:
                await self.db.rollback()
                logger.debug(
                    "experiment_write_skipped",
                    experiment_id=snapshot.id,
                    version=snapshot.version,
                    reason="stale",
                )
                return False

            self.db.add(ExperimentRecord(id=snapshot.id, **values))
            try:
                await self.db.commit()
                return True
            except IntegrityError:
                # Another writer inserted the row first; retry as a conditional update
                await self.db.rollback()
                if attempt:
                    raise
        return False

    async def save_assignment(self, assignment: Assignment) -> None:
        for attempt in range(2):
            record = await self.db.get(
                AssignmentRecord, (assignment.experiment_id, assignment.user_id)
            )
            if record is None:
                self.db.add(
                    AssignmentRecord(
                        experiment_id=assignment.experiment_id,
                        user_id=assignment.user_id,
                        arm=assignment.arm.value,
                        session_id=assignment.session_id,
                        converted=assignment.converted,
                        assigned_at=assignment.assigned_at,
                    )
                )
            else:
                # The arm is fixed; only the conversion flag can move (False -> True)
                record.converted = record.converted or assignment.converted

            try:
                await self.db.commit()
                return
            except IntegrityError:
                await self.db.rollback()
                if attempt:
                    raise

    async def load_all(self) -> List[Tuple[ExperimentSnapshot, List[Assignment]]]:
        result = await self.db.execute(
            select(ExperimentRecord)
            .options(selectinload(ExperimentRecord.assignments))
            .order_by(ExperimentRecord.created_at)
        )
        return [
            (record_to_snapshot(record), [record_to_assignment(a) for a in record.assignments])
            for record in result.scalars().all()
        ]
