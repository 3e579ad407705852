from typing import Optional

import structlog

from app.core import database
from app.services.experiments.repository import ExperimentRepository
from app.services.experiments.service import ExperimentService

logger = structlog.get_logger()


async def persist_experiment(
    service: ExperimentService, experiment_id: str, user_id: Optional[str] = None
) -> bool:
    """
    Write the current state of an experiment (and optionally one user's
    assignment) to the database. Runs as a background task after the
    response has been sent, never under an experiment lock.

    Failures are logged and swallowed: the in-memory engine stays the
    source of truth and the next write carries the newer snapshot.
    Returns True when the experiment row was written.
    """
    if database.async_session_maker is None:
        return False

    snapshot = service.get_experiment(experiment_id)
    assignment = service.get_assignment(experiment_id, user_id) if user_id else None

    try:
        async with database.async_session_maker() as session:
            repository = ExperimentRepository(session)
            saved = await repository.save_experiment(snapshot)
            if assignment is not None:
                await repository.save_assignment(assignment)
    except Exception as e:
        logger.error(
            "experiment_persist_failed",
            experiment_id=experiment_id,
            version=snapshot.version,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False

    logger.debug(
        "experiment_persisted", experiment_id=experiment_id, version=snapshot.version, saved=saved
    )
    return saved


async def restore_experiments(service: ExperimentService) -> int:
    if database.async_session_maker is None:
        return 0

    async with database.async_session_maker() as session:
        rows = await ExperimentRepository(session).load_all()

    for snapshot, assignments in rows:
        service.registry.restore(snapshot, assignments)

    logger.info("experiments_restored", count=len(rows))
    return len(rows)
