from fastapi import Request

from app.services.experiments.service import ExperimentService


def get_experiment_service(request: Request) -> ExperimentService:
    """Dependency returning the process-wide engine built in the app lifespan."""
    return request.app.state.experiment_service
