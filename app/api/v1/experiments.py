from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from app.api.deps import get_experiment_service
from app.models.schemas import (
    AssignmentResponse,
    AssignRequest,
    AssignResponse,
    ConversionRequest,
    ConversionResponse,
    CreateExperimentRequest,
    ExperimentKindEnum,
    ExperimentListResponse,
    ExperimentResponse,
    ExperimentSummaryResponse,
    SampleSizeRequest,
    SampleSizeResponse,
    to_experiment_response,
    to_summary_response,
)
from app.services.experiments.domain import ExperimentConfig, ExperimentKind
from app.services.experiments.errors import ExperimentNotFound, InvalidConfig
from app.services.experiments.persistence import persist_experiment
from app.services.experiments.service import ExperimentService, build_arm_reports
from app.services.experiments.stats import calculate_sample_size_requirement

router = APIRouter()


def _response(service: ExperimentService, experiment_id: str) -> ExperimentResponse:
    snapshot = service.get_experiment(experiment_id)
    return to_experiment_response(snapshot, build_arm_reports(snapshot))


@router.post("", response_model=ExperimentResponse, status_code=201)
async def create_experiment(
    request: CreateExperimentRequest,
    background_tasks: BackgroundTasks,
    service: ExperimentService = Depends(get_experiment_service),
):
    config = ExperimentConfig(
        name=request.name,
        description=request.description or "",
        kind=ExperimentKind(request.kind.value),
        target_metric=request.target_metric,
        variants=request.variants,
        start_time=request.start_time,
        end_time=request.end_time,
        min_sample_size=request.min_sample_size,
        significance_threshold=request.significance_threshold,
        confidence_level=request.confidence_level,
    )

    try:
        experiment_id = service.create_experiment(config)
    except InvalidConfig as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(persist_experiment, service, experiment_id)
    return _response(service, experiment_id)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    kind: Optional[ExperimentKindEnum] = Query(None, description="Filter by experiment kind"),
    include_completed: bool = Query(False, description="Include completed experiments"),
    service: ExperimentService = Depends(get_experiment_service),
):
    if include_completed:
        snapshots = service.list_experiments()
        if kind is not None:
            snapshots = [s for s in snapshots if s.kind.value == kind.value]
    else:
        snapshots = service.list_active_experiments(
            ExperimentKind(kind.value) if kind is not None else None
        )

    return ExperimentListResponse(
        experiments=[to_experiment_response(s, build_arm_reports(s)) for s in snapshots],
        total=len(snapshots),
    )


@router.post("/sample-size", response_model=SampleSizeResponse)
async def sample_size(request: SampleSizeRequest):
    per_arm = calculate_sample_size_requirement(
        request.baseline_rate, request.minimum_detectable_effect, request.alpha, request.power
    )
    if per_arm == 0:
        raise HTTPException(
            status_code=400, detail="Baseline rate plus effect must stay strictly between 0 and 1"
        )

    return SampleSizeResponse(sample_size_per_arm=per_arm, total_sample_size=per_arm * 2)


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    try:
        return _response(service, experiment_id)
    except ExperimentNotFound:
        raise HTTPException(status_code=404, detail="Experiment not found")


@router.get("/{experiment_id}/summary", response_model=ExperimentSummaryResponse)
async def get_experiment_summary(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    try:
        summary = service.get_summary(experiment_id)
    except ExperimentNotFound:
        raise HTTPException(status_code=404, detail="Experiment not found")

    return to_summary_response(summary)


@router.post("/{experiment_id}/assignments", response_model=AssignResponse)
async def assign(
    experiment_id: str,
    request: AssignRequest,
    background_tasks: BackgroundTasks,
    service: ExperimentService = Depends(get_experiment_service),
):
    try:
        arm = service.assign(experiment_id, request.user_id, request.session_id)
    except ExperimentNotFound:
        raise HTTPException(status_code=404, detail="Experiment not found")

    background_tasks.add_task(persist_experiment, service, experiment_id, request.user_id)
    return AssignResponse(experiment_id=experiment_id, user_id=request.user_id, arm=arm.value)


@router.get("/{experiment_id}/assignments/{user_id}", response_model=AssignmentResponse)
async def get_assignment(
    experiment_id: str,
    user_id: str,
    service: ExperimentService = Depends(get_experiment_service),
):
    try:
        assignment = service.get_assignment(experiment_id, user_id)
    except ExperimentNotFound:
        raise HTTPException(status_code=404, detail="Experiment not found")

    if assignment is None:
        raise HTTPException(status_code=404, detail="Assignment not found")

    return AssignmentResponse(
        experiment_id=assignment.experiment_id,
        user_id=assignment.user_id,
        arm=assignment.arm.value,
        session_id=assignment.session_id,
        converted=assignment.converted,
        assigned_at=assignment.assigned_at,
    )


@router.post("/{experiment_id}/conversions", response_model=ConversionResponse, status_code=202)
async def record_conversion(
    experiment_id: str,
    request: ConversionRequest,
    background_tasks: BackgroundTasks,
    service: ExperimentService = Depends(get_experiment_service),
):
    # Always 202: unattributable conversions are dropped, not reported as errors
    result = service.record_conversion(experiment_id, request.user_id, {"metrics": request.metrics})

    if result.accepted:
        background_tasks.add_task(persist_experiment, service, experiment_id, request.user_id)

    return ConversionResponse()
