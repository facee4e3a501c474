"""
API routes for pipeline operations.

This module provides REST API endpoints to trigger, inspect and cancel
pipeline runs, and to inspect the pipeline's stages and build specification.

Author: Delivery Pipeline Team
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from delivery_pipeline.exceptions import (
    DeliveryPipelineError,
    NotFoundError,
    ValidationError,
)
from delivery_pipeline.schemas.pipeline import PipelineRunRead, PipelineTrigger, RunStatus
from delivery_pipeline.services.scheduler import PipelineScheduler
from delivery_pipeline.utils.logging import get_logger, log_function_call

logger = get_logger(__name__)

router = APIRouter(prefix="/api/pipelines", tags=["pipelines"])


class PipelineRunResponseWrapper(BaseModel):
    success: bool
    pipeline_run: PipelineRunRead


class PipelineRunListResponse(BaseModel):
    success: bool
    runs: List[PipelineRunRead]
    count: int


class CancelResponse(BaseModel):
    success: bool
    message: str


class StagesResponse(BaseModel):
    success: bool
    stages: List[Dict[str, Any]]
    count: int


class BuildSpecResponse(BaseModel):
    success: bool
    build_spec: Dict[str, Any]


class StatisticsResponse(BaseModel):
    success: bool
    statistics: Dict[str, Any]


def get_scheduler(request: Request) -> PipelineScheduler:
    """Get the scheduler created at application startup."""
    return request.app.state.scheduler


def _to_http_error(e: DeliveryPipelineError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Pipeline error in API request: {e}")
    return HTTPException(status_code=500, detail=str(e))


@router.post("/runs", response_model=PipelineRunResponseWrapper, status_code=202)
@log_function_call(logger)
def trigger_pipeline_run(
    trigger: Optional[PipelineTrigger] = None,
    scheduler: PipelineScheduler = Depends(get_scheduler),
):
    """
    Trigger a new pipeline run.

    JSON Body:
        resolved_source_version (str, optional): Commit from the change event.
            Omit it to build the branch head; send "" to tag the image latest.
        triggered_by (str, optional): Who triggered the run

    Returns:
        JSON of the created, pending pipeline run
    """
    trigger = trigger or PipelineTrigger()
    try:
        pipeline_run = scheduler.trigger(
            resolved_source_version=trigger.resolved_source_version,
            triggered_by=trigger.triggered_by,
        )
    except DeliveryPipelineError as e:
        raise _to_http_error(e)

    logger.info("Triggered pipeline run via API", extra={
        'pipeline_run_id': pipeline_run.id,
        'triggered_by': trigger.triggered_by,
    })
    return PipelineRunResponseWrapper(
        success=True,
        pipeline_run=PipelineRunRead.model_validate(pipeline_run),
    )


@router.get("/runs", response_model=PipelineRunListResponse)
def get_pipeline_runs(
    status: Optional[RunStatus] = Query(None),
    limit: int = Query(100),
    offset: int = Query(0),
    scheduler: PipelineScheduler = Depends(get_scheduler),
):
    """
    Get pipeline runs, newest first.

    Query Parameters:
        status (str): Filter by status (pending, running, succeeded, failed)
        limit (int): Maximum number of runs to return
        offset (int): Offset for pagination
    """
    try:
        with scheduler.pipeline() as service:
            runs = [
                PipelineRunRead.model_validate(run)
                for run in service.list_pipeline_runs(skip=offset, limit=limit, status=status)
            ]
    except DeliveryPipelineError as e:
        raise _to_http_error(e)

    return PipelineRunListResponse(success=True, runs=runs, count=len(runs))


@router.get("/runs/{run_id}", response_model=PipelineRunResponseWrapper)
def get_pipeline_run(run_id: int, scheduler: PipelineScheduler = Depends(get_scheduler)):
    try:
        with scheduler.pipeline() as service:
            pipeline_run = PipelineRunRead.model_validate(service.get_pipeline_run(run_id))
    except DeliveryPipelineError as e:
        raise _to_http_error(e)

    return PipelineRunResponseWrapper(success=True, pipeline_run=pipeline_run)


@router.get("/runs/{run_id}/logs", response_class=PlainTextResponse)
def get_pipeline_logs(run_id: int, scheduler: PipelineScheduler = Depends(get_scheduler)):
    try:
        with scheduler.pipeline() as service:
            return service.get_pipeline_logs(run_id)
    except DeliveryPipelineError as e:
        raise _to_http_error(e)


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse, status_code=202)
def cancel_pipeline_run(run_id: int, scheduler: PipelineScheduler = Depends(get_scheduler)):
    """
    Request cancellation of an active pipeline run.

    A run that has already updated the live service is rolled back and ends
    failed with error kind ``RunCancelled``.
    """
    try:
        scheduler.cancel(run_id)
    except DeliveryPipelineError as e:
        raise _to_http_error(e)

    return CancelResponse(success=True, message=f"Cancellation requested for pipeline run {run_id}")


@router.get("/stages", response_model=StagesResponse)
def get_pipeline_stages(scheduler: PipelineScheduler = Depends(get_scheduler)):
    with scheduler.pipeline() as service:
        stages = service.get_available_stages()
    return StagesResponse(success=True, stages=stages, count=len(stages))


@router.get("/build-spec", response_model=BuildSpecResponse)
def get_build_spec(scheduler: PipelineScheduler = Depends(get_scheduler)):
    """Render the build specification the pipeline executes."""
    try:
        with scheduler.pipeline() as service:
            build_spec = service.get_build_specification()
    except DeliveryPipelineError as e:
        raise _to_http_error(e)

    return BuildSpecResponse(success=True, build_spec=build_spec)


@router.get("/statistics", response_model=StatisticsResponse)
def get_pipeline_statistics(
    days: int = Query(30),
    scheduler: PipelineScheduler = Depends(get_scheduler),
):
    """
    Get pipeline execution statistics.

    Query Parameters:
        days (int): Number of days to look back
    """
    try:
        with scheduler.pipeline() as service:
            statistics = service.get_pipeline_statistics(days=days)
    except DeliveryPipelineError as e:
        raise _to_http_error(e)

    return StatisticsResponse(success=True, statistics=statistics)
