"""Scheduler control API routes."""

from __future__ import annotations

from datetime import datetime
from typing import Any, NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.database import get_db_session
from commerce_sync.models import OrchestratorRun
from commerce_sync.services.scheduler import SchedulerJobState, SchedulerService
from commerce_sync.services.sync_pipeline import JobRunMetrics, SyncPipelineService

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


class SchedulerStatusResponse(BaseModel):
    """Runtime scheduler status response."""

    enabled: bool
    running: bool
    paused: bool


class SchedulerJobResponse(BaseModel):
    """Scheduler job response payload."""

    job_id: str
    name: str | None
    trigger: str
    next_run_time: datetime | None
    paused: bool


class SchedulerJobMonitoringResponse(BaseModel):
    """Scheduled orchestrator job runtime metrics."""

    job_id: str
    name: str
    total_runs: int
    successful_runs: int
    failed_runs: int
    overlap_skips: int
    running: bool
    last_started_at: datetime | None
    last_finished_at: datetime | None
    last_duration_ms: float | None
    last_error: str | None


class OrchestratorRunItem(BaseModel):
    """Persisted scheduled job run."""

    id: UUID
    job_id: str
    job_name: str
    started_at: datetime
    finished_at: datetime | None
    status: str
    items_processed: int
    error_message: str | None
    summary: dict[str, Any] | None


class OrchestratorRunHistoryResponse(BaseModel):
    """Paginated scheduled job run history payload."""

    page: int
    page_size: int
    total_items: int
    total_pages: int
    items: list[OrchestratorRunItem]


def _get_scheduler_service(request: Request) -> SchedulerService:
    scheduler = getattr(request.app.state, "scheduler_service", None)
    if isinstance(scheduler, SchedulerService):
        return scheduler

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Scheduler service is unavailable",
    )


def _get_sync_pipeline_service(request: Request) -> SyncPipelineService:
    pipeline_service = getattr(request.app.state, "sync_pipeline_service", None)
    if isinstance(pipeline_service, SyncPipelineService):
        return pipeline_service

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Sync pipeline service is unavailable",
    )


def _status_response(scheduler: SchedulerService) -> SchedulerStatusResponse:
    return SchedulerStatusResponse(
        enabled=scheduler.enabled,
        running=scheduler.running,
        paused=scheduler.paused,
    )


def _job_monitoring_response(metrics: JobRunMetrics) -> SchedulerJobMonitoringResponse:
    return SchedulerJobMonitoringResponse(
        job_id=metrics.job_id,
        name=metrics.name,
        total_runs=metrics.total_runs,
        successful_runs=metrics.successful_runs,
        failed_runs=metrics.failed_runs,
        overlap_skips=metrics.overlap_skips,
        running=metrics.running,
        last_started_at=metrics.last_started_at,
        last_finished_at=metrics.last_finished_at,
        last_duration_ms=metrics.last_duration_ms,
        last_error=metrics.last_error,
    )


def _raise_scheduler_error(error: Exception) -> NoReturn:
    if isinstance(error, LookupError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(error),
        ) from error

    if isinstance(error, RuntimeError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(error),
        ) from error

    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Unexpected scheduler operation failure",
    ) from error


@router.get("", response_model=SchedulerStatusResponse, status_code=status.HTTP_200_OK)
async def get_scheduler_status(
    scheduler: SchedulerService = Depends(_get_scheduler_service),
) -> SchedulerStatusResponse:
    return _status_response(scheduler)


@router.post(
    "/pause", response_model=SchedulerStatusResponse, status_code=status.HTTP_200_OK
)
async def pause_scheduler(
    scheduler: SchedulerService = Depends(_get_scheduler_service),
) -> SchedulerStatusResponse:
    try:
        scheduler.pause()
    except Exception as error:
        _raise_scheduler_error(error)

    return _status_response(scheduler)


@router.post(
    "/resume", response_model=SchedulerStatusResponse, status_code=status.HTTP_200_OK
)
async def resume_scheduler(
    scheduler: SchedulerService = Depends(_get_scheduler_service),
) -> SchedulerStatusResponse:
    try:
        scheduler.resume()
    except Exception as error:
        _raise_scheduler_error(error)

    return _status_response(scheduler)


@router.get(
    "/jobs",
    response_model=list[SchedulerJobResponse],
    status_code=status.HTTP_200_OK,
)
async def list_scheduler_jobs(
    scheduler: SchedulerService = Depends(_get_scheduler_service),
) -> list[SchedulerJobResponse]:
    jobs: list[SchedulerJobState] = []
    try:
        jobs = scheduler.list_jobs()
    except Exception as error:
        _raise_scheduler_error(error)

    return [
        SchedulerJobResponse(
            job_id=job.job_id,
            name=job.name,
            trigger=job.trigger,
            next_run_time=job.next_run_time,
            paused=job.paused,
        )
        for job in jobs
    ]


@router.get(
    "/jobs/monitoring",
    response_model=list[SchedulerJobMonitoringResponse],
    status_code=status.HTTP_200_OK,
)
async def list_scheduler_job_monitoring(
    pipeline_service: SyncPipelineService = Depends(_get_sync_pipeline_service),
) -> list[SchedulerJobMonitoringResponse]:
    return [
        _job_monitoring_response(metrics)
        for metrics in pipeline_service.monitoring_snapshot()
    ]


@router.get(
    "/runs",
    response_model=OrchestratorRunHistoryResponse,
    status_code=status.HTTP_200_OK,
)
async def list_orchestrator_runs(
    page: int = 1,
    page_size: int = 20,
    job_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    session: AsyncSession = Depends(get_db_session),
) -> OrchestratorRunHistoryResponse:
    safe_page = max(page, 1)
    safe_page_size = min(max(page_size, 1), 100)

    statement = select(OrchestratorRun)
    if job_id:
        statement = statement.where(OrchestratorRun.job_id == job_id.strip())
    if status_filter:
        statement = statement.where(
            OrchestratorRun.status == status_filter.strip().lower()
        )
    if date_from is not None:
        statement = statement.where(OrchestratorRun.started_at >= date_from)
    if date_to is not None:
        statement = statement.where(OrchestratorRun.started_at <= date_to)

    total_items = int(
        (await session.scalar(select(func.count()).select_from(statement.subquery())))
        or 0
    )
    total_pages = max(1, ((total_items - 1) // safe_page_size) + 1)
    bounded_page = min(safe_page, total_pages)

    rows = (
        (
            await session.execute(
                statement.order_by(OrchestratorRun.started_at.desc())
                .offset((bounded_page - 1) * safe_page_size)
                .limit(safe_page_size)
            )
        )
        .scalars()
        .all()
    )

    return OrchestratorRunHistoryResponse(
        page=bounded_page,
        page_size=safe_page_size,
        total_items=total_items,
        total_pages=total_pages,
        items=[
            OrchestratorRunItem(
                id=row.id,
                job_id=row.job_id,
                job_name=row.job_name,
                started_at=row.started_at,
                finished_at=row.finished_at,
                status=row.status,
                items_processed=row.items_processed,
                error_message=row.error_message,
                summary=row.summary,
            )
            for row in rows
        ],
    )


__all__ = ["router"]
