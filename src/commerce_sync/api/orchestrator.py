"""Orchestrator control API routes."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from secrets import compare_digest

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from commerce_sync.config import get_settings
from commerce_sync.models import SyncObjectType
from commerce_sync.schemas import (
    ContinueRequest,
    ContinueResponse,
    GapFillRequest,
    GapFillResponse,
    GapFillStatsRead,
    JobDispatchRead,
    JobStatsRead,
    OrchestratorErrorResponse,
    RefundSyncRequest,
    RefundSyncResponse,
    RequeueFailedRequest,
    RequeueResponse,
    SmartSyncRequest,
    SmartSyncResponse,
    StaleJobRead,
    ValidatedJobRead,
    ValidateFailedRequest,
    ValidationResponse,
    WatchdogResponse,
)
from commerce_sync.services import (
    OrchestratorServices,
    ShopConfigurationError,
    SyncJobStats,
)

router = APIRouter(prefix="/api/orchestrator", tags=["orchestrator"])

_bearer_auth = HTTPBearer(auto_error=False)
_orchestrator_logger = logging.getLogger("commerce_sync.api.orchestrator")

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": OrchestratorErrorResponse}
}


def _get_admin_token() -> str:
    return get_settings().SECRET_KEY.get_secret_value()


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_auth),
    expected_token: str = Depends(_get_admin_token),
) -> None:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization credentials",
        )

    if credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization scheme must be Bearer",
        )

    if compare_digest(credentials.credentials, expected_token):
        return

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not authorized to manage sync jobs",
    )


def get_orchestrator_services(request: Request) -> OrchestratorServices:
    services = getattr(request.app.state, "orchestrator", None)
    if isinstance(services, OrchestratorServices):
        return services

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Orchestrator services are unavailable",
    )


def _error_response(action: str, error: Exception) -> JSONResponse:
    if isinstance(error, ShopConfigurationError):
        _orchestrator_logger.error(
            "orchestrator_configuration_error",
            extra={"action": action, "error": str(error)},
        )
    else:
        _orchestrator_logger.exception(
            "orchestrator_invocation_failed", extra={"action": action}
        )
    payload = OrchestratorErrorResponse(error=str(error), timestamp=datetime.now(UTC))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=payload.model_dump(mode="json"),
    )


def _unprocessable(error: ValueError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=str(error),
    )


def stats_response(stats: SyncJobStats) -> JobStatsRead:
    return JobStatsRead(
        pending=stats.pending,
        running=stats.running,
        completed=stats.completed,
        failed=stats.failed,
        dead_letter=stats.dead_letter,
        total=stats.total,
    )


@router.post(
    "/continue",
    response_model=ContinueResponse,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def continue_orchestrator(
    payload: ContinueRequest | None = None,
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> ContinueResponse | JSONResponse:
    scope = payload or ContinueRequest()
    try:
        result = await services.dispatcher.run(
            object_type=scope.object_type, shop=scope.shop
        )
    except Exception as error:
        return _error_response("continue", error)

    return ContinueResponse(
        complete=result.complete,
        message=result.message,
        stats=stats_response(result.stats),
        duration_seconds=result.duration_seconds,
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        skipped=result.skipped,
        rounds=result.rounds,
        cleaned=result.cleaned,
        budget_exhausted=result.budget_exhausted,
        results=[
            JobDispatchRead(
                job_id=item.job_id,
                shop=item.shop,
                object_type=item.object_type,
                outcome=item.outcome.value,
                records_processed=item.records_processed,
                error_message=item.error_message,
            )
            for item in result.results
        ],
    )


@router.post(
    "/gap-fill",
    response_model=GapFillResponse,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def fill_gaps(
    payload: GapFillRequest,
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> GapFillResponse | JSONResponse:
    try:
        result = await services.gap_fill.fill(
            payload.start_date, payload.end_date, payload.object_type
        )
    except Exception as error:
        return _error_response("gap_fill", error)

    return GapFillResponse(
        complete=result.complete,
        message=result.message,
        stats=GapFillStatsRead(
            expected=result.expected,
            existing=result.existing,
            created=result.created,
            remaining=result.remaining,
        ),
    )


@router.post(
    "/watchdog",
    response_model=WatchdogResponse,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def run_watchdog(
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> WatchdogResponse | JSONResponse:
    try:
        result = await services.watchdog.reclaim_stale_jobs()
    except Exception as error:
        return _error_response("watchdog", error)

    return WatchdogResponse(
        cleaned=result.cleaned,
        jobs=[
            StaleJobRead(
                job_id=job.job_id,
                shop=job.shop,
                object_type=job.object_type,
                start_date=job.start_date,
                started_at=job.started_at,
                stalled_seconds=job.stalled_seconds,
            )
            for job in result.jobs
        ],
        timestamp=result.timestamp,
    )


@router.post(
    "/validate-failed",
    response_model=ValidationResponse,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def validate_failed_jobs(
    payload: ValidateFailedRequest | None = None,
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> ValidationResponse | JSONResponse:
    object_type = payload.object_type if payload is not None else None
    try:
        summary = await services.validator.validate(object_type=object_type)
    except Exception as error:
        return _error_response("validate_failed", error)

    return ValidationResponse(
        total=summary.total,
        empty_windows=summary.empty_windows,
        real_failures=summary.real_failures,
        lookup_errors=summary.lookup_errors,
        updated=summary.updated,
        jobs=[
            ValidatedJobRead(
                job_id=job.job_id,
                shop=job.shop,
                object_type=job.object_type,
                start_date=job.start_date,
                upstream_count=job.upstream_count,
                reclassified=job.reclassified,
                error=job.error,
            )
            for job in summary.jobs
        ],
    )


@router.post(
    "/requeue-failed",
    response_model=RequeueResponse,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def requeue_failed_jobs(
    payload: RequeueFailedRequest | None = None,
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> RequeueResponse | JSONResponse:
    filters = payload or RequeueFailedRequest()
    try:
        result = await services.store.requeue_failed(
            max_attempts=services.settings.JOB_MAX_ATTEMPTS,
            object_type=filters.object_type,
            shop=filters.shop,
            start_date=filters.start_date,
            end_date=filters.end_date,
        )
    except Exception as error:
        return _error_response("requeue_failed", error)

    return RequeueResponse(
        requeued=result.requeued, dead_lettered=result.dead_lettered
    )


@router.post(
    "/refund-sync",
    response_model=RefundSyncResponse,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def sync_refunds(
    payload: RefundSyncRequest,
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> RefundSyncResponse | JSONResponse:
    if payload.shop not in services.settings.SHOPS:
        return _error_response(
            "refund_sync",
            ShopConfigurationError(f"Shop '{payload.shop}' is not configured"),
        )

    try:
        summary = await services.chunk_strategist.run(
            payload.shop, payload.start_date, payload.end_date
        )
    except Exception as error:
        return _error_response("refund_sync", error)

    return RefundSyncResponse(
        shop=summary.plan.shop,
        start_date=summary.plan.start_date,
        end_date=summary.plan.end_date,
        strategy=summary.plan.strategy.value,
        order_count=summary.plan.order_count,
        chunk_count=summary.plan.chunk_count,
        chunks_processed=summary.chunks_processed,
        processed=summary.processed,
        with_refunds=summary.with_refunds,
        errors=summary.errors,
    )


@router.post(
    "/smart-sync",
    response_model=SmartSyncResponse,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def smart_sync(
    payload: SmartSyncRequest,
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> SmartSyncResponse | JSONResponse:
    try:
        result = await services.smart_sync.run(
            payload.start_date,
            payload.end_date,
            object_type=payload.object_type,
            max_iterations=payload.max_iterations,
        )
    except ValueError as error:
        raise _unprocessable(error) from error
    except Exception as error:
        return _error_response("smart_sync", error)

    return SmartSyncResponse(
        complete=result.complete,
        requeued=result.requeue.requeued,
        dead_lettered=result.requeue.dead_lettered,
        created=result.created,
        iterations=result.iterations,
        stats=stats_response(result.stats),
    )


@router.get(
    "/stats",
    response_model=JobStatsRead,
    responses=_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def get_job_stats(
    object_type: SyncObjectType | None = Query(default=None, alias="objectType"),
    shop: str | None = None,
    services: OrchestratorServices = Depends(get_orchestrator_services),
) -> JobStatsRead | JSONResponse:
    try:
        stats = await services.store.count_by_status(
            object_type=object_type, shop=shop
        )
    except Exception as error:
        return _error_response("stats", error)

    return stats_response(stats)


__all__ = [
    "get_orchestrator_services",
    "require_admin",
    "router",
    "stats_response",
]
