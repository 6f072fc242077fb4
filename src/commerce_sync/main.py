"""Application entry point for the commerce sync orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
import logging
import signal
from typing import Any

from fastapi import FastAPI, Request
from starlette.responses import Response
import uvicorn

from commerce_sync.api import jobs_router, orchestrator_router, scheduler_router
from commerce_sync.config import get_settings
from commerce_sync.database import (
    close_database,
    initialize_database,
    run_startup_database_health_check,
)
from commerce_sync.services.orchestrator import OrchestratorServices
from commerce_sync.services.scheduler import SchedulerService
from commerce_sync.services.sync_pipeline import (
    SyncPipelineService,
    set_sync_pipeline_service,
)
from commerce_sync.utils.logging import (
    add_request_logging_middleware,
    setup_logging,
)

__all__ = ["app", "create_app", "main"]

_lifecycle_logger = logging.getLogger("commerce_sync.lifecycle")


def _initialize_lifecycle_state(app: FastAPI) -> None:
    app.state.inflight_requests = 0
    app.state.requests_drained = asyncio.Event()
    app.state.requests_drained.set()
    app.state.shutdown_requested = asyncio.Event()
    app.state.shutdown_signal = None
    app.state.session_started_at = datetime.now(UTC)


def _handle_shutdown_signal(app: FastAPI, signum: int) -> None:
    if app.state.shutdown_requested.is_set():
        return

    app.state.shutdown_signal = signal.Signals(signum).name
    app.state.shutdown_requested.set()
    _lifecycle_logger.warning(
        "shutdown_signal_received",
        extra={"signal": app.state.shutdown_signal},
    )


async def _wait_for_inflight_requests(app: FastAPI, *, timeout_seconds: int) -> bool:
    if app.state.inflight_requests <= 0:
        return True

    try:
        await asyncio.wait_for(
            app.state.requests_drained.wait(), timeout=timeout_seconds
        )
    except TimeoutError:
        return False

    return True


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    _initialize_lifecycle_state(app)

    orchestrator = OrchestratorServices.from_settings(settings)
    scheduler_service = SchedulerService.from_settings(settings)
    sync_pipeline_service = SyncPipelineService(
        scheduler=scheduler_service,
        settings=settings,
        services=orchestrator,
    )
    set_sync_pipeline_service(sync_pipeline_service)
    app.state.orchestrator = orchestrator
    app.state.scheduler_service = scheduler_service
    app.state.sync_pipeline_service = sync_pipeline_service

    previous_handlers: dict[signal.Signals, Any] = {}
    for handled_signal in (signal.SIGTERM, signal.SIGINT):
        previous_handlers[handled_signal] = signal.getsignal(handled_signal)

        def _signal_handler(signum: int, frame: object | None) -> None:
            _handle_shutdown_signal(app, signum)
            previous_handler = previous_handlers[signal.Signals(signum)]
            if callable(previous_handler):
                previous_handler(signum, frame)

        signal.signal(handled_signal, _signal_handler)

    await initialize_database()
    await run_startup_database_health_check()
    interrupted_runs = await sync_pipeline_service.recover_interrupted_runs(
        reason="Interrupted by process restart"
    )
    watchdog_result = await orchestrator.watchdog.reclaim_stale_jobs()
    stats = await orchestrator.store.count_by_status()
    _lifecycle_logger.info(
        "startup_recovery_summary",
        extra={
            "interrupted_runs": interrupted_runs,
            "stale_jobs_reclaimed": watchdog_result.cleaned,
            "pending_jobs": stats.pending,
            "failed_jobs": stats.failed,
            "dead_letter_jobs": stats.dead_letter,
            "shops": settings.shop_names,
        },
    )
    sync_pipeline_service.register_jobs()
    await scheduler_service.start()

    try:
        yield
    finally:
        graceful_shutdown = await _wait_for_inflight_requests(
            app,
            timeout_seconds=settings.SHUTDOWN_GRACE_PERIOD_SECONDS,
        )
        await scheduler_service.shutdown()
        runs_marked_interrupted = await sync_pipeline_service.recover_interrupted_runs(
            reason="Interrupted by shutdown"
        )
        _lifecycle_logger.info(
            "shutdown_summary",
            extra={
                "runs_marked_interrupted": runs_marked_interrupted,
                "graceful_shutdown": graceful_shutdown,
                "forced_timeout": not graceful_shutdown,
                "inflight_requests": app.state.inflight_requests,
                "signal": app.state.shutdown_signal,
            },
        )
        for handled_signal, previous_handler in previous_handlers.items():
            signal.signal(handled_signal, previous_handler)
        await close_database()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings)

    app = FastAPI(title="Commerce Sync Orchestrator", lifespan=lifespan)
    _initialize_lifecycle_state(app)

    @app.middleware("http")
    async def track_inflight_requests(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        app.state.inflight_requests = (
            int(getattr(app.state, "inflight_requests", 0)) + 1
        )
        requests_drained = getattr(app.state, "requests_drained", None)
        if requests_drained is None:
            requests_drained = asyncio.Event()
            app.state.requests_drained = requests_drained
        requests_drained.clear()
        try:
            response = await call_next(request)
        finally:
            app.state.inflight_requests = max(0, app.state.inflight_requests - 1)
            if app.state.inflight_requests == 0:
                requests_drained.set()
        return response

    app.state.settings = settings
    add_request_logging_middleware(app)
    app.include_router(orchestrator_router)
    app.include_router(jobs_router)
    app.include_router(scheduler_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "commerce_sync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=False,
    )
