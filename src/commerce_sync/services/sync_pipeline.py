"""Scheduled orchestrator jobs: dispatch, watchdog, validation and daily backfill."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime, timedelta
from time import perf_counter
from typing import Any
from uuid import UUID

from sqlalchemy import update

from commerce_sync.config import Settings
from commerce_sync.models import OrchestratorRun, SyncObjectType
from commerce_sync.services.job_store import SessionScopeFactory
from commerce_sync.services.orchestrator import OrchestratorServices
from commerce_sync.services.scheduler import ScheduledJobSpec, SchedulerService

_job_logger = logging.getLogger("commerce_sync.scheduler.jobs")

_pipeline_service: SyncPipelineService | None = None

DISPATCH_JOB_ID = "continue-orchestrator-job"
WATCHDOG_JOB_ID = "watchdog-cleanup-job"
FAILED_JOB_VALIDATION_JOB_ID = "validate-failed-jobs-job"
DAILY_GAP_FILL_JOB_ID = "daily-gap-fill-job"

DEFAULT_RUN_TIMEOUT_SECONDS = 900


@dataclass(slots=True)
class JobRunMetrics:
    """In-memory runtime metrics for one scheduled job."""

    job_id: str
    name: str
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    overlap_skips: int = 0
    running: bool = False
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_duration_ms: float | None = None
    last_error: str | None = None


@dataclass(slots=True, frozen=True)
class JobRunResult:
    """Summary persisted to the orchestrator run history."""

    summary: dict[str, Any]
    items_processed: int


class _OverlapProtectedRunner:
    """Skip a trigger while the previous run of the same job is in flight."""

    def __init__(
        self,
        *,
        session_factory: SessionScopeFactory,
        timeout_seconds: float = DEFAULT_RUN_TIMEOUT_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._timeout_seconds = timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._metrics: dict[str, JobRunMetrics] = {}

    def register(self, *, job_id: str, name: str) -> None:
        self._locks.setdefault(job_id, asyncio.Lock())
        self._metrics.setdefault(job_id, JobRunMetrics(job_id=job_id, name=name))

    def snapshot(self) -> list[JobRunMetrics]:
        return [replace(metrics) for metrics in self._metrics.values()]

    async def run(
        self,
        *,
        job_id: str,
        run: Callable[[], Awaitable[JobRunResult]],
    ) -> None:
        lock = self._locks[job_id]
        metrics = self._metrics[job_id]
        if lock.locked():
            metrics.overlap_skips += 1
            _job_logger.warning("scheduler_job_overlap_skipped", extra={"job_id": job_id})
            return

        async with lock:
            metrics.total_runs += 1
            metrics.running = True
            metrics.last_started_at = datetime.now(UTC)
            started_at = perf_counter()
            run_id = await self._start_run(job_id=job_id, name=metrics.name)
            try:
                async with asyncio.timeout(self._timeout_seconds):
                    job_result = await run()
                metrics.successful_runs += 1
                metrics.last_error = None
                _job_logger.info(
                    "scheduler_pipeline_job_completed",
                    extra={"job_id": job_id, **job_result.summary},
                )
                await self._finish_run(
                    run_id,
                    status="success",
                    items_processed=job_result.items_processed,
                    summary=job_result.summary,
                    error_message=None,
                )
            except Exception as error:
                metrics.failed_runs += 1
                metrics.last_error = str(error)
                _job_logger.exception(
                    "scheduler_pipeline_job_failed", extra={"job_id": job_id}
                )
                await self._finish_run(
                    run_id,
                    status="failed",
                    items_processed=0,
                    summary=None,
                    error_message=str(error)[:2048],
                )
            finally:
                metrics.running = False
                metrics.last_finished_at = datetime.now(UTC)
                metrics.last_duration_ms = round((perf_counter() - started_at) * 1000, 2)

    async def _start_run(self, *, job_id: str, name: str) -> UUID:
        orchestrator_run = OrchestratorRun(job_id=job_id, job_name=name, status="running")
        async with self._session_factory() as session:
            session.add(orchestrator_run)
            await session.flush()
            return orchestrator_run.id

    async def _finish_run(
        self,
        run_id: UUID,
        *,
        status: str,
        items_processed: int,
        summary: dict[str, Any] | None,
        error_message: str | None,
    ) -> None:
        async with self._session_factory() as session:
            orchestrator_run = await session.get(OrchestratorRun, run_id)
            if orchestrator_run is None:
                return
            orchestrator_run.status = status
            orchestrator_run.finished_at = datetime.now(UTC)
            orchestrator_run.items_processed = items_processed
            orchestrator_run.summary = summary
            orchestrator_run.error_message = error_message


class SyncPipelineService:
    """Register and run the orchestrator's recurring jobs."""

    def __init__(
        self,
        *,
        scheduler: SchedulerService,
        settings: Settings,
        services: OrchestratorServices,
        session_factory: SessionScopeFactory | None = None,
        today_factory: Callable[[], date] | None = None,
    ) -> None:
        if session_factory is None:
            from commerce_sync.database import session_scope

            session_factory = session_scope

        self._scheduler = scheduler
        self._settings = settings
        self._services = services
        self._session_factory = session_factory
        self._today_factory = today_factory or (lambda: datetime.now(UTC).date())
        self._runner = _OverlapProtectedRunner(session_factory=session_factory)
        self._runner.register(job_id=DISPATCH_JOB_ID, name="Continue Orchestrator")
        self._runner.register(job_id=WATCHDOG_JOB_ID, name="Watchdog Cleanup")
        self._runner.register(
            job_id=FAILED_JOB_VALIDATION_JOB_ID, name="Validate Failed Jobs"
        )
        self._runner.register(job_id=DAILY_GAP_FILL_JOB_ID, name="Daily Gap Fill")

    def job_specs(self) -> list[ScheduledJobSpec]:
        return [
            ScheduledJobSpec(
                job_id=DISPATCH_JOB_ID,
                name="Continue orchestrator",
                func=run_scheduled_dispatch_job,
                interval_seconds=self._settings.SCHEDULER_DISPATCH_INTERVAL_SECONDS,
            ),
            ScheduledJobSpec(
                job_id=WATCHDOG_JOB_ID,
                name="Watchdog cleanup",
                func=run_scheduled_watchdog_job,
                interval_seconds=self._settings.SCHEDULER_WATCHDOG_INTERVAL_SECONDS,
            ),
            ScheduledJobSpec(
                job_id=FAILED_JOB_VALIDATION_JOB_ID,
                name="Validate failed jobs",
                func=run_scheduled_failed_job_validation,
                cron={
                    "hour": str(self._settings.SCHEDULER_VALIDATION_CRON_HOUR),
                    "minute": "0",
                },
            ),
            ScheduledJobSpec(
                job_id=DAILY_GAP_FILL_JOB_ID,
                name="Daily gap fill",
                func=run_scheduled_daily_gap_fill,
                cron={
                    "hour": str(self._settings.SCHEDULER_DAILY_GAP_FILL_CRON_HOUR),
                    "minute": "0",
                },
            ),
        ]

    def register_jobs(self) -> None:
        if not self._scheduler.enabled:
            return
        for spec in self.job_specs():
            self._scheduler.schedule(spec)

    def monitoring_snapshot(self) -> list[JobRunMetrics]:
        return self._runner.snapshot()

    async def recover_interrupted_runs(self, *, reason: str) -> int:
        """Mark runs left ``running`` by a previous process as failed."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(OrchestratorRun)
                .where(OrchestratorRun.status == "running")
                .values(
                    status="failed",
                    finished_at=datetime.now(UTC),
                    error_message=reason,
                )
                .execution_options(synchronize_session=False)
            )
            recovered = int(result.rowcount or 0)

        if recovered:
            _job_logger.warning(
                "interrupted_runs_marked_failed",
                extra={"recovered": recovered, "reason": reason},
            )
        return recovered

    async def run_dispatch_job(self) -> None:
        await self._runner.run(job_id=DISPATCH_JOB_ID, run=self._dispatch)

    async def run_watchdog_job(self) -> None:
        await self._runner.run(job_id=WATCHDOG_JOB_ID, run=self._watchdog)

    async def run_failed_job_validation(self) -> None:
        await self._runner.run(
            job_id=FAILED_JOB_VALIDATION_JOB_ID, run=self._validate_failed_jobs
        )

    async def run_daily_gap_fill(self) -> None:
        await self._runner.run(job_id=DAILY_GAP_FILL_JOB_ID, run=self._daily_gap_fill)

    async def _dispatch(self) -> JobRunResult:
        result = await self._services.dispatcher.run()
        return JobRunResult(
            summary={
                "complete": result.complete,
                "processed": result.processed,
                "failed": result.failed,
                "pending": result.stats.pending,
                "rounds": result.rounds,
            },
            items_processed=result.processed,
        )

    async def _watchdog(self) -> JobRunResult:
        result = await self._services.watchdog.reclaim_stale_jobs()
        return JobRunResult(
            summary={"cleaned": result.cleaned}, items_processed=result.cleaned
        )

    async def _validate_failed_jobs(self) -> JobRunResult:
        summary = await self._services.validator.validate()
        return JobRunResult(
            summary={
                "total": summary.total,
                "updated": summary.updated,
                "real_failures": summary.real_failures,
                "lookup_errors": summary.lookup_errors,
            },
            items_processed=summary.total,
        )

    async def _daily_gap_fill(self) -> JobRunResult:
        yesterday = self._today_factory() - timedelta(days=1)
        created = 0
        remaining = 0
        for object_type_name in self._settings.DAILY_SYNC_OBJECT_TYPES:
            result = await self._services.gap_fill.fill_all(
                yesterday, yesterday, SyncObjectType(object_type_name)
            )
            created += result.created
            remaining += result.remaining
        return JobRunResult(
            summary={
                "date": yesterday.isoformat(),
                "created": created,
                "remaining": remaining,
            },
            items_processed=created,
        )


def set_sync_pipeline_service(service: SyncPipelineService) -> None:
    global _pipeline_service
    _pipeline_service = service


def _require_pipeline_service() -> SyncPipelineService:
    if _pipeline_service is None:
        raise RuntimeError("Sync pipeline service is not initialized")
    return _pipeline_service


async def run_scheduled_dispatch_job() -> None:
    await _require_pipeline_service().run_dispatch_job()


async def run_scheduled_watchdog_job() -> None:
    await _require_pipeline_service().run_watchdog_job()


async def run_scheduled_failed_job_validation() -> None:
    await _require_pipeline_service().run_failed_job_validation()


async def run_scheduled_daily_gap_fill() -> None:
    await _require_pipeline_service().run_daily_gap_fill()


__all__ = [
    "DAILY_GAP_FILL_JOB_ID",
    "DISPATCH_JOB_ID",
    "FAILED_JOB_VALIDATION_JOB_ID",
    "JobRunMetrics",
    "JobRunResult",
    "SyncPipelineService",
    "WATCHDOG_JOB_ID",
    "run_scheduled_daily_gap_fill",
    "run_scheduled_dispatch_job",
    "run_scheduled_failed_job_validation",
    "run_scheduled_watchdog_job",
    "set_sync_pipeline_service",
]
