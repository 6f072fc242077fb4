"""Tests for scheduled orchestrator jobs and their run history."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from commerce_sync.config import Settings
from commerce_sync.models import Base, OrchestratorRun, SyncObjectType
from commerce_sync.services.dispatcher import DispatchResult
from commerce_sync.services.job_creator import GapFillResult
from commerce_sync.services.job_store import SyncJobStats
from commerce_sync.services.scheduler import SchedulerService
from commerce_sync.services.sync_pipeline import (
    DAILY_GAP_FILL_JOB_ID,
    DISPATCH_JOB_ID,
    FAILED_JOB_VALIDATION_JOB_ID,
    WATCHDOG_JOB_ID,
    SyncPipelineService,
    run_scheduled_dispatch_job,
    set_sync_pipeline_service,
)
from commerce_sync.services.watchdog import WatchdogResult

SessionScopeFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


async def _build_session_scope(tmp_path: Path) -> SessionScopeFactory:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'sync-pipeline.sqlite'}"
    engine = create_async_engine(database_url)
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )

    @asynccontextmanager
    async def scoped_session() -> AsyncIterator[AsyncSession]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    return scoped_session


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "DATABASE_URL": "sqlite+aiosqlite:///./unused.sqlite",
        "SECRET_KEY": "test-secret",
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


class _FakeDispatcher:
    def __init__(self) -> None:
        self.calls = 0

    async def run(self) -> DispatchResult:
        self.calls += 1
        return DispatchResult(
            complete=False,
            message="Processed 0 jobs - 4 remaining",
            stats=SyncJobStats(pending=4, completed=2),
            duration_seconds=0.1,
            rounds=1,
        )


class _BlockingWatchdog:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def reclaim_stale_jobs(self) -> WatchdogResult:
        self.started.set()
        await self.release.wait()
        return WatchdogResult(cleaned=2, jobs=(), timestamp=datetime.now(UTC))


class _FailingValidator:
    async def validate(self) -> None:
        raise RuntimeError("upstream unavailable")


class _RecordingGapFill:
    def __init__(self) -> None:
        self.calls: list[tuple[date, date, SyncObjectType]] = []

    async def fill_all(
        self, start_date: date, end_date: date, object_type: SyncObjectType
    ) -> GapFillResult:
        self.calls.append((start_date, end_date, object_type))
        return GapFillResult(
            complete=True,
            message="Created 3 jobs",
            expected=3,
            existing=0,
            created=3,
            remaining=0,
        )


@dataclass
class _FakeServices:
    dispatcher: _FakeDispatcher = field(default_factory=_FakeDispatcher)
    watchdog: _BlockingWatchdog = field(default_factory=_BlockingWatchdog)
    validator: _FailingValidator = field(default_factory=_FailingValidator)
    gap_fill: _RecordingGapFill = field(default_factory=_RecordingGapFill)


async def _pipeline(
    tmp_path: Path,
    *,
    enabled: bool = True,
    **settings_overrides: object,
) -> tuple[SyncPipelineService, _FakeServices, SessionScopeFactory, SchedulerService]:
    scoped_session = await _build_session_scope(tmp_path)
    services = _FakeServices()
    scheduler = SchedulerService(
        enabled=enabled,
        jobstore_url=f"sqlite:///{tmp_path / 'scheduler-jobs.sqlite'}",
    )
    pipeline = SyncPipelineService(
        scheduler=scheduler,
        settings=_settings(**settings_overrides),
        services=services,  # type: ignore[arg-type]
        session_factory=scoped_session,
        today_factory=lambda: date(2025, 3, 10),
    )
    return pipeline, services, scoped_session, scheduler


async def _runs(scoped_session: SessionScopeFactory) -> list[OrchestratorRun]:
    async with scoped_session() as session:
        rows = await session.scalars(
            select(OrchestratorRun).order_by(OrchestratorRun.started_at.asc())
        )
        return list(rows)


@pytest.mark.asyncio
async def test_register_jobs_schedules_all_recurring_jobs(tmp_path: Path) -> None:
    pipeline, _, _, scheduler = await _pipeline(
        tmp_path, SCHEDULER_VALIDATION_CRON_HOUR=3
    )

    pipeline.register_jobs()

    jobs = {job.job_id: job for job in scheduler.list_jobs()}
    assert set(jobs) == {
        DISPATCH_JOB_ID,
        WATCHDOG_JOB_ID,
        FAILED_JOB_VALIDATION_JOB_ID,
        DAILY_GAP_FILL_JOB_ID,
    }
    assert "interval" in jobs[DISPATCH_JOB_ID].trigger.lower()
    assert "hour='3'" in jobs[FAILED_JOB_VALIDATION_JOB_ID].trigger


@pytest.mark.asyncio
async def test_register_jobs_is_a_no_op_when_scheduler_disabled(tmp_path: Path) -> None:
    pipeline, _, _, scheduler = await _pipeline(tmp_path, enabled=False)

    pipeline.register_jobs()

    assert scheduler.enabled is False


@pytest.mark.asyncio
async def test_dispatch_job_persists_a_successful_run(tmp_path: Path) -> None:
    pipeline, services, scoped_session, _ = await _pipeline(tmp_path)
    set_sync_pipeline_service(pipeline)

    await run_scheduled_dispatch_job()

    assert services.dispatcher.calls == 1
    (run,) = await _runs(scoped_session)
    assert run.job_id == DISPATCH_JOB_ID
    assert run.status == "success"
    assert run.finished_at is not None
    assert run.summary == {
        "complete": False,
        "processed": 0,
        "failed": 0,
        "pending": 4,
        "rounds": 1,
    }
    metrics = {item.job_id: item for item in pipeline.monitoring_snapshot()}
    assert metrics[DISPATCH_JOB_ID].successful_runs == 1
    assert metrics[DISPATCH_JOB_ID].running is False


@pytest.mark.asyncio
async def test_overlapping_triggers_are_skipped(tmp_path: Path) -> None:
    pipeline, services, scoped_session, _ = await _pipeline(tmp_path)

    first = asyncio.create_task(pipeline.run_watchdog_job())
    await services.watchdog.started.wait()
    await pipeline.run_watchdog_job()
    services.watchdog.release.set()
    await first

    metrics = {item.job_id: item for item in pipeline.monitoring_snapshot()}
    assert metrics[WATCHDOG_JOB_ID].overlap_skips == 1
    assert metrics[WATCHDOG_JOB_ID].total_runs == 1
    (run,) = await _runs(scoped_session)
    assert run.items_processed == 2


@pytest.mark.asyncio
async def test_failed_job_run_is_recorded_without_raising(tmp_path: Path) -> None:
    pipeline, _, scoped_session, _ = await _pipeline(tmp_path)

    await pipeline.run_failed_job_validation()

    (run,) = await _runs(scoped_session)
    assert run.status == "failed"
    assert run.error_message == "upstream unavailable"
    metrics = {item.job_id: item for item in pipeline.monitoring_snapshot()}
    assert metrics[FAILED_JOB_VALIDATION_JOB_ID].failed_runs == 1
    assert metrics[FAILED_JOB_VALIDATION_JOB_ID].last_error == "upstream unavailable"


@pytest.mark.asyncio
async def test_daily_gap_fill_backfills_yesterday_per_object_type(
    tmp_path: Path,
) -> None:
    pipeline, services, scoped_session, _ = await _pipeline(
        tmp_path, DAILY_SYNC_OBJECT_TYPES=["orders", "refunds"]
    )

    await pipeline.run_daily_gap_fill()

    yesterday = date(2025, 3, 9)
    assert services.gap_fill.calls == [
        (yesterday, yesterday, SyncObjectType.ORDERS),
        (yesterday, yesterday, SyncObjectType.REFUNDS),
    ]
    (run,) = await _runs(scoped_session)
    assert run.summary == {"date": "2025-03-09", "created": 6, "remaining": 0}


@pytest.mark.asyncio
async def test_recover_interrupted_runs_marks_running_rows_failed(
    tmp_path: Path,
) -> None:
    pipeline, _, scoped_session, _ = await _pipeline(tmp_path)
    async with scoped_session() as session:
        session.add(
            OrchestratorRun(job_id=DISPATCH_JOB_ID, job_name="Continue", status="running")
        )

    recovered = await pipeline.recover_interrupted_runs(
        reason="Interrupted by process restart"
    )

    assert recovered == 1
    (run,) = await _runs(scoped_session)
    assert run.status == "failed"
    assert run.error_message == "Interrupted by process restart"
    assert await pipeline.recover_interrupted_runs(reason="again") == 0
