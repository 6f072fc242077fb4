"""Tests for the time-bounded sync job dispatcher."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date
from math import ceil
from pathlib import Path
from time import perf_counter
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from commerce_sync.models import Base, SyncJobStatus, SyncObjectType
from commerce_sync.services.dispatcher import (
    DispatchOutcome,
    SyncDispatcher,
    concurrency_limit_for,
    drive_to_completion,
)
from commerce_sync.services.executors import SyncExecutionResult
from commerce_sync.services.job_store import SyncJobKey, SyncJobRecord, SyncJobStore

SessionScopeFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

SHOPS = ["alpha.myshopify.com", "beta.myshopify.com", "gamma.myshopify.com"]


async def _build_session_scope(tmp_path: Path) -> SessionScopeFactory:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatcher.sqlite'}"
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


async def _no_sleep(_: float) -> None:
    return None


class _RecordingExecutor:
    def __init__(
        self,
        *,
        failing_shops: frozenset[str] = frozenset(),
        records: int = 10,
    ) -> None:
        self._failing_shops = failing_shops
        self._records = records
        self.in_flight = 0
        self.max_in_flight = 0
        self.executed: list[SyncJobRecord] = []

    async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.executed.append(job)
            if job.shop in self._failing_shops:
                return SyncExecutionResult(
                    success=False, error_message="Sync worker failed (502) bad gateway"
                )
            return SyncExecutionResult(success=True, records_processed=self._records)
        finally:
            self.in_flight -= 1


def _keys(
    days: list[date],
    object_type: SyncObjectType = SyncObjectType.ORDERS,
    shops: list[str] = SHOPS,
) -> list[SyncJobKey]:
    return [
        SyncJobKey(start_date=day, shop=shop, object_type=object_type)
        for day in days
        for shop in shops
    ]


def _dispatcher(
    store: SyncJobStore,
    executor: object,
    **overrides: object,
) -> SyncDispatcher:
    options: dict[str, object] = {
        "batch_size": 20,
        "round_delay_seconds": 0.0,
        "sleep": _no_sleep,
    }
    options.update(overrides)
    return SyncDispatcher(store=store, executor=executor, **options)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_three_shops_two_days_complete_in_two_rounds(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    created = await store.insert_if_absent(_keys([date(2025, 1, 1), date(2025, 1, 2)]))
    executor = _RecordingExecutor()

    result = await _dispatcher(store, executor).run()

    assert created == 6
    assert result.complete is True
    assert result.message == "All jobs processed!"
    assert result.rounds <= 2
    assert result.succeeded == 6
    assert result.stats.pending == 0
    assert result.stats.completed == 6
    assert executor.max_in_flight == 3

    completed = await store.list_by_status(SyncJobStatus.COMPLETED)
    assert all(job.records_processed == 10 for job in completed)
    assert all(job.attempts == 1 for job in completed)
    assert all(job.completed_at is not None for job in completed)


@pytest.mark.asyncio
async def test_empty_queue_reports_complete_without_rounds(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))

    result = await _dispatcher(store, _RecordingExecutor()).run()

    assert result.complete is True
    assert result.message == "All jobs processed!"
    assert result.rounds == 0
    assert result.processed == 0


@pytest.mark.asyncio
async def test_sku_batches_run_one_shop_at_a_time(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(_keys([date(2025, 1, 1)], SyncObjectType.SKUS))
    executor = _RecordingExecutor()

    result = await _dispatcher(store, executor).run()

    assert executor.max_in_flight == 1
    assert result.rounds == 3
    assert result.complete is True


def test_concurrency_limit_follows_dominant_object_type() -> None:
    def record(object_type: SyncObjectType) -> SyncJobRecord:
        return SyncJobRecord(
            id=uuid4(),
            shop="alpha.myshopify.com",
            object_type=object_type,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 1),
            status=SyncJobStatus.PENDING,
            attempts=0,
            records_processed=0,
            error_message=None,
            started_at=None,
            completed_at=None,
        )

    assert concurrency_limit_for([]) == 1
    assert concurrency_limit_for([record(SyncObjectType.ORDERS)] * 3) == 3
    assert (
        concurrency_limit_for(
            [record(SyncObjectType.SKUS)] * 2 + [record(SyncObjectType.ORDERS)]
        )
        == 1
    )
    assert (
        concurrency_limit_for(
            [record(SyncObjectType.SKUS), record(SyncObjectType.ORDERS)]
        )
        == 1
    )


@pytest.mark.asyncio
async def test_one_failing_shop_does_not_block_the_others(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(_keys([date(2025, 1, 1), date(2025, 1, 2)]))
    executor = _RecordingExecutor(failing_shops=frozenset({"beta.myshopify.com"}))

    result = await _dispatcher(store, executor).run()

    assert result.complete is True
    assert result.succeeded == 4
    assert result.failed == 2
    assert result.stats.failed == 2
    failed = await store.list_by_status(SyncJobStatus.FAILED)
    assert {job.shop for job in failed} == {"beta.myshopify.com"}
    assert all(
        job.error_message == "Sync worker failed (502) bad gateway" for job in failed
    )


@pytest.mark.asyncio
async def test_time_budget_returns_early_with_remaining_work(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(_keys([date(2025, 1, 1), date(2025, 1, 2)]))
    elapsed = [0.0]

    class _SlowExecutor(_RecordingExecutor):
        async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
            elapsed[0] += 50.0
            return await super().execute(job)

    result = await _dispatcher(
        store,
        _SlowExecutor(),
        time_budget_seconds=120.0,
        clock=lambda: elapsed[0],
    ).run()

    assert result.budget_exhausted is True
    assert result.complete is False
    assert result.rounds == 1
    assert result.processed == 3
    assert result.stats.pending == 3
    assert result.message == "Processed 3 jobs - 3 remaining"


@pytest.mark.asyncio
async def test_partial_progress_requeues_job_as_pending(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(_keys([date(2025, 1, 1)], shops=SHOPS[:1]))

    class _PartialExecutor:
        async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
            return SyncExecutionResult(success=True, records_processed=250, complete=False)

    result = await _dispatcher(store, _PartialExecutor()).run()

    assert result.results[0].outcome is DispatchOutcome.REQUEUED
    assert result.complete is False
    (job,) = await store.list_by_status(SyncJobStatus.PENDING)
    assert job.records_processed == 250
    assert job.started_at is None
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_raising_and_hanging_executors_mark_jobs_failed(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(_keys([date(2025, 1, 1)], shops=SHOPS[:2]))

    class _BrokenExecutor:
        async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
            if job.shop == SHOPS[0]:
                raise RuntimeError("worker exploded")
            await asyncio.sleep(10)
            return SyncExecutionResult(success=True)

    result = await _dispatcher(
        store, _BrokenExecutor(), execution_timeout_seconds=0.05
    ).run()

    assert result.failed == 2
    failed = {job.shop: job for job in await store.list_by_status(SyncJobStatus.FAILED)}
    assert failed[SHOPS[0]].error_message == "worker exploded"
    assert failed[SHOPS[1]].error_message == "Execution timed out after 0.05s"


@pytest.mark.asyncio
async def test_drive_to_completion_converges_within_batch_bound(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    shops = [f"shop-{index}.myshopify.com" for index in range(7)]
    await store.insert_if_absent(_keys([date(2025, 1, 1)], shops=shops))
    batch_size = 3

    drive = await drive_to_completion(
        _dispatcher(store, _RecordingExecutor(), batch_size=batch_size),
        max_iterations=10,
    )

    assert drive.complete is True
    assert drive.iterations <= ceil(7 / batch_size)
    assert (await store.count_by_status()).completed == 7


@pytest.mark.asyncio
async def test_dependency_enforcement_skips_jobs_with_unfinished_prerequisites(
    tmp_path: Path,
) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(
        _keys([date(2025, 1, 1)], SyncObjectType.SKUS, shops=SHOPS[:1])
    )

    result = await _dispatcher(
        store, _RecordingExecutor(), enforce_dependencies=True
    ).run()

    assert result.skipped == 1
    assert result.stats.pending == 1
    (job,) = await store.list_by_status(SyncJobStatus.PENDING)
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_jobs_for_a_shop_and_day_run_after_their_prerequisites(
    tmp_path: Path,
) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    days = [date(2025, 1, 1), date(2025, 1, 2)]
    for object_type in sorted(
        SyncObjectType, key=lambda item: item.dispatch_rank, reverse=True
    ):
        await store.insert_if_absent(_keys(days, object_type))
    executor = _RecordingExecutor()

    drive = await drive_to_completion(
        _dispatcher(store, executor), max_iterations=10
    )

    assert drive.complete is True
    assert len(executor.executed) == len(days) * len(SHOPS) * len(SyncObjectType)
    ran: dict[tuple[str, date], set[SyncObjectType]] = {}
    for job in executor.executed:
        ran_for_window = ran.setdefault((job.shop, job.start_date), set())
        assert job.object_type.dependencies <= ran_for_window, (
            job.shop,
            job.start_date,
            job.object_type,
        )
        ran_for_window.add(job.object_type)


@pytest.mark.asyncio
async def test_rounds_that_cannot_finish_within_budget_are_not_started(
    tmp_path: Path,
) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(
        _keys([date(2025, 1, day) for day in range(1, 6)], shops=SHOPS[:1])
    )

    class _SlowExecutor:
        async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
            await asyncio.sleep(0.2)
            return SyncExecutionResult(success=True, records_processed=1)

    started_at = perf_counter()
    result = await SyncDispatcher(
        store=store,
        executor=_SlowExecutor(),
        round_delay_seconds=0.0,
        time_budget_seconds=0.3,
        execution_timeout_seconds=0.25,
    ).run()
    elapsed = perf_counter() - started_at

    assert elapsed < 0.3
    assert result.budget_exhausted is True
    assert result.rounds == 1
    assert result.succeeded == 1
    assert result.stats.pending == 4


@pytest.mark.asyncio
async def test_first_round_execution_is_capped_by_remaining_budget(
    tmp_path: Path,
) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(_keys([date(2025, 1, 1)], shops=SHOPS[:1]))

    class _HangingExecutor:
        async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
            await asyncio.sleep(10)
            return SyncExecutionResult(success=True)

    started_at = perf_counter()
    result = await SyncDispatcher(
        store=store,
        executor=_HangingExecutor(),
        time_budget_seconds=0.1,
        execution_timeout_seconds=5.0,
    ).run()

    assert perf_counter() - started_at < 1.0
    assert result.failed == 1
    (job,) = await store.list_by_status(SyncJobStatus.FAILED)
    assert job.error_message is not None
    assert job.error_message.startswith("Execution timed out after")


@pytest.mark.asyncio
async def test_store_failure_cancels_jobs_still_running_in_the_round(
    tmp_path: Path,
) -> None:
    class _LockedStore(SyncJobStore):
        async def update_status(self, *args: Any, **kwargs: Any) -> bool:
            raise RuntimeError("database is locked")

    store = _LockedStore(session_factory=await _build_session_scope(tmp_path))
    await store.insert_if_absent(_keys([date(2025, 1, 1)], shops=SHOPS[:2]))
    slow_started = asyncio.Event()
    cancelled: list[str] = []

    class _MixedExecutor:
        async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
            if job.shop == SHOPS[0]:
                await slow_started.wait()
                return SyncExecutionResult(success=True)
            slow_started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(job.shop)
                raise
            return SyncExecutionResult(success=True)

    with pytest.raises(RuntimeError, match="database is locked"):
        await _dispatcher(store, _MixedExecutor()).run()

    assert cancelled == [SHOPS[1]]
