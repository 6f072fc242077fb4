"""Time-bounded dispatcher that advances pending sync jobs in parallel rounds.

One ``run`` call makes bounded progress and returns. A supervisor (the
scheduler, ``drive_to_completion`` or an external caller) re-invokes it
until the report says ``complete``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter

from commerce_sync.models import SyncJobStatus, SyncObjectType
from commerce_sync.services.executors import SyncExecutionResult, SyncExecutor
from commerce_sync.services.job_store import SyncJobRecord, SyncJobStats, SyncJobStore
from commerce_sync.services.watchdog import WatchdogService

DEFAULT_BATCH_SIZE = 20
DEFAULT_ROUND_DELAY_SECONDS = 1.0
DEFAULT_TIME_BUDGET_SECONDS = 120.0
DEFAULT_EXECUTION_TIMEOUT_SECONDS = 110.0

SleepFunction = Callable[[float], Awaitable[None]]
ClockFunction = Callable[[], float]

_dispatcher_logger = logging.getLogger("commerce_sync.dispatcher")


class DispatchOutcome(str, Enum):
    """What happened to one job selected by the dispatcher."""

    COMPLETED = "completed"
    REQUEUED = "requeued"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class JobDispatchResult:
    """Per-job result inside one dispatcher invocation."""

    job_id: str
    shop: str
    object_type: SyncObjectType
    outcome: DispatchOutcome
    records_processed: int = 0
    error_message: str | None = None


@dataclass(slots=True, frozen=True)
class DispatchResult:
    """Report returned by one dispatcher invocation."""

    complete: bool
    message: str
    stats: SyncJobStats
    duration_seconds: float
    rounds: int = 0
    cleaned: int = 0
    budget_exhausted: bool = False
    results: tuple[JobDispatchResult, ...] = field(default_factory=tuple)

    def _count(self, outcome: DispatchOutcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    @property
    def processed(self) -> int:
        return len(self.results) - self.skipped

    @property
    def succeeded(self) -> int:
        return self._count(DispatchOutcome.COMPLETED) + self._count(
            DispatchOutcome.REQUEUED
        )

    @property
    def failed(self) -> int:
        return self._count(DispatchOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(DispatchOutcome.SKIPPED)


@dataclass(slots=True, frozen=True)
class DriveResult:
    """Outcome of repeatedly invoking the dispatcher."""

    iterations: int
    complete: bool
    last_result: DispatchResult | None


def concurrency_limit_for(jobs: list[SyncJobRecord]) -> int:
    """Parallel shop limit from the most frequent object type in the batch.

    Ties go to the type with the smaller limit.
    """

    if not jobs:
        return 1
    counts = Counter(job.object_type for job in jobs)
    dominant_type = max(
        counts,
        key=lambda object_type: (counts[object_type], -object_type.max_parallel_shops),
    )
    return dominant_type.max_parallel_shops


def group_by_shop(jobs: list[SyncJobRecord]) -> dict[str, deque[SyncJobRecord]]:
    queues: dict[str, deque[SyncJobRecord]] = {}
    for job in jobs:
        queues.setdefault(job.shop, deque()).append(job)
    return queues


class SyncDispatcher:
    """Select, claim, execute and record one batch of pending jobs."""

    def __init__(
        self,
        *,
        store: SyncJobStore,
        executor: SyncExecutor,
        watchdog: WatchdogService | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        round_delay_seconds: float = DEFAULT_ROUND_DELAY_SECONDS,
        time_budget_seconds: float = DEFAULT_TIME_BUDGET_SECONDS,
        execution_timeout_seconds: float = DEFAULT_EXECUTION_TIMEOUT_SECONDS,
        enforce_dependencies: bool = False,
        sleep: SleepFunction = asyncio.sleep,
        clock: ClockFunction = perf_counter,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than zero")
        if round_delay_seconds < 0:
            raise ValueError("round_delay_seconds must be zero or greater")
        if time_budget_seconds <= 0:
            raise ValueError("time_budget_seconds must be greater than zero")
        if execution_timeout_seconds <= 0:
            raise ValueError("execution_timeout_seconds must be greater than zero")

        self._store = store
        self._executor = executor
        self._watchdog = watchdog
        self._batch_size = batch_size
        self._round_delay_seconds = round_delay_seconds
        self._time_budget_seconds = time_budget_seconds
        self._execution_timeout_seconds = execution_timeout_seconds
        self._enforce_dependencies = enforce_dependencies
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        *,
        object_type: SyncObjectType | None = None,
        shop: str | None = None,
    ) -> DispatchResult:
        started_at = self._clock()

        cleaned = 0
        if self._watchdog is not None:
            cleaned = (await self._watchdog.reclaim_stale_jobs()).cleaned

        batch = await self._store.list_by_status(
            SyncJobStatus.PENDING,
            object_type=object_type,
            shop=shop,
            limit=self._batch_size,
        )
        if not batch:
            stats = await self._store.count_by_status()
            _dispatcher_logger.info(
                "dispatcher_no_pending_jobs",
                extra={"object_type": object_type.value if object_type else None},
            )
            return DispatchResult(
                complete=True,
                message="All jobs processed!",
                stats=stats,
                duration_seconds=self._elapsed(started_at),
                cleaned=cleaned,
            )

        queues = group_by_shop(batch)
        limit = concurrency_limit_for(batch)
        _dispatcher_logger.info(
            "dispatcher_batch_selected",
            extra={
                "jobs": len(batch),
                "shops": len(queues),
                "concurrency_limit": limit,
            },
        )

        results: list[JobDispatchResult] = []
        rounds = 0
        budget_exhausted = False
        while queues:
            remaining_budget = self._time_budget_seconds - (self._clock() - started_at)
            if rounds > 0 and remaining_budget < self._execution_timeout_seconds:
                budget_exhausted = True
                _dispatcher_logger.warning(
                    "dispatcher_time_budget_exhausted",
                    extra={
                        "rounds": rounds,
                        "remaining_budget_seconds": round(remaining_budget, 2),
                        "unstarted_jobs": sum(len(queue) for queue in queues.values()),
                    },
                )
                break

            rounds += 1
            round_timeout = max(
                0.0, min(self._execution_timeout_seconds, remaining_budget)
            )
            round_shops = list(queues)[:limit]
            round_jobs = [queues[round_shop].popleft() for round_shop in round_shops]
            results.extend(await self._run_round(round_jobs, round_timeout))
            for round_shop in round_shops:
                if not queues[round_shop]:
                    del queues[round_shop]

            _dispatcher_logger.info(
                "dispatcher_round_completed",
                extra={
                    "round": rounds,
                    "jobs": len(round_jobs),
                    "remaining_shops": len(queues),
                },
            )
            if queues and self._round_delay_seconds > 0:
                await self._sleep(self._round_delay_seconds)

        stats = await self._store.count_by_status()
        complete = stats.pending == 0
        result = DispatchResult(
            complete=complete,
            message=(
                "All jobs processed!"
                if complete
                else f"Processed {len(results)} jobs - {stats.pending} remaining"
            ),
            stats=stats,
            duration_seconds=self._elapsed(started_at),
            rounds=rounds,
            cleaned=cleaned,
            budget_exhausted=budget_exhausted,
            results=tuple(results),
        )
        _dispatcher_logger.info(
            "dispatcher_invocation_completed",
            extra={
                "complete": result.complete,
                "processed": result.processed,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
                "rounds": rounds,
                "pending": stats.pending,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def _run_round(
        self,
        jobs: list[SyncJobRecord],
        timeout_seconds: float,
    ) -> list[JobDispatchResult]:
        try:
            async with asyncio.TaskGroup() as task_group:
                tasks = [
                    task_group.create_task(self._dispatch_job(job, timeout_seconds))
                    for job in jobs
                ]
        except ExceptionGroup as error_group:
            raise error_group.exceptions[0] from error_group
        return [task.result() for task in tasks]

    async def _dispatch_job(
        self, job: SyncJobRecord, timeout_seconds: float
    ) -> JobDispatchResult:
        if self._enforce_dependencies and not await self._dependencies_met(job):
            return self._job_result(job, DispatchOutcome.SKIPPED)

        if not await self._store.claim(job.id):
            _dispatcher_logger.info(
                "dispatcher_claim_lost", extra={"job_id": str(job.id)}
            )
            return self._job_result(job, DispatchOutcome.SKIPPED)

        try:
            async with asyncio.timeout(timeout_seconds):
                execution = await self._executor.execute(job)
        except TimeoutError:
            execution = SyncExecutionResult(
                success=False,
                error_message=(
                    f"Execution timed out after {round(timeout_seconds, 2):g}s"
                ),
            )
        except Exception as error:
            _dispatcher_logger.exception(
                "dispatcher_job_execution_raised", extra={"job_id": str(job.id)}
            )
            execution = SyncExecutionResult(success=False, error_message=str(error))

        return await self._record(job, execution)

    async def _record(
        self,
        job: SyncJobRecord,
        execution: SyncExecutionResult,
    ) -> JobDispatchResult:
        if not execution.success:
            await self._store.update_status(
                job.id,
                SyncJobStatus.FAILED,
                expected_statuses=(SyncJobStatus.RUNNING,),
                error_message=execution.error_message or "Sync failed",
                completed_at=self._store.now(),
            )
            _dispatcher_logger.warning(
                "dispatcher_job_failed",
                extra={
                    "job_id": str(job.id),
                    "shop": job.shop,
                    "object_type": job.object_type.value,
                    "error": execution.error_message,
                },
            )
            return self._job_result(
                job,
                DispatchOutcome.FAILED,
                error_message=execution.error_message,
            )

        if not execution.complete:
            await self._store.update_status(
                job.id,
                SyncJobStatus.PENDING,
                expected_statuses=(SyncJobStatus.RUNNING,),
                records_processed=execution.records_processed,
                started_at=None,
            )
            return self._job_result(
                job,
                DispatchOutcome.REQUEUED,
                records_processed=execution.records_processed,
            )

        await self._store.update_status(
            job.id,
            SyncJobStatus.COMPLETED,
            expected_statuses=(SyncJobStatus.RUNNING, SyncJobStatus.FAILED),
            records_processed=execution.records_processed,
            error_message=execution.error_message,
            completed_at=self._store.now(),
        )
        return self._job_result(
            job,
            DispatchOutcome.COMPLETED,
            records_processed=execution.records_processed,
        )

    async def _dependencies_met(self, job: SyncJobRecord) -> bool:
        for dependency in job.object_type.dependencies:
            dependency_status = await self._store.status_of(
                shop=job.shop,
                start_date=job.start_date,
                object_type=dependency,
            )
            if dependency_status is not SyncJobStatus.COMPLETED:
                _dispatcher_logger.info(
                    "dispatcher_dependency_unmet",
                    extra={
                        "job_id": str(job.id),
                        "dependency": dependency.value,
                        "dependency_status": (
                            dependency_status.value if dependency_status else None
                        ),
                    },
                )
                return False
        return True

    @staticmethod
    def _job_result(
        job: SyncJobRecord,
        outcome: DispatchOutcome,
        *,
        records_processed: int = 0,
        error_message: str | None = None,
    ) -> JobDispatchResult:
        return JobDispatchResult(
            job_id=str(job.id),
            shop=job.shop,
            object_type=job.object_type,
            outcome=outcome,
            records_processed=records_processed,
            error_message=error_message,
        )

    def _elapsed(self, started_at: float) -> float:
        return round(self._clock() - started_at, 2)


async def drive_to_completion(
    dispatcher: SyncDispatcher,
    *,
    object_type: SyncObjectType | None = None,
    shop: str | None = None,
    max_iterations: int = 50,
    pause_seconds: float = 0.0,
    sleep: SleepFunction = asyncio.sleep,
) -> DriveResult:
    """Re-invoke the dispatcher until it reports complete or the cap is hit."""

    if max_iterations <= 0:
        raise ValueError("max_iterations must be greater than zero")

    last_result: DispatchResult | None = None
    for iteration in range(1, max_iterations + 1):
        last_result = await dispatcher.run(object_type=object_type, shop=shop)
        if last_result.complete:
            return DriveResult(iterations=iteration, complete=True, last_result=last_result)
        if pause_seconds > 0:
            await sleep(pause_seconds)

    _dispatcher_logger.warning(
        "dispatcher_drive_iteration_cap_reached",
        extra={
            "max_iterations": max_iterations,
            "pending": last_result.stats.pending if last_result else None,
        },
    )
    return DriveResult(
        iterations=max_iterations,
        complete=False,
        last_result=last_result,
    )


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DispatchOutcome",
    "DispatchResult",
    "DriveResult",
    "JobDispatchResult",
    "SyncDispatcher",
    "concurrency_limit_for",
    "drive_to_completion",
    "group_by_shop",
]
