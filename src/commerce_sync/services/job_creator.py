"""Batched, idempotent creation of missing sync jobs."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from sqlalchemy.exc import OperationalError

from commerce_sync.models import SyncObjectType
from commerce_sync.services.gap_detector import GapDetector
from commerce_sync.services.job_store import SyncJobKey, SyncJobStore
from commerce_sync.services.retry_policy import NO_RETRY, RetryPolicy

DEFAULT_BATCH_SIZE = 100

_creator_logger = logging.getLogger("commerce_sync.job_creator")


@dataclass(slots=True, frozen=True)
class JobCreationResult:
    """Rows inserted and keys still waiting for a later invocation."""

    created: int
    attempted: int
    remaining: int


@dataclass(slots=True, frozen=True)
class GapFillResult:
    """Combined gap detection and creation outcome."""

    complete: bool
    message: str
    expected: int
    existing: int
    created: int
    remaining: int


def _is_transient_database_error(error: BaseException) -> bool:
    return isinstance(error, OperationalError)


class JobCreator:
    """Insert missing keys in fixed-size batches."""

    def __init__(
        self,
        *,
        store: SyncJobStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_policy: RetryPolicy = NO_RETRY,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than zero")

        self._store = store
        self._batch_size = batch_size
        self._retry_policy = retry_policy

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def create(
        self,
        keys: Sequence[SyncJobKey],
        *,
        max_batches: int | None = 1,
    ) -> JobCreationResult:
        """Insert up to ``max_batches`` batches; ``None`` inserts everything."""

        if max_batches is not None and max_batches <= 0:
            raise ValueError("max_batches must be greater than zero")

        created = 0
        attempted = 0
        batches = 0
        for batch in self._chunk_keys(keys):
            if max_batches is not None and batches >= max_batches:
                break
            created += await self._retry_policy.run(
                lambda batch=batch: self._store.insert_if_absent(batch),
                is_retryable=_is_transient_database_error,
                operation_name="insert_sync_jobs",
            )
            attempted += len(batch)
            batches += 1

        result = JobCreationResult(
            created=created,
            attempted=attempted,
            remaining=len(keys) - attempted,
        )
        _creator_logger.info(
            "sync_jobs_created",
            extra={
                "created": result.created,
                "attempted": result.attempted,
                "remaining": result.remaining,
                "batches": batches,
            },
        )
        return result

    def _chunk_keys(self, keys: Sequence[SyncJobKey]) -> list[list[SyncJobKey]]:
        return [
            list(keys[index : index + self._batch_size])
            for index in range(0, len(keys), self._batch_size)
        ]


class GapFillService:
    """Detect missing windows and create one batch of jobs per call."""

    def __init__(self, *, detector: GapDetector, creator: JobCreator) -> None:
        self._detector = detector
        self._creator = creator

    async def fill(
        self,
        start_date: date,
        end_date: date,
        object_type: SyncObjectType | None = None,
        *,
        max_batches: int | None = 1,
    ) -> GapFillResult:
        gaps = await self._detector.detect(start_date, end_date, object_type)
        if not gaps.missing:
            return GapFillResult(
                complete=True,
                message="All jobs already exist",
                expected=gaps.expected,
                existing=gaps.existing,
                created=0,
                remaining=0,
            )

        creation = await self._creator.create(gaps.missing, max_batches=max_batches)
        complete = creation.remaining == 0
        if complete:
            message = f"Created {creation.created} jobs"
        else:
            message = (
                f"Created {creation.created} jobs - "
                f"{creation.remaining} remaining, call again"
            )
        return GapFillResult(
            complete=complete,
            message=message,
            expected=gaps.expected,
            existing=gaps.existing,
            created=creation.created,
            remaining=creation.remaining,
        )

    async def fill_all(
        self,
        start_date: date,
        end_date: date,
        object_type: SyncObjectType | None = None,
    ) -> GapFillResult:
        return await self.fill(start_date, end_date, object_type, max_batches=None)


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "GapFillResult",
    "GapFillService",
    "JobCreationResult",
    "JobCreator",
]
