"""Persistence operations for the sync job queue.

Every state transition is a single conditional ``UPDATE`` so concurrent
dispatcher invocations and the watchdog can share the table without locks.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    ColumnElement,
    Select,
    case,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.models import (
    DISPATCH_RANK,
    ERROR_MESSAGE_MAX_LENGTH,
    SyncJob,
    SyncJobStatus,
    SyncObjectType,
)

SessionScopeFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_KEY_COLUMNS = ("shop", "start_date", "object_type")
_UNSET: Any = object()

_store_logger = logging.getLogger("commerce_sync.job_store")

_dispatch_rank_order = case(
    *(
        (SyncJob.object_type == object_type, rank)
        for object_type, rank in DISPATCH_RANK.items()
    ),
    else_=len(DISPATCH_RANK) + 1,
)


@dataclass(slots=True, frozen=True, order=True)
class SyncJobKey:
    """Natural key of a sync job: one shop, one day, one object type."""

    start_date: date
    shop: str
    object_type: SyncObjectType

    def sort_key(self) -> tuple[date, str, int, str]:
        return (
            self.start_date,
            self.shop,
            self.object_type.dispatch_rank,
            self.object_type.value,
        )


@dataclass(slots=True, frozen=True)
class SyncJobRecord:
    """Detached snapshot of a sync job row."""

    id: UUID
    shop: str
    object_type: SyncObjectType
    start_date: date
    end_date: date
    status: SyncJobStatus
    attempts: int
    records_processed: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def key(self) -> SyncJobKey:
        return SyncJobKey(
            start_date=self.start_date,
            shop=self.shop,
            object_type=self.object_type,
        )


@dataclass(slots=True, frozen=True)
class SyncJobStats:
    """Job counts per status."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    dead_letter: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending
            + self.running
            + self.completed
            + self.failed
            + self.dead_letter
        )


@dataclass(slots=True, frozen=True)
class RequeueResult:
    """Outcome of moving failed jobs back to pending or to dead letter."""

    requeued: int
    dead_lettered: int


class JobOrder(str, Enum):
    """Supported orderings for job listings."""

    OLDEST_WINDOW_FIRST = "oldest_window_first"
    NEWEST_WINDOW_FIRST = "newest_window_first"


def truncate_error_message(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:ERROR_MESSAGE_MAX_LENGTH]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class SyncJobStore:
    """Read and transition sync jobs through conditional updates."""

    def __init__(
        self,
        *,
        session_factory: SessionScopeFactory | None = None,
        now_factory: Callable[[], datetime] | None = None,
    ) -> None:
        if session_factory is None:
            from commerce_sync.database import session_scope

            session_factory = session_scope

        self._session_factory = session_factory
        self._now_factory = now_factory or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._now_factory()

    async def get(self, job_id: UUID) -> SyncJobRecord | None:
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                return None
            return self._to_record(job)

    async def status_of(
        self,
        *,
        shop: str,
        start_date: date,
        object_type: SyncObjectType,
    ) -> SyncJobStatus | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(SyncJob.status).where(
                    SyncJob.shop == shop,
                    SyncJob.start_date == start_date,
                    SyncJob.object_type == object_type,
                )
            )

    async def list_by_status(
        self,
        status: SyncJobStatus,
        *,
        object_type: SyncObjectType | None = None,
        shop: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int | None = None,
        offset: int = 0,
        order: JobOrder = JobOrder.OLDEST_WINDOW_FIRST,
    ) -> list[SyncJobRecord]:
        statement = self._apply_filters(
            select(SyncJob).where(SyncJob.status == status),
            object_type=object_type,
            shop=shop,
            start_date=start_date,
            end_date=end_date,
        )
        window_order = (
            SyncJob.start_date.desc()
            if order is JobOrder.NEWEST_WINDOW_FIRST
            else SyncJob.start_date.asc()
        )
        statement = statement.order_by(
            window_order,
            SyncJob.shop.asc(),
            _dispatch_rank_order,
            SyncJob.created_at.asc(),
            SyncJob.id.asc(),
        ).offset(offset)
        if limit is not None:
            statement = statement.limit(limit)

        async with self._session_factory() as session:
            jobs = (await session.execute(statement)).scalars().all()
            return [self._to_record(job) for job in jobs]

    async def list_running_started_before(
        self, cutoff: datetime
    ) -> list[SyncJobRecord]:
        statement = (
            select(SyncJob)
            .where(
                SyncJob.status == SyncJobStatus.RUNNING,
                or_(SyncJob.started_at.is_(None), SyncJob.started_at < cutoff),
            )
            .order_by(SyncJob.started_at.asc(), SyncJob.id.asc())
        )
        async with self._session_factory() as session:
            jobs = (await session.execute(statement)).scalars().all()
            return [self._to_record(job) for job in jobs]

    async def list_keys_page(
        self,
        start_date: date,
        end_date: date,
        *,
        object_type: SyncObjectType | None = None,
        limit: int,
        offset: int,
    ) -> list[SyncJobKey]:
        statement = self._apply_filters(
            select(SyncJob.start_date, SyncJob.shop, SyncJob.object_type),
            object_type=object_type,
            start_date=start_date,
            end_date=end_date,
        )
        statement = (
            statement.order_by(
                SyncJob.start_date.asc(),
                SyncJob.shop.asc(),
                SyncJob.object_type.asc(),
            )
            .offset(offset)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(statement)).all()
        return [
            SyncJobKey(start_date=row[0], shop=row[1], object_type=row[2])
            for row in rows
        ]

    async def insert_if_absent(self, keys: Sequence[SyncJobKey]) -> int:
        """Insert pending jobs for keys not yet stored and return the insert count."""

        if not keys:
            return 0

        now = self.now()
        rows = [
            {
                "id": uuid4(),
                "shop": key.shop,
                "object_type": key.object_type,
                "start_date": key.start_date,
                "end_date": key.start_date,
                "status": SyncJobStatus.PENDING,
                "attempts": 0,
                "records_processed": 0,
                "created_at": now,
                "updated_at": now,
            }
            for key in keys
        ]

        async with self._session_factory() as session:
            dialect_name = session.get_bind().dialect.name
            if dialect_name == "sqlite":
                statement: Any = sqlite_insert(SyncJob).values(rows)
                statement = statement.on_conflict_do_nothing(index_elements=_KEY_COLUMNS)
                result = await session.execute(statement)
                return int(result.rowcount or 0)
            if dialect_name == "postgresql":
                statement = postgresql_insert(SyncJob).values(rows)
                statement = statement.on_conflict_do_nothing(index_elements=_KEY_COLUMNS)
                result = await session.execute(statement)
                return int(result.rowcount or 0)

            return await self._insert_missing_rows(session, rows)

    async def claim(self, job_id: UUID) -> bool:
        """Atomically move a pending job to running; only one caller can win."""

        now = self.now()
        statement = (
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.PENDING)
            .values(
                status=SyncJobStatus.RUNNING,
                started_at=now,
                completed_at=None,
                attempts=SyncJob.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return int(result.rowcount or 0) == 1

    async def update_status(
        self,
        job_id: UUID,
        new_status: SyncJobStatus,
        *,
        expected_statuses: Iterable[SyncJobStatus],
        records_processed: int | None = None,
        error_message: str | None = _UNSET,
        started_at: datetime | None = _UNSET,
        completed_at: datetime | None = _UNSET,
    ) -> bool:
        """Apply a transition only when the current status is expected."""

        values: dict[str, Any] = {"status": new_status, "updated_at": self.now()}
        if records_processed is not None:
            values["records_processed"] = records_processed
        if error_message is not _UNSET:
            values["error_message"] = truncate_error_message(error_message)
        if started_at is not _UNSET:
            values["started_at"] = started_at
        if completed_at is not _UNSET:
            values["completed_at"] = completed_at

        statement = (
            update(SyncJob)
            .where(
                SyncJob.id == job_id,
                SyncJob.status.in_(list(expected_statuses)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return int(result.rowcount or 0) == 1

    async def fail_if_stale(
        self,
        job_id: UUID,
        *,
        cutoff: datetime,
        error_message: str,
    ) -> bool:
        now = self.now()
        statement = (
            update(SyncJob)
            .where(
                SyncJob.id == job_id,
                SyncJob.status == SyncJobStatus.RUNNING,
                or_(SyncJob.started_at.is_(None), SyncJob.started_at < cutoff),
            )
            .values(
                status=SyncJobStatus.FAILED,
                error_message=truncate_error_message(error_message),
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return int(result.rowcount or 0) == 1

    async def count_by_status(
        self,
        *,
        object_type: SyncObjectType | None = None,
        shop: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> SyncJobStats:
        statement = self._apply_filters(
            select(SyncJob.status, func.count(SyncJob.id)),
            object_type=object_type,
            shop=shop,
            start_date=start_date,
            end_date=end_date,
        ).group_by(SyncJob.status)

        async with self._session_factory() as session:
            rows = (await session.execute(statement)).all()

        counts = {SyncJobStatus(row[0]).value: int(row[1]) for row in rows}
        return SyncJobStats(
            pending=counts.get(SyncJobStatus.PENDING.value, 0),
            running=counts.get(SyncJobStatus.RUNNING.value, 0),
            completed=counts.get(SyncJobStatus.COMPLETED.value, 0),
            failed=counts.get(SyncJobStatus.FAILED.value, 0),
            dead_letter=counts.get(SyncJobStatus.DEAD_LETTER.value, 0),
        )

    async def requeue_failed(
        self,
        *,
        max_attempts: int,
        object_type: SyncObjectType | None = None,
        shop: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> RequeueResult:
        """Reset retryable failed jobs to pending and park exhausted ones."""

        if max_attempts <= 0:
            raise ValueError("max_attempts must be greater than zero")

        filters = self._filter_clauses(
            object_type=object_type,
            shop=shop,
            start_date=start_date,
            end_date=end_date,
        )
        now = self.now()
        dead_letter_statement = (
            update(SyncJob)
            .where(
                SyncJob.status == SyncJobStatus.FAILED,
                SyncJob.attempts >= max_attempts,
                *filters,
            )
            .values(status=SyncJobStatus.DEAD_LETTER, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        requeue_statement = (
            update(SyncJob)
            .where(
                SyncJob.status == SyncJobStatus.FAILED,
                SyncJob.attempts < max_attempts,
                *filters,
            )
            .values(
                status=SyncJobStatus.PENDING,
                error_message=None,
                started_at=None,
                completed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            dead_lettered = int(
                (await session.execute(dead_letter_statement)).rowcount or 0
            )
            requeued = int((await session.execute(requeue_statement)).rowcount or 0)

        _store_logger.info(
            "failed_jobs_requeued",
            extra={
                "requeued": requeued,
                "dead_lettered": dead_lettered,
                "max_attempts": max_attempts,
                "object_type": object_type.value if object_type else None,
                "shop": shop,
            },
        )
        return RequeueResult(requeued=requeued, dead_lettered=dead_lettered)

    @staticmethod
    async def _insert_missing_rows(
        session: AsyncSession,
        rows: list[dict[str, Any]],
    ) -> int:
        existing_rows = (
            await session.execute(
                select(SyncJob.shop, SyncJob.start_date, SyncJob.object_type).where(
                    SyncJob.shop.in_({row["shop"] for row in rows}),
                    SyncJob.start_date.in_({row["start_date"] for row in rows}),
                )
            )
        ).all()
        existing_keys = {(row[0], row[1], row[2]) for row in existing_rows}
        missing_rows = [
            row
            for row in rows
            if (row["shop"], row["start_date"], row["object_type"])
            not in existing_keys
        ]
        if missing_rows:
            await session.execute(insert(SyncJob), missing_rows)
        return len(missing_rows)

    @staticmethod
    def _filter_clauses(
        *,
        object_type: SyncObjectType | None = None,
        shop: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if object_type is not None:
            clauses.append(SyncJob.object_type == object_type)
        if shop is not None:
            clauses.append(SyncJob.shop == shop)
        if start_date is not None:
            clauses.append(SyncJob.start_date >= start_date)
        if end_date is not None:
            clauses.append(SyncJob.start_date <= end_date)
        return clauses

    @classmethod
    def _apply_filters(
        cls,
        statement: Select[Any],
        **filters: Any,
    ) -> Select[Any]:
        clauses = cls._filter_clauses(**filters)
        if clauses:
            statement = statement.where(*clauses)
        return statement

    @staticmethod
    def _to_record(job: SyncJob) -> SyncJobRecord:
        return SyncJobRecord(
            id=job.id,
            shop=job.shop,
            object_type=job.object_type,
            start_date=job.start_date,
            end_date=job.end_date,
            status=job.status,
            attempts=job.attempts,
            records_processed=job.records_processed,
            error_message=job.error_message,
            started_at=_as_utc(job.started_at),
            completed_at=_as_utc(job.completed_at),
        )


__all__ = [
    "JobOrder",
    "RequeueResult",
    "SessionScopeFactory",
    "SyncJobKey",
    "SyncJobRecord",
    "SyncJobStats",
    "SyncJobStore",
    "truncate_error_message",
]
