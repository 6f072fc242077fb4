"""Reclassify failed jobs whose window has no upstream records."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Protocol

import httpx

from commerce_sync.models import SyncJobStatus, SyncObjectType
from commerce_sync.services.job_store import SyncJobStore
from commerce_sync.services.shopify_client import ShopifyAPIError

EMPTY_WINDOW_MESSAGE = "Validated: no records in window (auto-corrected from failed)"
DEFAULT_VALIDATION_LIMIT = 500

_validator_logger = logging.getLogger("commerce_sync.failure_validator")


class RecordCounter(Protocol):
    async def count_records(
        self,
        object_type: SyncObjectType,
        start_date: date,
        end_date: date,
    ) -> int: ...


class RecordCounterFactory(Protocol):
    def get_client(self, shop: str) -> RecordCounter: ...


@dataclass(slots=True, frozen=True)
class ValidatedJob:
    """Upstream count observed for one failed job; ``-1`` when lookup failed."""

    job_id: str
    shop: str
    object_type: SyncObjectType
    start_date: date
    upstream_count: int
    reclassified: bool
    error: str | None = None


@dataclass(slots=True, frozen=True)
class ValidationSummary:
    """Totals for one validation pass."""

    total: int
    empty_windows: int
    real_failures: int
    lookup_errors: int
    updated: int
    jobs: tuple[ValidatedJob, ...]


class FailedJobValidator:
    """Ask upstream whether a failed window actually had data."""

    def __init__(
        self,
        *,
        store: SyncJobStore,
        client_factory: RecordCounterFactory,
        request_delay_seconds: float = 0.5,
        limit: int = DEFAULT_VALIDATION_LIMIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be greater than zero")

        self._store = store
        self._client_factory = client_factory
        self._request_delay_seconds = request_delay_seconds
        self._limit = limit
        self._sleep = sleep

    async def validate(
        self,
        *,
        object_type: SyncObjectType | None = None,
    ) -> ValidationSummary:
        failed_jobs = await self._store.list_by_status(
            SyncJobStatus.FAILED,
            object_type=object_type,
            limit=self._limit,
        )

        validated: list[ValidatedJob] = []
        for index, job in enumerate(failed_jobs):
            if index > 0 and self._request_delay_seconds > 0:
                await self._sleep(self._request_delay_seconds)

            client = self._client_factory.get_client(job.shop)
            try:
                upstream_count = await client.count_records(
                    job.object_type, job.start_date, job.end_date
                )
            except (ShopifyAPIError, httpx.HTTPError) as error:
                _validator_logger.warning(
                    "failed_job_validation_lookup_failed",
                    extra={"job_id": str(job.id), "shop": job.shop, "error": str(error)},
                )
                validated.append(
                    ValidatedJob(
                        job_id=str(job.id),
                        shop=job.shop,
                        object_type=job.object_type,
                        start_date=job.start_date,
                        upstream_count=-1,
                        reclassified=False,
                        error=str(error),
                    )
                )
                continue

            reclassified = False
            if upstream_count == 0:
                reclassified = await self._store.update_status(
                    job.id,
                    SyncJobStatus.COMPLETED,
                    expected_statuses=(SyncJobStatus.FAILED,),
                    records_processed=0,
                    error_message=EMPTY_WINDOW_MESSAGE,
                    completed_at=self._store.now(),
                )
            validated.append(
                ValidatedJob(
                    job_id=str(job.id),
                    shop=job.shop,
                    object_type=job.object_type,
                    start_date=job.start_date,
                    upstream_count=upstream_count,
                    reclassified=reclassified,
                )
            )

        summary = ValidationSummary(
            total=len(validated),
            empty_windows=sum(1 for item in validated if item.upstream_count == 0),
            real_failures=sum(1 for item in validated if item.upstream_count > 0),
            lookup_errors=sum(1 for item in validated if item.upstream_count < 0),
            updated=sum(1 for item in validated if item.reclassified),
            jobs=tuple(validated),
        )
        _validator_logger.info(
            "failed_jobs_validated",
            extra={
                "total": summary.total,
                "empty_windows": summary.empty_windows,
                "real_failures": summary.real_failures,
                "lookup_errors": summary.lookup_errors,
                "updated": summary.updated,
            },
        )
        return summary


__all__ = [
    "EMPTY_WINDOW_MESSAGE",
    "FailedJobValidator",
    "RecordCounter",
    "RecordCounterFactory",
    "ValidatedJob",
    "ValidationSummary",
]
