"""Reclaim sync jobs stuck in running after their executor disappeared."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from commerce_sync.models import SyncObjectType
from commerce_sync.services.job_store import SyncJobRecord, SyncJobStore

DEFAULT_STALE_AFTER = timedelta(minutes=2)
DEFAULT_REFUND_STALE_AFTER = timedelta(minutes=5)

_watchdog_logger = logging.getLogger("commerce_sync.watchdog")


@dataclass(slots=True, frozen=True)
class StaleJobRecord:
    """A running job the watchdog moved to failed."""

    job_id: str
    shop: str
    object_type: SyncObjectType
    start_date: date
    started_at: datetime | None
    stalled_seconds: float | None


@dataclass(slots=True, frozen=True)
class WatchdogResult:
    """Outcome of one watchdog sweep."""

    cleaned: int
    jobs: tuple[StaleJobRecord, ...]
    timestamp: datetime


def stale_job_message(threshold: timedelta, object_type: SyncObjectType) -> str:
    limit = f"{threshold.total_seconds() / 60:g} minute"
    if object_type is SyncObjectType.REFUNDS:
        return f"Timeout detected by watchdog - refund job exceeded {limit} limit"
    return f"Timeout detected by watchdog - job exceeded {limit} limit"


class WatchdogService:
    """Fail running jobs whose ``started_at`` is older than a threshold."""

    def __init__(
        self,
        *,
        store: SyncJobStore,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        stale_after_by_type: Mapping[SyncObjectType, timedelta] | None = None,
    ) -> None:
        if stale_after <= timedelta(0):
            raise ValueError("stale_after must be greater than zero")

        self._store = store
        self._stale_after = stale_after
        self._stale_after_by_type = dict(
            stale_after_by_type
            if stale_after_by_type is not None
            else {SyncObjectType.REFUNDS: DEFAULT_REFUND_STALE_AFTER}
        )

    def threshold_for(self, object_type: SyncObjectType) -> timedelta:
        return self._stale_after_by_type.get(object_type, self._stale_after)

    async def reclaim_stale_jobs(self) -> WatchdogResult:
        now = self._store.now()
        shortest_threshold = min(
            [self._stale_after, *self._stale_after_by_type.values()]
        )
        candidates = await self._store.list_running_started_before(
            now - shortest_threshold
        )

        reclaimed: list[StaleJobRecord] = []
        for job in candidates:
            threshold = self.threshold_for(job.object_type)
            cutoff = now - threshold
            if job.started_at is not None and job.started_at >= cutoff:
                continue

            failed = await self._store.fail_if_stale(
                job.id,
                cutoff=cutoff,
                error_message=stale_job_message(threshold, job.object_type),
            )
            if not failed:
                continue
            reclaimed.append(self._stale_record(job, now))

        if reclaimed:
            _watchdog_logger.warning(
                "stale_jobs_reclaimed",
                extra={
                    "cleaned": len(reclaimed),
                    "job_ids": [record.job_id for record in reclaimed],
                },
            )
        else:
            _watchdog_logger.debug("no_stale_jobs_found")

        return WatchdogResult(
            cleaned=len(reclaimed),
            jobs=tuple(reclaimed),
            timestamp=now,
        )

    @staticmethod
    def _stale_record(job: SyncJobRecord, now: datetime) -> StaleJobRecord:
        stalled_seconds = None
        if job.started_at is not None:
            stalled_seconds = round((now - job.started_at).total_seconds(), 1)
        return StaleJobRecord(
            job_id=str(job.id),
            shop=job.shop,
            object_type=job.object_type,
            start_date=job.start_date,
            started_at=job.started_at,
            stalled_seconds=stalled_seconds,
        )


__all__ = [
    "DEFAULT_REFUND_STALE_AFTER",
    "DEFAULT_STALE_AFTER",
    "StaleJobRecord",
    "WatchdogResult",
    "WatchdogService",
    "stale_job_message",
]
