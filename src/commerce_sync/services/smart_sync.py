"""Requeue, backfill and drive one object type to completion over a range."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from commerce_sync.models import SyncObjectType
from commerce_sync.services.dispatcher import SyncDispatcher, drive_to_completion
from commerce_sync.services.job_creator import GapFillService
from commerce_sync.services.job_store import RequeueResult, SyncJobStats, SyncJobStore

_smart_sync_logger = logging.getLogger("commerce_sync.smart_sync")


@dataclass(slots=True, frozen=True)
class SmartSyncResult:
    """Summary of a smart sync run."""

    complete: bool
    requeue: RequeueResult
    created: int
    iterations: int
    stats: SyncJobStats


class SmartSyncService:
    """Compose requeue, gap fill and the dispatcher into one workflow."""

    def __init__(
        self,
        *,
        store: SyncJobStore,
        gap_fill: GapFillService,
        dispatcher: SyncDispatcher,
        max_attempts: int,
        pause_seconds: float = 0.0,
    ) -> None:
        self._store = store
        self._gap_fill = gap_fill
        self._dispatcher = dispatcher
        self._max_attempts = max_attempts
        self._pause_seconds = pause_seconds

    async def run(
        self,
        start_date: date,
        end_date: date,
        *,
        object_type: SyncObjectType = SyncObjectType.ORDERS,
        max_iterations: int = 50,
    ) -> SmartSyncResult:
        if start_date > end_date:
            raise ValueError("start_date must be on or before end_date")

        requeue = await self._store.requeue_failed(
            max_attempts=self._max_attempts,
            object_type=object_type,
            start_date=start_date,
            end_date=end_date,
        )
        gap_fill = await self._gap_fill.fill_all(start_date, end_date, object_type)
        drive = await drive_to_completion(
            self._dispatcher,
            object_type=object_type,
            max_iterations=max_iterations,
            pause_seconds=self._pause_seconds,
        )
        stats = await self._store.count_by_status(
            object_type=object_type,
            start_date=start_date,
            end_date=end_date,
        )
        result = SmartSyncResult(
            complete=stats.pending == 0 and stats.running == 0,
            requeue=requeue,
            created=gap_fill.created,
            iterations=drive.iterations,
            stats=stats,
        )
        _smart_sync_logger.info(
            "smart_sync_completed",
            extra={
                "object_type": object_type.value,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "requeued": requeue.requeued,
                "dead_lettered": requeue.dead_lettered,
                "created": gap_fill.created,
                "iterations": drive.iterations,
                "complete": result.complete,
            },
        )
        return result


__all__ = ["SmartSyncResult", "SmartSyncService"]
