"""APScheduler wrapper owning the orchestrator's timers."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, cast

from apscheduler.events import EVENT_JOB_ERROR  # type: ignore[import-untyped]
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.events import JobExecutionEvent, SchedulerEvent
from apscheduler.job import Job  # type: ignore[import-untyped]
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore  # type: ignore[import-untyped]
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.schedulers.base import STATE_PAUSED  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from commerce_sync.config import Settings

JobCallable = Callable[[], Awaitable[None] | None]

_scheduler_logger = logging.getLogger("commerce_sync.scheduler")


@dataclass(slots=True, frozen=True)
class ScheduledJobSpec:
    """Declarative timer: either ``interval_seconds`` or ``cron`` fields."""

    job_id: str
    name: str
    func: JobCallable
    interval_seconds: int | None = None
    cron: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if (self.interval_seconds is None) == (not self.cron):
            raise ValueError(
                f"Job '{self.job_id}' needs exactly one of interval_seconds or cron"
            )
        if self.interval_seconds is not None and self.interval_seconds <= 0:
            raise ValueError("Interval seconds must be greater than zero")

    def build_trigger(self) -> Any:
        if self.interval_seconds is not None:
            return IntervalTrigger(seconds=self.interval_seconds)
        return CronTrigger(timezone="UTC", **self.cron)


@dataclass(slots=True, frozen=True)
class SchedulerJobState:
    """Serializable scheduler job state for API responses."""

    job_id: str
    name: str | None
    trigger: str
    next_run_time: datetime | None
    paused: bool


class SchedulerService:
    """Start, stop and inspect the orchestrator's scheduled jobs."""

    def __init__(
        self,
        *,
        enabled: bool,
        jobstore_url: str,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._enabled = enabled
        self._scheduler = scheduler or AsyncIOScheduler(
            jobstores={"default": SQLAlchemyJobStore(url=jobstore_url)},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone="UTC",
        )
        self._scheduler.add_listener(
            self._handle_job_event,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerService:
        return cls(
            enabled=settings.SCHEDULER_ENABLED,
            jobstore_url=settings.SCHEDULER_JOBSTORE_URL,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._enabled and cast(bool, self._scheduler.running)

    @property
    def paused(self) -> bool:
        return self._enabled and cast(bool, self._scheduler.state == STATE_PAUSED)

    async def start(self) -> None:
        if not self._enabled:
            _scheduler_logger.info("scheduler_disabled")
            return
        if self._scheduler.running:
            return

        self._scheduler.start()
        _scheduler_logger.info("scheduler_started")

    async def shutdown(self) -> None:
        if not self._enabled or not self._scheduler.running:
            return

        self._scheduler.shutdown(wait=False)
        _scheduler_logger.info("scheduler_shutdown")

    def pause(self) -> None:
        self._ensure_running()
        self._scheduler.pause()
        _scheduler_logger.info("scheduler_paused")

    def resume(self) -> None:
        self._ensure_running()
        self._scheduler.resume()
        _scheduler_logger.info("scheduler_resumed")

    def schedule(self, spec: ScheduledJobSpec) -> Job:
        self._ensure_enabled()
        job = self._scheduler.add_job(
            func=spec.func,
            trigger=spec.build_trigger(),
            id=spec.job_id,
            name=spec.name,
            replace_existing=True,
        )
        _scheduler_logger.info(
            "scheduler_job_registered",
            extra={"job_id": spec.job_id, "trigger": str(job.trigger)},
        )
        return job

    def list_jobs(self) -> list[SchedulerJobState]:
        self._ensure_enabled()
        return [
            SchedulerJobState(
                job_id=job.id,
                name=job.name,
                trigger=str(job.trigger),
                next_run_time=job.next_run_time,
                paused=job.next_run_time is None,
            )
            for job in self._scheduler.get_jobs()
        ]

    def _ensure_enabled(self) -> None:
        if not self._enabled:
            raise RuntimeError("Scheduler is disabled")

    def _ensure_running(self) -> None:
        self._ensure_enabled()
        if not self._scheduler.running:
            raise RuntimeError("Scheduler is not running")

    @staticmethod
    def _handle_job_event(event: SchedulerEvent) -> None:
        if not isinstance(event, JobExecutionEvent):
            return

        if event.code == EVENT_JOB_MISSED:
            _scheduler_logger.warning(
                "scheduler_job_missed",
                extra={
                    "job_id": event.job_id,
                    "scheduled_run_time": event.scheduled_run_time.isoformat(),
                },
            )
            return

        if event.exception is None:
            _scheduler_logger.debug(
                "scheduler_job_succeeded", extra={"job_id": event.job_id}
            )
            return

        _scheduler_logger.error(
            "scheduler_job_failed",
            extra={
                "job_id": event.job_id,
                "exception": str(event.exception),
                "traceback": event.traceback,
            },
        )


__all__ = ["ScheduledJobSpec", "SchedulerJobState", "SchedulerService"]
