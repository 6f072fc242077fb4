"""Tests for scheduler service lifecycle and trigger support."""

from __future__ import annotations

from pathlib import Path

import pytest

from commerce_sync.services.scheduler import ScheduledJobSpec, SchedulerService


async def _noop_job() -> None:
    return None


def test_job_spec_requires_exactly_one_trigger() -> None:
    with pytest.raises(ValueError, match="exactly one"):
        ScheduledJobSpec(job_id="neither", name="Neither", func=_noop_job)
    with pytest.raises(ValueError, match="exactly one"):
        ScheduledJobSpec(
            job_id="both",
            name="Both",
            func=_noop_job,
            interval_seconds=60,
            cron={"minute": "0"},
        )
    with pytest.raises(ValueError, match="greater than zero"):
        ScheduledJobSpec(
            job_id="zero", name="Zero", func=_noop_job, interval_seconds=0
        )


@pytest.mark.asyncio
async def test_scheduler_service_supports_interval_and_cron_jobs(
    tmp_path: Path,
) -> None:
    scheduler = SchedulerService(
        enabled=True,
        jobstore_url=f"sqlite:///{tmp_path / 'scheduler-jobs.sqlite'}",
    )

    scheduler.schedule(
        ScheduledJobSpec(
            job_id="interval-job",
            name="Interval job",
            func=_noop_job,
            interval_seconds=60,
        )
    )
    scheduler.schedule(
        ScheduledJobSpec(
            job_id="cron-job",
            name="Cron job",
            func=_noop_job,
            cron={"hour": "2", "minute": "0"},
        )
    )

    await scheduler.start()
    try:
        jobs = scheduler.list_jobs()
        assert {job.job_id for job in jobs} == {"interval-job", "cron-job"}
        assert any("interval" in job.trigger.lower() for job in jobs)
        assert any("cron" in job.trigger.lower() for job in jobs)
        assert all(job.next_run_time is not None for job in jobs)

        scheduler.pause()
        assert scheduler.paused is True
        scheduler.resume()
        assert scheduler.paused is False
    finally:
        await scheduler.shutdown()

    assert scheduler.running is False


@pytest.mark.asyncio
async def test_rescheduling_replaces_existing_job(tmp_path: Path) -> None:
    scheduler = SchedulerService(
        enabled=True,
        jobstore_url=f"sqlite:///{tmp_path / 'scheduler-replace.sqlite'}",
    )
    spec = ScheduledJobSpec(
        job_id="interval-job",
        name="Interval job",
        func=_noop_job,
        interval_seconds=60,
    )

    scheduler.schedule(spec)
    scheduler.schedule(spec)

    await scheduler.start()
    try:
        assert [job.job_id for job in scheduler.list_jobs()] == ["interval-job"]
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_scheduler_service_rejects_operations_when_disabled(
    tmp_path: Path,
) -> None:
    scheduler = SchedulerService(
        enabled=False,
        jobstore_url=f"sqlite:///{tmp_path / 'scheduler-disabled.sqlite'}",
    )

    await scheduler.start()

    assert scheduler.running is False
    with pytest.raises(RuntimeError, match="disabled"):
        scheduler.pause()
    with pytest.raises(RuntimeError, match="disabled"):
        scheduler.list_jobs()


@pytest.mark.asyncio
async def test_pause_requires_a_running_scheduler(tmp_path: Path) -> None:
    scheduler = SchedulerService(
        enabled=True,
        jobstore_url=f"sqlite:///{tmp_path / 'scheduler-idle.sqlite'}",
    )

    with pytest.raises(RuntimeError, match="not running"):
        scheduler.pause()
