"""Pydantic schemas for orchestrator API payloads."""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from commerce_sync.models import SyncJobStatus, SyncObjectType


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DateWindowMixin(CamelModel):
    """Inclusive date window validation shared by range payloads."""

    start_date: date
    end_date: date

    @model_validator(mode="after")
    def validate_window(self) -> DateWindowMixin:
        if self.start_date > self.end_date:
            raise ValueError("startDate must be on or before endDate")
        return self


class ContinueRequest(CamelModel):
    """Scope for one dispatcher invocation."""

    object_type: SyncObjectType | None = None
    shop: str | None = Field(default=None, min_length=1)


class GapFillRequest(DateWindowMixin):
    """Date range to backfill with missing jobs."""

    object_type: SyncObjectType | None = None


class ValidateFailedRequest(CamelModel):
    """Optional object type filter for failed-job validation."""

    object_type: SyncObjectType | None = None


class RequeueFailedRequest(CamelModel):
    """Filters narrowing which failed jobs are requeued."""

    object_type: SyncObjectType | None = None
    shop: str | None = Field(default=None, min_length=1)
    start_date: date | None = None
    end_date: date | None = None


class RefundSyncRequest(DateWindowMixin):
    """Shop and window for a chunked refund sync."""

    shop: str = Field(min_length=1)


class SmartSyncRequest(DateWindowMixin):
    """Requeue, backfill and drive one object type across a window."""

    object_type: SyncObjectType = SyncObjectType.ORDERS
    max_iterations: int = Field(default=50, ge=1, le=500)


class JobStatsRead(CamelModel):
    """Per-status job counts."""

    pending: int
    running: int
    completed: int
    failed: int
    dead_letter: int
    total: int


class JobDispatchRead(CamelModel):
    """Outcome of one dispatched job."""

    job_id: str
    shop: str
    object_type: SyncObjectType
    outcome: str
    records_processed: int
    error_message: str | None


class ContinueResponse(CamelModel):
    """Dispatcher invocation summary."""

    complete: bool
    message: str
    stats: JobStatsRead
    duration_seconds: float
    processed: int
    succeeded: int
    failed: int
    skipped: int
    rounds: int
    cleaned: int
    budget_exhausted: bool
    results: list[JobDispatchRead]


class GapFillStatsRead(CamelModel):
    """Counts observed while filling gaps."""

    expected: int
    existing: int
    created: int
    remaining: int


class GapFillResponse(CamelModel):
    """Gap fill invocation summary."""

    complete: bool
    message: str
    stats: GapFillStatsRead


class StaleJobRead(CamelModel):
    """Job reclaimed by the watchdog."""

    job_id: str
    shop: str
    object_type: SyncObjectType
    start_date: date
    started_at: datetime | None
    stalled_seconds: float | None


class WatchdogResponse(CamelModel):
    """Watchdog sweep summary."""

    cleaned: int
    jobs: list[StaleJobRead]
    timestamp: datetime


class ValidatedJobRead(CamelModel):
    """Upstream count for one failed job."""

    job_id: str
    shop: str
    object_type: SyncObjectType
    start_date: date
    upstream_count: int
    reclassified: bool
    error: str | None


class ValidationResponse(CamelModel):
    """Failed-job validation summary."""

    total: int
    empty_windows: int
    real_failures: int
    lookup_errors: int
    updated: int
    jobs: list[ValidatedJobRead]


class RequeueResponse(CamelModel):
    """Counts of requeued and dead-lettered jobs."""

    requeued: int
    dead_lettered: int


class RefundSyncResponse(CamelModel):
    """Refund sync strategy and counters."""

    shop: str
    start_date: date
    end_date: date
    strategy: str
    order_count: int
    chunk_count: int
    chunks_processed: int
    processed: int
    with_refunds: int
    errors: int


class SmartSyncResponse(CamelModel):
    """Smart sync workflow summary."""

    complete: bool
    requeued: int
    dead_lettered: int
    created: int
    iterations: int
    stats: JobStatsRead


class OrchestratorErrorResponse(BaseModel):
    """Invocation-level failure payload."""

    error: str
    timestamp: datetime


class SyncJobRead(CamelModel):
    """Serialized sync job row."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

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


class SyncJobListResponse(CamelModel):
    """Paginated sync job listing."""

    page: int
    page_size: int
    total_items: int
    total_pages: int
    items: list[SyncJobRead]


__all__ = [
    "CamelModel",
    "ContinueRequest",
    "ContinueResponse",
    "GapFillRequest",
    "GapFillResponse",
    "GapFillStatsRead",
    "JobDispatchRead",
    "JobStatsRead",
    "OrchestratorErrorResponse",
    "RefundSyncRequest",
    "RefundSyncResponse",
    "RequeueFailedRequest",
    "RequeueResponse",
    "SmartSyncRequest",
    "SmartSyncResponse",
    "StaleJobRead",
    "SyncJobListResponse",
    "SyncJobRead",
    "ValidateFailedRequest",
    "ValidatedJobRead",
    "ValidationResponse",
    "WatchdogResponse",
]
