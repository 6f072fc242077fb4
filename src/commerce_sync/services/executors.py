"""Collaborators that perform the sync work for one claimed job."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final, Protocol

import httpx

from commerce_sync.models import SyncObjectType
from commerce_sync.services.chunk_strategist import ChunkStrategist
from commerce_sync.services.job_store import SyncJobRecord
from commerce_sync.services.retry_policy import NO_RETRY, RetryPolicy
from commerce_sync.services.shopify_client import TRANSIENT_HTTP_STATUS_CODES

DEFAULT_WORKER_TIMEOUT_SECONDS: Final[float] = 150.0
WORKER_NAMES: Final[dict[SyncObjectType, str]] = {
    SyncObjectType.ORDERS: "bulk-sync-orders",
    SyncObjectType.SKUS: "bulk-sync-skus",
    SyncObjectType.REFUNDS: "batch-sync-refunds",
    SyncObjectType.SHIPPING_DISCOUNTS: "bulk-sync-shipping-discounts",
    SyncObjectType.FULFILLMENTS: "bulk-sync-fulfillments",
}

_executor_logger = logging.getLogger("commerce_sync.executors")


@dataclass(slots=True, frozen=True)
class SyncExecutionResult:
    """Outcome reported by an executor.

    ``complete=False`` on a successful result means the window needs another
    pass; the dispatcher puts such jobs back to pending.
    """

    success: bool
    records_processed: int = 0
    complete: bool = True
    error_message: str | None = None


class SyncExecutor(Protocol):
    async def execute(self, job: SyncJobRecord) -> SyncExecutionResult: ...


class SyncWorkerError(RuntimeError):
    """Raised when a sync worker answers with a transient HTTP status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Sync worker failed ({status_code}) {body[:150]}")


def _is_retryable_worker_error(error: BaseException) -> bool:
    if isinstance(error, SyncWorkerError):
        return error.status_code in TRANSIENT_HTTP_STATUS_CODES
    return isinstance(error, httpx.TransportError)


def _records_from_payload(payload: Mapping[str, Any]) -> int:
    for key in ("totalProcessed", "records_processed", "recordsProcessed"):
        value = payload.get(key)
        if isinstance(value, (int, float)):
            return int(value)
    return 0


class HttpSyncExecutor:
    """POST the job window to the per-object-type sync worker endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_WORKER_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy = NO_RETRY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy
        self._transport = transport

    @staticmethod
    def build_payload(job: SyncJobRecord) -> dict[str, Any]:
        return {
            "shop": job.shop,
            "startDate": job.start_date.isoformat(),
            "endDate": job.end_date.isoformat(),
            "objectType": job.object_type.value,
            "jobId": str(job.id),
            "includeRefunds": job.object_type is SyncObjectType.ORDERS,
            "searchMode": "created_at",
        }

    async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
        worker_name = WORKER_NAMES[job.object_type]
        payload = self.build_payload(job)
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        async def post() -> httpx.Response:
            async with httpx.AsyncClient(
                base_url=f"{self._base_url}/",
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(worker_name, json=payload, headers=headers)
            if response.status_code in TRANSIENT_HTTP_STATUS_CODES:
                raise SyncWorkerError(response.status_code, response.text)
            return response

        try:
            response = await self._retry_policy.run(
                post,
                is_retryable=_is_retryable_worker_error,
                operation_name=f"sync_worker:{worker_name}",
            )
        except (SyncWorkerError, httpx.HTTPError) as error:
            return SyncExecutionResult(success=False, error_message=str(error))

        if not response.is_success:
            return SyncExecutionResult(
                success=False,
                error_message=(
                    f"Sync worker failed ({response.status_code}) "
                    f"{response.text[:150]}"
                ),
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        complete = body.get("complete") is not False
        records_processed = _records_from_payload(body)
        _executor_logger.debug(
            "sync_worker_responded",
            extra={
                "job_id": str(job.id),
                "worker": worker_name,
                "complete": complete,
                "records_processed": records_processed,
            },
        )
        return SyncExecutionResult(
            success=True,
            records_processed=records_processed,
            complete=complete,
        )


class RefundSyncExecutor:
    """Run refund jobs in-process through the chunk strategist."""

    def __init__(self, *, strategist: ChunkStrategist) -> None:
        self._strategist = strategist

    async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
        summary = await self._strategist.run(job.shop, job.start_date, job.end_date)
        if summary.errors and summary.processed == 0:
            return SyncExecutionResult(
                success=False,
                error_message=f"All {summary.errors} refund lookups failed",
            )

        error_message = None
        if summary.errors:
            error_message = f"{summary.errors} refund lookups failed"
        return SyncExecutionResult(
            success=True,
            records_processed=summary.processed,
            error_message=error_message,
        )


class RoutingSyncExecutor:
    """Delegate to an executor registered for the job's object type."""

    def __init__(
        self,
        *,
        default: SyncExecutor,
        overrides: Mapping[SyncObjectType, SyncExecutor] | None = None,
    ) -> None:
        self._default = default
        self._overrides = dict(overrides or {})

    def executor_for(self, object_type: SyncObjectType) -> SyncExecutor:
        return self._overrides.get(object_type, self._default)

    async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
        return await self.executor_for(job.object_type).execute(job)


__all__ = [
    "HttpSyncExecutor",
    "RefundSyncExecutor",
    "RoutingSyncExecutor",
    "SyncExecutionResult",
    "SyncExecutor",
    "SyncWorkerError",
    "WORKER_NAMES",
]
