"""Wire the orchestrator services from settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from commerce_sync.config import Settings
from commerce_sync.models import SyncObjectType
from commerce_sync.services.chunk_strategist import (
    ChunkStrategist,
    OrderIndex,
    ShopifyRefundProcessor,
    SqlOrderIndex,
)
from commerce_sync.services.dispatcher import SyncDispatcher
from commerce_sync.services.executors import (
    HttpSyncExecutor,
    RefundSyncExecutor,
    RoutingSyncExecutor,
    SyncExecutionResult,
    SyncExecutor,
)
from commerce_sync.services.failure_validator import FailedJobValidator
from commerce_sync.services.gap_detector import GapDetector
from commerce_sync.services.job_creator import GapFillService, JobCreator
from commerce_sync.services.job_store import (
    SessionScopeFactory,
    SyncJobRecord,
    SyncJobStore,
)
from commerce_sync.services.retry_policy import RetryPolicy, exponential_backoff
from commerce_sync.services.shopify_client import ShopifyClientFactory
from commerce_sync.services.smart_sync import SmartSyncService
from commerce_sync.services.watchdog import WatchdogService


@dataclass(slots=True)
class OrchestratorServices:
    """Every service an API handler or scheduled job needs."""

    settings: Settings
    store: SyncJobStore
    gap_detector: GapDetector
    job_creator: JobCreator
    gap_fill: GapFillService
    watchdog: WatchdogService
    dispatcher: SyncDispatcher
    chunk_strategist: ChunkStrategist
    validator: FailedJobValidator
    smart_sync: SmartSyncService

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        session_factory: SessionScopeFactory | None = None,
        executor: SyncExecutor | None = None,
        client_factory: ShopifyClientFactory | None = None,
        order_index: OrderIndex | None = None,
    ) -> OrchestratorServices:
        store = SyncJobStore(session_factory=session_factory)
        client_factory = client_factory or ShopifyClientFactory.from_settings(settings)
        upstream_retry_policy = RetryPolicy(
            max_attempts=settings.UPSTREAM_MAX_ATTEMPTS,
            backoff=exponential_backoff(settings.UPSTREAM_BACKOFF_BASE_SECONDS),
        )

        gap_detector = GapDetector(
            store=store,
            shops=settings.shop_names,
            page_size=settings.GAP_DETECTION_PAGE_SIZE,
        )
        job_creator = JobCreator(
            store=store,
            batch_size=settings.JOB_CREATION_BATCH_SIZE,
            retry_policy=upstream_retry_policy,
        )
        watchdog = WatchdogService(
            store=store,
            stale_after=timedelta(seconds=settings.WATCHDOG_STALE_AFTER_SECONDS),
            stale_after_by_type={
                SyncObjectType.REFUNDS: timedelta(
                    seconds=settings.WATCHDOG_REFUND_STALE_AFTER_SECONDS
                )
            },
        )
        chunk_strategist = ChunkStrategist(
            order_index=order_index or SqlOrderIndex(session_factory=session_factory),
            processor=ShopifyRefundProcessor(
                client_factory=client_factory,
                session_factory=session_factory,
            ),
            threshold=settings.REFUND_CHUNK_THRESHOLD,
            chunk_size=settings.REFUND_CHUNK_SIZE,
            chunk_delay_seconds=settings.REFUND_CHUNK_DELAY_SECONDS,
        )
        dispatcher = SyncDispatcher(
            store=store,
            executor=executor or build_executor(settings, chunk_strategist),
            watchdog=watchdog,
            batch_size=settings.DISPATCHER_BATCH_SIZE,
            round_delay_seconds=settings.DISPATCHER_ROUND_DELAY_SECONDS,
            time_budget_seconds=settings.DISPATCHER_TIME_BUDGET_SECONDS,
            execution_timeout_seconds=settings.DISPATCHER_EXECUTION_TIMEOUT_SECONDS,
            enforce_dependencies=settings.DISPATCHER_ENFORCE_DEPENDENCIES,
        )
        gap_fill = GapFillService(detector=gap_detector, creator=job_creator)
        return cls(
            settings=settings,
            store=store,
            gap_detector=gap_detector,
            job_creator=job_creator,
            gap_fill=gap_fill,
            watchdog=watchdog,
            dispatcher=dispatcher,
            chunk_strategist=chunk_strategist,
            validator=FailedJobValidator(
                store=store,
                client_factory=client_factory,
                request_delay_seconds=settings.VALIDATION_REQUEST_DELAY_SECONDS,
            ),
            smart_sync=SmartSyncService(
                store=store,
                gap_fill=gap_fill,
                dispatcher=dispatcher,
                max_attempts=settings.JOB_MAX_ATTEMPTS,
                pause_seconds=settings.DISPATCHER_ROUND_DELAY_SECONDS,
            ),
        )


class _UnconfiguredExecutor:
    """Fails every job until a sync worker base URL is configured."""

    async def execute(self, job: SyncJobRecord) -> SyncExecutionResult:
        return SyncExecutionResult(
            success=False,
            error_message="SYNC_WORKER_BASE_URL is not configured",
        )


def build_executor(
    settings: Settings,
    chunk_strategist: ChunkStrategist,
) -> SyncExecutor:
    refund_executor = RefundSyncExecutor(strategist=chunk_strategist)
    if settings.SYNC_WORKER_BASE_URL is None:
        return RoutingSyncExecutor(
            default=_UnconfiguredExecutor(),
            overrides={SyncObjectType.REFUNDS: refund_executor},
        )

    token = None
    if settings.SYNC_WORKER_TOKEN is not None:
        token = settings.SYNC_WORKER_TOKEN.get_secret_value()
    http_executor = HttpSyncExecutor(
        base_url=settings.SYNC_WORKER_BASE_URL,
        token=token,
        timeout_seconds=settings.SYNC_WORKER_TIMEOUT_SECONDS,
        retry_policy=RetryPolicy(
            max_attempts=settings.UPSTREAM_MAX_ATTEMPTS,
            backoff=exponential_backoff(settings.UPSTREAM_BACKOFF_BASE_SECONDS),
        ),
    )
    return RoutingSyncExecutor(
        default=http_executor,
        overrides={SyncObjectType.REFUNDS: refund_executor},
    )


__all__ = ["OrchestratorServices", "build_executor"]
