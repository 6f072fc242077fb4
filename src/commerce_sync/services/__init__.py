"""Service layer for the commerce sync orchestrator."""

from commerce_sync import __version__
from commerce_sync.services.retry_policy import (
    NO_RETRY,
    RetryPolicy,
    exponential_backoff,
)
from commerce_sync.services.job_store import (
    JobOrder,
    RequeueResult,
    SessionScopeFactory,
    SyncJobKey,
    SyncJobRecord,
    SyncJobStats,
    SyncJobStore,
    truncate_error_message,
)
from commerce_sync.services.gap_detector import (
    GapDetectionResult,
    GapDetector,
    iter_dates,
)
from commerce_sync.services.job_creator import (
    GapFillResult,
    GapFillService,
    JobCreationResult,
    JobCreator,
)
from commerce_sync.services.watchdog import (
    StaleJobRecord,
    WatchdogResult,
    WatchdogService,
    stale_job_message,
)
from commerce_sync.services.shopify_client import (
    ShopConfigurationError,
    ShopifyAPIClient,
    ShopifyAPIError,
    ShopifyAuthenticationError,
    ShopifyClientFactory,
    ShopifyRateLimitError,
)
from commerce_sync.services.chunk_strategist import (
    ChunkStrategist,
    RefundSyncPlan,
    RefundSyncSummary,
    ShopifyRefundProcessor,
    SqlOrderIndex,
    SyncStrategy,
    choose_strategy,
)
from commerce_sync.services.executors import (
    HttpSyncExecutor,
    RefundSyncExecutor,
    RoutingSyncExecutor,
    SyncExecutionResult,
    SyncExecutor,
    SyncWorkerError,
)
from commerce_sync.services.dispatcher import (
    DispatchOutcome,
    DispatchResult,
    DriveResult,
    JobDispatchResult,
    SyncDispatcher,
    concurrency_limit_for,
    drive_to_completion,
)
from commerce_sync.services.failure_validator import (
    EMPTY_WINDOW_MESSAGE,
    FailedJobValidator,
    ValidatedJob,
    ValidationSummary,
)
from commerce_sync.services.smart_sync import SmartSyncResult, SmartSyncService
from commerce_sync.services.orchestrator import OrchestratorServices, build_executor
from commerce_sync.services.scheduler import (
    ScheduledJobSpec,
    SchedulerJobState,
    SchedulerService,
)
from commerce_sync.services.sync_pipeline import (
    JobRunMetrics,
    SyncPipelineService,
    set_sync_pipeline_service,
)

__all__ = [
    "ChunkStrategist",
    "DispatchOutcome",
    "DispatchResult",
    "DriveResult",
    "EMPTY_WINDOW_MESSAGE",
    "FailedJobValidator",
    "GapDetectionResult",
    "GapDetector",
    "GapFillResult",
    "GapFillService",
    "HttpSyncExecutor",
    "JobCreationResult",
    "JobCreator",
    "JobDispatchResult",
    "JobOrder",
    "JobRunMetrics",
    "NO_RETRY",
    "OrchestratorServices",
    "RefundSyncExecutor",
    "RefundSyncPlan",
    "RefundSyncSummary",
    "RequeueResult",
    "RetryPolicy",
    "RoutingSyncExecutor",
    "ScheduledJobSpec",
    "SchedulerJobState",
    "SchedulerService",
    "SessionScopeFactory",
    "ShopConfigurationError",
    "ShopifyAPIClient",
    "ShopifyAPIError",
    "ShopifyAuthenticationError",
    "ShopifyClientFactory",
    "ShopifyRateLimitError",
    "ShopifyRefundProcessor",
    "SmartSyncResult",
    "SmartSyncService",
    "SqlOrderIndex",
    "StaleJobRecord",
    "SyncDispatcher",
    "SyncExecutionResult",
    "SyncExecutor",
    "SyncJobKey",
    "SyncJobRecord",
    "SyncJobStats",
    "SyncJobStore",
    "SyncPipelineService",
    "SyncStrategy",
    "SyncWorkerError",
    "ValidatedJob",
    "ValidationSummary",
    "WatchdogResult",
    "WatchdogService",
    "__version__",
    "build_executor",
    "choose_strategy",
    "concurrency_limit_for",
    "drive_to_completion",
    "exponential_backoff",
    "iter_dates",
    "set_sync_pipeline_service",
    "stale_job_message",
    "truncate_error_message",
]
