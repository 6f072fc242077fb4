"""Schema exports for API serialization."""

from commerce_sync import __version__
from commerce_sync.schemas.orchestrator import (
    CamelModel,
    ContinueRequest,
    ContinueResponse,
    GapFillRequest,
    GapFillResponse,
    GapFillStatsRead,
    JobDispatchRead,
    JobStatsRead,
    OrchestratorErrorResponse,
    RefundSyncRequest,
    RefundSyncResponse,
    RequeueFailedRequest,
    RequeueResponse,
    SmartSyncRequest,
    SmartSyncResponse,
    StaleJobRead,
    SyncJobListResponse,
    SyncJobRead,
    ValidatedJobRead,
    ValidateFailedRequest,
    ValidationResponse,
    WatchdogResponse,
)

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
    "__version__",
]
