"""ORM model exports."""

from commerce_sync import __version__
from commerce_sync.models.base import Base
from commerce_sync.models.orchestrator_run import OrchestratorRun
from commerce_sync.models.shop_order import ShopOrder
from commerce_sync.models.sync_job import (
    DISPATCH_RANK,
    ERROR_MESSAGE_MAX_LENGTH,
    MAX_PARALLEL_SHOPS,
    SYNC_DEPENDENCIES,
    SyncJob,
    SyncJobStatus,
    SyncObjectType,
)

__all__ = [
    "__version__",
    "Base",
    "DISPATCH_RANK",
    "ERROR_MESSAGE_MAX_LENGTH",
    "MAX_PARALLEL_SHOPS",
    "OrchestratorRun",
    "SYNC_DEPENDENCIES",
    "ShopOrder",
    "SyncJob",
    "SyncJobStatus",
    "SyncObjectType",
]
