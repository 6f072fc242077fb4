"""API package exports."""

from commerce_sync import __version__
from commerce_sync.api.jobs import router as jobs_router
from commerce_sync.api.orchestrator import router as orchestrator_router
from commerce_sync.api.scheduler import router as scheduler_router

__all__ = [
    "__version__",
    "jobs_router",
    "orchestrator_router",
    "scheduler_router",
]
