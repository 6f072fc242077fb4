"""Utilities for shared application concerns."""

from commerce_sync import __version__
from commerce_sync.utils.logging import (
    add_request_logging_middleware,
    setup_logging,
)

__all__ = ["__version__", "add_request_logging_middleware", "setup_logging"]
