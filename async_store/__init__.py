"""Top-level package for async-store.

Exports the store, its entries, snapshot models and the logging setup.
"""

from .container import AsyncContainer
from .logging_config import configure_logging  # re-export for convenience
from .models import ContainerStatus, StoreStatus
from .store import FETCH_ALL, AsyncStore, ConfigurationError, default_key

__all__ = [
    "AsyncContainer",
    "AsyncStore",
    "ConfigurationError",
    "ContainerStatus",
    "FETCH_ALL",
    "StoreStatus",
    "configure_logging",
    "default_key",
]
