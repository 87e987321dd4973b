"""
Data storage layer.

StorageBackend defines the synchronous persistence contract, DuckDBStorage
implements it on a local DuckDB file, and ResilientStore exposes it to async
code under the storage resilience policy.
"""

from functools import lru_cache

from steadybooks.config import get_settings

from .base import StorageBackend, StorageError, TransientStorageError
from .duckdb_storage import DuckDBStorage
from .resilient import ResilientStore


@lru_cache
def get_storage() -> StorageBackend:
    """
    Get cached storage backend instance (singleton).

    Returns:
        StorageBackend implementation instance
    """
    settings = get_settings()
    return DuckDBStorage(db_path=settings.db_path)


__all__ = [
    "DuckDBStorage",
    "ResilientStore",
    "StorageBackend",
    "StorageError",
    "TransientStorageError",
    "get_storage",
]
