"""
Storage backends and fallback selection.

Primary store: SQLite (native). Fallback store: a plain JSON file with the
same read/write contract.
"""

from .base import DEFAULT_NAMESPACE, StorageBackend, StorageHandle
from .json_store import JSONFileBackend, JSONFileStore
from .registry import BackendRegistry, default_fallback_backend, default_primary_registry
from .selector import StorageSelection, StorageSelector, select_storage
from .sqlite_store import HAS_SQLITE, SQLiteBackend, SQLiteStore

__all__ = [
    "DEFAULT_NAMESPACE",
    "HAS_SQLITE",
    "BackendRegistry",
    "JSONFileBackend",
    "JSONFileStore",
    "SQLiteBackend",
    "SQLiteStore",
    "StorageBackend",
    "StorageHandle",
    "StorageSelection",
    "StorageSelector",
    "default_fallback_backend",
    "default_primary_registry",
    "select_storage",
]
