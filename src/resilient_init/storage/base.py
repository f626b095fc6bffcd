"""
Abstract storage interfaces.

StorageHandle is the uniform key/value contract shared by the primary
(SQLite) and fallback (JSON file) stores. StorageBackend is the
capability-checked adapter that knows whether its store can run on this
host and how to open it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

DEFAULT_NAMESPACE = "default"


class StorageHandle(ABC):
    """Handle to an initialized key/value store.

    Values must be JSON-serializable. Keys are unique per namespace.

    Subclasses must implement:
    - backend_name / path
    - initialize(), store(), retrieve(), delete(), list(), close()
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Name of the backend that produced this handle."""
        ...

    @property
    @abstractmethod
    def path(self) -> Path:
        """File backing the store."""
        ...

    @abstractmethod
    def initialize(self) -> None:
        """Prepare the store for use (create schema, load data)."""
        ...

    @abstractmethod
    def store(self, key: str, value: Any, namespace: str = DEFAULT_NAMESPACE) -> None:
        """Insert or replace ``key`` in ``namespace``."""
        ...

    @abstractmethod
    def retrieve(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[Any]:
        """Return the value for ``key``, or None if absent."""
        ...

    @abstractmethod
    def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        """Remove ``key``. Returns True if it existed."""
        ...

    @abstractmethod
    def list(self, namespace: str = DEFAULT_NAMESPACE) -> list[str]:
        """Return the keys of ``namespace`` in sorted order."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Flush and release resources."""
        ...

    def exists(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        return self.retrieve(key, namespace) is not None

    def clear(self, namespace: str = DEFAULT_NAMESPACE) -> int:
        """Delete every key in ``namespace``. Returns the number removed."""
        removed = 0
        for key in self.list(namespace):
            if self.delete(key, namespace):
                removed += 1
        return removed

    def __enter__(self) -> "StorageHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class StorageBackend(ABC):
    """Capability-checked adapter for a storage implementation.

    Backends should handle missing optional dependencies gracefully,
    returning False from is_available() rather than raising ImportError.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier (e.g. "sqlite", "json")."""
        ...

    @abstractmethod
    def is_available(self) -> bool:
        """Check whether the backend's dependencies are installed and loadable."""
        ...

    @abstractmethod
    def open(self, path: Path) -> StorageHandle:
        """Open and initialize a store at ``path``.

        Raises:
            DependencyUnavailableError: If the backend's dependency is missing.
        """
        ...
