"""
Registry of storage backends.

Backends are probed through ``is_available()``; the registry never looks at
installed packages itself. Registration order is priority order.
"""

import logging
from typing import Iterable, Optional

from resilient_init.storage.base import StorageBackend
from resilient_init.storage.json_store import JSONFileBackend
from resilient_init.storage.sqlite_store import SQLiteBackend

logger = logging.getLogger("resilient-init.storage.registry")


class BackendRegistry:
    """Ordered collection of storage backends.

    Args:
        backends: Initial backends, highest priority first.
    """

    def __init__(self, backends: Optional[Iterable[StorageBackend]] = None) -> None:
        self._backends: list[StorageBackend] = []
        for backend in backends or []:
            self.register(backend)

    def register(self, backend: StorageBackend) -> None:
        """Append a backend. Names must be unique."""
        if any(b.name == backend.name for b in self._backends):
            raise ValueError(f"Backend '{backend.name}' is already registered")
        self._backends.append(backend)

    def get(self, name: str) -> Optional[StorageBackend]:
        for backend in self._backends:
            if backend.name == name:
                return backend
        return None

    @property
    def names(self) -> list[str]:
        return [b.name for b in self._backends]

    def available(self) -> list[StorageBackend]:
        """Backends whose probe reports available, in priority order."""
        found = []
        for backend in self._backends:
            if backend.is_available():
                found.append(backend)
            else:
                logger.info("Storage backend '%s' is not available", backend.name)
        return found

    def first_available(self) -> Optional[StorageBackend]:
        """The highest-priority available backend, or None."""
        for backend in self._backends:
            if backend.is_available():
                return backend
            logger.info("Storage backend '%s' is not available, trying next", backend.name)
        return None


def default_primary_registry() -> BackendRegistry:
    """Registry of primary store candidates (native backends)."""
    return BackendRegistry([SQLiteBackend()])


def default_fallback_backend() -> StorageBackend:
    return JSONFileBackend()
