"""
JSON file-backed fallback store.

Needs nothing beyond the standard library, so it works wherever the
primary store's native dependency cannot be loaded. The whole store lives
in one JSON document ``{namespace: {key: value}}`` that is rewritten
atomically (temp file + ``os.replace``) after every change.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional

from resilient_init.storage.base import DEFAULT_NAMESPACE, StorageBackend, StorageHandle

logger = logging.getLogger("resilient-init.storage.json")


class JSONFileStore(StorageHandle):
    """Key/value store persisted as a single JSON file.

    Args:
        file_path: JSON file. Parent directories are created on write.
    """

    def __init__(self, file_path: Path) -> None:
        self._path = Path(file_path)
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    @property
    def backend_name(self) -> str:
        return "json"

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        """Load the file; a corrupt or unreadable file starts the store fresh."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._path.exists():
            self._data = {}
            return
        try:
            with open(self._path, encoding="utf-8") as f:
                content = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Failed to load JSON store %s, starting fresh: %s", self._path, exc)
            content = {}
        if not isinstance(content, dict):
            logger.warning("JSON store %s is not a mapping, starting fresh", self._path)
            content = {}
        self._data = {
            ns: dict(entries) for ns, entries in content.items() if isinstance(entries, dict)
        }

    def _snapshot(self) -> dict[str, dict[str, Any]]:
        return {ns: dict(entries) for ns, entries in self._data.items()}

    def _persist(self, data: Optional[dict[str, dict[str, Any]]] = None) -> None:
        """Write ``data`` (default: current contents) to disk atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data if data is None else data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def store(self, key: str, value: Any, namespace: str = DEFAULT_NAMESPACE) -> None:
        json.dumps(value)  # reject non-serializable values before mutating
        with self._lock:
            data = self._snapshot()
            data.setdefault(namespace, {})[key] = value
            self._persist(data)
            self._data = data

    def retrieve(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[Any]:
        with self._lock:
            return self._data.get(namespace, {}).get(key)

    def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        with self._lock:
            if key not in self._data.get(namespace, {}):
                return False
            data = self._snapshot()
            del data[namespace][key]
            self._persist(data)
            self._data = data
            return True

    def list(self, namespace: str = DEFAULT_NAMESPACE) -> list[str]:
        with self._lock:
            return sorted(self._data.get(namespace, {}))

    def close(self) -> None:
        with self._lock:
            self._persist()


class JSONFileBackend(StorageBackend):
    """Fallback backend: plain JSON file, always available."""

    @property
    def name(self) -> str:
        return "json"

    def is_available(self) -> bool:
        return True

    def open(self, path: Path) -> JSONFileStore:
        store = JSONFileStore(path)
        store.initialize()
        return store
