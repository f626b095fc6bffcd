"""
SQLite-backed primary store.

Uses the ``sqlite3`` native extension. Some interpreters are built without
``_sqlite3`` (minimal containers, custom builds), so the import is guarded:
the module always loads, and opening a store raises
DependencyUnavailableError when the extension is missing.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

from resilient_init.exceptions import DependencyUnavailableError
from resilient_init.storage.base import DEFAULT_NAMESPACE, StorageBackend, StorageHandle

logger = logging.getLogger("resilient-init.storage.sqlite")

try:
    import sqlite3

    HAS_SQLITE = True
except ImportError:
    sqlite3 = None  # type: ignore[assignment]
    HAS_SQLITE = False
    logger.info("sqlite3 extension not available, primary store disabled")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS storage (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (namespace, key)
);
CREATE INDEX IF NOT EXISTS idx_storage_namespace ON storage(namespace);
CREATE INDEX IF NOT EXISTS idx_storage_created_at ON storage(created_at);
"""


class SQLiteStore(StorageHandle):
    """Key/value store in a single SQLite table.

    Values are stored as JSON text. Access from multiple threads is
    serialized through an internal lock.

    Args:
        db_path: Database file. Parent directories are created.
    """

    def __init__(self, db_path: Path) -> None:
        if not HAS_SQLITE:
            raise DependencyUnavailableError(
                "sqlite3 native module is not available",
                dependency="sqlite3",
            )
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)

    @property
    def backend_name(self) -> str:
        return "sqlite"

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        logger.debug("SQLite store initialized at %s", self._path)

    def store(self, key: str, value: Any, namespace: str = DEFAULT_NAMESPACE) -> None:
        payload = json.dumps(value)
        with self._lock:
            self._conn.execute(
                "INSERT INTO storage (namespace, key, value) VALUES (?, ?, ?) "
                "ON CONFLICT(namespace, key) DO UPDATE SET "
                "value = excluded.value, updated_at = strftime('%s', 'now')",
                (namespace, key, payload),
            )
            self._conn.commit()

    def retrieve(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[Any]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM storage WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            return row[0]

    def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM storage WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def list(self, namespace: str = DEFAULT_NAMESPACE) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM storage WHERE namespace = ? ORDER BY key",
                (namespace,),
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SQLiteBackend(StorageBackend):
    """Primary backend: native, file-backed SQLite."""

    @property
    def name(self) -> str:
        return "sqlite"

    def is_available(self) -> bool:
        return HAS_SQLITE

    def open(self, path: Path) -> SQLiteStore:
        store = SQLiteStore(path)
        try:
            store.initialize()
        except Exception:
            store.close()
            raise
        return store
