"""Key/value document stores.

Every component persists its state as JSON documents addressed by key:

- ``execution/current``       current execution record
- ``locks/table``             active locks and waiter queues
- ``checkpoints/index``       ordered checkpoint ids
- ``checkpoints/<id>``        one checkpoint record
- ``telemetry/records``       execution metrics log
- ``telemetry/aggregates``    incremental aggregates
- ``telemetry/suggestions``   last generated suggestions
- ``learning/events``         learning events
- ``learning/validated``      validated learning events

A missing or unreadable document yields the caller's default.

Read-modify-write sequences run inside ``transaction()``: reads and writes
made on the same thread within the block see one consistent state and
commit together, and concurrent transactions (from other threads or other
processes sharing the database) are serialized.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from collections.abc import Generator, Mapping
from contextlib import AbstractContextManager, contextmanager
from typing import Any, Protocol

from orchestration.storage.database import Database

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    """Narrow read/write-by-key contract injected into each component."""

    def read(self, key: str, default: Any = None) -> Any: ...

    def write(self, key: str, value: Any) -> None: ...

    def write_many(self, values: Mapping[str, Any], delete: tuple[str, ...] = ()) -> None:
        """Write and delete several keys atomically."""
        ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...

    def transaction(self) -> AbstractContextManager[None]:
        """Serialize a read-modify-write sequence; nested calls join the outer one."""
        ...


class MemoryDocumentStore:
    """In-process store; values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.RLock()

    def read(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return copy.deepcopy(default)
        return json.loads(raw)

    def write(self, key: str, value: Any) -> None:
        self.write_many({key: value})

    def write_many(self, values: Mapping[str, Any], delete: tuple[str, ...] = ()) -> None:
        encoded = {key: json.dumps(value) for key, value in values.items()}
        with self._lock:
            self._data.update(encoded)
            for key in delete:
                self._data.pop(key, None)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        with self._lock:
            snapshot = dict(self._data)
            try:
                yield
            except Exception:
                self._data = snapshot
                raise


class SqliteDocumentStore:
    """Document store on the WAL-mode SQLite database.

    ``write_many`` runs in a single transaction, so a crash between writing a
    record and updating its index leaves neither change applied.
    ``transaction()`` holds SQLite's write lock (``BEGIN IMMEDIATE``) for the
    whole block, which is what serializes agents running in separate
    processes against the same data directory.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.db.ensure_tables()
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        if getattr(self._local, "conn", None) is not None:
            yield
            return
        with self.db.connect(immediate=True) as conn:
            self._local.conn = conn
            try:
                yield
            finally:
                self._local.conn = None

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
        else:
            with self.db.connect() as conn:
                yield conn

    def read(self, key: str, default: Any = None) -> Any:
        try:
            with self._connection() as conn:
                row = conn.execute("SELECT value FROM documents WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error:
            logger.warning("Could not read document %s, using default", key, exc_info=True)
            return copy.deepcopy(default)
        if row is None:
            return copy.deepcopy(default)
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("Corrupt document %s, using default", key)
            return copy.deepcopy(default)

    def write(self, key: str, value: Any) -> None:
        self.write_many({key: value})

    def write_many(self, values: Mapping[str, Any], delete: tuple[str, ...] = ()) -> None:
        with self._connection() as conn:
            for key, value in values.items():
                conn.execute(
                    """
                    INSERT INTO documents (key, value, updated_at)
                    VALUES (?, ?, datetime('now'))
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, json.dumps(value)),
                )
            for key in delete:
                conn.execute("DELETE FROM documents WHERE key = ?", (key,))

    def delete(self, key: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM documents WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT key FROM documents WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row["key"] for row in rows]
