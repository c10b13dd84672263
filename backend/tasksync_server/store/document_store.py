"""
Key -> JSON document store for TaskSync.

Each row of app_state is a StateBlob: the full working document of one
identity (or a legacy global key), stored as a single JSON value.

Writes are full-document upserts; there is no patch semantics. Concurrent
writers race and the last write wins at the row level. Callers that need a
read-modify-write (the propagate handler) guard it with lock(key) and pass
expected_version so a concurrent owner save is detected instead of clobbered.

Invariants:
    - version starts at 1 and increases by one on every write of a key
    - updated_at is the time of the latest write
    - Rows are never deleted by the normal flow

How to change safely:
    - Keep the stored value plain JSON (clients re-parse it)
    - Never reuse a version number for a key
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import weakref
from dataclasses import dataclass
from typing import Any

from .database import Database, now_ms

logger = logging.getLogger(__name__)


class VersionConflictError(Exception):
    """The stored document changed since it was read."""

    def __init__(self, key: str, expected: int, actual: int):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"Version conflict on {key}: expected {expected}, found {actual}")


@dataclass
class StateBlob:
    """Stored document envelope.

    Attributes:
        key: Storage key (identity:<id>:<name> or a bare legacy name)
        document: Decoded JSON document (None if undecodable)
        version: Write counter, 0 for a key that was never written
        created_at: First write (Unix ms)
        updated_at: Latest write (Unix ms)
    """

    key: str
    document: Any
    version: int
    created_at: int
    updated_at: int


def identity_key(identity_id: str, logical_name: str) -> str:
    """Build the namespaced storage key for an authenticated identity."""
    return f"identity:{identity_id}:{logical_name}"


def decode_document(raw: Any, key: str = "") -> Any:
    """Decode a stored or received document.

    A string that decodes to another string is treated as double-encoded
    JSON and parsed once more. Anything that fails to parse is None.
    """
    value = raw
    for _ in range(2):
        if not isinstance(value, (str, bytes)):
            return value
        try:
            value = json.loads(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Undecodable document for {key or '<unknown>'}: {e}")
            return None
    if isinstance(value, str):
        logger.warning(f"Document for {key or '<unknown>'} is encoded more than twice")
        return None
    return value


class DocumentStore:
    """Durable key -> JSON document store.

    Example:
        >>> store = DocumentStore(db)
        >>> await store.set("identity:u1:tasksync-app-storage", {"state": {}})
        >>> await store.get("identity:u1:tasksync-app-storage")
        {'state': {}}
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock(self, key: str) -> asyncio.Lock:
        """Per-key lock for read-modify-write sequences in this process.

        A key's lock lives only while a caller holds a reference to it.
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get(self, key: str) -> Any | None:
        """Get the document stored under key, or None."""
        blob = await self.get_blob(key)
        return blob.document if blob else None

    async def get_blob(self, key: str) -> StateBlob | None:
        """Get the full envelope stored under key, or None."""
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM app_state WHERE key = ?", (key,)).fetchone()
            if not row:
                return None
            return self._row_to_blob(row)

    async def set(
        self,
        key: str,
        document: Any,
        expected_version: int | None = None,
    ) -> StateBlob:
        """Upsert the full document under key.

        Args:
            key: Storage key
            document: JSON-serializable document
            expected_version: If given, the write only succeeds when the stored
                version still equals it (0 means "key must not exist yet")

        Returns:
            The stored envelope

        Raises:
            VersionConflictError: If expected_version does not match
        """
        value = json.dumps(document)
        now = now_ms()

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT version, created_at FROM app_state WHERE key = ?", (key,)
            ).fetchone()
            current = row["version"] if row else 0

            if expected_version is not None and current != expected_version:
                raise VersionConflictError(key, expected_version, current)

            conn.execute(
                """
                INSERT INTO app_state (key, value, version, created_at, updated_at)
                VALUES (?, ?, 1, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    version = app_state.version + 1,
                    updated_at = excluded.updated_at
                """,
                (key, value, now, now),
            )

        logger.debug(
            "Stored document",
            extra={"key": key, "version": current + 1, "size": len(value)},
        )

        return StateBlob(
            key=key,
            document=document,
            version=current + 1,
            created_at=row["created_at"] if row else now,
            updated_at=now,
        )

    async def get_all(self) -> dict[str, Any]:
        """Get every stored document keyed by storage key (admin/debug)."""
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM app_state ORDER BY key").fetchall()
            return {row["key"]: self._row_to_blob(row).document for row in rows}

    def _row_to_blob(self, row: sqlite3.Row) -> StateBlob:
        return StateBlob(
            key=row["key"],
            document=decode_document(row["value"], row["key"]),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
