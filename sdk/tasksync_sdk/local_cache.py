"""
Local caches for the TaskSync SDK.

Two key -> serialized-document stores back the sync engine:
- SqliteCache: the durable cache (primary local persistence)
- FileCache: the fallback cache, one JSON file per key under a byte quota

Values are stored as serialized JSON text exactly as the engine produced it,
so a load that returns cached data is byte-stable.

Invariants:
    - SqliteCache connections are per-operation (WAL mode)
    - FileCache never exceeds its quota; a write that would raises
      QuotaExceededError and leaves the previous value in place
"""

from __future__ import annotations

import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union
from urllib.parse import quote, unquote

from .errors import QuotaExceededError


class SqliteCache:
    """Durable local cache in a single SQLite file.

    Example:
        >>> cache = SqliteCache("/tmp/tasksync/cache.sqlite")
        >>> await cache.set("tasksync-app-storage", '{"state":{}}')
        >>> await cache.get("tasksync-app-storage")
        '{"state":{}}'
    """

    def __init__(self, path: Union[str, Path], busy_timeout_ms: int = 5000) -> None:
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS keyvalue (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            yield conn
        finally:
            conn.close()

    async def get(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM keyvalue WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO keyvalue (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, value, int(time.time() * 1000)),
            )

    async def remove(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM keyvalue WHERE key = ?", (key,))


class FileCache:
    """Fallback local cache: one file per key, bounded by a byte quota.

    Example:
        >>> cache = FileCache("/tmp/tasksync/fallback", quota_bytes=1024)
        >>> await cache.set("k", "x" * 2048)
        Traceback (most recent call last):
        QuotaExceededError: ...
    """

    SUFFIX = ".json"

    def __init__(self, directory: Union[str, Path], quota_bytes: int = 5 * 1024 * 1024) -> None:
        self.directory = Path(directory)
        self.quota_bytes = quota_bytes
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + self.SUFFIX)

    def keys(self) -> List[str]:
        return sorted(
            unquote(p.name[: -len(self.SUFFIX)])
            for p in self.directory.iterdir()
            if p.name.endswith(self.SUFFIX)
        )

    def used_bytes(self, exclude: Optional[str] = None) -> int:
        skip = self._path(exclude) if exclude is not None else None
        return sum(
            p.stat().st_size
            for p in self.directory.iterdir()
            if p.name.endswith(self.SUFFIX) and p != skip
        )

    async def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    async def set(self, key: str, value: str) -> None:
        """Write a value.

        Raises:
            QuotaExceededError: If the write would exceed the quota
        """
        data = value.encode("utf-8")
        needed = self.used_bytes(exclude=key) + len(data)
        if needed > self.quota_bytes:
            raise QuotaExceededError(key, needed, self.quota_bytes)

        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    async def remove(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()
