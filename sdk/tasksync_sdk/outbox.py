"""
Durable outbox for remote document writes.

Every remote write (save and load write-back) is appended to a local SQLite
table before it is sent. A background task drains the table with exponential
backoff and jitter, so a crash or an offline period does not lose an
unacknowledged write.

Invariants:
    - Only the newest body per key is sent; once acknowledged, every older
      row for that key is discarded with it
    - Keys are drained oldest-first
    - Retryable failures (RemoteUnavailableError) back off; other SyncErrors
      drop the row, since resending the same body cannot succeed
    - NotAuthenticatedError pauses the drain and keeps the row for the next
      flush() or start() with a valid token
    - After max_retries consecutive failures the drain stops; rows stay on
      disk until the next append, flush() or start()
"""

from __future__ import annotations

import asyncio
import logging
import random
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Union

from .errors import NotAuthenticatedError, RemoteUnavailableError, SyncError

logger = logging.getLogger(__name__)

Sender = Callable[[str, str], Awaitable[Any]]


@dataclass
class OutboxEntry:
    """One queued write."""

    id: int
    key: str
    body: str
    created_at: int


class Outbox:
    """SQLite-backed queue of document writes with a backoff drain.

    Example:
        >>> outbox = Outbox("/tmp/tasksync/outbox.sqlite", remote.put_document)
        >>> await outbox.append("tasksync-app-storage", '{"state":{}}')
        >>> await outbox.flush()
        0
    """

    def __init__(
        self,
        path: Union[str, Path],
        sender: Sender,
        max_retries: int = 8,
        initial_delay: float = 0.5,
        max_delay: float = 30.0,
    ) -> None:
        self.path = Path(path)
        self.sender = sender
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._task: Optional[asyncio.Task] = None

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_outbox_key ON outbox(key, id)")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), isolation_level=None)
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            yield conn
        finally:
            conn.close()

    async def append(self, key: str, body: str) -> int:
        """Queue a write and make sure the drain is running."""
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO outbox (key, body, created_at) VALUES (?, ?, ?)",
                (key, body, int(time.time() * 1000)),
            )
            entry_id = cursor.lastrowid
        self._kick()
        return entry_id

    async def pending(self) -> List[OutboxEntry]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, key, body, created_at FROM outbox ORDER BY id").fetchall()
        return [OutboxEntry(*row) for row in rows]

    def _next(self) -> Optional[OutboxEntry]:
        with self._connect() as conn:
            first = conn.execute("SELECT key FROM outbox ORDER BY id LIMIT 1").fetchone()
            if first is None:
                return None
            row = conn.execute(
                "SELECT id, key, body, created_at FROM outbox WHERE key = ? ORDER BY id DESC LIMIT 1",
                (first[0],),
            ).fetchone()
        return OutboxEntry(*row) if row else None

    def _ack(self, entry: OutboxEntry) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM outbox WHERE key = ? AND id <= ?", (entry.key, entry.id))

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number attempt (1-based), with jitter."""
        ceiling = min(self.max_delay, self.initial_delay * (2 ** (attempt - 1)))
        return random.uniform(ceiling / 2, ceiling)

    def _kick(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        attempt = 0
        while True:
            entry = self._next()
            if entry is None:
                return

            try:
                await self.sender(entry.key, entry.body)
            except RemoteUnavailableError as e:
                attempt += 1
                if attempt >= self.max_retries:
                    logger.error(
                        f"Outbox send failed {attempt} times, pausing drain: {e}",
                        extra={"key": entry.key},
                    )
                    return
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Outbox send failed, retrying in {delay:.2f}s: {e}",
                    extra={"key": entry.key, "attempt": attempt},
                )
                await asyncio.sleep(delay)
                continue
            except NotAuthenticatedError as e:
                logger.error(
                    f"Outbox send not authenticated, pausing drain: {e}",
                    extra={"key": entry.key},
                )
                return
            except SyncError as e:
                logger.error(f"Dropping outbox entry: {e}", extra={"key": entry.key, "code": e.code})
                self._ack(entry)
                continue

            attempt = 0
            self._ack(entry)
            logger.debug("Outbox entry acknowledged", extra={"key": entry.key, "id": entry.id})

    async def start(self) -> None:
        """Resume draining rows left by a previous process."""
        if self._next() is not None:
            logger.info("Resuming outbox drain")
            self._kick()

    async def flush(self) -> int:
        """Drain now and wait for it.

        Returns:
            Number of rows still queued (non-zero if the drain gave up)
        """
        self._kick()
        if self._task is not None:
            await self._task
        return len(await self.pending())

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
