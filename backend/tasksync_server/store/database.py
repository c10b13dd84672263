"""
SQLite database handle shared by the TaskSync stores.

One database file holds every server-side table:
- app_state: key -> JSON document blobs (Document Store)
- users: identities produced by the auth boundary
- shared_resources: share grants
- resource_owners: explicit resource ownership
- pending_updates: collaborator deltas awaiting the owner

Invariants:
    - Connections are created per-operation and closed afterwards
    - WAL mode is enabled so readers never block the single writer
    - Multi-statement writes use BEGIN IMMEDIATE ... COMMIT/ROLLBACK

How to change safely:
    - Schema migrations must be backward compatible (CREATE IF NOT EXISTS,
      new columns with defaults)
    - Bump SCHEMA_VERSION and record it in schema_version

Table schema:
    app_state:
        - key TEXT PRIMARY KEY
        - value TEXT (JSON)
        - version INTEGER (incremented on every write)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)

    shared_resources:
        - id TEXT PRIMARY KEY
        - resource_type, resource_id, owner_id, invited_email TEXT
        - status TEXT ('pending' | 'accepted')
        - permission TEXT ('view' | 'edit')
        - created_at INTEGER
        - UNIQUE (resource_type, resource_id, invited_email)

    pending_updates:
        - id TEXT PRIMARY KEY
        - owner_id TEXT
        - type TEXT
        - data TEXT (JSON)
        - created_at INTEGER
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


class DatabaseNotInitializedError(Exception):
    """Database file has not been initialized."""

    pass


class Database:
    """SQLite database shared by the document, identity and queue stores.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> db = Database("/var/lib/tasksync/tasksync.sqlite")
        >>> await db.initialize()
        >>> with db.connect() as conn:
        ...     conn.execute("SELECT COUNT(*) FROM app_state").fetchone()
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the database handle.

        Args:
            path: SQLite database file path
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False
        self._lock = asyncio.Lock()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Yields:
            SQLite connection in autocommit mode

        Raises:
            DatabaseNotInitializedError: If initialize() has not been called
        """
        if not self._initialized:
            raise DatabaseNotInitializedError(f"Database not initialized: {self.path}")

        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection inside BEGIN IMMEDIATE, committing on success."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            if self._initialized:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._open()
            try:
                self._create_schema(conn)
            finally:
                conn.close()
            self._initialized = True
            logger.info(f"Database initialized: {self.path}")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT,
                name TEXT,
                provider TEXT NOT NULL DEFAULT 'local',
                provider_id TEXT,
                avatar_url TEXT,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS shared_resources (
                id TEXT PRIMARY KEY,
                resource_type TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                invited_email TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                permission TEXT NOT NULL DEFAULT 'view',
                created_at INTEGER NOT NULL,
                UNIQUE (resource_type, resource_id, invited_email)
            );

            CREATE INDEX IF NOT EXISTS idx_shared_invited
                ON shared_resources(invited_email, status);
            CREATE INDEX IF NOT EXISTS idx_shared_resource
                ON shared_resources(resource_type, resource_id);

            CREATE TABLE IF NOT EXISTS resource_owners (
                resource_type TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (resource_type, resource_id)
            );

            CREATE TABLE IF NOT EXISTS pending_updates (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                type TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_pending_owner ON pending_updates(owner_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)
