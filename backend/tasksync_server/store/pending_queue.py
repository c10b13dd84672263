"""
Pending-update queue for TaskSync.

When a collaborator edits a resource they do not own, the edit is applied to
the owner's document and also appended here. The owner's reads overlay any
unconsumed entries, and an entry is consumed once the owner saves a document
whose matching collection contains an item with the same id.

Invariants:
    - Entries are listed in insertion order
    - Enqueue is not transactional with the owner's document write
    - Entries never expire; they are only removed by consume()

How to change safely:
    - Keep payloads item-shaped JSON with an "id" field
    - Monitor count_for() for owners who never reconnect
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from .database import Database, now_ms

logger = logging.getLogger(__name__)


@dataclass
class PendingUpdate:
    """A collaborator-authored delta awaiting the owner.

    Attributes:
        id: Queue entry identifier
        owner_id: Owner whose document the delta targets
        item_type: Item type (task, list, folder, ...)
        payload: Item-shaped JSON
        created_at: Enqueue timestamp (Unix ms)
    """

    id: str
    owner_id: str
    item_type: str
    payload: dict[str, Any]
    created_at: int

    @property
    def item_id(self) -> Any:
        return self.payload.get("id") if isinstance(self.payload, dict) else None


class PendingUpdateQueue:
    """Durable append/consume log of deltas per owner.

    Example:
        >>> queue = PendingUpdateQueue(db)
        >>> update_id = await queue.enqueue("owner_1", "task", {"id": "t1"})
        >>> [u.item_id for u in await queue.list_for("owner_1")]
        ['t1']
        >>> await queue.consume(update_id)
        True
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def enqueue(
        self,
        owner_id: str,
        item_type: str,
        payload: dict[str, Any],
        update_id: str | None = None,
    ) -> str:
        """Append a delta for an owner.

        Returns:
            The queue entry id
        """
        update_id = update_id or str(uuid.uuid4())
        with self.db.connect() as conn:
            conn.execute(
                "INSERT INTO pending_updates (id, owner_id, type, data, created_at) VALUES (?, ?, ?, ?, ?)",
                (update_id, owner_id, item_type, json.dumps(payload), now_ms()),
            )

        logger.info(
            "Queued pending update",
            extra={"update_id": update_id, "owner_id": owner_id, "item_type": item_type},
        )
        return update_id

    async def list_for(self, owner_id: str) -> list[PendingUpdate]:
        """Unconsumed entries for an owner, oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_updates WHERE owner_id = ? ORDER BY rowid",
                (owner_id,),
            ).fetchall()
            return [self._row_to_update(row) for row in rows]

    async def consume(self, update_id: str) -> bool:
        """Delete an entry once the owner has incorporated it."""
        with self.db.connect() as conn:
            cursor = conn.execute("DELETE FROM pending_updates WHERE id = ?", (update_id,))
            consumed = cursor.rowcount > 0

        if consumed:
            logger.debug("Consumed pending update", extra={"update_id": update_id})
        return consumed

    async def count_for(self, owner_id: str) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pending_updates WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            return row[0]

    def _row_to_update(self, row: sqlite3.Row) -> PendingUpdate:
        return PendingUpdate(
            id=row["id"],
            owner_id=row["owner_id"],
            item_type=row["type"],
            payload=json.loads(row["data"]),
            created_at=row["created_at"],
        )
