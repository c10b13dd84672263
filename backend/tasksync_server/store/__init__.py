"""
Store module for TaskSync - the server's system of record.

This module handles:
- SQLite database lifecycle and schema
- Key -> JSON document storage (StateBlob)
- Users, share grants and resource ownership
- The pending-update queue for collaborator edits

Invariants:
    - All stores share one SQLite database in WAL mode
    - Document writes are full upserts with a monotonically increasing version
    - Grant uniqueness is enforced by the database, not by a pre-check

How to change safely:
    - Test schema migrations against an existing database file
    - Use transactions for all multi-statement writes
"""

from .database import Database, DatabaseNotInitializedError
from .document_store import (
    DocumentStore,
    StateBlob,
    VersionConflictError,
    decode_document,
    identity_key,
)
from .identity_store import (
    GrantConflictError,
    GrantStatus,
    IdentityStore,
    ResourceType,
    ShareGrant,
    User,
)
from .pending_queue import PendingUpdate, PendingUpdateQueue

__all__ = [
    "Database",
    "DatabaseNotInitializedError",
    "DocumentStore",
    "StateBlob",
    "VersionConflictError",
    "decode_document",
    "identity_key",
    "IdentityStore",
    "User",
    "ShareGrant",
    "ResourceType",
    "GrantStatus",
    "GrantConflictError",
    "PendingUpdate",
    "PendingUpdateQueue",
]
