"""
Identity, share-grant and ownership records for TaskSync.

This module stores:
- Users produced by the identity boundary (registration or social sign-in)
- Share grants linking an owner's resource to an invited email address
- Explicit resource ownership, so a never-shared resource still has a
  resolvable owner

Invariants:
    - Emails are stored lower-cased and stripped
    - At most one grant per (resource_type, resource_id, invited_email),
      enforced by a UNIQUE constraint rather than a read-then-write check
    - The first ownership claim for a resource wins

How to change safely:
    - New resource types must be added to ResourceType
    - Keep grant status transitions one-way (pending -> accepted)
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .database import Database, now_ms

logger = logging.getLogger(__name__)


class ResourceType(Enum):
    """Resources that can be shared."""

    SPACE = "space"
    LIST = "list"
    FOLDER = "folder"
    TASK = "task"


class GrantStatus(Enum):
    """Acceptance status of a share grant."""

    PENDING = "pending"
    ACCEPTED = "accepted"


class GrantConflictError(Exception):
    """A grant already exists for the (resource, invited email) tuple."""

    def __init__(self, resource_type: str, resource_id: str, email: str, status: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.email = email
        self.status = status
        if status == GrantStatus.ACCEPTED.value:
            msg = "User already has access to this resource."
        else:
            msg = "User is already invited."
        super().__init__(msg)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    """An identity known to the server.

    Attributes:
        id: User identifier
        email: Unique email address
        display_name: Name shown to collaborators
        provider: Identity provider (local, google, facebook)
        password_hash: Credential hash, empty for non-local providers
        provider_id: External id at the provider
        avatar_url: Optional avatar
        created_at: Creation timestamp (Unix ms)
    """

    id: str
    email: str
    display_name: str | None
    provider: str = "local"
    password_hash: str | None = None
    provider_id: str | None = None
    avatar_url: str | None = None
    created_at: int = 0

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.display_name,
            "avatarUrl": self.avatar_url,
        }


@dataclass
class ShareGrant:
    """Access grant for one invited email on one resource.

    Attributes:
        id: Grant identifier
        resource_type: space, list, folder or task
        resource_id: Id of the shared item in the owner's document
        owner_id: Owner of the resource
        invited_email: Invited identity
        status: pending or accepted
        permission: view or edit
        created_at: Creation timestamp (Unix ms)
    """

    id: str
    resource_type: str
    resource_id: str
    owner_id: str
    invited_email: str
    status: str
    permission: str
    created_at: int

    @property
    def is_accepted(self) -> bool:
        return self.status == GrantStatus.ACCEPTED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "owner_id": self.owner_id,
            "invited_email": self.invited_email,
            "status": self.status,
            "permission": self.permission,
            "created_at": self.created_at,
        }


class IdentityStore:
    """Users, share grants and resource ownership.

    Example:
        >>> store = IdentityStore(db)
        >>> owner = await store.create_user(email="ann@example.com", display_name="Ann")
        >>> grant = await store.create_grant("space", "s1", owner.id, "bob@example.com")
        >>> await store.accept_grant(grant.id, "bob@example.com")
        True
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # --- Users ---

    async def create_user(
        self,
        email: str,
        display_name: str | None = None,
        provider: str = "local",
        password_hash: str | None = None,
        provider_id: str | None = None,
        avatar_url: str | None = None,
        user_id: str | None = None,
    ) -> User:
        """Create a user.

        Raises:
            sqlite3.IntegrityError: If the email is already registered
        """
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=normalize_email(email),
            display_name=display_name,
            provider=provider,
            password_hash=password_hash if provider == "local" else None,
            provider_id=provider_id,
            avatar_url=avatar_url,
            created_at=now_ms(),
        )
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, password_hash, name, provider,
                                   provider_id, avatar_url, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user.id,
                    user.email,
                    user.password_hash,
                    user.display_name,
                    user.provider,
                    user.provider_id,
                    user.avatar_url,
                    user.created_at,
                ),
            )
        logger.info("Created user", extra={"user_id": user.id, "provider": provider})
        return user

    async def get_user_by_email(self, email: str) -> User | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (normalize_email(email),)
            ).fetchone()
            return self._row_to_user(row) if row else None

    async def get_user_by_id(self, user_id: str) -> User | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._row_to_user(row) if row else None

    # --- Grants ---

    async def create_grant(
        self,
        resource_type: str,
        resource_id: str,
        owner_id: str,
        invited_email: str,
        permission: str = "view",
        grant_id: str | None = None,
    ) -> ShareGrant:
        """Insert a pending grant.

        Raises:
            GrantConflictError: If a grant already exists for the tuple
        """
        grant = ShareGrant(
            id=grant_id or str(uuid.uuid4()),
            resource_type=resource_type,
            resource_id=resource_id,
            owner_id=owner_id,
            invited_email=normalize_email(invited_email),
            status=GrantStatus.PENDING.value,
            permission=permission,
            created_at=now_ms(),
        )
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO shared_resources (id, resource_type, resource_id, owner_id,
                                                  invited_email, status, permission, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        grant.id,
                        grant.resource_type,
                        grant.resource_id,
                        grant.owner_id,
                        grant.invited_email,
                        grant.status,
                        grant.permission,
                        grant.created_at,
                    ),
                )
        except sqlite3.IntegrityError:
            existing = await self.find_grant(resource_type, resource_id, invited_email)
            raise GrantConflictError(
                resource_type,
                resource_id,
                grant.invited_email,
                existing.status if existing else GrantStatus.PENDING.value,
            ) from None

        logger.info(
            "Created share grant",
            extra={
                "grant_id": grant.id,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "owner_id": owner_id,
            },
        )
        return grant

    async def get_grant(self, grant_id: str) -> ShareGrant | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM shared_resources WHERE id = ?", (grant_id,)
            ).fetchone()
            return self._row_to_grant(row) if row else None

    async def find_grant(
        self,
        resource_type: str,
        resource_id: str,
        invited_email: str,
    ) -> ShareGrant | None:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM shared_resources
                WHERE resource_type = ? AND resource_id = ? AND invited_email = ?
                """,
                (resource_type, resource_id, normalize_email(invited_email)),
            ).fetchone()
            return self._row_to_grant(row) if row else None

    async def list_grants_for_email(
        self,
        invited_email: str,
        status: GrantStatus | None = None,
    ) -> list[ShareGrant]:
        """Grants addressed to an email, in insertion order."""
        query = "SELECT * FROM shared_resources WHERE invited_email = ?"
        params: list[Any] = [normalize_email(invited_email)]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY rowid"

        with self.db.connect() as conn:
            return [self._row_to_grant(row) for row in conn.execute(query, params).fetchall()]

    async def list_grants_for_resource(
        self,
        resource_type: str,
        resource_id: str,
    ) -> list[tuple[ShareGrant, User | None]]:
        """Grants on a resource joined with the invited user, if registered."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT sr.*,
                       u.id AS u_id, u.email AS u_email, u.name AS u_name,
                       u.provider AS u_provider, u.avatar_url AS u_avatar_url,
                       u.created_at AS u_created_at
                FROM shared_resources sr
                LEFT JOIN users u ON sr.invited_email = u.email
                WHERE sr.resource_type = ? AND sr.resource_id = ?
                ORDER BY sr.rowid
                """,
                (resource_type, resource_id),
            ).fetchall()

        result = []
        for row in rows:
            user = None
            if row["u_id"] is not None:
                user = User(
                    id=row["u_id"],
                    email=row["u_email"],
                    display_name=row["u_name"],
                    provider=row["u_provider"],
                    avatar_url=row["u_avatar_url"],
                    created_at=row["u_created_at"],
                )
            result.append((self._row_to_grant(row), user))
        return result

    async def accept_grant(self, grant_id: str, invited_email: str) -> bool:
        """Mark the caller's grant as accepted.

        Returns:
            True if a grant with that id is addressed to invited_email
        """
        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE shared_resources SET status = ? WHERE id = ? AND invited_email = ?",
                (GrantStatus.ACCEPTED.value, grant_id, normalize_email(invited_email)),
            )
            return cursor.rowcount > 0

    async def delete_grant(
        self,
        resource_type: str,
        resource_id: str,
        invited_email: str,
    ) -> bool:
        """Delete the caller's grant on a resource."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM shared_resources
                WHERE resource_type = ? AND resource_id = ? AND invited_email = ?
                """,
                (resource_type, resource_id, normalize_email(invited_email)),
            )
            return cursor.rowcount > 0

    # --- Ownership ---

    async def claim_resource(
        self,
        resource_type: str,
        resource_id: str,
        owner_id: str,
    ) -> str:
        """Record ownership of a resource unless already claimed.

        Returns:
            The recorded owner id (the earlier claimant if one exists)
        """
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO resource_owners (resource_type, resource_id, owner_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (resource_type, resource_id, owner_id, now_ms()),
            )
            row = conn.execute(
                "SELECT owner_id FROM resource_owners WHERE resource_type = ? AND resource_id = ?",
                (resource_type, resource_id),
            ).fetchone()
            return row["owner_id"]

    async def get_resource_owner(self, resource_type: str, resource_id: str) -> str | None:
        """Resolve the owner of a resource.

        Explicit ownership wins; grant rows are the fallback for resources
        shared before ownership was recorded.
        """
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT owner_id FROM resource_owners WHERE resource_type = ? AND resource_id = ?",
                (resource_type, resource_id),
            ).fetchone()
            if row:
                return row["owner_id"]

            row = conn.execute(
                """
                SELECT owner_id FROM shared_resources
                WHERE resource_type = ? AND resource_id = ?
                ORDER BY rowid LIMIT 1
                """,
                (resource_type, resource_id),
            ).fetchone()
            return row["owner_id"] if row else None

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            display_name=row["name"],
            provider=row["provider"],
            password_hash=row["password_hash"],
            provider_id=row["provider_id"],
            avatar_url=row["avatar_url"],
            created_at=row["created_at"],
        )

    def _row_to_grant(self, row: sqlite3.Row) -> ShareGrant:
        return ShareGrant(
            id=row["id"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            owner_id=row["owner_id"],
            invited_email=row["invited_email"],
            status=row["status"],
            permission=row["permission"],
            created_at=row["created_at"],
        )
