"""
Share permissions and access checks for TaskSync.

This module handles access control for shared resources:
- Permission levels (view, edit) and their hierarchy
- Propagate authorization (may a collaborator write into an owner's document)
- Invite authorization (may the caller share a resource)

Invariants:
    - The owner always has full access
    - Only accepted grants confer access
    - Propagate authorization is lenient: a payload without a spaceId is not
      checked, since it cannot be attributed to a shared space

How to change safely:
    - New permission levels must be additive in PERMISSION_HIERARCHY
    - Tighten the lenient propagate path only together with the clients
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from ..auth import Identity
from ..store import IdentityStore, ResourceType

logger = logging.getLogger(__name__)


class Permission(Enum):
    """Permission levels for share grants."""

    VIEW = "view"
    EDIT = "edit"

    @classmethod
    def parse(cls, value: str | None) -> Permission:
        """Parse a permission, defaulting to VIEW when absent."""
        if not value:
            return cls.VIEW
        try:
            return cls(value)
        except ValueError:
            valid = [p.value for p in cls]
            raise ValueError(f"Invalid permission '{value}', must be one of {valid}") from None


# Permission hierarchy (higher includes lower)
PERMISSION_HIERARCHY = {
    Permission.VIEW: {Permission.VIEW},
    Permission.EDIT: {Permission.VIEW, Permission.EDIT},
}


class AccessDeniedError(Exception):
    """Access denied due to insufficient permissions."""

    def __init__(
        self,
        actor: str,
        resource: str,
        permission: Permission,
        message: str | None = None,
    ):
        self.actor = actor
        self.resource = resource
        self.permission = permission
        msg = message or f"Access denied: {actor} lacks {permission.value} on {resource}"
        super().__init__(msg)


def grants_permission(granted: str, required: Permission) -> bool:
    """Check whether a stored grant permission satisfies a requirement."""
    try:
        level = Permission(granted)
    except ValueError:
        logger.warning(f"Invalid grant permission: {granted}")
        return False
    return required in PERMISSION_HIERARCHY[level]


class SharePolicy:
    """Access decisions backed by the grant and ownership records.

    Example:
        >>> policy = SharePolicy(identity_store)
        >>> await policy.check_propagate(caller, owner_id="u1", payload={"spaceId": "s1"})
    """

    def __init__(self, identities: IdentityStore) -> None:
        self.identities = identities

    async def has_access(
        self,
        identity: Identity,
        resource_type: str,
        resource_id: str,
        required: Permission,
    ) -> bool:
        """Check whether the caller owns or holds an accepted grant on a resource."""
        owner_id = await self.identities.get_resource_owner(resource_type, resource_id)
        if owner_id == identity.id:
            return True

        grant = await self.identities.find_grant(resource_type, resource_id, identity.email)
        if grant is None or not grant.is_accepted:
            return False
        return grants_permission(grant.permission, required)

    async def check_propagate(
        self,
        identity: Identity,
        owner_id: str,
        payload: dict[str, Any],
    ) -> None:
        """Authorize a collaborator write into owner_id's document.

        Raises:
            AccessDeniedError: If the payload's space is not shared with the
                caller for editing by owner_id and the caller is not the owner
        """
        space_id = payload.get("spaceId")
        if not space_id:
            logger.debug(
                "Propagate without spaceId, skipping authorization",
                extra={"actor": identity.id, "owner_id": owner_id},
            )
            return

        if identity.id == owner_id:
            return

        grant = await self.identities.find_grant(
            ResourceType.SPACE.value, space_id, identity.email
        )
        if grant is None or not grant.is_accepted:
            raise AccessDeniedError(
                identity.id,
                f"space:{space_id}",
                Permission.EDIT,
                "Access denied: You are not a member of this space.",
            )
        if grant.owner_id != owner_id:
            raise AccessDeniedError(
                identity.id,
                f"space:{space_id}",
                Permission.EDIT,
                "Access denied: This space does not belong to the target owner.",
            )
        if not grants_permission(grant.permission, Permission.EDIT):
            raise AccessDeniedError(
                identity.id,
                f"space:{space_id}",
                Permission.EDIT,
                "Access denied: You can only view this space.",
            )

    async def check_invite(
        self,
        identity: Identity,
        resource_type: str,
        resource_id: str,
    ) -> str:
        """Authorize sharing a resource and resolve its owner.

        An unclaimed resource is claimed by the inviter.

        Returns:
            Owner id to record on the grant

        Raises:
            AccessDeniedError: If someone else owns the resource and the caller
                has no accepted edit grant on it
        """
        owner_id = await self.identities.claim_resource(resource_type, resource_id, identity.id)
        if owner_id == identity.id:
            return owner_id

        if await self.has_access(identity, resource_type, resource_id, Permission.EDIT):
            return owner_id

        raise AccessDeniedError(
            identity.id,
            f"{resource_type}:{resource_id}",
            Permission.EDIT,
            "Access denied: Only the owner or editors can share this resource.",
        )
