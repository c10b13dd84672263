"""
Share/propagate service for TaskSync.

This module implements the request handlers behind the storage and sharing
endpoints:
- Storage read with a transient overlay of pending updates
- Storage write with consumption of incorporated pending updates
- Invite / list invitations / accept / list members / leave
- Propagate: a collaborator's edit applied to the owner's document
- Shared view: granted resources extracted from their owners' documents

Invariants:
    - Storage keys are namespaced per identity when the caller is authenticated
    - Propagate writes the owner's document under the key lock with a
      version check, then enqueues a pending update, then schedules the
      realtime notification without waiting for delivery
    - Shared view emission follows grant insertion order

How to change safely:
    - Keep the shared view annotations (isShared, ownerId, ownerName,
      permission) stable; clients treat them as sticky
    - New shareable resource types need an extractor in _EXTRACTORS
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ..auth import Identity
from ..realtime import RealtimeHub, space_room
from ..store import (
    DocumentStore,
    GrantStatus,
    IdentityStore,
    PendingUpdateQueue,
    ResourceType,
    ShareGrant,
    StateBlob,
    VersionConflictError,
    identity_key,
)
from .acl import Permission, SharePolicy
from .collections import (
    ItemType,
    UnknownItemTypeError,
    apply_item,
    collection_for,
    contains_item,
    ensure_state,
    overlay_updates,
)

logger = logging.getLogger(__name__)

SHARED_COLLECTIONS = ("spaces", "folders", "lists", "tasks")


class InvalidRequestError(Exception):
    """Request is missing fields or carries invalid values."""

    pass


class NotFoundError(Exception):
    """Referenced record does not exist for the caller."""

    pass


class CorruptDocumentError(Exception):
    """A stored document cannot be decoded into an object."""

    pass


def _items(state: dict[str, Any], collection: str) -> list[dict[str, Any]]:
    items = state.get(collection)
    if not isinstance(items, list):
        return []
    return [i for i in items if isinstance(i, dict)]


def _find(state: dict[str, Any], collection: str, item_id: str) -> dict[str, Any] | None:
    for item in _items(state, collection):
        if item.get("id") == item_id:
            return item
    return None


def _annotate_root(item: dict[str, Any], grant: ShareGrant, owner_name: str) -> dict[str, Any]:
    return {
        **item,
        "isShared": True,
        "ownerId": grant.owner_id,
        "ownerName": owner_name,
        "permission": grant.permission,
        "name": f"{item.get('name', '')} (Shared)",
    }


def _annotate(item: dict[str, Any]) -> dict[str, Any]:
    return {**item, "isShared": True}


def _extract_space(
    state: dict[str, Any], grant: ShareGrant, owner_name: str, view: dict[str, list]
) -> bool:
    space = _find(state, "spaces", grant.resource_id)
    if space is None:
        return False

    view["spaces"].append(_annotate_root(space, grant, owner_name))
    view["folders"].extend(_annotate(f) for f in _items(state, "folders") if f.get("spaceId") == space["id"])

    lists = [lst for lst in _items(state, "lists") if lst.get("spaceId") == space["id"]]
    view["lists"].extend(_annotate(lst) for lst in lists)

    list_ids = {lst.get("id") for lst in lists}
    view["tasks"].extend(
        _annotate(t)
        for t in _items(state, "tasks")
        if t.get("listId") in list_ids or t.get("spaceId") == space["id"]
    )
    return True


def _extract_folder(
    state: dict[str, Any], grant: ShareGrant, owner_name: str, view: dict[str, list]
) -> bool:
    folder = _find(state, "folders", grant.resource_id)
    if folder is None:
        return False

    view["folders"].append(_annotate_root(folder, grant, owner_name))
    lists = [lst for lst in _items(state, "lists") if lst.get("folderId") == folder["id"]]
    view["lists"].extend(_annotate(lst) for lst in lists)

    list_ids = {lst.get("id") for lst in lists}
    view["tasks"].extend(_annotate(t) for t in _items(state, "tasks") if t.get("listId") in list_ids)
    return True


def _extract_list(
    state: dict[str, Any], grant: ShareGrant, owner_name: str, view: dict[str, list]
) -> bool:
    lst = _find(state, "lists", grant.resource_id)
    if lst is None:
        return False

    view["lists"].append(_annotate_root(lst, grant, owner_name))
    view["tasks"].extend(_annotate(t) for t in _items(state, "tasks") if t.get("listId") == lst["id"])
    return True


def _extract_task(
    state: dict[str, Any], grant: ShareGrant, owner_name: str, view: dict[str, list]
) -> bool:
    task = _find(state, "tasks", grant.resource_id)
    if task is None:
        return False
    view["tasks"].append(_annotate_root(task, grant, owner_name))
    return True


_EXTRACTORS: dict[str, Callable[[dict[str, Any], ShareGrant, str, dict[str, list]], bool]] = {
    ResourceType.SPACE.value: _extract_space,
    ResourceType.FOLDER.value: _extract_folder,
    ResourceType.LIST.value: _extract_list,
    ResourceType.TASK.value: _extract_task,
}


class SharingService:
    """Storage and sharing operations on top of the stores.

    Example:
        >>> service = SharingService(documents, identities, pending, hub)
        >>> await service.invite(owner, "bob@example.com", "space", "s1", "edit")
        >>> await service.accept(bob, grant.id)
        >>> await service.shared_view(bob)
        {'spaces': [...], 'folders': [...], 'lists': [...], 'tasks': [...]}
    """

    def __init__(
        self,
        documents: DocumentStore,
        identities: IdentityStore,
        pending: PendingUpdateQueue,
        hub: RealtimeHub,
        primary_document_key: str = "tasksync-app-storage",
        propagate_max_retries: int = 3,
    ) -> None:
        self.documents = documents
        self.identities = identities
        self.pending = pending
        self.hub = hub
        self.policy = SharePolicy(identities)
        self.primary_document_key = primary_document_key
        self.propagate_max_retries = propagate_max_retries
        self._notifications: set[asyncio.Task] = set()

    def storage_key(self, identity: Identity | None, key: str) -> str:
        if identity is None:
            return key
        return identity_key(identity.id, key)

    def owner_document_key(self, owner_id: str) -> str:
        return identity_key(owner_id, self.primary_document_key)

    # --- Storage ---

    async def read_document(self, identity: Identity | None, key: str) -> Any:
        """Read a document, overlaying the caller's pending updates (not persisted)."""
        document = await self.documents.get(self.storage_key(identity, key))

        if identity and isinstance(document, dict) and isinstance(document.get("state"), dict):
            updates = await self.pending.list_for(identity.id)
            if updates:
                applied = overlay_updates(document["state"], updates)
                logger.info(
                    f"Merged {applied} pending updates into read",
                    extra={"user_id": identity.id, "key": key},
                )

        return document

    async def write_document(self, identity: Identity | None, key: str, document: Any) -> StateBlob:
        """Upsert a document and consume pending updates it now contains."""
        storage_key = self.storage_key(identity, key)
        if identity is None:
            logger.warning(f"Unauthenticated write to global key: {key}")

        blob = await self.documents.set(storage_key, document)

        if identity is not None:
            await self.consume_incorporated(identity.id, document)

        logger.info("Saved document", extra={"key": storage_key, "version": blob.version})
        return blob

    async def consume_incorporated(self, owner_id: str, document: Any) -> int:
        """Consume pending updates whose item id appears in the saved document.

        Returns:
            Number of consumed entries
        """
        updates = await self.pending.list_for(owner_id)
        if not updates:
            return 0

        state = document.get("state") if isinstance(document, dict) else None
        if not isinstance(state, dict):
            return 0

        consumed = 0
        for update in updates:
            try:
                collection = collection_for(update.item_type)
            except UnknownItemTypeError:
                continue
            if contains_item(state, collection, update.item_id):
                if await self.pending.consume(update.id):
                    consumed += 1
                    logger.info(
                        "Cleared pending update (merged by client)",
                        extra={"update_id": update.id, "owner_id": owner_id},
                    )
        return consumed

    # --- Grants ---

    async def invite(
        self,
        identity: Identity,
        email: str,
        resource_type: str,
        resource_id: str,
        permission: str | None = None,
    ) -> ShareGrant:
        """Create a pending grant for email on a resource.

        Raises:
            InvalidRequestError: If a field is missing or invalid
            AccessDeniedError: If the caller may not share the resource
            GrantConflictError: If a grant already exists for the tuple
        """
        if not email or not resource_type or not resource_id:
            raise InvalidRequestError("Missing fields")
        try:
            resource = ResourceType(resource_type)
            level = Permission.parse(permission)
        except ValueError as e:
            raise InvalidRequestError(str(e)) from None

        owner_id = await self.policy.check_invite(identity, resource.value, resource_id)
        return await self.identities.create_grant(
            resource.value,
            resource_id,
            owner_id,
            email,
            permission=level.value,
        )

    async def list_invitations(self, identity: Identity) -> list[ShareGrant]:
        return await self.identities.list_grants_for_email(identity.email, GrantStatus.PENDING)

    async def accept(self, identity: Identity, grant_id: str) -> ShareGrant:
        """Accept a grant addressed to the caller.

        Raises:
            NotFoundError: If no such grant is addressed to the caller
        """
        if not await self.identities.accept_grant(grant_id, identity.email):
            raise NotFoundError(f"Invitation not found: {grant_id}")
        grant = await self.identities.get_grant(grant_id)
        if grant is None:
            raise NotFoundError(f"Invitation not found: {grant_id}")
        logger.info("Accepted invitation", extra={"grant_id": grant_id, "user_id": identity.id})
        return grant

    async def leave(self, identity: Identity, resource_type: str, resource_id: str) -> bool:
        if not resource_type or not resource_id:
            raise InvalidRequestError("Missing fields")
        removed = await self.identities.delete_grant(resource_type, resource_id, identity.email)
        logger.info(
            "Left shared resource",
            extra={
                "user_id": identity.id,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "removed": removed,
            },
        )
        return removed

    async def list_members(self, resource_type: str, resource_id: str) -> list[dict[str, Any]]:
        """All grants on a resource plus a synthesized owner entry."""
        if not resource_type or not resource_id:
            raise InvalidRequestError("Missing parameters")

        members: list[dict[str, Any]] = []
        for grant, user in await self.identities.list_grants_for_resource(resource_type, resource_id):
            members.append(
                {
                    **grant.to_dict(),
                    "user_id": user.id if user else None,
                    "user_name": (user.display_name if user else None) or grant.invited_email,
                    "avatar_url": user.avatar_url if user else None,
                    "email": grant.invited_email,
                }
            )

        owner_id = await self.identities.get_resource_owner(resource_type, resource_id)
        if owner_id is None:
            return members

        owner = await self.identities.get_user_by_id(owner_id)
        if owner is None:
            logger.warning(f"Owner {owner_id} of {resource_type}:{resource_id} is not a known user")
            return members

        if not any(m["user_id"] == owner.id for m in members):
            members.append(
                {
                    "id": owner.id,
                    "user_id": owner.id,
                    "user_name": owner.display_name or owner.email,
                    "email": owner.email,
                    "avatar_url": owner.avatar_url,
                    "role": "owner",
                    "status": GrantStatus.ACCEPTED.value,
                }
            )
        return members

    # --- Propagate ---

    async def propagate(
        self,
        identity: Identity,
        owner_id: str,
        item_type: str,
        data: Any,
    ) -> dict[str, Any]:
        """Apply a collaborator's item into the owner's document.

        Raises:
            InvalidRequestError: If fields are missing or the type is unknown
            AccessDeniedError: If the caller may not edit the item's space
            CorruptDocumentError: If the owner's stored document is not an object
            VersionConflictError: If the owner kept writing through every retry
        """
        if not owner_id or not item_type or not isinstance(data, dict) or not data.get("id"):
            raise InvalidRequestError("Missing fields")
        try:
            kind = ItemType.parse(item_type)
        except UnknownItemTypeError as e:
            raise InvalidRequestError(str(e)) from None

        logger.info(
            f"User {identity.email} updating owner {owner_id} - type: {kind.value}",
            extra={"actor": identity.id, "owner_id": owner_id, "item_id": data["id"]},
        )

        await self.policy.check_propagate(identity, owner_id, data)

        key = self.owner_document_key(owner_id)
        async with self.documents.lock(key):
            created = await self._apply_with_retry(key, kind, data)

        update_id = await self.pending.enqueue(owner_id, kind.value, data)

        self._notify(owner_id, kind.value, data)

        return {"created": created, "pendingUpdateId": update_id}

    def _notify(self, owner_id: str, item_type: str, data: dict[str, Any]) -> None:
        task = asyncio.create_task(self._publish(owner_id, item_type, data))
        self._notifications.add(task)
        task.add_done_callback(self._notification_done)

    async def _publish(self, owner_id: str, item_type: str, data: dict[str, Any]) -> int:
        delivered = await self.hub.publish(owner_id, item_type, data)
        space_id = data.get("spaceId")
        if space_id:
            delivered += await self.hub.publish(space_room(space_id), item_type, data)
        return delivered

    def _notification_done(self, task: asyncio.Task) -> None:
        self._notifications.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Realtime notification failed: {error}", exc_info=error)

    async def flush_notifications(self) -> None:
        """Wait for realtime notifications scheduled by propagate."""
        if self._notifications:
            await asyncio.gather(*self._notifications, return_exceptions=True)

    async def _apply_with_retry(self, key: str, kind: ItemType, data: dict[str, Any]) -> bool:
        for attempt in range(1, self.propagate_max_retries + 1):
            blob = await self.documents.get_blob(key)
            if blob is not None and blob.document is not None and not isinstance(blob.document, dict):
                raise CorruptDocumentError(f"Owner state corrupted: {key}")

            document = ensure_state(blob.document if blob else None)
            created = apply_item(document["state"], kind, data)
            try:
                await self.documents.set(key, document, expected_version=blob.version if blob else 0)
                return created
            except VersionConflictError as e:
                if attempt == self.propagate_max_retries:
                    raise
                logger.warning(f"Retrying propagate after concurrent write: {e}")
        return False

    # --- Shared view ---

    async def shared_view(self, identity: Identity) -> dict[str, list[dict[str, Any]]]:
        """Resources shared with the caller, extracted from their owners' documents."""
        view: dict[str, list[dict[str, Any]]] = {name: [] for name in SHARED_COLLECTIONS}
        grants = await self.identities.list_grants_for_email(identity.email, GrantStatus.ACCEPTED)

        for grant in grants:
            owner = await self.identities.get_user_by_id(grant.owner_id)
            owner_name = (owner.display_name or owner.email) if owner else "Unknown Owner"

            document = await self.documents.get(self.owner_document_key(grant.owner_id))
            if not isinstance(document, dict) or not isinstance(document.get("state"), dict):
                logger.info(
                    "Owner state not found or invalid",
                    extra={"grant_id": grant.id, "owner_id": grant.owner_id},
                )
                continue

            extractor = _EXTRACTORS.get(grant.resource_type)
            if extractor is None:
                logger.warning(f"Unsupported shared resource type: {grant.resource_type}")
                continue

            if not extractor(document["state"], grant, owner_name, view):
                logger.info(
                    f"{grant.resource_type} {grant.resource_id} not found in owner state",
                    extra={"grant_id": grant.id, "owner_id": grant.owner_id},
                )

        return view
