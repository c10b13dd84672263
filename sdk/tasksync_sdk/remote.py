"""
HTTP client for the TaskSync server.

RemoteClient wraps an httpx.AsyncClient and maps transport failures and
HTTP error statuses onto the SDK error taxonomy:
- network errors, timeouts, 408, 429, 5xx -> RemoteUnavailableError
- 401 -> NotAuthenticatedError
- 403 -> AccessDeniedError
- 409 -> GrantConflictError
- other 4xx -> SyncError
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from .errors import (
    AccessDeniedError,
    GrantConflictError,
    MalformedDocumentError,
    NotAuthenticatedError,
    RemoteUnavailableError,
    SyncError,
)

logger = logging.getLogger(__name__)

# Client-side statuses that clear up on their own
RETRYABLE_STATUSES = frozenset({408, 429})


def decode_document(payload: Union[str, bytes], key: Optional[str] = None) -> Any:
    """Decode a remote document, re-parsing once if it was double-encoded.

    Raises:
        MalformedDocumentError: If the payload (or its inner string) is not JSON
    """
    try:
        value = json.loads(payload)
    except ValueError as e:
        raise MalformedDocumentError(f"Remote document is not JSON: {e}", key=key) from None

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as e:
            raise MalformedDocumentError(
                f"Failed to parse double-encoded document: {e}", key=key
            ) from None
    return value


class RemoteClient:
    """Async client for the storage and sharing endpoints.

    Example:
        >>> async with RemoteClient("http://localhost:3001/api", token=token) as remote:
        ...     document = await remote.get_document("tasksync-app-storage")
        ...     await remote.invite("bob@example.com", "space", "s1", "edit")
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @property
    def authenticated(self) -> bool:
        return bool(self.token)

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        content: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        if not self.token:
            raise NotAuthenticatedError()

        headers = {"Authorization": f"Bearer {self.token}"}
        if content is not None:
            headers["Content-Type"] = "application/json"

        try:
            response = await self._client.request(
                method, path, headers=headers, json=json_body, content=content, params=params
            )
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(f"{method} {path} failed: {e}", url=path) from e

        status = response.status_code
        logger.debug(f"{method} {path} -> {status}")
        if status < 400:
            return response

        message = self._error_message(response)
        if status >= 500 or status in RETRYABLE_STATUSES:
            raise RemoteUnavailableError(message, url=path, status=status)
        if status == 401:
            raise NotAuthenticatedError(message)
        if status == 403:
            raise AccessDeniedError(message)
        if status == 409:
            raise GrantConflictError(message)
        raise SyncError(message, code="REQUEST_FAILED", details={"url": path, "status": status})

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"HTTP {response.status_code}"

    # --- Storage ---

    async def get_document(self, key: str) -> Any:
        """Fetch the caller's document for key (None if never stored)."""
        response = await self._request("GET", f"/storage/{quote(key, safe='')}")
        return decode_document(response.content, key)

    async def put_document(self, key: str, body: str) -> Optional[int]:
        """Upload a serialized document; returns the stored version."""
        response = await self._request("POST", f"/storage/{quote(key, safe='')}", content=body)
        result = response.json()
        return result.get("version") if isinstance(result, dict) else None

    async def get_shared_view(self) -> Dict[str, List[Dict[str, Any]]]:
        response = await self._request("GET", "/shared")
        view = decode_document(response.content)
        if not isinstance(view, dict):
            raise MalformedDocumentError("Shared view is not an object")
        return view

    # --- Sharing ---

    async def invite(
        self,
        email: str,
        resource_type: str,
        resource_id: str,
        permission: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {"email": email, "resourceType": resource_type, "resourceId": resource_id}
        if permission:
            body["permission"] = permission
        response = await self._request("POST", "/invite", json_body=body)
        return response.json()["invitation"]

    async def list_invitations(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/invitations")
        return response.json()

    async def accept_invitation(self, grant_id: str) -> None:
        await self._request("POST", f"/invitations/{quote(grant_id, safe='')}/accept")

    async def list_members(self, resource_type: str, resource_id: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            "/resource/members",
            params={"resourceType": resource_type, "resourceId": resource_id},
        )
        return response.json()

    async def leave(self, resource_type: str, resource_id: str) -> None:
        await self._request(
            "POST",
            "/shared/leave",
            json_body={"resourceType": resource_type, "resourceId": resource_id},
        )

    async def propagate(self, owner_id: str, item_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Write an item into a sharer's document."""
        response = await self._request(
            "POST",
            "/shared/propagate",
            json_body={"ownerId": owner_id, "type": item_type, "data": data},
        )
        return response.json()
