"""
Error types for the TaskSync SDK.

This module defines all exception types raised by the SDK:
- SyncError: Base exception
- NotAuthenticatedError: Operation needs an identity but none is configured
- RemoteUnavailableError: Network or server failure
- MalformedDocumentError: Remote payload could not be decoded
- GrantConflictError: Duplicate invite
- AccessDeniedError: Caller lacks permission on a shared resource
- QuotaExceededError: Local fallback cache is full

Invariants:
    - All errors inherit from SyncError
    - load/save never raise remote, decode or quota errors to the caller;
      they degrade to local data instead
    - Sharing calls raise GrantConflict, AccessDenied and NotAuthenticated
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base exception for all TaskSync SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ERROR"
        self.details = details or {}


class NotAuthenticatedError(SyncError):
    """No identity token is configured, or the server rejected it."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message, code="NOT_AUTHENTICATED")


class RemoteUnavailableError(SyncError):
    """The remote document store could not be reached or failed.

    Raised when:
    - Server is unreachable or times out
    - Server answers with a 5xx, 408 or 429 status
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="REMOTE_UNAVAILABLE",
            details={"url": url, "status": status},
        )
        self.url = url
        self.status = status


class MalformedDocumentError(SyncError):
    """A remote payload was not decodable JSON (even after one re-parse)."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="MALFORMED_DOCUMENT", details={"key": key})
        self.key = key


class GrantConflictError(SyncError):
    """A grant already exists for (resource_type, resource_id, email)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="GRANT_CONFLICT")


class AccessDeniedError(SyncError):
    """The server refused a sharing operation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="ACCESS_DENIED")


class QuotaExceededError(SyncError):
    """Writing to the local fallback cache would exceed its byte quota.

    Attributes:
        key: Document key being written
        needed: Bytes the write required
        quota: Configured quota in bytes
    """

    def __init__(self, key: str, needed: int, quota: int) -> None:
        super().__init__(
            f"Fallback cache quota exceeded writing '{key}': {needed} > {quota} bytes",
            code="QUOTA_EXCEEDED",
            details={"key": key, "needed": needed, "quota": quota},
        )
        self.key = key
        self.needed = needed
        self.quota = quota
