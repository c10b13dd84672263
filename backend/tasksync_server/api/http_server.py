"""
HTTP server implementation for TaskSync.

This module provides the REST API consumed by the web client and the SDK:
- Storage: GET/POST /api/storage/{key}
- Sharing: invite, invitations, accept, members, leave, propagate, shared view
- Real-time: GET /ws?token=...
- Health: GET /api/health

Invariants:
    - Storage routes are lenient: a missing or invalid token means the
      un-namespaced (global) key
    - Sharing routes require a valid bearer token (401 otherwise)
    - Errors are JSON: {"error": message, "error_code": code}

How to change safely:
    - Keep request field names in sync with api/models.py and the SDK
    - Map new service exceptions in error_middleware, not in handlers
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web
from pydantic import BaseModel, ValidationError

from .._version import __version__
from ..auth import AuthenticationError, Identity, TokenAuthenticator
from ..config import HttpConfig
from ..sharing import (
    AccessDeniedError,
    CorruptDocumentError,
    InvalidRequestError,
    NotFoundError,
    SharingService,
    UnknownItemTypeError,
)
from ..store import GrantConflictError, VersionConflictError
from .models import InviteRequest, LeaveRequest, PropagateRequest

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", SharingService)

# Exception type -> (status, error_code)
ERROR_STATUS: list[tuple[type[Exception], int, str]] = [
    (AuthenticationError, 401, "UNAUTHENTICATED"),
    (InvalidRequestError, 400, "INVALID_REQUEST"),
    (UnknownItemTypeError, 400, "UNKNOWN_ITEM_TYPE"),
    (AccessDeniedError, 403, "ACCESS_DENIED"),
    (NotFoundError, 404, "NOT_FOUND"),
    (GrantConflictError, 409, "GRANT_CONFLICT"),
    (VersionConflictError, 409, "VERSION_CONFLICT"),
    (CorruptDocumentError, 500, "CORRUPT_DOCUMENT"),
]


def create_http_app(
    service: SharingService,
    authenticator: TokenAuthenticator,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the HTTP application for TaskSync.

    Args:
        service: SharingService instance
        authenticator: Verifies bearer tokens
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            for exc_type, status, code in ERROR_STATUS:
                if isinstance(e, exc_type):
                    if status >= 500:
                        logger.error(f"HTTP handler error: {e}")
                    else:
                        logger.info(f"{request.method} {request.path} -> {status}: {e}")
                    return web.json_response({"error": str(e), "error_code": code}, status=status)

            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": "Internal Server Error", "error_code": "INTERNAL"},
                status=500,
            )

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        if response.prepared:
            return response

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"

        return response

    app = web.Application(
        client_max_size=config.max_body_bytes,
        middlewares=[cors_middleware, error_middleware],
    )
    app[SERVICE_KEY] = service

    app.router.add_get("/api/storage/{key}", lambda r: handle_get_storage(r, service, authenticator))
    app.router.add_post("/api/storage/{key}", lambda r: handle_set_storage(r, service, authenticator))
    app.router.add_post("/api/invite", lambda r: handle_invite(r, service, authenticator))
    app.router.add_get("/api/invitations", lambda r: handle_list_invitations(r, service, authenticator))
    app.router.add_post(
        "/api/invitations/{grant_id}/accept", lambda r: handle_accept(r, service, authenticator)
    )
    app.router.add_get("/api/resource/members", lambda r: handle_members(r, service, authenticator))
    app.router.add_post("/api/shared/leave", lambda r: handle_leave(r, service, authenticator))
    app.router.add_post("/api/shared/propagate", lambda r: handle_propagate(r, service, authenticator))
    app.router.add_get("/api/shared", lambda r: handle_shared_view(r, service, authenticator))
    app.router.add_get("/api/health", handle_health)
    app.router.add_get("/ws", lambda r: handle_websocket(r, service, authenticator))

    return app


def require_identity(request: web.Request, authenticator: TokenAuthenticator) -> Identity:
    """Resolve the bearer token of a sharing request.

    Raises:
        AuthenticationError: If the token is missing or invalid
    """
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Unauthorized")
    return authenticator.verify(token.strip())


async def read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError:
        raise InvalidRequestError("Invalid JSON body") from None


async def parse_body(request: web.Request, model: type[BaseModel]) -> Any:
    body = await read_json(request)
    try:
        return model.model_validate(body)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors()) or "body"
        raise InvalidRequestError(f"Missing fields: {fields}") from None


async def handle_get_storage(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle GET /api/storage/{key} - Read a document."""
    identity = authenticator.from_header(request.headers.get("Authorization"))
    document = await service.read_document(identity, request.match_info["key"])
    return web.json_response(document)


async def handle_set_storage(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle POST /api/storage/{key} - Upsert a document."""
    identity = authenticator.from_header(request.headers.get("Authorization"))
    key = request.match_info["key"]
    document = await read_json(request)

    logger.info(
        f"POST /api/storage/{key}",
        extra={
            "body_bytes": request.content_length,
            "user": identity.email if identity else None,
        },
    )

    blob = await service.write_document(identity, key, document)
    return web.json_response({"success": True, "version": blob.version})


async def handle_invite(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle POST /api/invite - Invite an email to a resource."""
    identity = require_identity(request, authenticator)
    body = await parse_body(request, InviteRequest)

    grant = await service.invite(
        identity, body.email, body.resource_type, body.resource_id, body.permission
    )
    return web.json_response(
        {"success": True, "message": "Invitation sent", "invitation": grant.to_dict()}
    )


async def handle_list_invitations(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle GET /api/invitations - Pending invitations for the caller."""
    identity = require_identity(request, authenticator)
    grants = await service.list_invitations(identity)
    return web.json_response([g.to_dict() for g in grants])


async def handle_accept(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle POST /api/invitations/{grant_id}/accept."""
    identity = require_identity(request, authenticator)
    await service.accept(identity, request.match_info["grant_id"])
    return web.json_response({"success": True})


async def handle_members(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle GET /api/resource/members?resourceType=&resourceId=."""
    require_identity(request, authenticator)
    members = await service.list_members(
        request.query.get("resourceType", ""),
        request.query.get("resourceId", ""),
    )
    return web.json_response(members)


async def handle_leave(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle POST /api/shared/leave."""
    identity = require_identity(request, authenticator)
    body = await parse_body(request, LeaveRequest)
    await service.leave(identity, body.resource_type, body.resource_id)
    return web.json_response({"success": True})


async def handle_propagate(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle POST /api/shared/propagate - Write an item into the owner's document."""
    identity = require_identity(request, authenticator)
    body = await parse_body(request, PropagateRequest)
    result = await service.propagate(identity, body.owner_id, body.type, body.data)
    return web.json_response({"success": True, **result})


async def handle_shared_view(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.Response:
    """Handle GET /api/shared - Resources shared with the caller."""
    identity = require_identity(request, authenticator)
    return web.json_response(await service.shared_view(identity))


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /api/health - Health check."""
    return web.json_response({"healthy": True, "version": __version__})


async def handle_websocket(
    request: web.Request, service: SharingService, authenticator: TokenAuthenticator
) -> web.StreamResponse:
    """Handle GET /ws?token=... - Real-time notifications."""
    token = request.query.get("token", "")
    if not token:
        raise AuthenticationError("Unauthorized")
    identity = authenticator.verify(token)
    return await service.hub.handle(request, identity)
