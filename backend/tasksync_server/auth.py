"""
Bearer identity tokens.

Credential issuance (registration, login, password reset) lives outside this
service. Everything here needs only a resolvable identity id and email, which
arrive as an HS256 JWT in the Authorization header.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Token is missing, expired or invalid."""

    pass


@dataclass(frozen=True)
class Identity:
    """The authenticated caller.

    Attributes:
        id: User identifier
        email: User email (grants are addressed to it)
        name: Display name
    """

    id: str
    email: str
    name: str | None = None


class TokenAuthenticator:
    """Issue and verify identity tokens.

    Example:
        >>> auth = TokenAuthenticator("secret")
        >>> token = auth.issue(Identity(id="u1", email="ann@example.com"))
        >>> auth.verify(token).id
        'u1'
    """

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_seconds: int = 3600) -> None:
        self._secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    def issue(self, identity: Identity, ttl_seconds: int | None = None) -> str:
        """Sign a token carrying the identity."""
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "id": identity.id,
            "email": identity.email,
            "name": identity.name,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds or self.ttl_seconds),
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Identity:
        """Decode a token.

        Raises:
            AuthenticationError: If the token is expired, invalid or incomplete
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired") from None
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token") from None

        if not payload.get("id") or not payload.get("email"):
            raise AuthenticationError("Token does not carry an identity")

        return Identity(id=payload["id"], email=payload["email"], name=payload.get("name"))

    def from_header(self, header: str | None) -> Identity | None:
        """Resolve an Authorization header.

        A missing header is anonymous (legacy/global access). An invalid
        token is also treated as anonymous, matching the lenient storage
        routes; sharing routes reject anonymous callers.
        """
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return None
        try:
            return self.verify(token.strip())
        except AuthenticationError as e:
            logger.info(f"Ignoring bearer token: {e}")
            return None
