"""
Admin CLI tool for TaskSync.

Usage:
    tasksync-admin create-user --email ann@example.com --name Ann
    tasksync-admin issue-token --email ann@example.com
    tasksync-admin dump [--key identity:<id>:tasksync-app-storage]
    tasksync-admin pending --email ann@example.com

The database location, JWT secret and token lifetime come from the same
environment variables as the server (see config.py).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from ..auth import Identity, TokenAuthenticator
from ..config import ServerConfig
from ..store import Database, DocumentStore, IdentityStore, PendingUpdateQueue, User


class AdminCLI:
    """Offline administration against the server database.

    Example:
        >>> cli = AdminCLI(ServerConfig.from_env())
        >>> user = await cli.create_user("ann@example.com", "Ann")
        >>> cli.issue_token(user)
    """

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.db = Database(
            config.storage.db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
        self.identities = IdentityStore(self.db)
        self.documents = DocumentStore(self.db)
        self.pending = PendingUpdateQueue(self.db)
        self.authenticator = TokenAuthenticator(
            config.auth.jwt_secret,
            algorithm=config.auth.jwt_algorithm,
            ttl_seconds=config.auth.token_ttl_seconds,
        )

    async def open(self) -> None:
        await self.db.initialize()

    async def create_user(self, email: str, name: str | None = None) -> User:
        existing = await self.identities.get_user_by_email(email)
        if existing is not None:
            return existing
        return await self.identities.create_user(email, display_name=name)

    async def find_user(self, email: str) -> User:
        user = await self.identities.get_user_by_email(email)
        if user is None:
            raise LookupError(f"No user with email {email}")
        return user

    def issue_token(self, user: User, ttl_seconds: int | None = None) -> str:
        return self.authenticator.issue(
            Identity(id=user.id, email=user.email, name=user.display_name),
            ttl_seconds=ttl_seconds,
        )

    async def dump(self, key: str | None = None) -> dict[str, Any]:
        if key:
            return {key: await self.documents.get(key)}
        return await self.documents.get_all()

    async def pending_for(self, email: str) -> list[dict[str, Any]]:
        user = await self.find_user(email)
        return [
            {"id": u.id, "type": u.item_type, "data": u.payload, "created_at": u.created_at}
            for u in await self.pending.list_for(user.id)
        ]


async def _run(args: argparse.Namespace) -> int:
    cli = AdminCLI(ServerConfig.from_env())
    await cli.open()

    if args.command == "create-user":
        user = await cli.create_user(args.email, args.name)
        print(json.dumps(user.to_public_dict(), indent=2))

    elif args.command == "issue-token":
        user = await cli.find_user(args.email)
        print(cli.issue_token(user, args.ttl))

    elif args.command == "dump":
        print(json.dumps(await cli.dump(args.key), indent=2))

    elif args.command == "pending":
        updates = await cli.pending_for(args.email)
        if not updates:
            print("No pending updates")
        else:
            print(json.dumps(updates, indent=2))

    return 0


def main() -> None:
    """CLI entry point for the admin tool."""
    parser = argparse.ArgumentParser(description="TaskSync administration tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create-user", help="Create (or show) a user")
    create_parser.add_argument("--email", required=True, help="User email")
    create_parser.add_argument("--name", help="Display name")

    token_parser = subparsers.add_parser("issue-token", help="Issue a bearer token for a user")
    token_parser.add_argument("--email", required=True, help="User email")
    token_parser.add_argument("--ttl", type=int, help="Token lifetime in seconds")

    dump_parser = subparsers.add_parser("dump", help="Print stored documents as JSON")
    dump_parser.add_argument("--key", help="Single storage key (default: all)")

    pending_parser = subparsers.add_parser("pending", help="List pending updates for a user")
    pending_parser.add_argument("--email", required=True, help="Owner email")

    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(_run(args)))
    except (LookupError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
