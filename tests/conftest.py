"""
Shared fixtures for the TaskSync test suite.
"""

import tempfile
from dataclasses import dataclass
from pathlib import Path

import pytest

from backend.tasksync_server.auth import Identity, TokenAuthenticator
from backend.tasksync_server.realtime import RealtimeHub
from backend.tasksync_server.sharing import SharingService
from backend.tasksync_server.store import (
    Database,
    DocumentStore,
    IdentityStore,
    PendingUpdateQueue,
)

TEST_SECRET = "tasksync-test-secret"
PRIMARY_KEY = "tasksync-app-storage"


class RecordingSocket:
    """Stands in for a WebSocketResponse in hub tests."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)


@dataclass
class ServerStack:
    """Server components wired the way main.Server wires them."""

    db: Database
    documents: DocumentStore
    identities: IdentityStore
    pending: PendingUpdateQueue
    hub: RealtimeHub
    service: SharingService
    authenticator: TokenAuthenticator

    async def start(self) -> "ServerStack":
        await self.db.initialize()
        return self

    async def user(self, email: str, name: str | None = None) -> Identity:
        user = await self.identities.create_user(email, display_name=name)
        return Identity(id=user.id, email=user.email, name=name)

    def token(self, identity: Identity) -> str:
        return self.authenticator.issue(identity)

    def owner_key(self, identity: Identity) -> str:
        return self.service.owner_document_key(identity.id)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def stack(data_dir):
    """Server stack on a fresh database (call `await stack.start()`)."""
    db = Database(Path(data_dir) / "tasksync.sqlite", wal_mode=False)
    documents = DocumentStore(db)
    identities = IdentityStore(db)
    pending = PendingUpdateQueue(db)
    hub = RealtimeHub()
    service = SharingService(documents, identities, pending, hub, primary_document_key=PRIMARY_KEY)
    return ServerStack(
        db=db,
        documents=documents,
        identities=identities,
        pending=pending,
        hub=hub,
        service=service,
        authenticator=TokenAuthenticator(TEST_SECRET),
    )


@pytest.fixture
def make_socket():
    """Factory for RecordingSocket instances."""
    return RecordingSocket
