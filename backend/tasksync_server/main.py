"""
TaskSync Server - Main entry point.

This module starts the TaskSync server with all components:
- SQLite database (documents, users, grants, pending updates)
- Sharing service
- aiohttp HTTP + WebSocket server

Usage:
    tasksync-server
    python -m backend.tasksync_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The database schema exists before the HTTP site accepts requests
    - Shutdown cleans up the aiohttp runner before the loop closes

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .auth import TokenAuthenticator
from .config import ServerConfig
from .realtime import RealtimeHub
from .sharing import SharingService
from .store import Database, DocumentStore, IdentityStore, PendingUpdateQueue

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """TaskSync Server orchestrator.

    Manages the lifecycle of all server components:
    - Database and stores
    - Sharing service and real-time hub
    - HTTP server

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.database: Database | None = None
        self.hub: RealtimeHub | None = None
        self.service: SharingService | None = None
        self.runner: web.AppRunner | None = None

    async def setup(self) -> web.Application:
        """Initialize storage and build the application (without binding)."""
        storage = self.config.storage
        self.database = Database(
            storage.db_path,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        await self.database.initialize()

        self.hub = RealtimeHub()
        self.service = SharingService(
            documents=DocumentStore(self.database),
            identities=IdentityStore(self.database),
            pending=PendingUpdateQueue(self.database),
            hub=self.hub,
            primary_document_key=self.config.sync.primary_document_key,
            propagate_max_retries=self.config.sync.propagate_max_retries,
        )
        authenticator = TokenAuthenticator(
            self.config.auth.jwt_secret,
            algorithm=self.config.auth.jwt_algorithm,
            ttl_seconds=self.config.auth.token_ttl_seconds,
        )
        return create_http_app(self.service, authenticator, self.config.http)

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting TaskSync server")
        self.config.log_config()

        try:
            app = await self.setup()

            self.runner = web.AppRunner(app)
            await self.runner.setup()
            site = web.TCPSite(self.runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                f"TaskSync server running on http://{self.config.http.host}:{self.config.http.port}"
            )

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if self.runner is None:
            return

        logger.info("Stopping TaskSync server")
        await self.runner.cleanup()
        if self.service is not None:
            await self.service.flush_notifications()
        self.runner = None
        self._running = False
        logger.info("TaskSync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
