"""
vaultsync - Main entry point.

This module serves the vaultsync core over HTTP:
- Document store connection (memory or SQLite)
- Multi-user session shared by the HTTP handlers
- Optional baseline subscriptions for VAULTSYNC_USER_ID

Usage:
    python -m vaultsync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is connected before the HTTP server accepts requests
    - Graceful shutdown drains pending audit writes before closing the store

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .api import run_http_server
from .config import StoreBackend, VaultSyncConfig
from .session import StaticIdentity, VaultSession
from .store import DocumentStore, create_document_store

logger = logging.getLogger(__name__)


def setup_logging(config: VaultSyncConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: vaultsync configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class Server:
    """vaultsync server orchestrator.

    Manages the lifecycle of:
    - Document store connection
    - VaultSession
    - HTTP server task

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: VaultSyncConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or VaultSyncConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: DocumentStore | None = None
        self.session: VaultSession | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting vaultsync server")
        self.config.validate()
        self.config.log_config()

        try:
            if self.config.store.backend == StoreBackend.SQLITE:
                Path(self.config.store.data_dir).mkdir(parents=True, exist_ok=True)

            self.store = create_document_store(self.config.store)
            await self.store.connect()
            logger.info("Document store connected", extra={"backend": self.config.store.backend.value})

            identity = StaticIdentity(self.config.user_id) if self.config.user_id else None
            self.session = VaultSession(self.store, identity, self.config)
            if identity is not None:
                await self.session.start()

            self._tasks.append(asyncio.create_task(run_http_server(self.session, self.config.http)))

            self._running = True
            logger.info("vaultsync server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping vaultsync server")

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.session:
            await self.session.stop()

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("vaultsync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = VaultSyncConfig.from_env()
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
