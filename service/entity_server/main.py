"""
Entity service - main entry point.

This module starts the entity service:
- Document store (opened and pinged before anything else)
- Entity type registry, entity store and relationship store
- gRPC server hosting EntityTypeService and EntityDataService

Usage:
    python -m service.entity_server.main

Configuration comes from environment variables and an optional YAML file.
See config.py for all available settings.

Exit codes:
    0   clean shutdown (SIGTERM/SIGINT)
    1   invalid configuration or any other startup failure
    2   document store unreachable at startup

Invariants:
    - The server does not accept requests until the store answered a ping
    - Graceful shutdown waits for in-flight RPCs before closing the store
    - All components share one document store client

How to change safely:
    - Keep the exit codes stable; deployment tooling relies on them
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .api import EntityDataServicer, EntityTypeServicer, GrpcServer
from .config import ServerConfig, StorageBackend
from .data import EntityStore, RelationshipStore
from .docstore import DocumentStore, DocumentStoreError, create_document_store
from .schema import EntityTypeRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_STORE_UNAVAILABLE = 2


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
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
    logging.getLogger("grpc").setLevel(logging.WARNING)
    logging.getLogger("grpc._cython").setLevel(logging.WARNING)


class Server:
    """Entity service orchestrator.

    Manages the lifecycle of all server components:
    - Document store connection
    - Registry and stores
    - gRPC server

    Attributes:
        config: Server configuration
        store: Document store client
        registry: Entity type registry
        grpc_server: gRPC server

    Example:
        >>> server = Server(config)
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        store: DocumentStore | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            store: Optional pre-built document store (created from config otherwise)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.store: DocumentStore | None = store
        self.registry: EntityTypeRegistry | None = None
        self.entity_store: EntityStore | None = None
        self.relationship_store: RelationshipStore | None = None
        self.grpc_server: GrpcServer | None = None

    async def start(self) -> None:
        """Open the store and start serving.

        Raises:
            DocumentStoreError: If the store cannot be opened or pinged
        """
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting entity service")
        self.config.log_config()

        try:
            if self.store is None:
                if self.config.storage.backend == StorageBackend.SQLITE:
                    Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)
                self.store = create_document_store(self.config)

            await self.store.connect()
            await self.store.ping()
            logger.info(
                "Document store connected",
                extra={"backend": self.config.storage.backend.value},
            )

            self.registry = EntityTypeRegistry(
                self.store,
                cache_ttl_seconds=self.config.cache.type_registry_ttl_seconds,
            )
            self.entity_store = EntityStore(self.store, self.registry)
            self.relationship_store = RelationshipStore(self.store)

            self.grpc_server = GrpcServer(
                type_servicer=EntityTypeServicer(self.registry),
                data_servicer=EntityDataServicer(self.entity_store, self.relationship_store),
                host=self.config.service.host,
                port=self.config.service.port,
                max_message_size=self.config.service.max_message_size,
            )
            await self.grpc_server.start()

            self._running = True
            logger.info("Entity service started", extra={"port": self.grpc_server.port})
        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self._release()
            raise

    async def run(self) -> None:
        """Start and block until shutdown is requested."""
        await self.start()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping entity service")
        await self._release()
        self._running = False
        logger.info("Entity service stopped")

    async def _release(self) -> None:
        if self.grpc_server:
            await self.grpc_server.stop(self.config.service.grace_seconds)
            self.grpc_server = None
        if self.store and self.store.is_connected:
            await self.store.close()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    @property
    def port(self) -> int | None:
        """Bound gRPC port, once started."""
        return self.grpc_server.port if self.grpc_server else None


def run(config_file: str | None = None) -> int:
    """Run the service until signalled. Returns the process exit code."""
    try:
        config = ServerConfig.from_env(config_file)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(config)
    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = EXIT_OK
    try:
        loop.run_until_complete(server.run())
    except DocumentStoreError as e:
        logger.error(f"Document store unavailable: {e}")
        exit_code = EXIT_STORE_UNAVAILABLE
    except Exception as e:
        logger.error(f"Entity service failed: {e}")
        exit_code = EXIT_CONFIG_ERROR
    finally:
        loop.run_until_complete(server.stop())
        loop.close()
    return exit_code


def main() -> None:
    """Main entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
