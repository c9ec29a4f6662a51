"""
BlobSQL Server - Main entry point.

This module starts the BlobSQL server with all components:
- Blob store (local, S3 or Azure)
- Working copy downloaded from the blob store
- SQLite engine over the working copy
- Transaction coordinator and connection registry
- Sync engine (working copy -> blob store)
- HTTP query surface

Usage:
    python -m dbaas.blobsql_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - A failed startup download aborts startup; there is no usable database
    - Shutdown rolls back open transactions before the final upload
    - The final upload is bounded by SHUTDOWN_UPLOAD_TIMEOUT_SECONDS and its
      failure is logged without changing the exit code

How to change safely:
    - Keep stop() tolerant of partially started components
    - Test the shutdown sequence after adding a component
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .api import HttpServer, create_http_app
from .cache import CacheFile
from .config import ServerConfig
from .coordinator import TransactionCoordinator
from .engine import SQLiteEngine, TransactionMode
from .metrics import MetricsCollector
from .registry import ConnectionRegistry
from .storage import BlobStore, create_blob_store
from .sync import SyncEngine

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """BlobSQL Server orchestrator.

    Manages the lifecycle of all server components.

    Attributes:
        config: Server configuration
        store: Blob store holding the durable database image
        cache: Local working copy
        engine: SQLite engine over the working copy
        coordinator: Transaction state machine and statement router
        sync_engine: Background uploader

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None, store: BlobStore | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            store: Optional blob store (built from config if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: BlobStore | None = store
        self.cache: CacheFile | None = None
        self.engine: SQLiteEngine | None = None
        self.registry: ConnectionRegistry | None = None
        self.metrics: MetricsCollector | None = None
        self.sync_engine: SyncEngine | None = None
        self.coordinator: TransactionCoordinator | None = None
        self.http_server: HttpServer | None = None

    async def start(self) -> None:
        """Start all components.

        Raises:
            StorageError: If the database cannot be downloaded
            sqlite3.DatabaseError: If the downloaded image is not a database
        """
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting BlobSQL server")
        self.config.log_config()
        self._running = True

        try:
            db = self.config.database
            storage = self.config.storage

            if self.store is None:
                self.store = create_blob_store(self.config)

            self.cache = CacheFile(
                self.store,
                db.name,
                sync_interval_seconds=storage.sync_interval_seconds,
                cache_dir=storage.cache_dir,
                timeout=storage.timeout_seconds,
            )
            await self.cache.download()

            self.engine = SQLiteEngine(
                str(self.cache.local_path),
                busy_timeout_ms=db.busy_timeout_ms,
                journal_mode=db.journal_mode,
                pool_size=db.connection_pool_size,
            )
            await asyncio.get_running_loop().run_in_executor(None, self.engine.open)

            self.registry = ConnectionRegistry()
            self.metrics = MetricsCollector()
            self.sync_engine = SyncEngine(self.cache, upload_timeout=storage.timeout_seconds)
            self.coordinator = TransactionCoordinator(
                self.registry,
                self.engine,
                self.sync_engine,
                self.metrics,
                default_mode=TransactionMode.from_name(db.transaction_mode),
            )
            await self.sync_engine.start()

            app = create_http_app(
                self.coordinator,
                self.config.auth,
                sync_engine=self.sync_engine,
                stale_transaction_seconds=self.config.observability.stale_transaction_seconds,
                db_name=db.name,
            )
            self.http_server = HttpServer(app, self.config.http.host, self.config.http.port)
            await self.http_server.start()

            logger.info("BlobSQL server started", extra={"db_name": db.name})

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def serve(self) -> None:
        """Start and run until shutdown is requested."""
        await self.start()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping BlobSQL server")

        if self.http_server:
            await self.http_server.stop()

        if self.coordinator:
            await self.coordinator.close()

        flushed = True
        if self.sync_engine and self.sync_engine.is_running:
            flushed = await self.sync_engine.stop(
                timeout=self.config.storage.shutdown_upload_timeout_seconds
            )
            if not flushed:
                logger.error("Final upload failed; latest commits may not be persisted")

        if self.metrics:
            self.metrics.log_summary()

        if self.engine:
            self.engine.close()

        if self.cache:
            if flushed:
                self.cache.cleanup()
            else:
                logger.warning(
                    "Keeping working copy after failed upload",
                    extra={"local_path": str(self.cache.local_path)},
                )

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("BlobSQL server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    exit_code = 0
    try:
        loop.run_until_complete(server.serve())
    except KeyboardInterrupt:
        pass
    except Exception:
        exit_code = 1
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
