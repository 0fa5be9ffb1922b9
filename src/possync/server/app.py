"""FastAPI application for the local sync status server.

This module creates and configures the FastAPI application with:
- GET /sync/status and POST /sync/trigger for UI processes
- Dead-letter inspection and operator actions
- A lifespan that starts and stops the sync engine

Usage:
    uvicorn possync.server.app:app_factory --factory --host 127.0.0.1 --port 8765
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from possync import __version__
from possync.client.engine import SyncEngine
from possync.core.config import load_config
from possync.server.api.router import router as api_router

# Configuration from environment variables with defaults
CONFIG_PATH = os.environ.get("POSSYNC_CONFIG")
LOG_PATH = Path(os.environ.get("POSSYNC_LOG_PATH", "possync.log"))

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for possync
    root_logger = logging.getLogger("possync")
    root_logger.setLevel(logging.INFO)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(engine: SyncEngine, manage_engine: bool = True) -> FastAPI:
    """Create FastAPI application serving an engine's status.

    Args:
        engine: The sync engine to expose.
        manage_engine: Start the engine on startup and close it on shutdown.
            Pass False when the host application owns the engine.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        snapshot = engine.status.snapshot()
        logger.info("=" * 60)
        logger.info("possync status server starting")
        logger.info("=" * 60)
        logger.info("  Queue:    %s", engine.queue.path or "in-memory")
        logger.info("  Pending:  %d", snapshot.pending_count)
        logger.info("  Failed:   %d", snapshot.error_count)
        logger.info("=" * 60)
        if manage_engine:
            engine.start()

        yield

        # Shutdown
        logger.info("possync status server shutting down")
        if manage_engine:
            engine.close()

    application = FastAPI(
        title="possync",
        description="Offline-first sync status for point-of-sale clients",
        version=__version__,
        lifespan=lifespan,
    )

    application.state.engine = engine
    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    setup_logging(LOG_PATH)
    server, sync = load_config(Path(CONFIG_PATH) if CONFIG_PATH else None)
    return create_app(SyncEngine(server, sync))


def run_server(host: str = "127.0.0.1", port: int = 8765) -> None:
    """Serve the status API with uvicorn until interrupted."""
    uvicorn.run(app_factory(), host=host, port=port)
