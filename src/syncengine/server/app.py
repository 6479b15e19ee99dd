"""FastAPI application for the sync engine server.

This module creates and configures the FastAPI application with:
- REST API for deltas, acknowledgements, batch apply/queue and sync state
- Admin API for failed queue jobs
- Retry queue workers and the maintenance scheduler, run for the
  lifetime of the app

Usage:
    uvicorn syncengine.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from syncengine import __version__
from syncengine.core.config import EngineConfig
from syncengine.server.api.router import router as api_router
from syncengine.server.conflicts import ConflictLog
from syncengine.server.database import Database
from syncengine.server.entities import create_registry
from syncengine.server.queue import RetryQueue
from syncengine.server.scheduler import MaintenanceScheduler
from syncengine.server.service import SyncService
from syncengine.server.sync_state import SqlSyncStateRepository, SyncStateTracker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for syncengine
    root_logger = logging.getLogger("syncengine")
    root_logger.setLevel(logging.INFO)
    if root_logger.handlers:
        return  # Already configured

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


def create_app(
    db: Database,
    config: EngineConfig | None = None,
    start_background: bool = True,
) -> FastAPI:
    """Create FastAPI application around a database.

    Args:
        db: Database instance.
        config: Engine settings (defaults to ``EngineConfig()``).
        start_background: Start queue workers and the maintenance scheduler
            in the lifespan. Tests pass False and drain the queue by hand.

    Returns:
        Configured FastAPI application.
    """
    config = config or EngineConfig()

    registry = create_registry(db)
    tracker = SyncStateTracker(SqlSyncStateRepository(db))
    conflict_log = ConflictLog(db)
    queue = RetryQueue(
        db,
        default_max_attempts=config.max_attempts,
        default_backoff_delay=config.backoff_delay,
        poll_interval=config.poll_interval,
    )
    service = SyncService(
        registry,
        tracker,
        conflict_log,
        queue,
        max_attempts=config.max_attempts,
        backoff_delay=config.backoff_delay,
    )
    scheduler = MaintenanceScheduler(
        registry,
        conflict_log,
        tombstone_retention_days=config.tombstone_retention_days,
        conflict_retention_days=config.conflict_retention_days,
        hour=config.maintenance_hour,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info("=" * 60)
        logger.info("SyncEngine Server Starting")
        logger.info("=" * 60)
        logger.info("  Database:     %s", db.path)
        logger.info("  Entity types: %s", ", ".join(registry.entity_types))
        logger.info("  Workers:      %d", config.workers if start_background else 0)
        logger.info("  Logs:         %s", config.log_path.absolute())
        logger.info("=" * 60)

        if start_background:
            if config.workers > 0:
                queue.start(workers=config.workers)
            scheduler.start()

        yield

        # Shutdown
        logger.info("SyncEngine Server shutting down")
        scheduler.stop()
        queue.stop()

    application = FastAPI(
        title="SyncEngine Server",
        description="Offline-sync reconciliation server",
        version=__version__,
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.config = config
    application.state.registry = registry
    application.state.tracker = tracker
    application.state.conflict_log = conflict_log
    application.state.queue = queue
    application.state.service = service
    application.state.scheduler = scheduler

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    config = EngineConfig.from_env()
    setup_logging(config.log_path)
    return create_app(db=Database(config.db_path), config=config)
