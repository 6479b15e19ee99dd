"""Configuration for the sync engine server.

Values default to something usable for development and can be overridden
through ``SYNCENGINE_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class EngineConfig:
    """Settings shared by the HTTP app, the queue workers and the CLI.

    Attributes:
        db_path: SQLite database file.
        log_path: Log file written next to stdout.
        workers: Number of queue worker threads (0 disables background apply).
        poll_interval: Seconds an idle worker waits before polling again.
        max_attempts: Attempts per queued batch before it is marked failed.
        backoff_delay: First retry delay in seconds, doubled on each attempt.
        tombstone_retention_days: How long deleted rows stay visible to deltas.
        conflict_retention_days: How long conflict records are kept.
        maintenance_hour: Hour (0-23) at which daily maintenance runs.
    """

    db_path: Path = Path("syncengine.db")
    log_path: Path = Path("syncengine-server.log")
    workers: int = 2
    poll_interval: float = 1.0
    max_attempts: int = 3
    backoff_delay: float = 2.0
    tombstone_retention_days: int = 30
    conflict_retention_days: int = 90
    maintenance_hour: int = 3

    def __post_init__(self) -> None:
        """Validate numeric settings."""
        self.db_path = Path(self.db_path)
        self.log_path = Path(self.log_path)
        if self.workers < 0:
            raise ValueError("workers must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_delay < 0:
            raise ValueError("backoff_delay must be >= 0")
        if not 0 <= self.maintenance_hour <= 23:
            raise ValueError("maintenance_hour must be between 0 and 23")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build configuration from environment variables."""
        env = os.environ
        return cls(
            db_path=Path(env.get("SYNCENGINE_DB_PATH", "syncengine.db")),
            log_path=Path(env.get("SYNCENGINE_LOG_PATH", "syncengine-server.log")),
            workers=int(env.get("SYNCENGINE_WORKERS", "2")),
            poll_interval=float(env.get("SYNCENGINE_POLL_INTERVAL", "1.0")),
            max_attempts=int(env.get("SYNCENGINE_MAX_ATTEMPTS", "3")),
            backoff_delay=float(env.get("SYNCENGINE_BACKOFF_DELAY", "2.0")),
            tombstone_retention_days=int(env.get("SYNCENGINE_TOMBSTONE_RETENTION_DAYS", "30")),
            conflict_retention_days=int(env.get("SYNCENGINE_CONFLICT_RETENTION_DAYS", "90")),
            maintenance_hour=int(env.get("SYNCENGINE_MAINTENANCE_HOUR", "3")),
        )
