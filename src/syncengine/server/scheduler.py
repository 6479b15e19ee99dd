"""Scheduler for automatic maintenance tasks.

This module provides:
- Automatic daily tombstone purge at 3:00 AM
- Automatic daily conflict record cleanup at 3:30 AM
- Manual purge functions for CLI usage
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from syncengine.core.types import utcnow

if TYPE_CHECKING:
    from syncengine.server.conflicts import ConflictLog
    from syncengine.server.entities import EntityRegistry

logger = logging.getLogger(__name__)


def purge_tombstones(registry: EntityRegistry, older_than_days: int = 30) -> dict[str, int]:
    """Hard-delete rows that were tombstoned before the retention period.

    Stores are purged in reverse registration order so child rows go
    before the parents they reference.

    Args:
        registry: Entity stores to purge.
        older_than_days: Delete tombstones older than this many days.

    Returns:
        Number of rows deleted per entity type.
    """
    cutoff = utcnow() - timedelta(days=older_than_days)
    purged: dict[str, int] = {}
    for store in reversed(list(registry)):
        purged[store.entity_type] = store.purge_tombstones(cutoff)

    total = sum(purged.values())
    if total > 0:
        logger.info(
            "Tombstone purge completed: %d rows deleted (%s)",
            total,
            ", ".join(f"{name}={count}" for name, count in purged.items() if count),
        )
    else:
        logger.debug("Tombstone purge: no tombstones older than %d days", older_than_days)

    return purged


class MaintenanceScheduler:
    """Scheduler for automatic maintenance tasks.

    Runs daily:
    - Tombstone purge at ``hour``:``minute``
    - Conflict record cleanup 30 minutes later
    """

    def __init__(
        self,
        registry: EntityRegistry,
        conflict_log: ConflictLog,
        tombstone_retention_days: int = 30,
        conflict_retention_days: int = 90,
        hour: int = 3,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            registry: Entity stores whose tombstones are purged.
            conflict_log: Conflict log to clean up.
            tombstone_retention_days: Days a tombstone stays visible to deltas.
            conflict_retention_days: Days conflict records are kept.
            hour: Hour to run the purge job (0-23).
            minute: Minute to run the purge job (0-29).
        """
        if not 0 <= minute < 30:
            raise ValueError("minute must be between 0 and 29")
        self._registry = registry
        self._conflict_log = conflict_log
        self._tombstone_retention_days = tombstone_retention_days
        self._conflict_retention_days = conflict_retention_days
        self._hour = hour
        self._minute = minute
        self._scheduler: BackgroundScheduler | None = None

    @property
    def is_running(self) -> bool:
        """True while the background scheduler is active."""
        return self._scheduler is not None

    def _purge_job(self) -> None:
        """Job function for scheduled tombstone purge."""
        logger.info(
            "Starting scheduled tombstone purge (retention: %d days)",
            self._tombstone_retention_days,
        )
        try:
            purge_tombstones(self._registry, self._tombstone_retention_days)
        except Exception:
            logger.exception("Error during scheduled tombstone purge")

    def _cleanup_conflicts_job(self) -> None:
        """Job function for scheduled conflict record cleanup."""
        logger.info(
            "Starting scheduled conflict cleanup (retention: %d days)",
            self._conflict_retention_days,
        )
        try:
            deleted = self._conflict_log.cleanup_old_conflicts(self._conflict_retention_days)
            if deleted > 0:
                logger.info("Conflict cleanup: %d old records deleted", deleted)
            else:
                logger.debug(
                    "Conflict cleanup: no records older than %d days",
                    self._conflict_retention_days,
                )
        except Exception:
            logger.exception("Error during scheduled conflict cleanup")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()

        self._scheduler.add_job(
            self._purge_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="tombstone_purge",
            name="Daily tombstone purge",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._cleanup_conflicts_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute + 30),
            id="conflict_cleanup",
            name="Daily conflict cleanup",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Maintenance scheduler started (daily at %02d:%02d, tombstone retention: %d days)",
            self._hour,
            self._minute,
            self._tombstone_retention_days,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")

    def run_now(self) -> dict[str, int]:
        """Run the tombstone purge immediately (manual trigger)."""
        return purge_tombstones(self._registry, self._tombstone_retention_days)

    def cleanup_conflicts_now(self) -> int:
        """Run the conflict cleanup immediately (manual trigger).

        Returns:
            Number of conflict records deleted.
        """
        return self._conflict_log.cleanup_old_conflicts(self._conflict_retention_days)
