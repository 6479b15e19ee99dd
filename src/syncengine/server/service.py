"""Sync service: the entry points clients reach through the API.

This module provides:
- SyncService: delta, acknowledge, apply (synchronous), queue
  (asynchronous, via the retry queue), state and conflict queries
- APPLY_OPERATIONS_JOB: Job name of queued batches
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from syncengine.core.types import (
    EPOCH,
    ApplyResult,
    BatchFailedError,
    InvalidOperationError,
    SyncDelta,
    SyncOperation,
    SyncState,
)
from syncengine.server.applier import OperationApplier
from syncengine.server.conflicts import ConflictLog
from syncengine.server.delta import DeltaResolver
from syncengine.server.queue import RetryQueue

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from syncengine.server.conflicts import LoggedConflict
    from syncengine.server.entities import EntityRegistry
    from syncengine.server.sync_state import SyncStateTracker

logger = logging.getLogger(__name__)

APPLY_OPERATIONS_JOB = "apply-operations"


@dataclass(frozen=True)
class QueuedBatch:
    """Acknowledgement returned when a batch is queued."""

    job_id: int
    operation_count: int


class SyncService:
    """Coordinates delta queries, batch application and sync state."""

    def __init__(
        self,
        registry: EntityRegistry,
        tracker: SyncStateTracker,
        conflict_log: ConflictLog,
        queue: RetryQueue,
        max_attempts: int = 3,
        backoff_delay: float = 2.0,
    ) -> None:
        """Initialize the service and register the queue handler.

        Args:
            registry: Entity stores by type.
            tracker: Sync state tracker.
            conflict_log: Conflict log shared with the applier.
            queue: Retry queue used by :meth:`queue_operations`.
            max_attempts: Attempts per queued batch.
            backoff_delay: First retry delay in seconds for queued batches.
        """
        self._registry = registry
        self._tracker = tracker
        self._conflict_log = conflict_log
        self._queue = queue
        self._max_attempts = max_attempts
        self._backoff_delay = backoff_delay
        self._delta = DeltaResolver(registry)
        self._applier = OperationApplier(registry, conflict_log)

        queue.register(APPLY_OPERATIONS_JOB, self.handle_apply_job, on_complete=self.release_queued)

    @property
    def entity_types(self) -> list[str]:
        """Registered entity type names."""
        return self._registry.entity_types

    # === Delta ===

    def get_delta(
        self,
        user_id: str,
        entity_type: str,
        last_sync_timestamp: datetime | None = None,
    ) -> SyncDelta:
        """Get changes since a watermark.

        Creates the sync state on first use. When no timestamp is given the
        stored watermark is used. Unknown entity types yield an empty delta.
        """
        if entity_type in self._registry:
            state = self._tracker.get_or_create(user_id, entity_type)
            if last_sync_timestamp is None:
                last_sync_timestamp = state.last_sync_timestamp
        elif last_sync_timestamp is None:
            last_sync_timestamp = EPOCH
        return self._delta.get_delta(user_id, entity_type, last_sync_timestamp)

    def acknowledge(self, user_id: str, entity_type: str, sync_timestamp: datetime) -> SyncState:
        """Advance the watermark once the client has consumed a delta.

        Raises:
            UnknownEntityTypeError: If the entity type is not registered.
            InvalidOperationError: If the timestamp is in the future.
        """
        self._registry.get(entity_type)
        return self._tracker.advance_watermark(user_id, entity_type, sync_timestamp)

    # === Apply ===

    def validate_operations(self, operations: list[SyncOperation]) -> None:
        """Reject a batch that can never succeed, before doing any work.

        Raises:
            UnknownEntityTypeError: If an operation names an unknown type.
            InvalidOperationError: If a payload is malformed.
        """
        for index, operation in enumerate(operations):
            try:
                self._registry.get(operation.entity_type).validate_payload(operation.data)
            except InvalidOperationError as e:
                raise InvalidOperationError(f"Operation {index}: {e}") from e

    def apply_operations(self, user_id: str, operations: list[SyncOperation]) -> ApplyResult:
        """Apply a batch synchronously.

        The batch counts as pending for the duration of the call; the result
        is reported straight back, so the counts are released whether or not
        every operation succeeded.
        """
        self.validate_operations(operations)
        counts = Counter(op.entity_type for op in operations)
        for entity_type, count in counts.items():
            self._tracker.increment_pending(user_id, entity_type, count)
        try:
            return self._applier.apply_operations(user_id, operations)
        finally:
            for entity_type, count in counts.items():
                self._tracker.decrement_pending(user_id, entity_type, count)

    def queue_operations(self, user_id: str, operations: list[SyncOperation]) -> QueuedBatch:
        """Queue a batch for background application with retries.

        Pending counts are raised now and released by :meth:`release_queued`
        once a worker applies the whole batch successfully.
        """
        self.validate_operations(operations)
        logger.info("Queueing %d sync operations for user %s", len(operations), user_id)

        for entity_type, count in Counter(op.entity_type for op in operations).items():
            self._tracker.increment_pending(user_id, entity_type, count)

        job_id = self._queue.enqueue(
            APPLY_OPERATIONS_JOB,
            {"user_id": user_id, "operations": [op.to_dict() for op in operations]},
            max_attempts=self._max_attempts,
            backoff_delay=self._backoff_delay,
        )
        return QueuedBatch(job_id=job_id, operation_count=len(operations))

    def handle_apply_job(self, payload: dict[str, Any]) -> ApplyResult:
        """Queue handler for :data:`APPLY_OPERATIONS_JOB`.

        Raises:
            BatchFailedError: If any operation failed, so the batch is retried.
        """
        user_id = payload["user_id"]
        operations = [SyncOperation.from_dict(raw) for raw in payload["operations"]]

        result = self._applier.apply_operations(user_id, operations)
        if not result.success:
            logger.error(
                "Failed to apply operations for user %s: %s",
                user_id,
                ", ".join(result.errors),
            )
            raise BatchFailedError(result.errors)

        logger.info("Successfully applied %d operations for user %s", len(operations), user_id)
        return result

    def release_queued(self, payload: dict[str, Any], session: Session) -> None:
        """Completion hook for :data:`APPLY_OPERATIONS_JOB`.

        Releases the batch's pending counts in the transaction that deletes
        the job, so a redelivered job never releases them twice.
        """
        user_id = payload["user_id"]
        counts = Counter(raw["entity_type"] for raw in payload["operations"])
        for entity_type, count in counts.items():
            self._tracker.decrement_pending(user_id, entity_type, count, session=session)

    # === Queries ===

    def get_state(self, user_id: str, entity_type: str) -> SyncState:
        """Current watermark and pending count.

        Raises:
            UnknownEntityTypeError: If the entity type is not registered.
        """
        self._registry.get(entity_type)
        return self._tracker.get_or_create(user_id, entity_type)

    def list_conflicts(
        self, user_id: str, since: datetime | None = None, limit: int = 100
    ) -> list[LoggedConflict]:
        """Conflicts recorded for a user."""
        return self._conflict_log.list_conflicts(user_id, since=since, limit=limit)
