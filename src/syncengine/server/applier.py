"""Applies batches of client operations against the entity stores.

Each operation is applied on its own: a store error is recorded and the
rest of the batch still runs. Every operation that finds an existing row
goes through a last-writer-wins check first, and the write itself is
conditional on the ``updated_at`` seen during that check, so a row changed
in between is treated as a conflict the server won. A replayed create or
update whose values are already stored counts as applied, not as a
conflict.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from syncengine.core.types import (
    ApplyResult,
    ConflictResolution,
    OperationType,
    StaleWriteError,
    SyncOperation,
    Winner,
    utcnow,
)
from syncengine.server.conflicts import resolve, server_timestamp_if_newer

if TYPE_CHECKING:
    from syncengine.server.conflicts import ConflictLog
    from syncengine.server.entities import EntityMeta, EntityRegistry, EntityStore

logger = logging.getLogger(__name__)


class OperationApplier:
    """Applies client operations with per-operation error isolation."""

    def __init__(self, registry: EntityRegistry, conflict_log: ConflictLog) -> None:
        """Initialize the applier.

        Args:
            registry: Entity stores by type.
            conflict_log: Where client-losing conflicts are recorded.
        """
        self._registry = registry
        self._conflict_log = conflict_log

    def apply_operations(self, user_id: str, operations: list[SyncOperation]) -> ApplyResult:
        """Apply a batch in submitted order.

        Args:
            user_id: User who submitted the batch.
            operations: Operations to apply.

        Returns:
            ApplyResult; ``success`` is False if any operation raised.
        """
        logger.info("Applying %d operations for user %s", len(operations), user_id)

        result = ApplyResult(success=True)
        for operation in operations:
            try:
                if self._apply_operation(user_id, operation):
                    result.applied += 1
                else:
                    result.conflicts += 1
            except Exception as e:
                logger.exception(
                    "Failed to apply %s %s for user %s",
                    operation.entity_type,
                    operation.operation.value,
                    user_id,
                )
                result.errors.append(f"{operation.entity_type} {operation.operation.value}: {e}")

        result.success = not result.errors
        return result

    def _apply_operation(self, user_id: str, operation: SyncOperation) -> bool:
        """Apply one operation.

        Returns:
            True if the store was written (or the operation was a no-op
            replay), False if it was skipped because the server won.
        """
        store = self._registry.get(operation.entity_type)
        store.validate_payload(operation.data)
        entity_id = str(operation.data["id"])

        meta = store.find_meta(entity_id)

        if meta is not None and meta.is_deleted:
            if operation.operation is OperationType.DELETE:
                logger.debug("%s %s already deleted", operation.entity_type, entity_id)
                return True
            self._skip_deleted(user_id, operation, meta)
            return False

        server_timestamp = server_timestamp_if_newer(meta, operation.client_timestamp)
        if server_timestamp is not None:
            resolution = resolve(operation.client_timestamp, server_timestamp)
            if resolution.winner is Winner.SERVER:
                if self._already_applied(store, operation, entity_id):
                    return True
                logger.warning(
                    "Conflict detected for %s %s: %s. Server version wins.",
                    operation.entity_type,
                    entity_id,
                    resolution.reason,
                )
                self._conflict_log.log_conflict(
                    user_id,
                    operation.entity_type,
                    entity_id,
                    resolution,
                    operation=operation.operation.value,
                )
                return False

        expected = meta.updated_at if meta is not None else None
        try:
            self._write(store, operation, entity_id, expected)
        except StaleWriteError as e:
            # Lost the race to a concurrent writer after the check above
            fresh = store.find_meta(entity_id)
            server_ts = fresh.updated_at if fresh is not None else utcnow()
            resolution = ConflictResolution(
                winner=Winner.SERVER,
                reason=f"Row changed during apply (expected {expected.isoformat() if expected else None}): {e}",
                client_timestamp=operation.client_timestamp,
                server_timestamp=server_ts,
            )
            self._conflict_log.log_conflict(
                user_id,
                operation.entity_type,
                entity_id,
                resolution,
                operation=operation.operation.value,
            )
            return False
        return True

    def _write(
        self,
        store: EntityStore,
        operation: SyncOperation,
        entity_id: str,
        expected: datetime | None,
    ) -> None:
        if operation.operation is OperationType.CREATE and expected is None:
            store.create(operation.data)
        elif operation.operation is OperationType.DELETE:
            store.delete(entity_id, expected_updated_at=expected)
        else:
            # A create for a live row is written like an update
            store.update(entity_id, operation.data, expected_updated_at=expected)

    def _already_applied(self, store: EntityStore, operation: SyncOperation, entity_id: str) -> bool:
        """True if a replayed create or update finds its values already stored."""
        if operation.operation is OperationType.DELETE:
            return False
        if not store.holds_values(entity_id, operation.data):
            return False
        logger.debug(
            "%s %s %s already applied, skipping replay",
            operation.entity_type,
            operation.operation.value,
            entity_id,
        )
        return True

    def _skip_deleted(self, user_id: str, operation: SyncOperation, meta: EntityMeta) -> None:
        deleted_at = meta.deleted_at or meta.updated_at
        resolution = ConflictResolution(
            winner=Winner.SERVER,
            reason=f"Entity was deleted on the server at {deleted_at.isoformat()}",
            client_timestamp=operation.client_timestamp,
            server_timestamp=deleted_at,
        )
        logger.warning(
            "Conflict detected for %s %s: %s. Server version wins.",
            operation.entity_type,
            meta.id,
            resolution.reason,
        )
        self._conflict_log.log_conflict(
            user_id,
            operation.entity_type,
            meta.id,
            resolution,
            operation=operation.operation.value,
        )
