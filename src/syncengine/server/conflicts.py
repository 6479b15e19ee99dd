"""Last-writer-wins conflict resolution and conflict logging.

This module provides:
- resolve: Pure timestamp comparison (ties favour the client)
- server_timestamp_if_newer: Conflict check against a row's metadata
- ConflictResolver: Looks up server rows to detect conflicts
- ConflictLog: Logs and persists client-losing conflicts
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from syncengine.core.types import ConflictResolution, Winner, ensure_utc, utcnow
from syncengine.server.models import ConflictRecord

if TYPE_CHECKING:
    from syncengine.server.database import Database
    from syncengine.server.entities import EntityMeta, EntityRegistry

logger = logging.getLogger(__name__)


def resolve(client_timestamp: datetime, server_timestamp: datetime) -> ConflictResolution:
    """Resolve a conflict with last-writer-wins.

    The server wins only if its timestamp is strictly newer.

    Args:
        client_timestamp: When the client made its change.
        server_timestamp: Server row's ``updated_at``.

    Returns:
        ConflictResolution naming the winner and why.
    """
    client_ts = ensure_utc(client_timestamp)
    server_ts = ensure_utc(server_timestamp)
    if server_ts > client_ts:
        return ConflictResolution(
            winner=Winner.SERVER,
            reason=f"Server version is newer ({server_ts.isoformat()} > {client_ts.isoformat()})",
            client_timestamp=client_ts,
            server_timestamp=server_ts,
        )
    return ConflictResolution(
        winner=Winner.CLIENT,
        reason=f"Client version is newer ({client_ts.isoformat()} >= {server_ts.isoformat()})",
        client_timestamp=client_ts,
        server_timestamp=server_ts,
    )


def server_timestamp_if_newer(
    meta: EntityMeta | None, client_timestamp: datetime
) -> datetime | None:
    """Return the server timestamp when it is newer than the client's change."""
    if meta is None:
        return None
    if meta.updated_at > ensure_utc(client_timestamp):
        return meta.updated_at
    return None


class ConflictResolver:
    """Detects conflicts between client operations and stored rows."""

    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry

    def resolve(self, client_timestamp: datetime, server_timestamp: datetime) -> ConflictResolution:
        """See :func:`resolve`."""
        return resolve(client_timestamp, server_timestamp)

    def detect_conflict(
        self, entity_type: str, entity_id: str, client_timestamp: datetime
    ) -> datetime | None:
        """Check whether the server row changed after the client's edit.

        Args:
            entity_type: Registered entity type.
            entity_id: Row id.
            client_timestamp: When the client made its change.

        Returns:
            The server ``updated_at`` if it is newer, None if there is no
            conflict (including when the row does not exist).

        Raises:
            UnknownEntityTypeError: If the entity type is not registered.
        """
        meta = self._registry.get(entity_type).find_meta(entity_id)
        return server_timestamp_if_newer(meta, client_timestamp)


@dataclass(frozen=True)
class LoggedConflict:
    """A persisted conflict record."""

    id: int
    user_id: str
    entity_type: str
    entity_id: str
    operation: str
    client_timestamp: datetime
    server_timestamp: datetime
    winner: str
    reason: str
    created_at: datetime


def _to_logged(record: ConflictRecord) -> LoggedConflict:
    return LoggedConflict(
        id=record.id,
        user_id=record.user_id,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        operation=record.operation,
        client_timestamp=ensure_utc(record.client_timestamp),
        server_timestamp=ensure_utc(record.server_timestamp),
        winner=record.winner,
        reason=record.reason,
        created_at=ensure_utc(record.created_at),
    )


class ConflictLog:
    """Records client-losing conflicts so they can be surfaced to the user."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def log_conflict(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        resolution: ConflictResolution,
        operation: str = "update",
    ) -> LoggedConflict:
        """Log a conflict and persist it.

        Args:
            user_id: User whose change lost.
            entity_type: Entity type of the row.
            entity_id: Row id.
            resolution: Outcome of the comparison.
            operation: Client operation that was skipped.

        Returns:
            The stored conflict.
        """
        logger.warning(
            "Conflict logged for user %s: %s %s (%s) - %s",
            user_id,
            entity_type,
            entity_id,
            operation,
            resolution.reason,
        )
        with self._db.session() as session:
            record = ConflictRecord(
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                client_timestamp=resolution.client_timestamp,
                server_timestamp=resolution.server_timestamp,
                winner=resolution.winner.value,
                reason=resolution.reason,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_logged(record)

    def list_conflicts(
        self,
        user_id: str,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[LoggedConflict]:
        """List conflicts for a user, oldest first.

        Args:
            user_id: User to list conflicts for.
            since: Only conflicts recorded after this time.
            limit: Maximum number of conflicts to return.
        """
        with self._db.session() as session:
            stmt = select(ConflictRecord).where(ConflictRecord.user_id == user_id)
            if since is not None:
                stmt = stmt.where(ConflictRecord.created_at > ensure_utc(since))
            stmt = stmt.order_by(ConflictRecord.created_at, ConflictRecord.id).limit(limit)
            return [_to_logged(r) for r in session.execute(stmt).scalars().all()]

    def cleanup_old_conflicts(self, older_than_days: int = 90) -> int:
        """Delete conflict records older than the retention period.

        Returns:
            Number of records deleted.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._db.session() as session:
            result = session.execute(
                delete(ConflictRecord).where(ConflictRecord.created_at < cutoff)
            )
            session.commit()
            return result.rowcount
