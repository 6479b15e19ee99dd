"""Per-user sync state: watermarks and pending operation counts.

This module provides:
- SyncStateRepository: Abstract storage for SyncState records
- SqlSyncStateRepository: SQLAlchemy implementation (sync_states table)
- InMemorySyncStateRepository: Process-local implementation
- SyncStateTracker: The operations the engine uses (lazy creation,
  forward-only watermark, pending counters clamped at zero)
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from syncengine.core.types import EPOCH, InvalidOperationError, SyncState, ensure_utc, utcnow
from syncengine.server.models import SyncStateRecord

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from syncengine.server.database import Database

logger = logging.getLogger(__name__)


class SyncStateRepository(ABC):
    """Abstract storage for sync state records keyed by (user, entity type)."""

    @abstractmethod
    def get(self, user_id: str, entity_type: str) -> SyncState | None:
        """Get a record, or None if it does not exist."""

    @abstractmethod
    def create_if_missing(self, user_id: str, entity_type: str) -> SyncState:
        """Create a record at the epoch watermark unless one already exists.

        Returns:
            The existing or newly created record.
        """

    @abstractmethod
    def advance_watermark(self, user_id: str, entity_type: str, timestamp: datetime) -> SyncState:
        """Move the watermark to ``timestamp`` if that is later than the current one."""

    @abstractmethod
    def add_pending(
        self, user_id: str, entity_type: str, delta: int, session: Session | None = None
    ) -> tuple[SyncState, int]:
        """Add ``delta`` to the pending count, clamping the result at zero.

        When ``session`` is given the change joins that transaction and the
        caller commits it.

        Returns:
            Tuple of (updated record, count before the change).
        """


class SqlSyncStateRepository(SyncStateRepository):
    """Sync state stored in the ``sync_states`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _to_state(record: SyncStateRecord) -> SyncState:
        return SyncState(
            user_id=record.user_id,
            entity_type=record.entity_type,
            last_sync_timestamp=ensure_utc(record.last_sync_timestamp),
            pending_operations=record.pending_operations,
            updated_at=ensure_utc(record.updated_at),
        )

    @staticmethod
    def _key(user_id: str, entity_type: str):  # type: ignore[no-untyped-def]
        return (
            SyncStateRecord.user_id == user_id,
            SyncStateRecord.entity_type == entity_type,
        )

    def _require(self, session, user_id: str, entity_type: str) -> SyncStateRecord:  # type: ignore[no-untyped-def]
        record = session.execute(
            select(SyncStateRecord).where(*self._key(user_id, entity_type))
        ).scalar_one_or_none()
        if record is None:
            raise KeyError(f"No sync state for {user_id}/{entity_type}")
        return record

    def get(self, user_id: str, entity_type: str) -> SyncState | None:
        with self._db.session() as session:
            stmt = select(SyncStateRecord).where(*self._key(user_id, entity_type))
            record = session.execute(stmt).scalar_one_or_none()
            return self._to_state(record) if record else None

    def create_if_missing(self, user_id: str, entity_type: str) -> SyncState:
        existing = self.get(user_id, entity_type)
        if existing is not None:
            return existing

        with self._db.session() as session:
            record = SyncStateRecord(
                user_id=user_id,
                entity_type=entity_type,
                last_sync_timestamp=EPOCH,
                pending_operations=0,
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # Another request created it first
                session.rollback()
                return self._to_state(self._require(session, user_id, entity_type))
            session.refresh(record)
            return self._to_state(record)

    def advance_watermark(self, user_id: str, entity_type: str, timestamp: datetime) -> SyncState:
        timestamp = ensure_utc(timestamp)
        with self._db.session() as session:
            session.execute(
                update(SyncStateRecord)
                .where(
                    *self._key(user_id, entity_type),
                    SyncStateRecord.last_sync_timestamp < timestamp,
                )
                .values(last_sync_timestamp=timestamp, updated_at=utcnow())
            )
            session.commit()
            return self._to_state(self._require(session, user_id, entity_type))

    def add_pending(
        self, user_id: str, entity_type: str, delta: int, session: Session | None = None
    ) -> tuple[SyncState, int]:
        if session is not None:
            return self._add_pending(session, user_id, entity_type, delta)
        with self._db.session() as own_session:
            result = self._add_pending(own_session, user_id, entity_type, delta)
            own_session.commit()
            return result

    def _add_pending(
        self, session: Session, user_id: str, entity_type: str, delta: int
    ) -> tuple[SyncState, int]:
        column = SyncStateRecord.pending_operations
        record = self._require(session, user_id, entity_type)
        previous = record.pending_operations
        session.execute(
            update(SyncStateRecord)
            .where(*self._key(user_id, entity_type))
            .values(
                pending_operations=case((column + delta < 0, 0), else_=column + delta),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        session.refresh(record)
        return self._to_state(record), previous


class InMemorySyncStateRepository(SyncStateRepository):
    """Sync state kept in a dict. Lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[tuple[str, str], SyncState] = {}

    def get(self, user_id: str, entity_type: str) -> SyncState | None:
        with self._lock:
            state = self._states.get((user_id, entity_type))
            return replace(state) if state else None

    def create_if_missing(self, user_id: str, entity_type: str) -> SyncState:
        with self._lock:
            state = self._states.setdefault(
                (user_id, entity_type), SyncState(user_id=user_id, entity_type=entity_type)
            )
            return replace(state)

    def advance_watermark(self, user_id: str, entity_type: str, timestamp: datetime) -> SyncState:
        timestamp = ensure_utc(timestamp)
        with self._lock:
            state = self._states[(user_id, entity_type)]
            if timestamp > state.last_sync_timestamp:
                state.last_sync_timestamp = timestamp
                state.updated_at = utcnow()
            return replace(state)

    def add_pending(
        self, user_id: str, entity_type: str, delta: int, session: Session | None = None
    ) -> tuple[SyncState, int]:
        with self._lock:
            state = self._states[(user_id, entity_type)]
            previous = state.pending_operations
            state.pending_operations = max(previous + delta, 0)
            state.updated_at = utcnow()
            return replace(state), previous


class SyncStateTracker:
    """Tracks watermarks and pending counts per (user, entity type).

    Records are created lazily: the first sync of any pair starts at the
    epoch, which makes it a full historical delta.
    """

    def __init__(self, repository: SyncStateRepository) -> None:
        self._repository = repository

    def get_or_create(self, user_id: str, entity_type: str) -> SyncState:
        """Get the record, creating it at the epoch watermark if needed."""
        state = self._repository.get(user_id, entity_type)
        if state is not None:
            return state
        logger.debug("Creating sync state for %s/%s", user_id, entity_type)
        return self._repository.create_if_missing(user_id, entity_type)

    def advance_watermark(self, user_id: str, entity_type: str, new_timestamp: datetime) -> SyncState:
        """Advance the watermark after the client consumed a delta.

        An older timestamp than the stored one is ignored.

        Raises:
            InvalidOperationError: If the timestamp is in the future.
        """
        new_timestamp = ensure_utc(new_timestamp)
        if new_timestamp > utcnow():
            raise InvalidOperationError(
                f"Sync timestamp {new_timestamp.isoformat()} is in the future"
            )
        self.get_or_create(user_id, entity_type)
        state = self._repository.advance_watermark(user_id, entity_type, new_timestamp)
        if state.last_sync_timestamp != new_timestamp:
            logger.debug(
                "Ignoring watermark %s for %s/%s: already at %s",
                new_timestamp.isoformat(),
                user_id,
                entity_type,
                state.last_sync_timestamp.isoformat(),
            )
        return state

    def increment_pending(self, user_id: str, entity_type: str, n: int = 1) -> SyncState:
        """Count ``n`` more operations as in flight."""
        if n < 0:
            raise ValueError("n must be >= 0")
        self.get_or_create(user_id, entity_type)
        state, _ = self._repository.add_pending(user_id, entity_type, n)
        return state

    def decrement_pending(
        self, user_id: str, entity_type: str, n: int = 1, session: Session | None = None
    ) -> SyncState:
        """Mark ``n`` operations as no longer in flight. Clamps at zero.

        Pass ``session`` to make the decrement part of a caller's transaction.
        """
        if n < 0:
            raise ValueError("n must be >= 0")
        self.get_or_create(user_id, entity_type)
        state, previous = self._repository.add_pending(user_id, entity_type, -n, session=session)
        if previous < n:
            logger.warning(
                "Pending operations for %s/%s would go negative (%d - %d), clamped to 0",
                user_id,
                entity_type,
                previous,
                n,
            )
        return state
