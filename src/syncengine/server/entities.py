"""Entity store abstraction for synchronizable entity types.

This module provides:
- EntityMeta: The timestamps conflict detection needs for one row
- EntityStore: Abstract interface the sync engine writes through
- SqlEntityStore: SQLAlchemy implementation for any SyncableMixin model
- EntityRegistry: Maps entity type names to their store
- create_registry: Registry with the built-in entity types
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from syncengine.core.types import (
    EntityNotFoundError,
    EntityType,
    InvalidOperationError,
    StaleWriteError,
    UnknownEntityTypeError,
    ensure_utc,
    utcnow,
)
from syncengine.server.models import Apartment, Building, SyncableMixin, UserProfile

if TYPE_CHECKING:
    from collections.abc import Iterator

    from syncengine.server.database import Database

logger = logging.getLogger(__name__)

# Columns maintained by the store; ignored when present in client payloads
MANAGED_COLUMNS = frozenset({"created_at", "updated_at", "deleted_at"})


@dataclass(frozen=True)
class EntityMeta:
    """Identity and timestamps of a stored row."""

    id: str
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        """True if the row is a tombstone."""
        return self.deleted_at is not None


@dataclass(frozen=True)
class ChangedRow:
    """A row returned by a delta query."""

    meta: EntityMeta
    values: dict[str, Any]


class EntityStore(ABC):
    """Abstract interface for one synchronizable entity type."""

    @property
    @abstractmethod
    def entity_type(self) -> str:
        """Registered entity type name."""

    @abstractmethod
    def validate_payload(self, data: dict[str, Any]) -> None:
        """Check that a payload only names known fields and carries an id.

        Raises:
            InvalidOperationError: If the payload is malformed.
        """

    @abstractmethod
    def find_meta(self, entity_id: str) -> EntityMeta | None:
        """Get the timestamps of a row, tombstones included.

        Returns:
            EntityMeta if the row exists, None otherwise.
        """

    @abstractmethod
    def holds_values(self, entity_id: str, data: dict[str, Any]) -> bool:
        """True if the live row already stores every writable field in ``data``.

        Used to recognize a replayed operation whose write already landed.
        """

    @abstractmethod
    def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a row, or overwrite the live row with the same id.

        Returns:
            The stored row.
        """

    @abstractmethod
    def update(
        self,
        entity_id: str,
        data: dict[str, Any],
        expected_updated_at: datetime | None = None,
    ) -> dict[str, Any]:
        """Update a live row.

        Args:
            entity_id: Row id.
            data: Fields to change.
            expected_updated_at: If given, only write when the row still has
                this ``updated_at``.

        Raises:
            EntityNotFoundError: If no live row has this id.
            StaleWriteError: If ``expected_updated_at`` no longer matches.
        """

    @abstractmethod
    def delete(self, entity_id: str, expected_updated_at: datetime | None = None) -> None:
        """Tombstone a live row.

        Raises:
            EntityNotFoundError: If no live row has this id.
            StaleWriteError: If ``expected_updated_at`` no longer matches.
        """

    @abstractmethod
    def changed_since(self, since: datetime) -> list[ChangedRow]:
        """Rows (tombstones included) whose ``updated_at`` is after ``since``.

        Deleting a row also bumps its ``updated_at``.
        """

    @abstractmethod
    def purge_tombstones(self, older_than: datetime) -> int:
        """Hard-delete tombstones deleted before ``older_than``.

        Returns:
            Number of rows removed.
        """


class SqlEntityStore(EntityStore):
    """Entity store backed by a SQLAlchemy model using SyncableMixin."""

    def __init__(self, db: Database, entity_type: str, model: type[SyncableMixin]) -> None:
        """Initialize the store.

        Args:
            db: Database instance.
            entity_type: Name the registry exposes this store under.
            model: Mapped class holding the rows.
        """
        self._db = db
        self._entity_type = entity_type
        self._model: Any = model
        columns = {column.name for column in model.__table__.columns}  # type: ignore[attr-defined]
        self._columns = frozenset(columns)
        self._writable = frozenset(columns - MANAGED_COLUMNS - {"id"})

    @property
    def entity_type(self) -> str:
        return self._entity_type

    def _to_meta(self, row: Any) -> EntityMeta:
        return EntityMeta(
            id=row.id,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            deleted_at=ensure_utc(row.deleted_at) if row.deleted_at else None,
        )

    def _to_dict(self, row: Any) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for name in sorted(self._columns):
            value = getattr(row, name)
            if isinstance(value, datetime):
                value = ensure_utc(value).isoformat()
            values[name] = value
        return values

    def _fields(self, data: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in data.items() if k in self._writable}

    def validate_payload(self, data: dict[str, Any]) -> None:
        if data.get("id") in (None, ""):
            raise InvalidOperationError(f"{self._entity_type} payload is missing 'id'")
        unknown = set(data) - self._columns
        if unknown:
            raise InvalidOperationError(
                f"{self._entity_type} payload has unknown fields: {', '.join(sorted(unknown))}"
            )

    def find_meta(self, entity_id: str) -> EntityMeta | None:
        with self._db.session() as session:
            row = session.get(self._model, entity_id)
            if row is None:
                return None
            return self._to_meta(row)

    def holds_values(self, entity_id: str, data: dict[str, Any]) -> bool:
        fields = self._fields(data)
        with self._db.session() as session:
            row = session.get(self._model, entity_id)
            if row is None or row.deleted_at is not None:
                return False
            return all(getattr(row, name) == value for name, value in fields.items())

    def create(self, data: dict[str, Any]) -> dict[str, Any]:
        entity_id = str(data["id"])
        fields = self._fields(data)
        with self._db.session() as session:
            row = session.get(self._model, entity_id)
            if row is None:
                row = self._model(id=entity_id, **fields)
                session.add(row)
            elif row.deleted_at is not None:
                raise EntityNotFoundError(f"{self._entity_type} {entity_id} was deleted")
            else:
                # Replayed create: the client id is an idempotency key
                logger.debug("Create for existing %s %s treated as upsert", self._entity_type, entity_id)
                for name, value in fields.items():
                    setattr(row, name, value)
                row.updated_at = utcnow()
            session.commit()
            session.refresh(row)
            return self._to_dict(row)

    def update(
        self,
        entity_id: str,
        data: dict[str, Any],
        expected_updated_at: datetime | None = None,
    ) -> dict[str, Any]:
        model = self._model
        fields = self._fields(data)
        with self._db.session() as session:
            stmt = update(model).where(model.id == entity_id, model.deleted_at.is_(None))
            if expected_updated_at is not None:
                stmt = stmt.where(model.updated_at == ensure_utc(expected_updated_at))
            stmt = stmt.values(**fields, updated_at=utcnow()).execution_options(
                synchronize_session=False
            )
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                self._raise_write_miss(session, entity_id)
            session.commit()
            row = session.get(model, entity_id)
            return self._to_dict(row)

    def delete(self, entity_id: str, expected_updated_at: datetime | None = None) -> None:
        model = self._model
        now = utcnow()
        with self._db.session() as session:
            stmt = update(model).where(model.id == entity_id, model.deleted_at.is_(None))
            if expected_updated_at is not None:
                stmt = stmt.where(model.updated_at == ensure_utc(expected_updated_at))
            stmt = stmt.values(deleted_at=now, updated_at=now).execution_options(
                synchronize_session=False
            )
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                self._raise_write_miss(session, entity_id)
            session.commit()

    def _raise_write_miss(self, session: Any, entity_id: str) -> None:
        row = session.get(self._model, entity_id)
        if row is None or row.deleted_at is not None:
            raise EntityNotFoundError(f"{self._entity_type} {entity_id} not found")
        raise StaleWriteError(
            f"{self._entity_type} {entity_id} was modified concurrently "
            f"(now {ensure_utc(row.updated_at).isoformat()})"
        )

    def changed_since(self, since: datetime) -> list[ChangedRow]:
        model = self._model
        since = ensure_utc(since)
        with self._db.session() as session:
            stmt = (
                select(model)
                .where(model.updated_at > since)
                .order_by(model.updated_at, model.id)
            )
            rows = session.execute(stmt).scalars().all()
            return [ChangedRow(meta=self._to_meta(r), values=self._to_dict(r)) for r in rows]

    def purge_tombstones(self, older_than: datetime) -> int:
        model = self._model
        with self._db.session() as session:
            stmt = delete(model).where(
                model.deleted_at.is_not(None),
                model.deleted_at < ensure_utc(older_than),
            )
            try:
                result = session.execute(stmt.execution_options(synchronize_session=False))
                session.commit()
            except IntegrityError:
                # Children still reference a tombstoned parent; retry next run
                session.rollback()
                logger.warning("Could not purge %s tombstones still referenced by other rows", self._entity_type)
                return 0
            return result.rowcount


class EntityRegistry:
    """Maps entity type names to their EntityStore.

    Adding a synchronizable type means registering one store.
    """

    def __init__(self) -> None:
        self._stores: dict[str, EntityStore] = {}

    def register(self, store: EntityStore) -> None:
        """Register a store under its entity type name."""
        if store.entity_type in self._stores:
            raise ValueError(f"Entity type already registered: {store.entity_type}")
        self._stores[store.entity_type] = store

    def find(self, entity_type: str) -> EntityStore | None:
        """Get a store, or None if the type is unknown."""
        return self._stores.get(entity_type)

    def get(self, entity_type: str) -> EntityStore:
        """Get a store.

        Raises:
            UnknownEntityTypeError: If the type is not registered.
        """
        store = self._stores.get(entity_type)
        if store is None:
            raise UnknownEntityTypeError(entity_type)
        return store

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._stores

    def __iter__(self) -> Iterator[EntityStore]:
        return iter(self._stores.values())

    @property
    def entity_types(self) -> list[str]:
        """Registered type names."""
        return sorted(self._stores)


def create_registry(db: Database) -> EntityRegistry:
    """Create a registry with the built-in synchronizable entity types."""
    registry = EntityRegistry()
    registry.register(SqlEntityStore(db, EntityType.BUILDING.value, Building))
    registry.register(SqlEntityStore(db, EntityType.APARTMENT.value, Apartment))
    registry.register(SqlEntityStore(db, EntityType.USER_PROFILE.value, UserProfile))
    return registry
