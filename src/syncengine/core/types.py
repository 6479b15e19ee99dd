"""Shared types for the sync engine.

This module provides:
- EntityType, OperationType, Winner: Closed enums used on the wire
- SyncOperation, SyncDelta, SyncState: Records passed between components
- ConflictResolution, ApplyResult: Outcomes of conflict checks and batches
- SyncError and its subclasses: Exception taxonomy
- Timestamp helpers (EPOCH, utcnow, ensure_utc, parse_timestamp)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# Watermark for a client that has never synced
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes; those are assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix accepted) into aware UTC.

    Raises:
        InvalidOperationError: If the string is not a valid timestamp.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidOperationError(f"Invalid timestamp: {value!r}") from e
    return ensure_utc(parsed)


class SyncError(Exception):
    """Base exception for sync engine errors."""


class ValidationError(SyncError):
    """Request rejected before any work was done. Never retried."""


class UnknownEntityTypeError(ValidationError):
    """Entity type is not registered for synchronization."""

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Unknown entity type: {entity_type}")


class InvalidOperationError(ValidationError):
    """Operation or payload is malformed."""


class StoreError(SyncError):
    """Entity store refused a write."""


class EntityNotFoundError(StoreError):
    """Target row does not exist (or is tombstoned)."""


class StaleWriteError(StoreError):
    """Row changed between the conflict check and the conditional write."""


class BatchFailedError(SyncError):
    """A queued batch finished with per-operation errors.

    Raised from the queue handler so the retry policy engages.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Failed operations: {', '.join(errors)}")


class JobNotFoundError(SyncError):
    """No retryable job with the given ID."""


class EntityType(str, Enum):
    """Synchronizable entity kinds."""

    BUILDING = "building"
    APARTMENT = "apartment"
    USER_PROFILE = "user_profile"


class OperationType(str, Enum):
    """Client mutation kinds."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Winner(str, Enum):
    """Side whose version survives a conflict."""

    CLIENT = "client"
    SERVER = "server"


@dataclass
class SyncOperation:
    """A client-proposed mutation.

    Attributes:
        entity_type: Registered entity type name.
        operation: create, update or delete.
        data: Entity payload. Always carries ``id``; for creates the id is
            the client-generated idempotency key.
        client_timestamp: When the client made the change (client clock).
    """

    entity_type: str
    operation: OperationType
    data: dict[str, Any]
    client_timestamp: datetime

    def __post_init__(self) -> None:
        self.operation = OperationType(self.operation)
        self.client_timestamp = ensure_utc(self.client_timestamp)

    @property
    def entity_id(self) -> str | None:
        """Identity carried in the payload, if any."""
        entity_id = self.data.get("id")
        return None if entity_id is None else str(entity_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a queue payload."""
        return {
            "entity_type": self.entity_type,
            "operation": self.operation.value,
            "data": self.data,
            "client_timestamp": self.client_timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SyncOperation:
        """Rebuild an operation from a queue payload."""
        return cls(
            entity_type=raw["entity_type"],
            operation=OperationType(raw["operation"]),
            data=dict(raw["data"]),
            client_timestamp=parse_timestamp(raw["client_timestamp"]),
        )


@dataclass
class SyncDelta:
    """Changes for one entity type since a watermark."""

    entity_type: str
    created: list[dict[str, Any]] = field(default_factory=list)
    updated: list[dict[str, Any]] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    new_sync_timestamp: datetime = field(default_factory=utcnow)


@dataclass
class SyncState:
    """Snapshot of one (user, entity type) sync state record."""

    user_id: str
    entity_type: str
    last_sync_timestamp: datetime = EPOCH
    pending_operations: int = 0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ConflictResolution:
    """Outcome of a last-writer-wins comparison."""

    winner: Winner
    reason: str
    client_timestamp: datetime
    server_timestamp: datetime
    resolved: bool = True


@dataclass
class ApplyResult:
    """Result of applying a batch of operations.

    Attributes:
        success: True when no operation raised a store error.
        errors: One ``"{entity_type} {operation}: {message}"`` per failure.
        applied: Number of operations written to the store.
        conflicts: Number of operations skipped because the server won.
    """

    success: bool
    errors: list[str] = field(default_factory=list)
    applied: int = 0
    conflicts: int = 0
