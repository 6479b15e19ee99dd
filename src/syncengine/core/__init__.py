"""Core module - Shared types and configuration."""

from syncengine.core.config import EngineConfig
from syncengine.core.types import (
    EPOCH,
    ApplyResult,
    BatchFailedError,
    ConflictResolution,
    EntityNotFoundError,
    EntityType,
    InvalidOperationError,
    JobNotFoundError,
    OperationType,
    StaleWriteError,
    StoreError,
    SyncDelta,
    SyncError,
    SyncOperation,
    SyncState,
    UnknownEntityTypeError,
    ValidationError,
    Winner,
    ensure_utc,
    parse_timestamp,
    utcnow,
)

__all__ = [
    # Config
    "EngineConfig",
    # Records
    "ApplyResult",
    "ConflictResolution",
    "EntityType",
    "OperationType",
    "SyncDelta",
    "SyncOperation",
    "SyncState",
    "Winner",
    # Errors
    "BatchFailedError",
    "EntityNotFoundError",
    "InvalidOperationError",
    "JobNotFoundError",
    "StaleWriteError",
    "StoreError",
    "SyncError",
    "UnknownEntityTypeError",
    "ValidationError",
    # Timestamps
    "EPOCH",
    "ensure_utc",
    "parse_timestamp",
    "utcnow",
]
