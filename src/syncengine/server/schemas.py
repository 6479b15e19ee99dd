"""Pydantic schemas for API request/response models.

Field names are camelCase on the wire (``entityType``,
``newSyncTimestamp``...) and snake_case in Python.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from syncengine.core.types import (
    ApplyResult,
    OperationType,
    SyncDelta,
    SyncOperation,
    SyncState,
)
from syncengine.server.conflicts import LoggedConflict
from syncengine.server.queue import JobInfo


class CamelModel(BaseModel):
    """Base model using camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# === Operation schemas ===


class SyncOperationRequest(CamelModel):
    """One client mutation."""

    entity_type: str
    operation: OperationType
    data: dict[str, Any]
    client_timestamp: datetime

    def to_operation(self) -> SyncOperation:
        """Convert to the engine's operation record."""
        return SyncOperation(
            entity_type=self.entity_type,
            operation=self.operation,
            data=self.data,
            client_timestamp=self.client_timestamp,
        )


class OperationsRequest(CamelModel):
    """Request body for apply and queue."""

    operations: list[SyncOperationRequest] = Field(min_length=1)


class ApplyResponse(CamelModel):
    """Response for synchronous apply."""

    success: bool
    errors: list[str]
    applied: int
    conflicts: int


class QueueResponse(CamelModel):
    """Response for queued batches."""

    success: bool
    message: str
    job_id: int


# === Delta schemas ===


class DeltaResponse(CamelModel):
    """Changes for one entity type since a watermark."""

    entity_type: str
    created: list[dict[str, Any]]
    updated: list[dict[str, Any]]
    deleted: list[str]
    new_sync_timestamp: str


class AcknowledgeRequest(CamelModel):
    """Request body for acknowledging a consumed delta."""

    entity_type: str
    sync_timestamp: datetime


class SyncStateResponse(CamelModel):
    """Sync state for one entity type."""

    user_id: str
    entity_type: str
    last_sync_timestamp: str
    pending_operations: int
    updated_at: str


# === Conflict and job schemas ===


class ConflictResponse(CamelModel):
    """A conflict the server won."""

    id: int
    entity_type: str
    entity_id: str
    operation: str
    client_timestamp: str
    server_timestamp: str
    winner: str
    reason: str
    created_at: str


class JobResponse(CamelModel):
    """Retry queue job in responses."""

    id: int
    name: str
    status: str
    attempts: int
    max_attempts: int
    next_run_at: str
    last_error: str | None
    payload: dict[str, Any]
    created_at: str
    updated_at: str


# === Health schema ===


class HealthResponse(CamelModel):
    """Health check response."""

    status: str
    entity_types: list[str] = []
    workers_running: bool = False


# === Converters ===


def delta_to_response(delta: SyncDelta) -> DeltaResponse:
    """Convert SyncDelta to response model."""
    return DeltaResponse(
        entity_type=delta.entity_type,
        created=delta.created,
        updated=delta.updated,
        deleted=delta.deleted,
        new_sync_timestamp=delta.new_sync_timestamp.isoformat(),
    )


def apply_result_to_response(result: ApplyResult) -> ApplyResponse:
    """Convert ApplyResult to response model."""
    return ApplyResponse(
        success=result.success,
        errors=result.errors,
        applied=result.applied,
        conflicts=result.conflicts,
    )


def state_to_response(state: SyncState) -> SyncStateResponse:
    """Convert SyncState to response model."""
    return SyncStateResponse(
        user_id=state.user_id,
        entity_type=state.entity_type,
        last_sync_timestamp=state.last_sync_timestamp.isoformat(),
        pending_operations=state.pending_operations,
        updated_at=state.updated_at.isoformat(),
    )


def conflict_to_response(conflict: LoggedConflict) -> ConflictResponse:
    """Convert LoggedConflict to response model."""
    return ConflictResponse(
        id=conflict.id,
        entity_type=conflict.entity_type,
        entity_id=conflict.entity_id,
        operation=conflict.operation,
        client_timestamp=conflict.client_timestamp.isoformat(),
        server_timestamp=conflict.server_timestamp.isoformat(),
        winner=conflict.winner,
        reason=conflict.reason,
        created_at=conflict.created_at.isoformat(),
    )


def job_to_response(job: JobInfo) -> JobResponse:
    """Convert JobInfo to response model."""
    return JobResponse(
        id=job.id,
        name=job.name,
        status=job.status.value,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        next_run_at=job.next_run_at.isoformat(),
        last_error=job.last_error,
        payload=job.payload,
        created_at=job.created_at.isoformat(),
        updated_at=job.updated_at.isoformat(),
    )
