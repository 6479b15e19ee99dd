"""Sync API routes: delta, acknowledge, apply, queue, state and conflicts.

Validation failures (unknown entity type, malformed payload, future
watermark) are answered with 422 before any work is done. Conflicts are
not errors: they show up in the ``conflicts`` count of an apply result and
in ``GET /api/sync/conflicts``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from syncengine.core.types import ValidationError, parse_timestamp
from syncengine.server.api.deps import get_current_user, get_service
from syncengine.server.schemas import (
    AcknowledgeRequest,
    ApplyResponse,
    ConflictResponse,
    DeltaResponse,
    OperationsRequest,
    QueueResponse,
    SyncStateResponse,
    apply_result_to_response,
    conflict_to_response,
    delta_to_response,
    state_to_response,
)
from syncengine.server.service import SyncService

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _unprocessable(error: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=str(error))


@router.get("/delta", response_model=DeltaResponse)
def get_delta(
    entity_type: str = Query(..., alias="entityType", description="Entity type to sync."),
    last_sync_timestamp: str | None = Query(
        default=None,
        alias="lastSyncTimestamp",
        description="ISO 8601 watermark. Defaults to the stored watermark.",
        examples=["2024-01-01T00:00:00Z"],
    ),
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_service),
) -> DeltaResponse:
    """Get changes for an entity type since a watermark.

    Clients should:
    1. Apply ``created``, ``updated`` and ``deleted`` locally
    2. Acknowledge ``newSyncTimestamp`` with ``POST /api/sync/ack``

    An unknown entity type yields an empty delta.
    """
    try:
        since = parse_timestamp(last_sync_timestamp) if last_sync_timestamp else None
    except ValidationError as e:
        raise _unprocessable(e) from e

    delta = service.get_delta(user_id, entity_type, since)
    return delta_to_response(delta)


@router.post("/ack", response_model=SyncStateResponse)
def acknowledge(
    body: AcknowledgeRequest,
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_service),
) -> SyncStateResponse:
    """Advance the watermark after the client consumed a delta."""
    try:
        state = service.acknowledge(user_id, body.entity_type, body.sync_timestamp)
    except ValidationError as e:
        raise _unprocessable(e) from e
    return state_to_response(state)


@router.post("/apply", response_model=ApplyResponse)
def apply_operations(
    body: OperationsRequest,
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_service),
) -> ApplyResponse:
    """Apply a batch of operations and report the outcome."""
    operations = [op.to_operation() for op in body.operations]
    try:
        result = service.apply_operations(user_id, operations)
    except ValidationError as e:
        raise _unprocessable(e) from e
    return apply_result_to_response(result)


@router.post("/queue", response_model=QueueResponse, status_code=status.HTTP_202_ACCEPTED)
def queue_operations(
    body: OperationsRequest,
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_service),
) -> QueueResponse:
    """Queue a batch for background application with retries."""
    operations = [op.to_operation() for op in body.operations]
    try:
        batch = service.queue_operations(user_id, operations)
    except ValidationError as e:
        raise _unprocessable(e) from e
    return QueueResponse(
        success=True,
        message=f"Queued {batch.operation_count} operations for processing",
        job_id=batch.job_id,
    )


@router.get("/state", response_model=SyncStateResponse)
def get_state(
    entity_type: str = Query(..., alias="entityType"),
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_service),
) -> SyncStateResponse:
    """Get the caller's watermark and pending count for an entity type."""
    try:
        state = service.get_state(user_id, entity_type)
    except ValidationError as e:
        raise _unprocessable(e) from e
    return state_to_response(state)


@router.get("/conflicts", response_model=list[ConflictResponse])
def list_conflicts(
    since: str | None = Query(default=None, description="ISO 8601 lower bound."),
    limit: int = Query(default=100, ge=1, le=1000),
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_service),
) -> list[ConflictResponse]:
    """List conflicts the server won against the caller's operations."""
    try:
        since_dt = parse_timestamp(since) if since else None
    except ValidationError as e:
        raise _unprocessable(e) from e

    conflicts = service.list_conflicts(user_id, since=since_dt, limit=limit)
    return [conflict_to_response(c) for c in conflicts]
