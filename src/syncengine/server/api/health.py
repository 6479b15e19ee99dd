"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from syncengine.server.api.deps import get_queue, get_registry
from syncengine.server.entities import EntityRegistry
from syncengine.server.queue import RetryQueue
from syncengine.server.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(
    registry: EntityRegistry = Depends(get_registry),
    queue: RetryQueue = Depends(get_queue),
) -> HealthResponse:
    """Check server health."""
    return HealthResponse(
        status="ok",
        entity_types=registry.entity_types,
        workers_running=queue.is_running,
    )
