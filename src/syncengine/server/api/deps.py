"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from syncengine.server.entities import EntityRegistry
from syncengine.server.queue import RetryQueue
from syncengine.server.service import SyncService


def get_service(request: Request) -> SyncService:
    """Get sync service from app state."""
    service: SyncService = request.app.state.service
    return service


def get_queue(request: Request) -> RetryQueue:
    """Get retry queue from app state."""
    queue: RetryQueue = request.app.state.queue
    return queue


def get_registry(request: Request) -> EntityRegistry:
    """Get entity registry from app state."""
    registry: EntityRegistry = request.app.state.registry
    return registry


def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Return the caller's user ID from the ``X-User-Id`` header.

    Authentication happens upstream; this only requires that an identity
    was forwarded.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()
