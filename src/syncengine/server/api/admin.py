"""Admin API routes for operating the retry queue.

Permanently failed jobs are kept for inspection; an operator can put one
back in the queue with a fresh attempt budget.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from syncengine.core.types import JobNotFoundError
from syncengine.server.api.deps import get_queue
from syncengine.server.queue import RetryQueue
from syncengine.server.schemas import JobResponse, job_to_response

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/jobs/failed", response_model=list[JobResponse])
def list_failed_jobs(
    limit: int = Query(default=100, ge=1, le=1000),
    queue: RetryQueue = Depends(get_queue),
) -> list[JobResponse]:
    """List jobs that exhausted their attempts."""
    return [job_to_response(job) for job in queue.list_failed(limit=limit)]


@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
def retry_job(job_id: int, queue: RetryQueue = Depends(get_queue)) -> JobResponse:
    """Requeue a failed job.

    Raises:
        HTTPException: 404 if no failed job has this ID.
    """
    try:
        job = queue.retry(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return job_to_response(job)
