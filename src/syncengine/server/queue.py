"""Persistent job queue with at-least-once delivery and exponential backoff.

This module provides:
- JobStatus: Lifecycle states of a queued job
- JobInfo: Read-only view of a job row
- RetryQueue: Enqueue, claim, run and retry jobs stored in ``sync_jobs``

Jobs are claimed with a conditional ``UPDATE ... WHERE status = 'pending'``
so two workers never run the same attempt. A job that raises is rescheduled
after ``backoff_delay * 2 ** (attempt - 1)`` seconds until ``max_attempts``
is reached, then marked failed and kept for operator inspection. Completed
jobs are deleted. Jobs found ``running`` at start-up belonged to a worker
that died mid-attempt and are put back to ``pending``.

Usage:
    queue = RetryQueue(db)
    queue.register("apply-operations", handler)
    queue.start(workers=2)
    queue.enqueue("apply-operations", {"user_id": "u1", "operations": [...]})
    ...
    queue.stop()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from syncengine.core.types import JobNotFoundError, ensure_utc, utcnow
from syncengine.server.database import Database
from syncengine.server.models import JobRecord

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_DELAY = 2.0  # seconds
DEFAULT_POLL_INTERVAL = 1.0  # seconds

# Claim attempts before giving up when other workers keep winning the race
CLAIM_RETRIES = 5

JobHandler = Callable[[dict[str, Any]], Any]
# Runs inside the transaction that deletes a completed job
CompletionHook = Callable[[dict[str, Any], Session], None]


class JobStatus(str, Enum):
    """State of a queued job."""

    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class JobInfo:
    """Snapshot of a job row."""

    id: int
    name: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    backoff_delay: float
    next_run_at: datetime
    last_error: str | None
    created_at: datetime
    updated_at: datetime


def _to_info(record: JobRecord) -> JobInfo:
    return JobInfo(
        id=record.id,
        name=record.name,
        payload=dict(record.payload),
        status=JobStatus(record.status),
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        backoff_delay=record.backoff_delay,
        next_run_at=ensure_utc(record.next_run_at),
        last_error=record.last_error,
        created_at=ensure_utc(record.created_at),
        updated_at=ensure_utc(record.updated_at),
    )


def backoff_for(attempt: int, delay: float) -> float:
    """Delay before the next attempt after ``attempt`` failed (1-based)."""
    return delay * (2 ** (attempt - 1))


class RetryQueue:
    """Database-backed job queue drained by worker threads."""

    def __init__(
        self,
        db: Database,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        default_backoff_delay: float = DEFAULT_BACKOFF_DELAY,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """Initialize the queue.

        Args:
            db: Database holding the ``sync_jobs`` table.
            default_max_attempts: Attempts for jobs enqueued without one.
            default_backoff_delay: First retry delay for jobs enqueued without one.
            poll_interval: Seconds an idle worker sleeps between polls.
        """
        self._db = db
        self._default_max_attempts = default_max_attempts
        self._default_backoff_delay = default_backoff_delay
        self._poll_interval = poll_interval
        self._handlers: dict[str, JobHandler] = {}
        self._completion_hooks: dict[str, CompletionHook] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: list[threading.Thread] = []

    # === Registration and submission ===

    def register(
        self,
        job_name: str,
        handler: JobHandler,
        on_complete: CompletionHook | None = None,
    ) -> None:
        """Register the handler for a job name.

        The handler receives the job payload. Raising any exception counts
        as a failed attempt.

        Args:
            job_name: Name jobs are enqueued under.
            handler: Called with the payload for each attempt.
            on_complete: Called with the payload and the session that
                deletes the job after a successful attempt. Its writes
                commit together with the delete. If it raises, the attempt
                counts as failed.
        """
        with self._lock:
            self._handlers[job_name] = handler
            if on_complete is not None:
                self._completion_hooks[job_name] = on_complete
            else:
                self._completion_hooks.pop(job_name, None)

    def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        max_attempts: int | None = None,
        backoff_delay: float | None = None,
    ) -> int:
        """Add a job to the queue.

        Args:
            job_name: Name of a registered handler.
            payload: JSON-serializable job data.
            max_attempts: Attempts before the job is marked failed.
            backoff_delay: First retry delay in seconds (doubles each attempt).

        Returns:
            ID of the new job.
        """
        attempts = max_attempts if max_attempts is not None else self._default_max_attempts
        delay = backoff_delay if backoff_delay is not None else self._default_backoff_delay
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        with self._db.session() as session:
            record = JobRecord(
                name=job_name,
                payload=payload,
                status=JobStatus.PENDING.value,
                attempts=0,
                max_attempts=attempts,
                backoff_delay=delay,
                next_run_at=utcnow(),
            )
            session.add(record)
            session.commit()
            job_id = record.id

        logger.debug("Enqueued job %d (%s)", job_id, job_name)
        return job_id

    # === Processing ===

    def _claim(self, now: datetime) -> int | None:
        """Mark the next due job as running and return its ID."""
        for _ in range(CLAIM_RETRIES):
            with self._db.session() as session:
                job_id = session.execute(
                    select(JobRecord.id)
                    .where(
                        JobRecord.status == JobStatus.PENDING.value,
                        JobRecord.next_run_at <= now,
                    )
                    .order_by(JobRecord.next_run_at, JobRecord.id)
                    .limit(1)
                ).scalar_one_or_none()
                if job_id is None:
                    return None

                result = session.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, JobRecord.status == JobStatus.PENDING.value)
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempts=JobRecord.attempts + 1,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    return job_id
        return None

    def run_next(self, now: datetime | None = None) -> bool:
        """Claim and run one due job in the calling thread.

        Args:
            now: Clock used to decide which jobs are due (defaults to now).

        Returns:
            True if a job was run, False if nothing was due.
        """
        now = ensure_utc(now) if now is not None else utcnow()
        job_id = self._claim(now)
        if job_id is None:
            return False

        job = self.get_job(job_id)
        if job is None:
            return True

        with self._lock:
            handler = self._handlers.get(job.name)
            on_complete = self._completion_hooks.get(job.name)

        if handler is None:
            logger.error("No handler registered for job %d (%s)", job.id, job.name)
            self._mark_failed(job, f"No handler registered for {job.name}")
            return True

        logger.info(
            "Processing job %d (%s), attempt %d/%d",
            job.id,
            job.name,
            job.attempts,
            job.max_attempts,
        )
        try:
            handler(job.payload)
            self._complete(job, on_complete)
        except Exception as e:
            logger.exception("Job %d (%s) attempt %d failed", job.id, job.name, job.attempts)
            if job.attempts >= job.max_attempts:
                self._mark_failed(job, str(e))
            else:
                self._reschedule(job, str(e), now)
            return True

        logger.info("Job %d (%s) completed", job.id, job.name)
        return True

    def _complete(self, job: JobInfo, on_complete: CompletionHook | None) -> None:
        """Delete a finished job, running its completion hook in the same transaction."""
        with self._db.session() as session:
            record = session.get(JobRecord, job.id)
            if record is None:
                return
            if on_complete is not None:
                on_complete(job.payload, session)
            session.delete(record)
            session.commit()

    def run_pending(self, now: datetime | None = None) -> int:
        """Run every due job in the calling thread.

        Returns:
            Number of jobs run.
        """
        count = 0
        while self.run_next(now):
            count += 1
        return count

    def _reschedule(self, job: JobInfo, error: str, now: datetime) -> None:
        next_run_at = now + timedelta(seconds=backoff_for(job.attempts, job.backoff_delay))
        with self._db.session() as session:
            session.execute(
                update(JobRecord)
                .where(JobRecord.id == job.id)
                .values(
                    status=JobStatus.PENDING.value,
                    next_run_at=next_run_at,
                    last_error=error,
                    updated_at=utcnow(),
                )
            )
            session.commit()
        logger.warning(
            "Job %d (%s) will be retried at %s (attempt %d/%d failed)",
            job.id,
            job.name,
            next_run_at.isoformat(),
            job.attempts,
            job.max_attempts,
        )

    def _mark_failed(self, job: JobInfo, error: str) -> None:
        with self._db.session() as session:
            session.execute(
                update(JobRecord)
                .where(JobRecord.id == job.id)
                .values(status=JobStatus.FAILED.value, last_error=error, updated_at=utcnow())
            )
            session.commit()
        logger.error(
            "Job %d (%s) permanently failed after %d attempts: %s",
            job.id,
            job.name,
            job.attempts,
            error,
        )

    # === Inspection ===

    def get_job(self, job_id: int) -> JobInfo | None:
        """Get a job by ID."""
        with self._db.session() as session:
            record = session.get(JobRecord, job_id)
            return _to_info(record) if record else None

    def list_failed(self, limit: int = 100) -> list[JobInfo]:
        """List permanently failed jobs, most recent first."""
        with self._db.session() as session:
            stmt = (
                select(JobRecord)
                .where(JobRecord.status == JobStatus.FAILED.value)
                .order_by(JobRecord.updated_at.desc(), JobRecord.id.desc())
                .limit(limit)
            )
            return [_to_info(r) for r in session.execute(stmt).scalars().all()]

    def count(self, status: JobStatus = JobStatus.PENDING) -> int:
        """Count jobs in a given state."""
        with self._db.session() as session:
            stmt = select(func.count()).select_from(JobRecord).where(JobRecord.status == status.value)
            return session.execute(stmt).scalar_one()

    def retry(self, job_id: int) -> JobInfo:
        """Put a failed job back in the queue with a fresh attempt budget.

        Raises:
            JobNotFoundError: If no failed job has this ID.
        """
        with self._db.session() as session:
            result = session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status == JobStatus.FAILED.value)
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    next_run_at=utcnow(),
                    updated_at=utcnow(),
                )
            )
            session.commit()
        if result.rowcount == 0:
            raise JobNotFoundError(f"No failed job with id {job_id}")
        logger.info("Job %d requeued by operator", job_id)
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} disappeared after requeue")
        return job

    def recover_stale(self) -> int:
        """Return jobs left ``running`` by a dead worker to ``pending``.

        Only safe while no worker of this queue is running.

        Returns:
            Number of jobs recovered.
        """
        with self._db.session() as session:
            result = session.execute(
                update(JobRecord)
                .where(JobRecord.status == JobStatus.RUNNING.value)
                .values(status=JobStatus.PENDING.value, updated_at=utcnow())
            )
            session.commit()
        if result.rowcount:
            logger.warning("Recovered %d interrupted jobs", result.rowcount)
        return result.rowcount

    # === Workers ===

    def start(self, workers: int = 2) -> None:
        """Start worker threads draining the queue."""
        if self._workers:
            return  # Already running

        self.recover_stale()
        self._stop_event.clear()
        for i in range(workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"sync-queue-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._workers.append(thread)
        logger.info("Retry queue started with %d workers", workers)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop worker threads, waiting for in-flight jobs to finish."""
        if not self._workers:
            return
        self._stop_event.set()
        for thread in self._workers:
            thread.join(timeout=timeout)
        self._workers = []
        logger.info("Retry queue stopped")

    @property
    def is_running(self) -> bool:
        """True while worker threads are active."""
        return bool(self._workers)

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                processed = self.run_next()
            except Exception:
                # Database trouble: back off and keep the worker alive
                logger.exception("Retry queue worker error")
                processed = False
            if not processed:
                self._stop_event.wait(self._poll_interval)
