"""Tests for the sync service facade."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from syncengine.core.types import (
    EPOCH,
    InvalidOperationError,
    OperationType,
    SyncOperation,
    UnknownEntityTypeError,
    utcnow,
)
from syncengine.server.conflicts import ConflictLog
from syncengine.server.database import Database
from syncengine.server.entities import EntityRegistry
from syncengine.server.queue import JobStatus, RetryQueue
from syncengine.server.service import APPLY_OPERATIONS_JOB, SyncService
from syncengine.server.sync_state import SqlSyncStateRepository, SyncStateTracker


@pytest.fixture
def queue(db: Database) -> RetryQueue:
    """Queue drained by hand in tests."""
    return RetryQueue(db)


@pytest.fixture
def service(db: Database, registry: EntityRegistry, queue: RetryQueue) -> SyncService:
    """Service wired like the app does it."""
    return SyncService(
        registry,
        SyncStateTracker(SqlSyncStateRepository(db)),
        ConflictLog(db),
        queue,
        max_attempts=3,
        backoff_delay=2.0,
    )


class WorkerKilled(BaseException):
    """Stands in for a worker process dying mid-job."""


def building(operation: str, entity_id: str, **fields: object) -> SyncOperation:
    """Building operation stamped now."""
    return SyncOperation("building", OperationType(operation), {"id": entity_id, **fields}, utcnow())


class TestDeltaAndAcknowledge:
    """Tests for the pull side."""

    def test_first_delta_creates_state(self, service: SyncService, registry: EntityRegistry) -> None:
        """The first delta starts at the epoch and creates the record."""
        registry.get("building").create({"id": "b1", "name": "Tower"})

        delta = service.get_delta("u1", "building")

        assert [row["id"] for row in delta.created] == ["b1"]
        assert service.get_state("u1", "building").last_sync_timestamp == EPOCH

    def test_delta_does_not_move_watermark(self, service: SyncService) -> None:
        """Only an acknowledgement advances the watermark."""
        service.get_delta("u1", "building")
        assert service.get_state("u1", "building").last_sync_timestamp == EPOCH

    def test_incremental_sync(self, service: SyncService, registry: EntityRegistry) -> None:
        """After acknowledging, the next delta only carries new changes."""
        store = registry.get("building")
        store.create({"id": "b1", "name": "One"})
        first = service.get_delta("u1", "building")
        service.acknowledge("u1", "building", first.new_sync_timestamp)

        store.create({"id": "b2", "name": "Two"})
        second = service.get_delta("u1", "building")

        assert [row["id"] for row in second.created] == ["b2"]

    def test_unacknowledged_delta_is_repeated(
        self, service: SyncService, registry: EntityRegistry
    ) -> None:
        """A client that never acknowledged gets the same rows again."""
        registry.get("building").create({"id": "b1", "name": "One"})
        service.get_delta("u1", "building")
        again = service.get_delta("u1", "building")
        assert [row["id"] for row in again.created] == ["b1"]

    def test_explicit_timestamp_overrides_watermark(
        self, service: SyncService, registry: EntityRegistry
    ) -> None:
        """Clients may pass their own watermark."""
        registry.get("building").create({"id": "b1", "name": "One"})
        delta = service.get_delta("u1", "building", utcnow() + timedelta(seconds=1))
        assert delta.created == []

    def test_unknown_type_empty_delta(self, service: SyncService) -> None:
        """Unknown types give an empty delta and no state."""
        delta = service.get_delta("u1", "parking_spot")
        assert delta.created == delta.updated == []

    def test_acknowledge_unknown_type(self, service: SyncService) -> None:
        """Acknowledging an unknown type is rejected."""
        with pytest.raises(UnknownEntityTypeError):
            service.acknowledge("u1", "parking_spot", utcnow())


class TestApply:
    """Tests for synchronous apply."""

    def test_apply_writes_and_releases_pending(
        self, service: SyncService, registry: EntityRegistry
    ) -> None:
        """Pending counts return to zero once the call is answered."""
        result = service.apply_operations("u1", [building("create", "b1", name="Tower")])

        assert result.success
        assert registry.get("building").find_meta("b1") is not None
        assert service.get_state("u1", "building").pending_operations == 0

    def test_apply_releases_pending_on_failure(self, service: SyncService) -> None:
        """Failed operations still release their pending count."""
        result = service.apply_operations("u1", [building("update", "missing", name="x")])
        assert result.success is False
        assert service.get_state("u1", "building").pending_operations == 0

    def test_invalid_batch_rejected_up_front(
        self, service: SyncService, registry: EntityRegistry
    ) -> None:
        """A malformed operation rejects the whole batch before any write."""
        batch = [
            building("create", "b1", name="Tower"),
            SyncOperation("building", OperationType.CREATE, {"name": "no id"}, utcnow()),
        ]
        with pytest.raises(InvalidOperationError, match="Operation 1"):
            service.apply_operations("u1", batch)
        assert registry.get("building").find_meta("b1") is None

    def test_unknown_type_rejected(self, service: SyncService) -> None:
        """Unknown entity types never reach the applier."""
        with pytest.raises(UnknownEntityTypeError):
            service.apply_operations(
                "u1", [SyncOperation("parking_spot", OperationType.CREATE, {"id": "p1"}, utcnow())]
            )


class TestQueue:
    """Tests for queued apply."""

    def test_queue_then_apply(
        self, service: SyncService, queue: RetryQueue, registry: EntityRegistry
    ) -> None:
        """Queued batches count as pending until a worker applies them."""
        batch = service.queue_operations(
            "u1", [building("create", "b1", name="One"), building("create", "b2", name="Two")]
        )

        assert batch.operation_count == 2
        job = queue.get_job(batch.job_id)
        assert job is not None and job.name == APPLY_OPERATIONS_JOB
        assert service.get_state("u1", "building").pending_operations == 2

        assert queue.run_pending() == 1

        assert registry.get("building").find_meta("b2") is not None
        assert service.get_state("u1", "building").pending_operations == 0
        assert queue.get_job(batch.job_id) is None

    def test_pending_counted_per_type(self, service: SyncService) -> None:
        """Mixed batches raise each type's count separately."""
        service.queue_operations(
            "u1",
            [
                building("create", "b1", name="One"),
                SyncOperation(
                    "user_profile",
                    OperationType.CREATE,
                    {"id": "p1", "user_id": "u1", "full_name": "Ada"},
                    utcnow(),
                ),
            ],
        )
        assert service.get_state("u1", "building").pending_operations == 1
        assert service.get_state("u1", "user_profile").pending_operations == 1

    def test_failing_batch_exhausts_attempts(self, service: SyncService, queue: RetryQueue) -> None:
        """A batch that keeps failing is retried three times then kept as failed."""
        batch = service.queue_operations("u1", [building("update", "missing", name="x")])
        now = utcnow()

        for seconds in (0, 2, 6, 60):
            queue.run_pending(now + timedelta(seconds=seconds))

        job = queue.get_job(batch.job_id)
        assert job is not None
        assert job.status is JobStatus.FAILED
        assert job.attempts == 3
        assert job.last_error is not None
        assert job.last_error.startswith("Failed operations: building update:")
        # Still in flight until an operator retries it
        assert service.get_state("u1", "building").pending_operations == 1

    def test_retry_after_fix_releases_pending(
        self, service: SyncService, queue: RetryQueue, registry: EntityRegistry
    ) -> None:
        """An operator retry that succeeds releases the pending count."""
        batch = service.queue_operations("u1", [building("update", "b1", name="Later")])
        now = utcnow()
        for seconds in (0, 2, 6):
            queue.run_pending(now + timedelta(seconds=seconds))

        registry.get("building").create({"id": "b1", "name": "Now exists"})
        queue.retry(batch.job_id)
        queue.run_pending(utcnow() + timedelta(seconds=1))

        assert queue.get_job(batch.job_id) is None
        assert service.get_state("u1", "building").pending_operations == 0

    def test_retried_partial_batch_logs_no_conflicts(
        self, service: SyncService, queue: RetryQueue, registry: EntityRegistry
    ) -> None:
        """Retries of a partly failing batch do not record its own writes as conflicts."""
        registry.get("building").create({"id": "b1", "name": "Tower"})
        batch = service.queue_operations(
            "u1", [building("update", "b1", name="Renamed"), building("update", "missing", name="x")]
        )
        now = utcnow()

        for seconds in (0, 2, 6):
            queue.run_pending(now + timedelta(seconds=seconds))

        job = queue.get_job(batch.job_id)
        assert job is not None and job.status is JobStatus.FAILED
        assert service.list_conflicts("u1") == []

    def test_redelivered_batch_releases_pending_once(
        self, service: SyncService, queue: RetryQueue, registry: EntityRegistry
    ) -> None:
        """A job rerun after a worker died mid-completion does not eat another batch's count."""
        first = service.queue_operations("u1", [building("create", "b1", name="One")])
        second = service.queue_operations("u1", [building("create", "b2", name="Two")])

        with patch.object(queue, "_complete", side_effect=WorkerKilled):
            with pytest.raises(WorkerKilled):
                queue.run_next()

        assert registry.get("building").find_meta("b1") is not None
        assert service.get_state("u1", "building").pending_operations == 2

        assert queue.recover_stale() == 1
        assert queue.run_next() is True

        assert queue.get_job(first.job_id) is None
        assert queue.get_job(second.job_id) is not None
        assert service.get_state("u1", "building").pending_operations == 1

    def test_invalid_batch_not_queued(self, service: SyncService, queue: RetryQueue) -> None:
        """Validation errors are raised to the caller, never queued."""
        with pytest.raises(UnknownEntityTypeError):
            service.queue_operations(
                "u1", [SyncOperation("parking_spot", OperationType.CREATE, {"id": "p1"}, utcnow())]
            )
        assert queue.count(JobStatus.PENDING) == 0


class TestConflicts:
    """Tests for conflict listing through the service."""

    def test_conflicts_listed(self, service: SyncService, registry: EntityRegistry) -> None:
        """Conflicts from an apply are visible to the user."""
        registry.get("building").create({"id": "b1", "name": "Server"})
        stale = SyncOperation(
            "building", OperationType.UPDATE, {"id": "b1", "name": "Client"}, utcnow() - timedelta(hours=1)
        )

        result = service.apply_operations("u1", [stale])

        assert result.conflicts == 1
        assert [c.entity_id for c in service.list_conflicts("u1")] == ["b1"]
