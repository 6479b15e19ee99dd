"""Tests for shared sync types."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from syncengine.core.types import (
    EPOCH,
    BatchFailedError,
    InvalidOperationError,
    OperationType,
    SyncOperation,
    SyncState,
    UnknownEntityTypeError,
    ValidationError,
    ensure_utc,
    parse_timestamp,
)


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_ensure_utc_naive_assumed_utc(self) -> None:
        """Naive datetimes are treated as UTC."""
        value = ensure_utc(datetime(2024, 1, 1, 12, 0))
        assert value == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def test_ensure_utc_converts_offset(self) -> None:
        """Aware datetimes are converted to UTC."""
        plus_two = timezone(timedelta(hours=2))
        value = ensure_utc(datetime(2024, 1, 1, 14, 0, tzinfo=plus_two))
        assert value == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        assert value.tzinfo == UTC

    def test_parse_z_suffix(self) -> None:
        """Should accept the Z suffix clients send."""
        assert parse_timestamp("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=UTC)

    def test_parse_invalid(self) -> None:
        """Should raise InvalidOperationError for garbage."""
        with pytest.raises(InvalidOperationError):
            parse_timestamp("yesterday")

    def test_epoch(self) -> None:
        """EPOCH is the Unix epoch in UTC."""
        assert EPOCH == datetime(1970, 1, 1, tzinfo=UTC)


class TestSyncOperation:
    """Tests for SyncOperation."""

    def test_coerces_operation_and_timestamp(self) -> None:
        """String operations and naive timestamps are normalized."""
        op = SyncOperation(
            entity_type="building",
            operation="update",  # type: ignore[arg-type]
            data={"id": "b1"},
            client_timestamp=datetime(2024, 1, 1),
        )
        assert op.operation is OperationType.UPDATE
        assert op.client_timestamp.tzinfo == UTC

    def test_entity_id(self) -> None:
        """entity_id comes from the payload."""
        op = SyncOperation("building", OperationType.CREATE, {"id": 42}, EPOCH)
        assert op.entity_id == "42"
        assert SyncOperation("building", OperationType.CREATE, {}, EPOCH).entity_id is None

    def test_dict_round_trip(self) -> None:
        """Queue payloads rebuild the same operation."""
        op = SyncOperation(
            "apartment",
            OperationType.DELETE,
            {"id": "a1"},
            datetime(2024, 3, 1, 8, 30, tzinfo=UTC),
        )
        assert SyncOperation.from_dict(op.to_dict()) == op

    def test_unknown_operation_rejected(self) -> None:
        """Operations outside create/update/delete are rejected."""
        with pytest.raises(ValueError):
            SyncOperation("building", "upsert", {"id": "b1"}, EPOCH)  # type: ignore[arg-type]


class TestSyncState:
    """Tests for SyncState defaults."""

    def test_new_state_starts_at_epoch(self) -> None:
        """A new record has never synced and has nothing pending."""
        state = SyncState(user_id="u1", entity_type="building")
        assert state.last_sync_timestamp == EPOCH
        assert state.pending_operations == 0


class TestErrors:
    """Tests for the exception hierarchy."""

    def test_unknown_entity_type_is_validation_error(self) -> None:
        """Unknown entity types are rejected up front."""
        error = UnknownEntityTypeError("parking_spot")
        assert isinstance(error, ValidationError)
        assert error.entity_type == "parking_spot"
        assert "parking_spot" in str(error)

    def test_batch_failed_message(self) -> None:
        """BatchFailedError lists every failed operation."""
        error = BatchFailedError(["building update: boom", "apartment create: bang"])
        assert str(error) == "Failed operations: building update: boom, apartment create: bang"
        assert len(error.errors) == 2
