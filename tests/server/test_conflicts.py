"""Tests for last-writer-wins resolution and the conflict log."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from syncengine.core.types import ConflictResolution, UnknownEntityTypeError, Winner, utcnow
from syncengine.server.conflicts import ConflictLog, ConflictResolver, resolve
from syncengine.server.database import Database
from syncengine.server.entities import EntityRegistry
from syncengine.server.models import ConflictRecord

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class TestResolve:
    """Tests for the pure last-writer-wins comparison."""

    def test_server_newer_wins(self) -> None:
        """Server wins when strictly newer."""
        result = resolve(T0, T0 + timedelta(seconds=1))
        assert result.winner is Winner.SERVER
        assert result.reason.startswith("Server version is newer")
        assert result.resolved is True

    def test_client_newer_wins(self) -> None:
        """Client wins when newer."""
        result = resolve(T0 + timedelta(seconds=1), T0)
        assert result.winner is Winner.CLIENT
        assert result.reason.startswith("Client version is newer")

    def test_tie_favours_client(self) -> None:
        """Equal timestamps go to the client."""
        assert resolve(T0, T0).winner is Winner.CLIENT

    def test_naive_treated_as_utc(self) -> None:
        """Naive timestamps compare as UTC."""
        naive = datetime(2024, 5, 1, 12, 0, 1)
        assert resolve(T0, naive).winner is Winner.SERVER

    def test_timestamps_recorded(self) -> None:
        """Both timestamps are carried on the resolution."""
        result = resolve(T0, T0 + timedelta(minutes=5))
        assert result.client_timestamp == T0
        assert result.server_timestamp == T0 + timedelta(minutes=5)


class TestConflictResolver:
    """Tests for conflict detection against stored rows."""

    def test_missing_row_is_no_conflict(self, registry: EntityRegistry) -> None:
        """Nothing to conflict with when the row does not exist."""
        resolver = ConflictResolver(registry)
        assert resolver.detect_conflict("building", "nope", T0) is None

    def test_newer_server_row(self, registry: EntityRegistry) -> None:
        """Returns the server timestamp when the row is newer."""
        registry.get("building").create({"id": "b1", "name": "Tower"})
        resolver = ConflictResolver(registry)

        server_ts = resolver.detect_conflict("building", "b1", utcnow() - timedelta(hours=1))

        meta = registry.get("building").find_meta("b1")
        assert meta is not None
        assert server_ts == meta.updated_at

    def test_older_server_row(self, registry: EntityRegistry) -> None:
        """No conflict when the client change is newer."""
        registry.get("building").create({"id": "b1", "name": "Tower"})
        resolver = ConflictResolver(registry)
        assert resolver.detect_conflict("building", "b1", utcnow() + timedelta(hours=1)) is None

    def test_unknown_type(self, registry: EntityRegistry) -> None:
        """Unknown types raise."""
        with pytest.raises(UnknownEntityTypeError):
            ConflictResolver(registry).detect_conflict("parking_spot", "x", T0)

    def test_resolve_delegates(self, registry: EntityRegistry) -> None:
        """resolve() matches the module-level function."""
        resolver = ConflictResolver(registry)
        assert resolver.resolve(T0, T0) == resolve(T0, T0)


class TestConflictLog:
    """Tests for persisted conflict records."""

    @staticmethod
    def _server_win() -> ConflictResolution:
        return resolve(T0, T0 + timedelta(seconds=30))

    def test_log_persists(self, db: Database) -> None:
        """Logged conflicts can be listed back."""
        log = ConflictLog(db)
        stored = log.log_conflict("u1", "building", "b1", self._server_win(), operation="delete")

        conflicts = log.list_conflicts("u1")
        assert conflicts == [stored]
        assert stored.operation == "delete"
        assert stored.winner == "server"
        assert stored.client_timestamp == T0
        assert stored.server_timestamp == T0 + timedelta(seconds=30)

    def test_list_is_per_user(self, db: Database) -> None:
        """Users only see their own conflicts."""
        log = ConflictLog(db)
        log.log_conflict("u1", "building", "b1", self._server_win())
        log.log_conflict("u2", "building", "b1", self._server_win())
        assert len(log.list_conflicts("u1")) == 1
        assert log.list_conflicts("u3") == []

    def test_list_since(self, db: Database) -> None:
        """since filters by record time."""
        log = ConflictLog(db)
        log.log_conflict("u1", "building", "b1", self._server_win())
        assert log.list_conflicts("u1", since=utcnow() + timedelta(seconds=1)) == []
        assert len(log.list_conflicts("u1", since=utcnow() - timedelta(hours=1))) == 1

    def test_logs_warning(self, db: Database, caplog: pytest.LogCaptureFixture) -> None:
        """Every conflict is also written to the log."""
        with caplog.at_level("WARNING", logger="syncengine.server.conflicts"):
            ConflictLog(db).log_conflict("u1", "apartment", "a1", self._server_win())
        assert "Conflict logged for user u1: apartment a1" in caplog.text

    def test_cleanup_old_conflicts(self, db: Database) -> None:
        """Records older than the retention period are deleted."""
        log = ConflictLog(db)
        old = log.log_conflict("u1", "building", "old", self._server_win())
        log.log_conflict("u1", "building", "new", self._server_win())
        with db.session() as session:
            session.execute(
                update(ConflictRecord)
                .where(ConflictRecord.id == old.id)
                .values(created_at=utcnow() - timedelta(days=100))
            )
            session.commit()

        assert log.cleanup_old_conflicts(older_than_days=90) == 1
        assert [c.entity_id for c in log.list_conflicts("u1")] == ["new"]
