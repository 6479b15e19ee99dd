"""Server database using SQLAlchemy with SQLite.

The Database object owns the engine and hands out sessions. Queries live
with the component that needs them (entity stores, sync state repository,
conflict log, retry queue).
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session

from syncengine.server.models import Base

if TYPE_CHECKING:
    from sqlalchemy import Engine


class Database:
    """SQLAlchemy database for synchronizable entities and engine state.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False: request threads and queue workers share the engine
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        # Foreign keys are a per-connection setting in SQLite
        event.listen(self._engine, "connect", _enable_foreign_keys)

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        """Path of the SQLite file."""
        return self._db_path

    @property
    def engine(self) -> Engine:
        """Underlying SQLAlchemy engine."""
        return self._engine

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)


def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
