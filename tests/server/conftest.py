"""Shared fixtures for server tests."""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update

from syncengine.server.database import Database
from syncengine.server.entities import EntityRegistry, create_registry
from syncengine.server.models import Apartment, Building, UserProfile

MODELS: dict[str, Any] = {
    "building": Building,
    "apartment": Apartment,
    "user_profile": UserProfile,
}


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def registry(db: Database) -> EntityRegistry:
    """Registry with the built-in entity types."""
    return create_registry(db)


@pytest.fixture
def set_timestamps(db: Database) -> Callable[..., None]:
    """Overwrite created_at/updated_at/deleted_at of a row."""

    def _set(entity_type: str, entity_id: str, **values: datetime | None) -> None:
        model = MODELS[entity_type]
        with db.session() as session:
            session.execute(update(model).where(model.id == entity_id).values(**values))
            session.commit()

    return _set
