"""SQLAlchemy models for the sync engine server.

This module defines the database schema using SQLAlchemy ORM:
- Synchronizable entities (buildings, apartments, user profiles)
- Per-user sync state
- Persisted conflict records
- Retry queue jobs
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class SyncableMixin:
    """Columns every synchronizable entity carries.

    ``created_at`` and ``updated_at`` are maintained by the store. A non-null
    ``deleted_at`` marks the row as a tombstone.
    """

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now, nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Building(SyncableMixin, Base):
    """A managed building."""

    __tablename__ = "buildings"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address_line: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    num_units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("idx_buildings_updated", "updated_at"),
        Index("idx_buildings_deleted", "deleted_at"),
    )


class Apartment(SyncableMixin, Base):
    """An apartment inside a building."""

    __tablename__ = "apartments"

    building_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("buildings.id"), nullable=False
    )
    apartment_number: Mapped[str] = mapped_column(String(20), nullable=False)
    floor: Mapped[int | None] = mapped_column(Integer, nullable=True)
    area_sqm: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_vacant: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("building_id", "apartment_number", name="uq_apartments_number"),
        Index("idx_apartments_updated", "updated_at"),
        Index("idx_apartments_deleted", "deleted_at"),
    )


class UserProfile(SyncableMixin, Base):
    """Profile data for an application user."""

    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_type: Mapped[str] = mapped_column(String(20), default="TENANT", nullable=False)
    preferred_language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)

    __table_args__ = (
        Index("idx_user_profiles_updated", "updated_at"),
        Index("idx_user_profiles_deleted", "deleted_at"),
    )


class SyncStateRecord(Base):
    """Watermark and pending count for one (user, entity type) pair."""

    __tablename__ = "sync_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    last_sync_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pending_operations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", name="uq_sync_states_user_entity"),
    )


class ConflictRecord(Base):
    """A client change that lost to the server version."""

    __tablename__ = "sync_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    client_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    server_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    winner: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )

    __table_args__ = (
        Index("idx_sync_conflicts_user", "user_id", "created_at"),
    )


class JobRecord(Base):
    """A retry queue job. Completed jobs are deleted, failed jobs are kept."""

    __tablename__ = "sync_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_delay: Mapped[float] = mapped_column(Float, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now, nullable=False
    )

    __table_args__ = (
        Index("idx_sync_jobs_due", "status", "next_run_at"),
    )
