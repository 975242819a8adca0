"""SQLAlchemy models for NeoDB bookkeeping tables.

The models carry no schema of their own. The Schema Manager binds them to its
Postgres schema through ``schema_translate_map``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all NeoDB bookkeeping models."""

    pass


class MigrationRecord(Base):
    """Append-only log of applied migrations.

    A row exists only for migrations whose transaction committed.
    """

    __tablename__ = "_neo_migrations"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Reverse statements, run by rollback
    down_sql: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Entity snapshot before the migration; None when the migration created the entity
    previous_schema: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    def __repr__(self) -> str:
        return f"<MigrationRecord(id={self.id!r}, version={self.version})>"

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view of the log row."""
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "checksum": self.checksum,
            "execution_time_ms": self.execution_time_ms,
        }


class EntitySnapshot(Base):
    """Last-synced shape of each entity, the baseline for schema diffs."""

    __tablename__ = "_neo_entities"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    table_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    schema_json: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<EntitySnapshot(id={self.id!r}, table_name={self.table_name!r})>"
