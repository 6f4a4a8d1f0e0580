"""SQLAlchemy Base and Mixins for the dialer database.

Provides:
- DeclarativeBase for all ORM models
- UUIDMixin for UUID primary keys
- TimestampMixin for created_at/updated_at
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, TypeDecorator, func
from sqlalchemy.types import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from campaign_dialer.core.timeutil import utcnow


class UUIDType(TypeDecorator):
    """Platform-independent UUID type.

    Uses String(36) storage but handles UUID <-> str conversion.
    Compatible with SQLite and PostgreSQL.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, UUID):
            return str(value)
        return str(UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, UUID):
            return value
        return UUID(value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[Any]: JSON,
        UUID: UUIDType,
        datetime: DateTime(timezone=True),
    }


class UUIDMixin:
    """Mixin providing a UUID primary key."""

    id: Mapped[UUID] = mapped_column(
        UUIDType(),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )


class TimestampMixin:
    """Mixin providing created_at and updated_at timestamps.

    Values are set client-side so rows inserted within the same second
    still order by creation.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
