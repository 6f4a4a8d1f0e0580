"""Database layer: declarative base, connection registry, models, repositories."""
from campaign_dialer.db.base import Base, TimestampMixin, UUIDMixin, UUIDType
from campaign_dialer.db.session import Database

__all__ = [
    "Base",
    "Database",
    "TimestampMixin",
    "UUIDMixin",
    "UUIDType",
]
