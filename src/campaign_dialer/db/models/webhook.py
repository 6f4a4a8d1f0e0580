"""Webhook ORM models."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String, Text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from campaign_dialer.core.timeutil import utcnow
from campaign_dialer.db.base import Base, UUIDMixin


class WebhookEventModel(Base, UUIDMixin):
    """Every inbound provider callback with its processing outcome."""

    __tablename__ = "webhook_events"

    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    provider_call_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    dedup_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default="received",
        nullable=False,
        index=True,
        comment="received, processed, duplicate, failed, rejected",
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "event_type": self.event_type,
            "provider_call_id": self.provider_call_id,
            "status": self.status,
            "error_message": self.error_message,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class ProcessedWebhookEventModel(Base, UUIDMixin):
    """Idempotency keys of provider events whose effects were applied."""

    __tablename__ = "processed_webhook_events"

    event_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_call_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
