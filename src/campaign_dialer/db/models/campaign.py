"""Campaign and outbound number ORM models."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from campaign_dialer.db.base import Base, TimestampMixin, UUIDMixin


CAMPAIGN_STATUSES = ("draft", "active", "paused", "completed")


class CampaignModel(Base, UUIDMixin, TimestampMixin):
    """Outbound calling campaign.

    Owned by an account. The dispatch queue only ever toggles ``status``
    and bumps the aggregate call counters.
    """

    __tablename__ = "campaigns"

    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default="draft",
        nullable=False,
        index=True,
        comment="draft, active, paused, completed",
    )

    # Voice agent (provider assistant id); campaigns without one are never dialed
    agent_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Campaign-local calling window [start, end)
    calling_hours_start: Mapped[int] = mapped_column(Integer, default=9, nullable=False)
    calling_hours_end: Mapped[int] = mapped_column(Integer, default=17, nullable=False)
    timezone: Mapped[str] = mapped_column(
        String(64), default="America/New_York", nullable=False
    )

    max_attempts_per_lead: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    # Aggregates, bumped once per call-end
    total_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_duration_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "account_id": self.account_id,
            "name": self.name,
            "status": self.status,
            "agent_id": self.agent_id,
            "calling_hours_start": self.calling_hours_start,
            "calling_hours_end": self.calling_hours_end,
            "timezone": self.timezone,
            "max_attempts_per_lead": self.max_attempts_per_lead,
            "total_calls": self.total_calls,
            "total_duration_seconds": self.total_duration_seconds,
            "total_cost": self.total_cost,
        }


class OutboundNumberModel(Base, UUIDMixin, TimestampMixin):
    """Caller-ID resource bound to a campaign."""

    __tablename__ = "outbound_numbers"

    campaign_id: Mapped[UUID] = mapped_column(
        ForeignKey("campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_number_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Provider-side phone number id used as caller id",
    )
    status: Mapped[str] = mapped_column(
        String(20), default="active", nullable=False, comment="active, inactive"
    )

    daily_call_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_call_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    health_score: Mapped[float] = mapped_column(
        Float, default=100.0, nullable=False, comment="Derived from answer rate"
    )
    last_call_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Cooldown anchor"
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "campaign_id": str(self.campaign_id),
            "phone_number": self.phone_number,
            "status": self.status,
            "daily_call_count": self.daily_call_count,
            "total_call_count": self.total_call_count,
            "health_score": self.health_score,
            "last_call_at": self.last_call_at.isoformat() if self.last_call_at else None,
        }
