"""Lead ORM model."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from campaign_dialer.db.base import Base, TimestampMixin, UUIDMixin


LEAD_STATUSES = ("new", "contacted", "calling", "qualified", "callback", "unqualified")
DIALABLE_LEAD_STATUSES = ("callback", "new", "contacted")


class LeadModel(Base, UUIDMixin, TimestampMixin):
    """A dial target within a campaign."""

    __tablename__ = "leads"

    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[UUID] = mapped_column(
        ForeignKey("campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timezone: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="IANA zone; inferred from the number when empty"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default="new",
        nullable=False,
        index=True,
        comment="new, contacted, calling, qualified, callback, unqualified",
    )
    priority_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    dnc_status: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    next_call_scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    appointment_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    qualification_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (
        Index("ix_leads_campaign_status", "campaign_id", "status"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "account_id": self.account_id,
            "campaign_id": str(self.campaign_id),
            "phone_number": self.phone_number,
            "name": self.full_name,
            "timezone": self.timezone,
            "status": self.status,
            "priority_score": self.priority_score,
            "attempt_count": self.attempt_count,
            "dnc_status": self.dnc_status,
            "next_call_scheduled_at": (
                self.next_call_scheduled_at.isoformat() if self.next_call_scheduled_at else None
            ),
            "qualification_score": self.qualification_score,
            "custom_fields": self.custom_fields or {},
        }
