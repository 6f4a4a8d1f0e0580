"""Compliance ORM models.

Contains:
- ComplianceLogModel: append-only admission decisions
- DNCEntryModel: internal do-not-call registry
- ConsentRecordModel: calling consent per number
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from campaign_dialer.core.timeutil import utcnow
from campaign_dialer.db.base import Base, UUIDMixin


class ComplianceLogModel(Base, UUIDMixin):
    """Admission decision record.

    Rows are only ever inserted. They feed the recent-block check, the
    violation history deduction and the compliance dashboard.
    """

    __tablename__ = "compliance_logs"

    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    campaign_id: Mapped[UUID | None] = mapped_column(nullable=True)
    lead_id: Mapped[UUID | None] = mapped_column(nullable=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    action: Mapped[str] = mapped_column(
        String(30),
        default="call_check",
        nullable=False,
        comment="call_check, dnc_addition, dnc_removal",
    )
    result: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True, comment="allowed, blocked"
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    blocked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    compliance_score: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    violations: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    recommendations: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)

    jurisdiction: Mapped[str | None] = mapped_column(String(10), nullable=True)
    rules_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_compliance_logs_phone_result", "phone_number", "result"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "campaign_id": str(self.campaign_id) if self.campaign_id else None,
            "lead_id": str(self.lead_id) if self.lead_id else None,
            "phone_number": self.phone_number,
            "action": self.action,
            "result": self.result,
            "reason": self.reason,
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "compliance_score": self.compliance_score,
            "violations": self.violations or [],
            "recommendations": self.recommendations or [],
            "jurisdiction": self.jurisdiction,
            "rules_version": self.rules_version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DNCEntryModel(Base, UUIDMixin):
    """Internal do-not-call registry entry."""

    __tablename__ = "dnc_entries"

    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(50), default="internal", nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class ConsentRecordModel(Base, UUIDMixin):
    """Calling consent given by the owner of a phone number."""

    __tablename__ = "consent_records"

    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    campaign_id: Mapped[UUID | None] = mapped_column(
        nullable=True, comment="Null means consent for every campaign"
    )
    consent_type: Mapped[str] = mapped_column(
        String(20), default="express", nullable=False, comment="express, written"
    )
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
