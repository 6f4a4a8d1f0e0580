"""Call attempt and transcript ORM models."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from campaign_dialer.core.timeutil import utcnow
from campaign_dialer.db.base import Base, TimestampMixin, UUIDMixin


class CallStatus(str, Enum):
    """Call attempt lifecycle.

    initiated -> ringing -> connected -> completed | failed | busy | no_answer | voicemail
    """

    INITIATED = "initiated"
    RINGING = "ringing"
    CONNECTED = "connected"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    VOICEMAIL = "voicemail"


NON_TERMINAL_STATUSES: tuple[str, ...] = (
    CallStatus.INITIATED.value,
    CallStatus.RINGING.value,
    CallStatus.CONNECTED.value,
)
TERMINAL_STATUSES: tuple[str, ...] = (
    CallStatus.COMPLETED.value,
    CallStatus.FAILED.value,
    CallStatus.BUSY.value,
    CallStatus.NO_ANSWER.value,
    CallStatus.VOICEMAIL.value,
)

# Lifecycle order, used to refuse backwards transitions
STATUS_RANK: dict[str, int] = {
    CallStatus.INITIATED.value: 0,
    CallStatus.RINGING.value: 1,
    CallStatus.CONNECTED.value: 2,
    **{status: 3 for status in TERMINAL_STATUSES},
}

_ACTIVE_PREDICATE = "status IN ('initiated', 'ringing', 'connected')"


class CallAttemptModel(Base, UUIDMixin, TimestampMixin):
    """One dial attempt for a lead.

    At most one attempt per lead may be non-terminal; the partial unique
    index backs the admission predicate used by the dispatcher.
    """

    __tablename__ = "call_attempts"

    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    lead_id: Mapped[UUID] = mapped_column(
        ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    campaign_id: Mapped[UUID] = mapped_column(
        ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    number_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("outbound_numbers.id", ondelete="SET NULL"), nullable=True
    )

    provider_call_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Null until the provider acknowledges the call",
    )
    attempt_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=CallStatus.INITIATED.value,
        nullable=False,
        index=True,
    )

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)

    ended_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Post-call analysis
    qualification_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recommended_action: Mapped[str | None] = mapped_column(String(100), nullable=True)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_call_attempts_active_lead",
            "lead_id",
            unique=True,
            sqlite_where=text(_ACTIVE_PREDICATE),
            postgresql_where=text(_ACTIVE_PREDICATE),
        ),
        Index("ix_call_attempts_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary for API responses and events."""
        return {
            "id": str(self.id),
            "lead_id": str(self.lead_id),
            "campaign_id": str(self.campaign_id),
            "number_id": str(self.number_id) if self.number_id else None,
            "provider_call_id": self.provider_call_id,
            "attempt_number": self.attempt_number,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "cost": self.cost,
            "ended_reason": self.ended_reason,
            "error_message": self.error_message,
            "qualification_score": self.qualification_score,
        }


class TranscriptChunkModel(Base, UUIDMixin):
    """Partial transcript segment received while a call is live."""

    __tablename__ = "call_transcript_chunks"

    attempt_id: Mapped[UUID] = mapped_column(
        ForeignKey("call_attempts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(20), default="unknown", nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_final: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
