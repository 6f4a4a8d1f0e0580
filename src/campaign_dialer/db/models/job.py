"""Durable job queue ORM model."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from campaign_dialer.db.base import Base, TimestampMixin, UUIDMixin


class JobModel(Base, UUIDMixin, TimestampMixin):
    """Typed unit of asynchronous work.

    A job is claimed by moving it from ``pending`` to ``active`` with a
    conditional update; failed runs return it to ``pending`` with a later
    ``run_at`` until ``max_attempts`` is spent.
    """

    __tablename__ = "jobs"

    name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default="pending",
        nullable=False,
        comment="pending, active, completed, failed",
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    attempts_made: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    backoff_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    exponential_backoff: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    progress: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_status_run_at", "status", "run_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "payload": self.payload or {},
            "status": self.status,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "progress": self.progress,
            "last_error": self.last_error,
            "result": self.result,
        }
