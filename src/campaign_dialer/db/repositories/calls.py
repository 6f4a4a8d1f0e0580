"""Call attempt repository.

Every status write here is a conditional update: the single
non-terminal attempt per lead is guarded by predicates evaluated at
write time rather than by row locks.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.db.models import (
    NON_TERMINAL_STATUSES,
    STATUS_RANK,
    TERMINAL_STATUSES,
    CallAttemptModel,
    TranscriptChunkModel,
)
from campaign_dialer.db.repositories.base import BaseRepository, to_uuid


def statuses_before(target: str) -> tuple[str, ...]:
    """Non-terminal statuses a forward transition to ``target`` may start from."""
    rank = STATUS_RANK[target]
    return tuple(s for s in NON_TERMINAL_STATUSES if STATUS_RANK[s] < rank)


class CallAttemptRepository(BaseRepository[CallAttemptModel]):
    """Repository for call attempt operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(CallAttemptModel, session)

    async def get_by_provider_call_id(self, provider_call_id: str) -> CallAttemptModel | None:
        stmt = select(CallAttemptModel).where(
            CallAttemptModel.provider_call_id == provider_call_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def has_active_attempt(self, lead_id: UUID | str) -> bool:
        """True when the lead has an attempt in initiated/ringing/connected."""
        return (
            await self.count(
                CallAttemptModel.lead_id == to_uuid(lead_id),
                CallAttemptModel.status.in_(NON_TERMINAL_STATUSES),
            )
            > 0
        )

    async def next_attempt_number(self, lead_id: UUID | str) -> int:
        stmt = select(func.max(CallAttemptModel.attempt_number)).where(
            CallAttemptModel.lead_id == to_uuid(lead_id)
        )
        result = await self._session.execute(stmt)
        return (result.scalar() or 0) + 1

    async def count_since(self, lead_id: UUID | str, since: datetime) -> int:
        """Attempts for a lead created at or after ``since``."""
        return await self.count(
            CallAttemptModel.lead_id == to_uuid(lead_id),
            CallAttemptModel.created_at >= since,
        )

    async def count_active(self, campaign_id: UUID | str | None = None) -> int:
        conditions: list[Any] = [CallAttemptModel.status.in_(NON_TERMINAL_STATUSES)]
        if campaign_id is not None:
            conditions.append(CallAttemptModel.campaign_id == to_uuid(campaign_id))
        return await self.count(*conditions)

    async def get_stale(self, older_than: datetime, *, limit: int = 100) -> Sequence[CallAttemptModel]:
        """Non-terminal attempts created before ``older_than``."""
        stmt = (
            select(CallAttemptModel)
            .where(
                CallAttemptModel.status.in_(NON_TERMINAL_STATUSES),
                CallAttemptModel.created_at < older_than,
            )
            .order_by(CallAttemptModel.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def advance(self, attempt_id: UUID | str, status: str, **values: Any) -> bool:
        """Move an attempt forward in its lifecycle.

        Refuses backwards moves and never touches terminal attempts, so
        late or replayed events are harmless.

        Returns:
            True if the attempt changed
        """
        allowed_from = statuses_before(status)
        if not allowed_from:
            return False
        return await self.update_where(
            attempt_id,
            [CallAttemptModel.status.in_(allowed_from)],
            status=status,
            **values,
        )

    async def close(self, attempt_id: UUID | str, status: str, **values: Any) -> bool:
        """Force a non-terminal attempt into a terminal status."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal call status")
        return await self.update_where(
            attempt_id,
            [CallAttemptModel.status.in_(NON_TERMINAL_STATUSES)],
            status=status,
            **values,
        )

    async def attach_provider_call_id(self, attempt_id: UUID | str, provider_call_id: str) -> bool:
        """Record the provider's id on an attempt that does not have one yet."""
        return await self.update_where(
            attempt_id,
            [CallAttemptModel.provider_call_id.is_(None)],
            provider_call_id=provider_call_id,
        )

    async def append_transcript_chunk(
        self, attempt_id: UUID | str, text: str, *, role: str = "unknown", is_final: bool = True
    ) -> TranscriptChunkModel:
        chunk = TranscriptChunkModel(
            attempt_id=to_uuid(attempt_id), text=text, role=role, is_final=is_final
        )
        self._session.add(chunk)
        await self._session.flush()
        return chunk

    async def get_transcript_chunks(self, attempt_id: UUID | str) -> Sequence[TranscriptChunkModel]:
        stmt = (
            select(TranscriptChunkModel)
            .where(TranscriptChunkModel.attempt_id == to_uuid(attempt_id))
            .order_by(TranscriptChunkModel.created_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_status_counts(self, now: datetime) -> dict[str, Any]:
        """Attempt counts by status since midnight UTC, plus hourly volume."""
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        hour_ago = now - timedelta(hours=1)
        attempt = CallAttemptModel
        stmt = select(
            func.count(attempt.id).filter(attempt.status == "initiated"),
            func.count(attempt.id).filter(attempt.status == "ringing"),
            func.count(attempt.id).filter(attempt.status == "connected"),
            func.count(attempt.id).filter(attempt.status == "completed"),
            func.count(attempt.id).filter(attempt.status == "failed"),
            func.count(attempt.id).filter(attempt.created_at >= hour_ago),
            func.avg(attempt.duration_seconds).filter(attempt.duration_seconds > 0),
            func.sum(attempt.cost).filter(attempt.cost > 0),
        ).where(attempt.created_at >= day_start)
        row = (await self._session.execute(stmt)).one()
        return {
            "initiated_calls": row[0] or 0,
            "ringing_calls": row[1] or 0,
            "connected_calls": row[2] or 0,
            "completed_calls": row[3] or 0,
            "failed_calls": row[4] or 0,
            "calls_last_hour": row[5] or 0,
            "avg_duration": round(float(row[6]), 1) if row[6] is not None else None,
            "total_cost_today": round(float(row[7]), 4) if row[7] is not None else 0.0,
        }

    async def record_outcome(self, attempt_id: UUID | str, **details: Any) -> bool:
        """Store end-of-call details exactly once.

        ``ended_reason`` doubles as the marker: a report is only applied
        while it is still unset.

        Returns:
            False when an outcome was already recorded
        """
        return await self.update_where(
            attempt_id, [CallAttemptModel.ended_reason.is_(None)], **details
        )
