"""Lead repository with dial-eligibility queries."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import case, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.core.exceptions import LeadNotFoundError
from campaign_dialer.db.models import (
    DIALABLE_LEAD_STATUSES,
    NON_TERMINAL_STATUSES,
    CallAttemptModel,
    LeadModel,
)
from campaign_dialer.db.repositories.base import BaseRepository, to_uuid

# callback first, then new, then contacted
_STATUS_ORDER = case(
    (LeadModel.status == "callback", 1),
    (LeadModel.status == "new", 2),
    (LeadModel.status == "contacted", 3),
    else_=4,
)


class LeadRepository(BaseRepository[LeadModel]):
    """Repository for lead operations."""

    not_found_error = LeadNotFoundError

    def __init__(self, session: AsyncSession):
        super().__init__(LeadModel, session)

    def _dialable_conditions(self, campaign_id: UUID | str, now: datetime, max_attempts: int) -> list:
        attempts = (
            select(func.count(CallAttemptModel.id))
            .where(CallAttemptModel.lead_id == LeadModel.id)
            .correlate(LeadModel)
            .scalar_subquery()
        )
        active_attempt = exists().where(
            CallAttemptModel.lead_id == LeadModel.id,
            CallAttemptModel.status.in_(NON_TERMINAL_STATUSES),
        )
        return [
            LeadModel.campaign_id == to_uuid(campaign_id),
            LeadModel.status.in_(DIALABLE_LEAD_STATUSES),
            LeadModel.dnc_status.is_(False),
            or_(
                LeadModel.next_call_scheduled_at.is_(None),
                LeadModel.next_call_scheduled_at <= now,
            ),
            attempts < max_attempts,
            ~active_attempt,
        ]

    async def get_dialable(
        self,
        campaign_id: UUID | str,
        *,
        now: datetime,
        max_attempts: int,
        limit: int,
    ) -> Sequence[LeadModel]:
        """Dial-eligible leads in dispatch order.

        Eligible: status callback/new/contacted, not DNC, schedule unset or
        due, under the attempt cap, and no attempt still in progress.
        Ordered callback, new, contacted, then priority desc, oldest first.
        """
        if limit <= 0:
            return []
        stmt = (
            select(LeadModel)
            .where(*self._dialable_conditions(campaign_id, now, max_attempts))
            .order_by(
                _STATUS_ORDER,
                LeadModel.priority_score.desc(),
                LeadModel.created_at.asc(),
            )
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_dialable(
        self, campaign_id: UUID | str, *, now: datetime, max_attempts: int
    ) -> int:
        return await self.count(*self._dialable_conditions(campaign_id, now, max_attempts))

    async def get_due_callbacks(self, now: datetime, *, limit: int = 50) -> Sequence[LeadModel]:
        """Callback leads whose scheduled time has passed."""
        stmt = (
            select(LeadModel)
            .where(
                LeadModel.status == "callback",
                LeadModel.next_call_scheduled_at.is_not(None),
                LeadModel.next_call_scheduled_at <= now,
            )
            .order_by(LeadModel.next_call_scheduled_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def mark_calling(self, lead_id: UUID | str, *, at: datetime, set_status: bool = True) -> None:
        """Bump a lead's attempt counter and move it to ``calling``."""
        values: dict[str, Any] = {
            "last_attempt_at": at,
            "attempt_count": LeadModel.attempt_count + 1,
        }
        if set_status:
            values["status"] = "calling"
        await self.update_where(lead_id, [], **values)

    async def merge_custom_fields(self, lead_id: UUID | str, fields: dict[str, Any]) -> LeadModel:
        lead = await self.get_or_raise(lead_id)
        lead.custom_fields = {**(lead.custom_fields or {}), **fields}
        await self._session.flush()
        return lead

    async def get_by_phone(self, phone_number: str) -> Sequence[LeadModel]:
        stmt = select(LeadModel).where(LeadModel.phone_number == phone_number)
        result = await self._session.execute(stmt)
        return result.scalars().all()
