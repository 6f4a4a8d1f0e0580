"""Campaign and outbound number repositories."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.core.exceptions import CampaignNotFoundError, NumberNotFoundError
from campaign_dialer.db.models import CampaignModel, OutboundNumberModel
from campaign_dialer.db.repositories.base import BaseRepository, to_uuid


class CampaignRepository(BaseRepository[CampaignModel]):
    """Repository for campaign operations."""

    not_found_error = CampaignNotFoundError

    def __init__(self, session: AsyncSession):
        super().__init__(CampaignModel, session)

    async def get_dispatchable(self) -> Sequence[CampaignModel]:
        """Active campaigns bound to a voice agent."""
        stmt = (
            select(CampaignModel)
            .where(
                CampaignModel.status == "active",
                CampaignModel.agent_id.is_not(None),
            )
            .order_by(CampaignModel.created_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def set_status(
        self, campaign_id: UUID | str, status: str, *, from_statuses: tuple[str, ...] | None = None
    ) -> bool:
        """Toggle campaign status, optionally only from given statuses."""
        conditions = []
        if from_statuses:
            conditions.append(CampaignModel.status.in_(from_statuses))
        return await self.update_where(campaign_id, conditions, status=status)

    async def add_call_totals(
        self, campaign_id: UUID | str, *, duration_seconds: int, cost: float
    ) -> None:
        """Bump aggregate counters for one finished call."""
        stmt = (
            update(CampaignModel)
            .where(CampaignModel.id == to_uuid(campaign_id))
            .values(
                total_calls=CampaignModel.total_calls + 1,
                total_duration_seconds=CampaignModel.total_duration_seconds + duration_seconds,
                total_cost=CampaignModel.total_cost + cost,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class OutboundNumberRepository(BaseRepository[OutboundNumberModel]):
    """Repository for caller-ID pool operations."""

    not_found_error = NumberNotFoundError

    def __init__(self, session: AsyncSession):
        super().__init__(OutboundNumberModel, session)

    def _available_conditions(
        self,
        campaign_id: UUID | str,
        now: datetime,
        max_daily_calls: int,
        cooldown_seconds: int,
    ) -> list:
        cooldown_cutoff = now - timedelta(seconds=cooldown_seconds)
        return [
            OutboundNumberModel.campaign_id == to_uuid(campaign_id),
            OutboundNumberModel.status == "active",
            OutboundNumberModel.daily_call_count < max_daily_calls,
            or_(
                OutboundNumberModel.last_call_at.is_(None),
                OutboundNumberModel.last_call_at < cooldown_cutoff,
            ),
        ]

    async def get_available(
        self,
        campaign_id: UUID | str,
        *,
        now: datetime,
        max_daily_calls: int,
        cooldown_seconds: int,
    ) -> Sequence[OutboundNumberModel]:
        """Numbers that may dial now, healthiest and least used first.

        Args:
            campaign_id: Owning campaign
            now: Reference time for the cooldown
            max_daily_calls: Daily cap per number
            cooldown_seconds: Minimum gap since the number's last call

        Returns:
            Available numbers ordered by health desc, daily usage asc
        """
        stmt = (
            select(OutboundNumberModel)
            .where(*self._available_conditions(campaign_id, now, max_daily_calls, cooldown_seconds))
            .order_by(
                OutboundNumberModel.health_score.desc(),
                OutboundNumberModel.daily_call_count.asc(),
            )
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_available(
        self,
        campaign_id: UUID | str,
        *,
        now: datetime,
        max_daily_calls: int,
        cooldown_seconds: int,
    ) -> int:
        return await self.count(
            *self._available_conditions(campaign_id, now, max_daily_calls, cooldown_seconds)
        )

    async def record_usage(self, number_id: UUID | str, *, at: datetime) -> None:
        """Increment usage counters and restart the cooldown."""
        stmt = (
            update(OutboundNumberModel)
            .where(OutboundNumberModel.id == to_uuid(number_id))
            .values(
                daily_call_count=OutboundNumberModel.daily_call_count + 1,
                total_call_count=OutboundNumberModel.total_call_count + 1,
                last_call_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def reset_daily_counters(self) -> int:
        """Zero every number's daily counter. Returns rows touched."""
        stmt = (
            update(OutboundNumberModel)
            .where(and_(OutboundNumberModel.daily_call_count > 0))
            .values(daily_call_count=0)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0
