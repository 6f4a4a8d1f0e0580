"""System alert repository."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.db.models import SystemAlertModel
from campaign_dialer.db.repositories.base import BaseRepository


class AlertRepository(BaseRepository[SystemAlertModel]):
    def __init__(self, session: AsyncSession):
        super().__init__(SystemAlertModel, session)

    async def raise_alert(self, **fields: Any) -> SystemAlertModel:
        return await self.create(SystemAlertModel(**fields))

    async def acknowledge(
        self, alert_id: UUID | str, *, user_id: str, account_id: str | None, at: datetime
    ) -> bool:
        """Acknowledge an open alert belonging to the caller's account."""
        conditions = [SystemAlertModel.acknowledged.is_(False)]
        if account_id is not None:
            conditions.append(SystemAlertModel.account_id == account_id)
        return await self.update_where(
            alert_id,
            conditions,
            acknowledged=True,
            acknowledged_by=user_id,
            acknowledged_at=at,
        )

    async def get_open(self, account_id: str | None = None, *, limit: int = 50) -> Sequence[SystemAlertModel]:
        stmt = select(SystemAlertModel).where(SystemAlertModel.acknowledged.is_(False))
        if account_id is not None:
            stmt = stmt.where(SystemAlertModel.account_id == account_id)
        stmt = stmt.order_by(SystemAlertModel.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return result.scalars().all()
