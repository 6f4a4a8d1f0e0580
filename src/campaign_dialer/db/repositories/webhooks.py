"""Webhook log and idempotency-key repositories."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.core.timeutil import utcnow
from campaign_dialer.db.models import ProcessedWebhookEventModel, WebhookEventModel
from campaign_dialer.db.repositories.base import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEventModel]):
    """Audit log of inbound provider callbacks."""

    def __init__(self, session: AsyncSession):
        super().__init__(WebhookEventModel, session)

    async def log_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        provider_call_id: str | None = None,
        status: str = "received",
        error_message: str | None = None,
    ) -> WebhookEventModel:
        return await self.create(
            WebhookEventModel(
                event_type=event_type,
                payload=payload,
                provider_call_id=provider_call_id,
                status=status,
                error_message=error_message,
            )
        )

    async def mark(
        self,
        event_id: UUID | str,
        status: str,
        *,
        dedup_key: str | None = None,
        error_message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "processed_at": utcnow()}
        if dedup_key is not None:
            values["dedup_key"] = dedup_key
        if error_message is not None:
            values["error_message"] = error_message[:2000]
        await self.update_where(event_id, [], **values)

    async def count_by_status(self, since: datetime) -> dict[str, int]:
        stmt = (
            select(WebhookEventModel.status, func.count(WebhookEventModel.id))
            .where(WebhookEventModel.received_at >= since)
            .group_by(WebhookEventModel.status)
        )
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def get_recent_errors(self, since: datetime, *, limit: int = 10) -> Sequence[WebhookEventModel]:
        stmt = (
            select(WebhookEventModel)
            .where(
                WebhookEventModel.status.in_(("failed", "rejected")),
                WebhookEventModel.received_at >= since,
            )
            .order_by(WebhookEventModel.received_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()


class ProcessedEventRepository(BaseRepository[ProcessedWebhookEventModel]):
    """Dedup table: one row per provider event whose effects were applied."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProcessedWebhookEventModel, session)

    async def is_processed(self, event_key: str) -> bool:
        return await self.count(ProcessedWebhookEventModel.event_key == event_key) > 0

    async def mark_processed(
        self, event_key: str, event_type: str, provider_call_id: str | None
    ) -> None:
        """Insert the key in the caller's transaction.

        A concurrent insert of the same key fails the unique constraint and
        rolls the whole event back.
        """
        self._session.add(
            ProcessedWebhookEventModel(
                event_key=event_key,
                event_type=event_type,
                provider_call_id=provider_call_id,
            )
        )
        await self._session.flush()
