"""Compliance repositories: decision log, DNC registry, consent."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.db.models import (
    ComplianceLogModel,
    ConsentRecordModel,
    DNCEntryModel,
)
from campaign_dialer.db.repositories.base import BaseRepository, to_uuid


class ComplianceLogRepository(BaseRepository[ComplianceLogModel]):
    """Append-only access to admission decisions."""

    def __init__(self, session: AsyncSession):
        super().__init__(ComplianceLogModel, session)

    async def append(self, **fields: Any) -> ComplianceLogModel:
        entry = ComplianceLogModel(**fields)
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_active_block(self, phone_number: str, now: datetime) -> ComplianceLogModel | None:
        """Latest admission block for a number that has not expired.

        Blocks without ``blocked_until`` never expire. Registry changes
        (dnc_addition, dnc_removal) are history only, except that a
        ``dnc_removal`` lifts every block recorded before it.
        """
        removed_at = await self._session.scalar(
            select(func.max(ComplianceLogModel.created_at)).where(
                ComplianceLogModel.phone_number == phone_number,
                ComplianceLogModel.action == "dnc_removal",
            )
        )
        stmt = (
            select(ComplianceLogModel)
            .where(
                ComplianceLogModel.phone_number == phone_number,
                ComplianceLogModel.action == "call_check",
                ComplianceLogModel.result == "blocked",
                or_(
                    ComplianceLogModel.blocked_until.is_(None),
                    ComplianceLogModel.blocked_until > now,
                ),
            )
            .order_by(ComplianceLogModel.created_at.desc())
            .limit(1)
        )
        if removed_at is not None:
            stmt = stmt.where(ComplianceLogModel.created_at > removed_at)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_blocks_since(self, phone_number: str, since: datetime) -> int:
        return await self.count(
            ComplianceLogModel.phone_number == phone_number,
            ComplianceLogModel.result == "blocked",
            ComplianceLogModel.created_at >= since,
        )

    async def get_summary(self, since: datetime, account_id: str | None = None) -> dict[str, Any]:
        """Aggregate call checks since a point in time.

        Returns:
            Totals for checks, allowed, blocked, DNC/time/frequency blocks
            and the average compliance score.
        """
        log = ComplianceLogModel
        blocked = log.result == "blocked"
        stmt = select(
            func.count(log.id),
            func.count(log.id).filter(log.result == "allowed"),
            func.count(log.id).filter(blocked),
            func.count(log.id).filter(blocked, log.reason.like("%Do Not Call%")),
            func.count(log.id).filter(blocked, log.reason.like("%calling hours%")),
            func.count(log.id).filter(blocked, log.reason.like("%Maximum attempts%")),
            func.avg(log.compliance_score),
        ).where(log.action == "call_check", log.created_at >= since)
        if account_id:
            stmt = stmt.where(log.account_id == account_id)

        row = (await self._session.execute(stmt)).one()
        return {
            "total_checks": row[0] or 0,
            "allowed_calls": row[1] or 0,
            "blocked_calls": row[2] or 0,
            "dnc_blocks": row[3] or 0,
            "time_blocks": row[4] or 0,
            "frequency_blocks": row[5] or 0,
            "avg_compliance_score": round(float(row[6]), 1) if row[6] is not None else None,
        }

    async def get_recent_violations(
        self, since: datetime, *, account_id: str | None = None, limit: int = 10
    ) -> Sequence[ComplianceLogModel]:
        stmt = select(ComplianceLogModel).where(
            ComplianceLogModel.result == "blocked",
            ComplianceLogModel.created_at >= since,
        )
        if account_id:
            stmt = stmt.where(ComplianceLogModel.account_id == account_id)
        stmt = stmt.order_by(ComplianceLogModel.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return result.scalars().all()


class DNCRepository(BaseRepository[DNCEntryModel]):
    """Internal do-not-call registry."""

    def __init__(self, session: AsyncSession):
        super().__init__(DNCEntryModel, session)

    async def get_entry(self, phone_number: str) -> DNCEntryModel | None:
        stmt = select(DNCEntryModel).where(DNCEntryModel.phone_number == phone_number)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(
        self,
        phone_number: str,
        *,
        reason: str | None = None,
        source: str = "internal",
        account_id: str | None = None,
    ) -> DNCEntryModel:
        """Add a number, returning the existing entry when already listed."""
        existing = await self.get_entry(phone_number)
        if existing is not None:
            return existing
        return await self.create(
            DNCEntryModel(
                phone_number=phone_number,
                reason=reason,
                source=source,
                account_id=account_id,
            )
        )

    async def remove(self, phone_number: str) -> bool:
        stmt = delete(DNCEntryModel).where(DNCEntryModel.phone_number == phone_number)
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0


class ConsentRepository(BaseRepository[ConsentRecordModel]):
    """Calling consent records."""

    def __init__(self, session: AsyncSession):
        super().__init__(ConsentRecordModel, session)

    async def has_consent(
        self, phone_number: str, campaign_id: UUID | str | None, now: datetime
    ) -> bool:
        """True when a granted, unexpired consent covers this number and campaign."""
        campaign_match = ConsentRecordModel.campaign_id.is_(None)
        if campaign_id is not None:
            campaign_match = or_(
                campaign_match, ConsentRecordModel.campaign_id == to_uuid(campaign_id)
            )
        return (
            await self.count(
                ConsentRecordModel.phone_number == phone_number,
                ConsentRecordModel.granted.is_(True),
                campaign_match,
                or_(
                    ConsentRecordModel.expires_at.is_(None),
                    ConsentRecordModel.expires_at > now,
                ),
            )
            > 0
        )
