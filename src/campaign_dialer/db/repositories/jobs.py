"""Durable job queue repository.

Jobs are rows; claiming one is a conditional ``pending -> active``
update so concurrent workers never run the same job twice.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.core.exceptions import JobNotFoundError
from campaign_dialer.core.retry import JobPolicy, get_job_policy
from campaign_dialer.db.models import JobModel
from campaign_dialer.db.repositories.base import BaseRepository


class JobRepository(BaseRepository[JobModel]):
    """Repository for queue operations."""

    not_found_error = JobNotFoundError

    def __init__(self, session: AsyncSession):
        super().__init__(JobModel, session)

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        now: datetime,
        delay_seconds: float | None = None,
        priority: int | None = None,
        policy: JobPolicy | None = None,
    ) -> JobModel:
        """Add a job using its type's retry policy.

        Args:
            name: Job type (make-call, analyze-call, ...)
            payload: Handler input
            now: Enqueue time
            delay_seconds: Overrides the policy's initial delay
            priority: Overrides the policy's priority (higher runs first)
            policy: Overrides the registered policy

        Returns:
            The pending job
        """
        policy = policy or get_job_policy(name)
        delay = policy.initial_delay_seconds if delay_seconds is None else delay_seconds
        return await self.create(
            JobModel(
                name=name,
                payload=payload,
                status="pending",
                priority=policy.priority if priority is None else priority,
                max_attempts=policy.max_attempts,
                backoff_seconds=policy.backoff_seconds,
                exponential_backoff=policy.exponential,
                run_at=now + timedelta(seconds=delay),
            )
        )

    async def claim_next(self, now: datetime) -> JobModel | None:
        """Claim the next due job, or None if nothing is due.

        Candidates are taken highest priority first, then earliest due.
        A candidate lost to another worker is skipped.
        """
        stmt = (
            select(JobModel.id)
            .where(JobModel.status == "pending", JobModel.run_at <= now)
            .order_by(JobModel.priority.desc(), JobModel.run_at.asc())
            .limit(5)
        )
        candidates = (await self._session.execute(stmt)).scalars().all()

        for job_id in candidates:
            claimed = await self.update_where(
                job_id,
                [JobModel.status == "pending"],
                status="active",
                started_at=now,
                attempts_made=JobModel.attempts_made + 1,
            )
            if claimed:
                job = await self.get(job_id)
                await self._session.refresh(job)
                return job
        return None

    async def set_progress(self, job_id: UUID | str, progress: float) -> None:
        await self.update_where(job_id, [], progress=max(0.0, min(1.0, progress)))

    async def complete(self, job_id: UUID | str, result: dict[str, Any] | None, *, now: datetime) -> None:
        await self.update_where(
            job_id,
            [],
            status="completed",
            progress=1.0,
            result=result,
            finished_at=now,
        )

    async def reschedule(self, job_id: UUID | str, *, run_at: datetime, error: str) -> None:
        """Return a failed run to the queue for another attempt."""
        await self.update_where(
            job_id, [], status="pending", run_at=run_at, last_error=error[:2000]
        )

    async def fail(self, job_id: UUID | str, *, error: str, now: datetime) -> None:
        await self.update_where(
            job_id, [], status="failed", last_error=error[:2000], finished_at=now
        )

    async def get_stats(self, now: datetime) -> dict[str, int]:
        """Counts of waiting, delayed, active, completed and failed jobs."""
        stmt = select(
            func.count(JobModel.id).filter(JobModel.status == "pending", JobModel.run_at <= now),
            func.count(JobModel.id).filter(JobModel.status == "pending", JobModel.run_at > now),
            func.count(JobModel.id).filter(JobModel.status == "active"),
            func.count(JobModel.id).filter(JobModel.status == "completed"),
            func.count(JobModel.id).filter(JobModel.status == "failed"),
        )
        row = (await self._session.execute(stmt)).one()
        return {
            "waiting": row[0] or 0,
            "delayed": row[1] or 0,
            "active": row[2] or 0,
            "completed": row[3] or 0,
            "failed": row[4] or 0,
        }

    async def find_by_name(self, name: str, *, status: str | None = None) -> Sequence[JobModel]:
        stmt = select(JobModel).where(JobModel.name == name)
        if status:
            stmt = stmt.where(JobModel.status == status)
        stmt = stmt.order_by(JobModel.created_at)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def has_pending(self, name: str) -> bool:
        return await self.count(JobModel.name == name, JobModel.status.in_(("pending", "active"))) > 0

    async def purge_finished(self, older_than: datetime) -> int:
        """Delete completed and failed jobs that finished before ``older_than``."""
        stmt = delete(JobModel).where(
            JobModel.status.in_(("completed", "failed")),
            JobModel.finished_at < older_than,
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0
