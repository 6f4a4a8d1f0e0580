"""Job queue API.

Enqueue typed jobs and inspect queue counts.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from campaign_dialer.api.auth import require_elevated
from campaign_dialer.api.rate_limits import RateLimits, limiter
from campaign_dialer.core.security import Identity
from campaign_dialer.db.repositories import JobRepository
from campaign_dialer.dependencies import ServicesDep

router = APIRouter(prefix="/jobs", tags=["Jobs"])


class EnqueueJobRequest(BaseModel):
    """Request model for enqueuing a job."""

    name: str = Field(..., description="Job type (make-call, analyze-call, retry-call, ...)")
    payload: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: float | None = Field(None, ge=0)
    priority: int | None = Field(None, description="Higher runs first")


@router.post("", status_code=201)
@limiter.limit(RateLimits.WRITE)
async def enqueue_job(
    request: Request,
    body: EnqueueJobRequest,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    payload = {"account_id": identity.account_id, **body.payload}
    job = await services.jobs.enqueue(
        body.name,
        payload,
        delay_seconds=body.delay_seconds,
        priority=body.priority,
    )
    return job.to_dict()


@router.get("/stats")
@limiter.limit(RateLimits.READ)
async def job_stats(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    """Waiting, delayed, active, completed and failed counts."""
    return await services.jobs.get_stats()


@router.get("/{job_id}")
@limiter.limit(RateLimits.READ)
async def get_job(
    request: Request,
    job_id: UUID,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    async with services.database.session() as session:
        job = await JobRepository(session).get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job.to_dict()
