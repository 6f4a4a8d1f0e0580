"""Dispatch Queue control API.

Start/stop the scheduler, run a tick on demand, pause and resume
campaigns. All endpoints require an admin or supervisor token.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request

from campaign_dialer.api.auth import require_elevated
from campaign_dialer.api.rate_limits import RateLimits, limiter
from campaign_dialer.core.security import Identity
from campaign_dialer.dependencies import ServicesDep
from campaign_dialer.log import get_logger

log = get_logger(__name__)

router = APIRouter(prefix="/dispatch", tags=["Dispatch"])


@router.get("/status")
@limiter.limit(RateLimits.READ)
async def dispatch_status(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    return services.dispatch_queue.get_status()


@router.get("/stats")
@limiter.limit(RateLimits.READ)
async def dispatch_stats(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    """Pending leads, active calls, available numbers and scheduler metrics."""
    return await services.dispatch_queue.get_queue_stats()


@router.post("/start")
@limiter.limit(RateLimits.WRITE)
async def start_dispatch(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    await services.dispatch_queue.start()
    log.info("Dispatch queue started via API", user_id=identity.user_id)
    return services.dispatch_queue.get_status()


@router.post("/stop")
@limiter.limit(RateLimits.WRITE)
async def stop_dispatch(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    """Stop the timer. Dispatches already in flight complete."""
    await services.dispatch_queue.stop()
    log.info("Dispatch queue stopped via API", user_id=identity.user_id)
    return services.dispatch_queue.get_status()


@router.post("/tick")
@limiter.limit(RateLimits.WRITE)
async def run_tick(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    report = await services.dispatch_queue.tick()
    return report.to_dict()


@router.post("/callbacks/process")
@limiter.limit(RateLimits.WRITE)
async def process_callbacks(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    processed = await services.dispatch_queue.process_due_callbacks()
    return {"processed": processed}


@router.post("/numbers/reset-daily")
@limiter.limit(RateLimits.SENSITIVE)
async def reset_daily_counters(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    """Zero daily per-number call counts. Called once a day by the scheduler."""
    reset = await services.dispatch_queue.reset_daily_counters()
    return {"numbers_reset": reset}


@router.post("/campaigns/{campaign_id}/pause")
@limiter.limit(RateLimits.WRITE)
async def pause_campaign(
    request: Request,
    campaign_id: UUID,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    changed = await services.dispatch_queue.pause_campaign(campaign_id)
    return {"campaign_id": str(campaign_id), "status": "paused", "changed": changed}


@router.post("/campaigns/{campaign_id}/resume")
@limiter.limit(RateLimits.WRITE)
async def resume_campaign(
    request: Request,
    campaign_id: UUID,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    changed = await services.dispatch_queue.resume_campaign(campaign_id)
    return {"campaign_id": str(campaign_id), "status": "active", "changed": changed}
