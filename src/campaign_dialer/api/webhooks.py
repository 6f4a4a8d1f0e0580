"""Telephony provider webhook endpoint.

The provider retries aggressively on slow or failed responses, so the
route acknowledges immediately and processes the event in a background
task. Signature validation, dedup and error capture all happen in the
webhook processor; nothing here can fail the response.

Security:
- Body signed as ``X-Signature: sha256=<hmac>`` with the shared secret
"""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from campaign_dialer.api.auth import require_elevated
from campaign_dialer.api.rate_limits import RateLimits, limiter
from campaign_dialer.core.security import Identity
from campaign_dialer.dependencies import ServicesDep
from campaign_dialer.log import get_logger
from campaign_dialer.services.webhook_processor import SIGNATURE_HEADER

log = get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/telephony")
async def telephony_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: ServicesDep,
) -> dict[str, Any]:
    """Receive a provider event. Always answers 200 ``{"received": true}``."""
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    background_tasks.add_task(services.webhooks.process, body, signature)
    log.debug("Webhook accepted", size=len(body), signed=signature is not None)
    return {"received": True}


@router.get("/webhooks/stats")
@limiter.limit(RateLimits.READ)
async def webhook_stats(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    """Last-24h webhook totals by status and recent errors."""
    return await services.webhooks.get_webhook_stats()
