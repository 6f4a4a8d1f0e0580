"""Compliance API.

Admission previews, DNC list management, consent records and the
compliance dashboard.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from campaign_dialer.api.auth import require_elevated
from campaign_dialer.api.rate_limits import RateLimits, limiter
from campaign_dialer.core.security import Identity
from campaign_dialer.db.repositories import CampaignRepository, LeadRepository
from campaign_dialer.dependencies import ServicesDep

router = APIRouter(prefix="/compliance", tags=["Compliance"])


# ============================================================================
# Request Models
# ============================================================================


class CheckRequest(BaseModel):
    lead_id: UUID
    campaign_id: UUID


class DNCRequest(BaseModel):
    phone_number: str = Field(..., min_length=3, max_length=32)
    reason: str | None = None
    source: str = "internal"


class ConsentRequest(BaseModel):
    phone_number: str = Field(..., min_length=3, max_length=32)
    campaign_id: UUID | None = None
    consent_type: str = "express"
    source: str | None = None
    expires_at: datetime | None = None


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/check")
@limiter.limit(RateLimits.SENSITIVE)
async def check_lead(
    request: Request,
    body: CheckRequest,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    """Run the admission check for a lead now. The decision is logged."""
    async with services.database.session() as session:
        lead = await LeadRepository(session).get_or_raise(body.lead_id)
        campaign = await CampaignRepository(session).get_or_raise(body.campaign_id)
    decision = await services.gate.check(lead, campaign)
    return decision.to_dict()


@router.post("/dnc", status_code=201)
@limiter.limit(RateLimits.WRITE)
async def add_to_dnc(
    request: Request,
    body: DNCRequest,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    await services.gate.add_to_dnc(
        body.phone_number,
        reason=body.reason,
        source=body.source,
        account_id=identity.account_id,
    )
    return {"phone_number": body.phone_number, "listed": True}


@router.delete("/dnc/{phone_number}")
@limiter.limit(RateLimits.WRITE)
async def remove_from_dnc(
    request: Request,
    phone_number: str,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    removed = await services.gate.remove_from_dnc(phone_number, account_id=identity.account_id)
    return {"phone_number": phone_number, "removed": removed}


@router.post("/consent", status_code=201)
@limiter.limit(RateLimits.WRITE)
async def record_consent(
    request: Request,
    body: ConsentRequest,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    await services.gate.record_consent(
        body.phone_number,
        campaign_id=body.campaign_id,
        consent_type=body.consent_type,
        source=body.source,
        expires_at=body.expires_at,
    )
    return {"phone_number": body.phone_number, "recorded": True}


@router.get("/dashboard")
@limiter.limit(RateLimits.READ)
async def compliance_dashboard(
    request: Request,
    services: ServicesDep,
    identity: Identity = Depends(require_elevated),
) -> dict[str, Any]:
    """30-day totals and the last week's violations for the caller's account."""
    return await services.gate.get_dashboard(identity.account_id)
