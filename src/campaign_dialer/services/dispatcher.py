"""Single-call dispatch.

Creates the call attempt, hands the call to the telephony provider and
records the outcome. Shared by the dispatch queue tick and the
``make-call`` job so both enforce the same admission predicate: a lead
with an attempt still in progress is never dialed again.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from campaign_dialer.core.events import Channel, EventBus
from campaign_dialer.core.exceptions import ProviderError
from campaign_dialer.core.retry import is_transient_error
from campaign_dialer.core.timeutil import Clock, utcnow
from campaign_dialer.db.models import CallAttemptModel, CallStatus
from campaign_dialer.db.repositories import (
    CallAttemptRepository,
    CampaignRepository,
    LeadRepository,
    OutboundNumberRepository,
)
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger
from campaign_dialer.telephony.base import OutboundCallRequest, TelephonyProvider

log = get_logger(__name__)


@dataclass
class DispatchResult:
    """Outcome of one dispatch."""

    status: str  # dispatched, skipped, failed
    attempt_id: UUID | None = None
    provider_call_id: str | None = None
    attempt_number: int | None = None
    reason: str | None = None
    transient: bool = False

    @property
    def dispatched(self) -> bool:
        return self.status == "dispatched"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "attempt_id": str(self.attempt_id) if self.attempt_id else None,
            "provider_call_id": self.provider_call_id,
            "attempt_number": self.attempt_number,
            "reason": self.reason,
            "transient": self.transient,
        }


class CallDispatcher:
    """Dispatches one call for a (lead, campaign, number) triple."""

    def __init__(
        self,
        database: Database,
        provider: TelephonyProvider,
        bus: EventBus,
        *,
        clock: Clock = utcnow,
    ):
        self._db = database
        self._provider = provider
        self._bus = bus
        self._clock = clock

    async def dispatch(
        self,
        lead_id: UUID | str,
        campaign_id: UUID | str,
        number_id: UUID | str | None,
    ) -> DispatchResult:
        """Create an attempt and initiate the call.

        Returns:
            ``skipped`` when the lead already has an attempt in progress,
            ``failed`` (attempt closed as failed) when the provider refused,
            ``dispatched`` otherwise.

        Raises:
            NotFoundError: lead, campaign or number does not exist
        """
        now = self._clock()

        # Admission: re-check the invariant and insert in one transaction
        try:
            async with self._db.session() as session:
                leads = LeadRepository(session)
                attempts = CallAttemptRepository(session)
                lead = await leads.get_or_raise(lead_id)
                campaign = await CampaignRepository(session).get_or_raise(campaign_id)
                number = (
                    await OutboundNumberRepository(session).get_or_raise(number_id)
                    if number_id
                    else None
                )

                if await attempts.has_active_attempt(lead.id):
                    log.info("Lead already has a call in progress", lead_id=str(lead.id))
                    return DispatchResult(status="skipped", reason="active_attempt")

                attempt = await attempts.create(
                    CallAttemptModel(
                        account_id=campaign.account_id,
                        lead_id=lead.id,
                        campaign_id=campaign.id,
                        number_id=number.id if number else None,
                        attempt_number=await attempts.next_attempt_number(lead.id),
                        status=CallStatus.INITIATED.value,
                    )
                )
                if number is not None:
                    await OutboundNumberRepository(session).record_usage(number.id, at=now)
        except IntegrityError:
            log.info("Concurrent dispatch won the lead", lead_id=str(lead_id))
            return DispatchResult(status="skipped", reason="active_attempt")

        request = OutboundCallRequest(
            to=lead.phone_number,
            from_number_id=number.provider_number_id if number else None,
            agent_id=campaign.agent_id or "",
            customer_name=lead.full_name or None,
            metadata={
                "lead_id": str(lead.id),
                "campaign_id": str(campaign.id),
                "attempt_id": str(attempt.id),
                "attempt_number": attempt.attempt_number,
                "account_id": campaign.account_id,
            },
        )

        try:
            call = await self._provider.create_call(request)
        except Exception as e:
            return await self._record_failure(attempt, e)

        async with self._db.session() as session:
            attempts = CallAttemptRepository(session)
            await attempts.attach_provider_call_id(attempt.id, call.id)
            await attempts.update_where(
                attempt.id,
                [CallAttemptModel.started_at.is_(None)],
                started_at=call.started_at or now,
            )
            # A fast call-end webhook may already have closed the attempt
            current = await attempts.get(attempt.id)
            still_open = current is not None and not current.is_terminal
            await LeadRepository(session).mark_calling(lead.id, at=now, set_status=still_open)

        log.info(
            "Call dispatched",
            lead_id=str(lead.id),
            campaign_id=str(campaign.id),
            attempt_id=str(attempt.id),
            provider_call_id=call.id,
            attempt_number=attempt.attempt_number,
        )
        await self._bus.publish(
            Channel.CALL_EVENTS,
            "call_queued",
            {
                "lead_id": str(lead.id),
                "campaign_id": str(campaign.id),
                "attempt_id": str(attempt.id),
                "provider_call_id": call.id,
                "attempt_number": attempt.attempt_number,
            },
            account_id=campaign.account_id,
            campaign_id=campaign.id,
            call_id=attempt.id,
        )
        return DispatchResult(
            status="dispatched",
            attempt_id=attempt.id,
            provider_call_id=call.id,
            attempt_number=attempt.attempt_number,
        )

    async def _record_failure(self, attempt: CallAttemptModel, error: Exception) -> DispatchResult:
        message = error.message if isinstance(error, ProviderError) else str(error)
        async with self._db.session() as session:
            await CallAttemptRepository(session).close(
                attempt.id,
                CallStatus.FAILED.value,
                error_message=message,
                ended_at=self._clock(),
            )

        transient = is_transient_error(error)
        log.error(
            "Call dispatch failed",
            lead_id=str(attempt.lead_id),
            attempt_id=str(attempt.id),
            error=message,
            transient=transient,
        )
        await self._bus.publish(
            Channel.CALL_EVENTS,
            "call_failed",
            {
                "lead_id": str(attempt.lead_id),
                "attempt_id": str(attempt.id),
                "error": message,
            },
            account_id=attempt.account_id,
            campaign_id=attempt.campaign_id,
            call_id=attempt.id,
        )
        return DispatchResult(
            status="failed",
            attempt_id=attempt.id,
            attempt_number=attempt.attempt_number,
            reason=message,
            transient=transient,
        )
