"""Webhook State Machine.

Consumes lifecycle callbacks from the telephony provider and advances
call attempt and lead state. Events may arrive late, out of order or more
than once:

- every raw delivery is logged to ``webhook_events``
- the signature is an HMAC-SHA256 over the raw body (``X-Signature: sha256=<hex>``)
- a dedup key is stored in the same transaction as the event's effects,
  so a replay is skipped before anything is touched
- status writes are conditional and only move forward

Broadcasts are published after the transaction commits.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.config import TelephonySettings
from campaign_dialer.core.events import Channel, EventBus
from campaign_dialer.core.timeutil import Clock, as_utc, utcnow
from campaign_dialer.db.models import TERMINAL_STATUSES, CallAttemptModel, CallStatus, LeadModel
from campaign_dialer.db.repositories import (
    CallAttemptRepository,
    CampaignRepository,
    JobRepository,
    LeadRepository,
    ProcessedEventRepository,
    WebhookEventRepository,
)
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger, log_context
from campaign_dialer.telephony.base import map_provider_status

log = get_logger(__name__)

SIGNATURE_HEADER = "X-Signature"

# Provider message types accepted under another name
EVENT_TYPE_ALIASES: dict[str, str] = {
    "end-of-call-report": "call-end",
    "tool-calls": "tool-call",
}

# Events whose effect is fully determined by (type, call id)
LIFECYCLE_EVENTS = frozenset({"call-start", "call-end", "hang", "error"})

# Call-level fields some providers send at the message level
_HOISTED_CALL_FIELDS = (
    "endedReason",
    "recordingUrl",
    "duration",
    "durationSeconds",
    "cost",
    "startedAt",
    "endedAt",
)

# Lead statuses set by a tool call during the call; call-end keeps them
OUTCOME_PRESERVED_STATUSES = ("qualified", "callback", "unqualified")

# Ended reason -> delay before the lead is dialed again
RETRY_DELAYS: dict[str, timedelta] = {
    "voicemail": timedelta(days=3),
    "no_answer": timedelta(days=1),
    "customer_did_not_answer": timedelta(days=1),
    "busy": timedelta(hours=4),
    "customer_busy": timedelta(hours=4),
}


# =============================================================================
# Signature verification
# =============================================================================


def compute_signature(body: bytes, secret: str) -> str:
    """``sha256=<hex>`` signature of a raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of an ``X-Signature`` header against the raw body."""
    if not secret:
        log.warning("Webhook secret not configured")
        return False
    if not signature:
        return False

    expected = compute_signature(body, secret)
    if not signature.startswith("sha256="):
        expected = expected[len("sha256="):]
    return hmac.compare_digest(expected, signature)


# =============================================================================
# Payload models
# =============================================================================


class CallPayload(BaseModel):
    """The ``call`` object of a provider event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    status: str | None = None
    duration: float | None = Field(
        default=None, validation_alias=AliasChoices("duration", "durationSeconds")
    )
    cost: float | None = None
    transcript: str | None = None
    recording_url: str | None = Field(default=None, alias="recordingUrl")
    ended_reason: str | None = Field(default=None, alias="endedReason")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    ended_at: datetime | None = Field(default=None, alias="endedAt")
    metadata: dict[str, Any] = Field(default_factory=dict)
    customer: dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """A provider lifecycle event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str
    call: CallPayload
    id: str | None = Field(default=None, validation_alias=AliasChoices("id", "eventId"))
    timestamp: Any = None
    transcript: Any = None
    role: str | None = None
    status: str | None = None
    tool: dict[str, Any] | None = None
    function_call: dict[str, Any] | None = Field(default=None, alias="functionCall")
    tool_call_list: list[dict[str, Any]] | None = Field(
        default=None, validation_alias=AliasChoices("toolCallList", "toolCalls")
    )
    error: Any = None

    def tool_invocations(self) -> list[tuple[str, dict[str, Any]]]:
        """(name, parameters) for every tool the agent invoked."""
        invocations: list[tuple[str, dict[str, Any]]] = []
        for tool in filter(None, [self.tool, self.function_call]):
            name = tool.get("name")
            if name:
                invocations.append((name, _as_parameters(tool.get("parameters"))))
        for item in self.tool_call_list or []:
            function = item.get("function") or item
            name = function.get("name")
            if name:
                invocations.append(
                    (name, _as_parameters(function.get("arguments", function.get("parameters"))))
                )
        return invocations


def _as_parameters(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}


def parse_event(data: dict[str, Any]) -> WebhookEvent:
    """Normalize the envelope variants providers send into a WebhookEvent.

    Accepts ``{type, call, ...}``, ``{message: {...}}`` and
    ``{type, data: {call, ...}}``.

    Raises:
        pydantic.ValidationError: type or call id missing
    """
    if isinstance(data.get("message"), dict):
        data = data["message"]
    if isinstance(data.get("data"), dict):
        data = {**{k: v for k, v in data.items() if k != "data"}, **data["data"]}

    data = dict(data)
    data["type"] = EVENT_TYPE_ALIASES.get(data.get("type", ""), data.get("type"))

    call = data.get("call")
    if isinstance(call, dict):
        call = dict(call)
        for key in _HOISTED_CALL_FIELDS:
            if key in data and key not in call:
                call[key] = data[key]
        if isinstance(data.get("transcript"), str) and "transcript" not in call:
            if data["type"] == "call-end":
                call["transcript"] = data["transcript"]
        data["call"] = call

    return WebhookEvent.model_validate(data)


def dedup_key(event: WebhookEvent, body: bytes) -> str:
    """Idempotency key: provider event id, else type + call id, else body digest."""
    if event.id:
        return f"event:{event.id}"
    if event.type in LIFECYCLE_EVENTS:
        return f"{event.type}:{event.call.id}"
    return f"body:{hashlib.sha256(body).hexdigest()}"


# =============================================================================
# Processor
# =============================================================================


@dataclass
class WebhookOutcome:
    """What happened to one delivery."""

    status: str  # processed, duplicate, failed, rejected
    event_type: str | None = None
    dedup_key: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "event_type": self.event_type,
            "dedup_key": self.dedup_key,
            "error": self.error,
        }


@dataclass
class _Broadcast:
    channel: Channel
    type: str
    payload: dict[str, Any]
    scope: dict[str, Any]


@dataclass
class _Effects:
    """Broadcasts collected inside the transaction, published after commit."""

    broadcasts: list[_Broadcast] = field(default_factory=list)
    note: str | None = None

    def broadcast(
        self,
        event_type: str,
        payload: dict[str, Any],
        attempt: CallAttemptModel,
        channel: Channel = Channel.CALL_EVENTS,
    ) -> None:
        self.broadcasts.append(
            _Broadcast(
                channel=channel,
                type=event_type,
                payload=payload,
                scope={
                    "account_id": attempt.account_id,
                    "campaign_id": attempt.campaign_id,
                    "call_id": attempt.id,
                },
            )
        )


class WebhookProcessor:
    """Applies provider events to call attempts and leads.

    Usage:
        processor = WebhookProcessor(database, bus, settings.telephony)
        outcome = await processor.process(raw_body, request.headers.get("X-Signature"))
    """

    def __init__(
        self,
        database: Database,
        bus: EventBus,
        settings: TelephonySettings | None = None,
        *,
        clock: Clock = utcnow,
    ):
        self._db = database
        self._bus = bus
        self.settings = settings or TelephonySettings()
        self._clock = clock
        self._handlers = {
            "call-start": self._handle_call_start,
            "call-end": self._handle_call_end,
            "transcript": self._handle_transcript,
            "tool-call": self._handle_tool_call,
            "function-call": self._handle_tool_call,
            "speech-update": self._handle_speech_update,
            "hang": self._handle_hang,
            "error": self._handle_error,
        }
        self._tools = {
            "schedule_callback": self._tool_schedule_callback,
            "transfer_call": self._tool_transfer_call,
            "capture_lead_info": self._tool_capture_lead_info,
            "set_appointment": self._tool_set_appointment,
        }

    async def process(self, body: bytes, signature: str | None = None) -> WebhookOutcome:
        """Verify, deduplicate and apply one raw delivery.

        Never raises: failures are logged and recorded on the webhook log
        so a single bad event cannot take the ingress path down.
        """
        try:
            data = json.loads(body)
        except ValueError:
            data = None

        raw_type = data.get("type") if isinstance(data, dict) else None
        if raw_type is None and isinstance(data, dict) and isinstance(data.get("message"), dict):
            raw_type = data["message"].get("type")

        async with self._db.session() as session:
            record = await WebhookEventRepository(session).log_event(
                raw_type or "unknown",
                data if isinstance(data, dict) else {"raw": body.decode("utf-8", "replace")[:2000]},
                provider_call_id=_peek_call_id(data),
            )

        if self.settings.validate_signatures and not verify_signature(
            body, signature, self.settings.webhook_secret
        ):
            log.warning("Webhook signature rejected", event_type=raw_type, webhook_id=str(record.id))
            await self._mark(record.id, "rejected", error_message="Invalid or missing signature")
            return WebhookOutcome(status="rejected", event_type=raw_type, error="invalid_signature")

        if not isinstance(data, dict):
            await self._mark(record.id, "failed", error_message="Body is not a JSON object")
            return WebhookOutcome(status="failed", error="invalid_json")

        try:
            event = parse_event(data)
        except PayloadValidationError as e:
            log.warning("Malformed webhook payload", event_type=raw_type, error=str(e))
            await self._mark(record.id, "failed", error_message=f"Invalid payload: {e}")
            return WebhookOutcome(status="failed", event_type=raw_type, error="invalid_payload")

        key = dedup_key(event, body)
        with log_context(provider_call_id=event.call.id, dedup_key=key):
            return await self._apply_once(record.id, event, key)

    async def _apply_once(
        self, record_id: UUID, event: WebhookEvent, key: str
    ) -> WebhookOutcome:
        """Apply a parsed event unless its dedup key was already seen."""
        effects = _Effects()
        duplicate = False
        try:
            async with self._db.session() as session:
                processed = ProcessedEventRepository(session)
                if await processed.is_processed(key):
                    duplicate = True
                else:
                    await self._apply(session, event, effects)
                    await processed.mark_processed(key, event.type, event.call.id)
        except IntegrityError:
            duplicate = True
        except Exception as e:
            log.error(
                "Webhook processing failed",
                event_type=event.type,
                error=str(e),
                exc_info=True,
            )
            await self._mark(record_id, "failed", dedup_key=key, error_message=str(e))
            return WebhookOutcome(status="failed", event_type=event.type, dedup_key=key, error=str(e))

        if duplicate:
            log.info("Duplicate webhook skipped", event_type=event.type)
            await self._mark(record_id, "duplicate", dedup_key=key)
            return WebhookOutcome(status="duplicate", event_type=event.type, dedup_key=key)

        await self._mark(record_id, "processed", dedup_key=key, error_message=effects.note)
        for item in effects.broadcasts:
            await self._bus.publish(item.channel, item.type, item.payload, **item.scope)

        return WebhookOutcome(status="processed", event_type=event.type, dedup_key=key)

    async def _mark(self, record_id: UUID, status: str, **kwargs: Any) -> None:
        async with self._db.session() as session:
            await WebhookEventRepository(session).mark(record_id, status, **kwargs)

    async def _apply(self, session: AsyncSession, event: WebhookEvent, effects: _Effects) -> None:
        handler = self._handlers.get(event.type)
        if handler is None:
            log.info("Unhandled webhook type", event_type=event.type)
            effects.note = f"Unhandled event type: {event.type}"
            return

        attempt = await self._resolve_attempt(session, event.call)
        if attempt is None:
            log.warning(
                "Webhook for unknown call",
                event_type=event.type,
                provider_call_id=event.call.id,
            )
            effects.note = "Unknown call"
            return

        await handler(session, event, attempt, effects)

    async def _resolve_attempt(
        self, session: AsyncSession, call: CallPayload
    ) -> CallAttemptModel | None:
        """Find the attempt by provider id, else by the attempt id we sent as metadata."""
        attempts = CallAttemptRepository(session)
        attempt = await attempts.get_by_provider_call_id(call.id)
        if attempt is not None:
            return attempt

        attempt_id = call.metadata.get("attempt_id")
        if not attempt_id:
            return None
        try:
            attempt = await attempts.get(attempt_id)
        except ValueError:
            return None
        if attempt is not None and attempt.provider_call_id is None:
            # Event raced ahead of the dispatcher recording the id
            await attempts.attach_provider_call_id(attempt.id, call.id)
        return attempt

    # ========================================================================
    # Event handlers
    # ========================================================================

    async def _handle_call_start(
        self, session: AsyncSession, event: WebhookEvent, attempt: CallAttemptModel, effects: _Effects
    ) -> None:
        now = self._clock()
        attempts = CallAttemptRepository(session)
        await attempts.advance(attempt.id, CallStatus.RINGING.value)
        await attempts.update_where(
            attempt.id,
            [CallAttemptModel.started_at.is_(None)],
            started_at=event.call.started_at or now,
        )
        lead = await LeadRepository(session).get(attempt.lead_id)

        log.info("Call started", provider_call_id=event.call.id, attempt_id=str(attempt.id))
        effects.broadcast(
            "call_started",
            {
                "call_id": event.call.id,
                "attempt_id": str(attempt.id),
                "lead_id": str(attempt.lead_id),
                "campaign_id": str(attempt.campaign_id),
                "lead_name": lead.full_name if lead else None,
                "phone_number": event.call.customer.get("number") or (lead.phone_number if lead else None),
                "started_at": (event.call.started_at or now).isoformat(),
            },
            attempt,
        )

    async def _handle_call_end(
        self, session: AsyncSession, event: WebhookEvent, attempt: CallAttemptModel, effects: _Effects
    ) -> None:
        now = self._clock()
        call = event.call
        status = map_provider_status(call.status or "ended", call.ended_reason)
        if status.value not in TERMINAL_STATUSES:
            # A call-end always closes the attempt
            status = CallStatus.COMPLETED
        duration = int(round(call.duration or 0))
        cost = float(call.cost or 0.0)

        attempts = CallAttemptRepository(session)
        recorded = await attempts.record_outcome(
            attempt.id,
            ended_reason=call.ended_reason or "unknown",
            ended_at=call.ended_at or now,
            duration_seconds=duration,
            cost=cost,
            transcript=call.transcript,
            recording_url=call.recording_url,
        )
        if not recorded:
            log.info("Call outcome already recorded", provider_call_id=call.id)
            effects.note = "Outcome already recorded"
            return

        closed = await attempts.close(attempt.id, status.value)
        if not closed:
            # Closed earlier by an error event or the cleanup sweep
            log.info(
                "Attempt already terminal, keeping status",
                attempt_id=str(attempt.id),
                reported_status=status.value,
            )

        await CampaignRepository(session).add_call_totals(
            attempt.campaign_id, duration_seconds=duration, cost=cost
        )
        await self._apply_lead_outcome(session, attempt.lead_id, call.ended_reason, now)

        if call.transcript:
            await JobRepository(session).enqueue(
                "analyze-call",
                {
                    "attempt_id": str(attempt.id),
                    "call_id": call.id,
                    "lead_id": str(attempt.lead_id),
                    "campaign_id": str(attempt.campaign_id),
                },
                now=now,
            )

        lead = await LeadRepository(session).get(attempt.lead_id)
        log.info(
            "Call ended",
            provider_call_id=call.id,
            attempt_id=str(attempt.id),
            status=status.value,
            ended_reason=call.ended_reason,
            duration=duration,
            cost=cost,
        )
        effects.broadcast(
            "call_ended",
            {
                "call_id": call.id,
                "attempt_id": str(attempt.id),
                "lead_id": str(attempt.lead_id),
                "campaign_id": str(attempt.campaign_id),
                "lead_name": lead.full_name if lead else None,
                "status": status.value,
                "ended_reason": call.ended_reason,
                "duration": duration,
                "cost": cost,
                "recording_url": call.recording_url,
            },
            attempt,
        )

    async def _apply_lead_outcome(
        self, session: AsyncSession, lead_id: UUID, ended_reason: str | None, now: datetime
    ) -> None:
        reason = (ended_reason or "").lower().replace("-", "_")
        delay = RETRY_DELAYS.get(reason)
        await LeadRepository(session).update_where(
            lead_id,
            [LeadModel.status.not_in(OUTCOME_PRESERVED_STATUSES)],
            status="contacted",
            next_call_scheduled_at=now + delay if delay else None,
            last_attempt_at=now,
        )

    async def _handle_transcript(
        self, session: AsyncSession, event: WebhookEvent, attempt: CallAttemptModel, effects: _Effects
    ) -> None:
        segments = _transcript_segments(event)
        if not segments:
            return

        attempts = CallAttemptRepository(session)
        is_final = (event.model_extra or {}).get("transcriptType", "final") == "final"
        for role, text in segments:
            await attempts.append_transcript_chunk(attempt.id, text, role=role, is_final=is_final)

        effects.broadcast(
            "transcript_update",
            {
                "call_id": event.call.id,
                "attempt_id": str(attempt.id),
                "campaign_id": str(attempt.campaign_id),
                "segments": [{"role": role, "text": text} for role, text in segments],
                "is_final": is_final,
                "timestamp": self._clock().isoformat(),
            },
            attempt,
        )

    async def _handle_tool_call(
        self, session: AsyncSession, event: WebhookEvent, attempt: CallAttemptModel, effects: _Effects
    ) -> None:
        for name, parameters in event.tool_invocations():
            log.info(
                "Tool invoked",
                provider_call_id=event.call.id,
                tool=name,
                parameters=parameters,
            )
            handler = self._tools.get(name)
            if handler is None:
                log.info("Unknown tool", tool=name)
                continue
            await handler(session, attempt, parameters, effects)
            effects.broadcast(
                "tool_called",
                {
                    "call_id": event.call.id,
                    "attempt_id": str(attempt.id),
                    "campaign_id": str(attempt.campaign_id),
                    "tool": name,
                    "parameters": parameters,
                },
                attempt,
            )

    async def _handle_speech_update(
        self, session: AsyncSession, event: WebhookEvent, attempt: CallAttemptModel, effects: _Effects
    ) -> None:
        # Speech means the callee picked up
        await CallAttemptRepository(session).advance(attempt.id, CallStatus.CONNECTED.value)
        effects.broadcast(
            "speech_update",
            {
                "call_id": event.call.id,
                "attempt_id": str(attempt.id),
                "campaign_id": str(attempt.campaign_id),
                "status": event.status,
                "role": event.role,
            },
            attempt,
        )

    async def _handle_hang(
        self, session: AsyncSession, event: WebhookEvent, attempt: CallAttemptModel, effects: _Effects
    ) -> None:
        # Final status is left to call-end; the cleanup sweep covers a lost one
        await CallAttemptRepository(session).update_where(
            attempt.id, [CallAttemptModel.ended_at.is_(None)], ended_at=self._clock()
        )
        log.info("Call hung up", provider_call_id=event.call.id)
        effects.broadcast(
            "call_hung_up",
            {
                "call_id": event.call.id,
                "attempt_id": str(attempt.id),
                "campaign_id": str(attempt.campaign_id),
            },
            attempt,
        )

    async def _handle_error(
        self, session: AsyncSession, event: WebhookEvent, attempt: CallAttemptModel, effects: _Effects
    ) -> None:
        error = event.error
        message = error.get("message") if isinstance(error, dict) else str(error or "Provider error")
        closed = await CallAttemptRepository(session).close(
            attempt.id,
            CallStatus.FAILED.value,
            error_message=message,
            ended_at=self._clock(),
        )
        if closed:
            await LeadRepository(session).update_where(
                attempt.lead_id,
                [LeadModel.status == "calling"],
                status="contacted",
            )

        log.error(
            "Provider reported call error",
            provider_call_id=event.call.id,
            attempt_id=str(attempt.id),
            error=message,
        )
        effects.broadcast(
            "call_error",
            {
                "call_id": event.call.id,
                "attempt_id": str(attempt.id),
                "campaign_id": str(attempt.campaign_id),
                "error": error,
            },
            attempt,
        )

    # ========================================================================
    # Tool handlers
    # ========================================================================

    async def _tool_schedule_callback(
        self, session: AsyncSession, attempt: CallAttemptModel, parameters: dict[str, Any], effects: _Effects
    ) -> None:
        callback_at = _parse_time(parameters.get("callback_time"))
        if callback_at is None:
            log.warning("schedule_callback without a valid callback_time", parameters=parameters)
            return
        await LeadRepository(session).update_where(
            attempt.lead_id, [], status="callback", next_call_scheduled_at=callback_at
        )
        log.info("Callback scheduled", lead_id=str(attempt.lead_id), callback_at=callback_at.isoformat())

    async def _tool_transfer_call(
        self, session: AsyncSession, attempt: CallAttemptModel, parameters: dict[str, Any], effects: _Effects
    ) -> None:
        log.info("Transfer requested", attempt_id=str(attempt.id), transfer_to=parameters.get("transfer_to"))
        effects.broadcast(
            "transfer_requested",
            {
                "attempt_id": str(attempt.id),
                "campaign_id": str(attempt.campaign_id),
                "transfer_to": parameters.get("transfer_to"),
            },
            attempt,
            channel=Channel.CALL_INTERVENTIONS,
        )

    async def _tool_capture_lead_info(
        self, session: AsyncSession, attempt: CallAttemptModel, parameters: dict[str, Any], effects: _Effects
    ) -> None:
        if parameters:
            await LeadRepository(session).merge_custom_fields(attempt.lead_id, parameters)

    async def _tool_set_appointment(
        self, session: AsyncSession, attempt: CallAttemptModel, parameters: dict[str, Any], effects: _Effects
    ) -> None:
        appointment_at = _parse_time(parameters.get("appointment_time"))
        await LeadRepository(session).update_where(
            attempt.lead_id,
            [],
            status="qualified",
            appointment_at=appointment_at,
            next_call_scheduled_at=None,
        )
        log.info("Appointment set", lead_id=str(attempt.lead_id), appointment_at=str(appointment_at))

    # ========================================================================
    # Stats
    # ========================================================================

    async def get_webhook_stats(self) -> dict[str, Any]:
        """Deliveries in the last 24 hours by outcome, with recent errors."""
        since = self._clock() - timedelta(hours=24)
        async with self._db.session() as session:
            repo = WebhookEventRepository(session)
            counts = await repo.count_by_status(since)
            errors = await repo.get_recent_errors(since, limit=10)
        return {
            "total_webhooks": sum(counts.values()),
            "successful_webhooks": counts.get("processed", 0),
            "duplicate_webhooks": counts.get("duplicate", 0),
            "failed_webhooks": counts.get("failed", 0),
            "rejected_webhooks": counts.get("rejected", 0),
            "recent_errors": [
                {
                    "event_type": e.event_type,
                    "status": e.status,
                    "error_message": e.error_message,
                    "received_at": e.received_at.isoformat() if e.received_at else None,
                }
                for e in errors
            ],
        }


def _peek_call_id(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    for container in (data, data.get("message"), data.get("data")):
        if isinstance(container, dict) and isinstance(container.get("call"), dict):
            call_id = container["call"].get("id")
            return str(call_id) if call_id is not None else None
    return None


def _transcript_segments(event: WebhookEvent) -> list[tuple[str, str]]:
    """(role, text) pairs from either transcript shape providers send."""
    transcript = event.transcript
    if isinstance(transcript, str) and transcript.strip():
        return [(event.role or "unknown", transcript)]
    if isinstance(transcript, dict):
        return [
            (role, transcript[role])
            for role in ("user", "assistant")
            if isinstance(transcript.get(role), str) and transcript[role].strip()
        ]
    return []


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)
