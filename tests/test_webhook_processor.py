"""Tests for the webhook state machine."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
import structlog

from campaign_dialer.core.events import Channel
from campaign_dialer.core.timeutil import as_utc
from campaign_dialer.db.models import CallAttemptModel
from campaign_dialer.db.repositories import (
    CallAttemptRepository,
    CampaignRepository,
    JobRepository,
    LeadRepository,
)
from campaign_dialer.services.webhook_processor import (
    compute_signature,
    dedup_key,
    parse_event,
    verify_signature,
)
from conftest import WEBHOOK_SECRET, signed


def call_end(call_id: str, **fields) -> dict:
    message = {
        "type": "end-of-call-report",
        "call": {"id": call_id, "status": "ended"},
        "endedReason": "customer-ended-call",
        "durationSeconds": 120,
        "cost": 0.5,
        "transcript": "AI: Hello\nUser: Tell me more",
    }
    message.update(fields)
    return {"message": message}


async def load(database, attempt_id):
    async with database.session() as session:
        attempt = await CallAttemptRepository(session).get(attempt_id)
        lead = await LeadRepository(session).get(attempt.lead_id)
        campaign = await CampaignRepository(session).get(attempt.campaign_id)
    return attempt, lead, campaign


@pytest_asyncio.fixture
async def active_call(dispatcher, lead, campaign):
    """A dispatched call awaiting provider events."""
    result = await dispatcher.dispatch(lead.id, campaign.id, None)
    assert result.dispatched
    return result


# ============================================================================
# Parsing and signatures
# ============================================================================


class TestParsing:
    """Envelope normalization and dedup keys."""

    def test_message_envelope_and_alias(self):
        """Test end-of-call-report inside a message envelope becomes call-end."""
        event = parse_event(call_end("call-1"))

        assert event.type == "call-end"
        assert event.call.id == "call-1"
        assert event.call.duration == 120
        assert event.call.ended_reason == "customer-ended-call"
        assert event.call.transcript.startswith("AI: Hello")

    def test_data_envelope(self):
        """Test the {type, data: {call}} shape."""
        event = parse_event({"type": "call-start", "data": {"call": {"id": "call-2"}}})

        assert event.type == "call-start"
        assert event.call.id == "call-2"

    def test_dedup_keys(self):
        """Test event id wins, then type and call id, then body digest."""
        with_id = parse_event({"type": "transcript", "id": "evt-1", "call": {"id": "c"}})
        lifecycle = parse_event({"type": "call-end", "call": {"id": "c"}})
        other = parse_event({"type": "transcript", "call": {"id": "c"}})

        assert dedup_key(with_id, b"{}") == "event:evt-1"
        assert dedup_key(lifecycle, b"{}") == "call-end:c"
        assert dedup_key(other, b"{}").startswith("body:")

    def test_signature(self):
        """Test HMAC signatures with and without the scheme prefix."""
        body = b'{"type": "call-start"}'
        signature = compute_signature(body, WEBHOOK_SECRET)

        assert verify_signature(body, signature, WEBHOOK_SECRET) is True
        assert verify_signature(body, signature[len("sha256="):], WEBHOOK_SECRET) is True
        assert verify_signature(body + b" ", signature, WEBHOOK_SECRET) is False
        assert verify_signature(body, None, WEBHOOK_SECRET) is False
        assert verify_signature(body, signature, "") is False


# ============================================================================
# Lifecycle
# ============================================================================


class TestCallLifecycle:
    """Applying provider events to attempts and leads."""

    @pytest.mark.asyncio
    async def test_call_start(self, database, webhook_processor, active_call):
        """Test call-start moves the attempt to ringing."""
        body, signature = signed({"type": "call-start", "call": {"id": active_call.provider_call_id}})

        outcome = await webhook_processor.process(body, signature)

        assert outcome.status == "processed"
        attempt, _, _ = await load(database, active_call.attempt_id)
        assert attempt.status == "ringing"

    @pytest.mark.asyncio
    async def test_call_end_records_outcome(self, database, bus, webhook_processor, active_call):
        """Test call-end closes the attempt, updates totals and queues analysis."""
        events = bus.subscribe(Channel.CALL_EVENTS)
        body, signature = signed(call_end(active_call.provider_call_id))

        outcome = await webhook_processor.process(body, signature)

        assert outcome.status == "processed"
        assert outcome.dedup_key == f"call-end:{active_call.provider_call_id}"
        attempt, lead, campaign = await load(database, active_call.attempt_id)
        assert attempt.status == "completed"
        assert attempt.duration_seconds == 120
        assert attempt.cost == 0.5
        assert attempt.ended_reason == "customer-ended-call"
        assert lead.status == "contacted"
        assert lead.next_call_scheduled_at is None
        assert campaign.total_calls == 1
        assert campaign.total_cost == 0.5
        assert campaign.total_duration_seconds == 120

        async with database.session() as session:
            jobs = await JobRepository(session).find_by_name("analyze-call")
        assert len(jobs) == 1
        assert jobs[0].payload["attempt_id"] == str(active_call.attempt_id)

        ended = events.get_nowait()
        assert ended.type == "call_ended"
        assert ended.call_id == str(active_call.attempt_id)
        assert ended.payload["status"] == "completed"

    @pytest.mark.asyncio
    async def test_call_end_replay_is_idempotent(self, database, webhook_processor, active_call):
        """Test replaying call-end does not double count cost or duration."""
        body, signature = signed(call_end(active_call.provider_call_id))

        first = await webhook_processor.process(body, signature)
        second = await webhook_processor.process(body, signature)

        assert first.status == "processed"
        assert second.status == "duplicate"
        _, _, campaign = await load(database, active_call.attempt_id)
        assert campaign.total_calls == 1
        assert campaign.total_cost == 0.5

    @pytest.mark.asyncio
    async def test_call_end_with_new_event_id_still_counted_once(self, database, webhook_processor, active_call):
        """Test a redelivery under a different event id keeps the first outcome."""
        first_body, first_sig = signed(call_end(active_call.provider_call_id, id="evt-1"))
        second_body, second_sig = signed(
            call_end(active_call.provider_call_id, id="evt-2", cost=9.0, durationSeconds=999)
        )

        await webhook_processor.process(first_body, first_sig)
        outcome = await webhook_processor.process(second_body, second_sig)

        assert outcome.status == "processed"
        attempt, _, campaign = await load(database, active_call.attempt_id)
        assert attempt.cost == 0.5
        assert campaign.total_calls == 1
        assert campaign.total_cost == 0.5

    @pytest.mark.asyncio
    async def test_out_of_order_start_after_end(self, database, webhook_processor, active_call):
        """Test a late call-start never reopens a finished attempt."""
        end_body, end_sig = signed(call_end(active_call.provider_call_id))
        start_body, start_sig = signed({"type": "call-start", "call": {"id": active_call.provider_call_id}})

        await webhook_processor.process(end_body, end_sig)
        outcome = await webhook_processor.process(start_body, start_sig)

        assert outcome.status == "processed"
        attempt, _, _ = await load(database, active_call.attempt_id)
        assert attempt.status == "completed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "ended_reason,status,delay",
        [
            ("voicemail", "voicemail", timedelta(days=3)),
            ("customer-did-not-answer", "no_answer", timedelta(days=1)),
            ("customer-busy", "busy", timedelta(hours=4)),
        ],
    )
    async def test_unreached_outcome_schedules_retry(
        self, database, webhook_processor, active_call, clock, ended_reason, status, delay
    ):
        """Test voicemail, no answer and busy schedule the next call."""
        body, signature = signed(call_end(active_call.provider_call_id, endedReason=ended_reason))

        await webhook_processor.process(body, signature)

        attempt, lead, _ = await load(database, active_call.attempt_id)
        assert attempt.status == status
        assert lead.status == "contacted"
        assert as_utc(lead.next_call_scheduled_at) == clock.now + delay

    @pytest.mark.asyncio
    async def test_unreached_call_with_transcript_is_analyzed(self, database, webhook_processor, active_call):
        """Test analysis is queued for any ended call that carries a transcript."""
        body, signature = signed(call_end(active_call.provider_call_id, endedReason="voicemail"))

        await webhook_processor.process(body, signature)

        async with database.session() as session:
            jobs = await JobRepository(session).find_by_name("analyze-call")
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_call_end_with_live_status_still_closes(self, database, webhook_processor, active_call):
        """Test call-end closes the attempt even when the call object still reads in-progress."""
        body, signature = signed(
            call_end(
                active_call.provider_call_id,
                call={"id": active_call.provider_call_id, "status": "in-progress"},
            )
        )

        outcome = await webhook_processor.process(body, signature)

        assert outcome.status == "processed"
        attempt, lead, campaign = await load(database, active_call.attempt_id)
        assert attempt.status == "completed"
        assert attempt.ended_reason == "customer-ended-call"
        assert lead.status == "contacted"
        assert campaign.total_calls == 1

    @pytest.mark.asyncio
    async def test_event_logs_carry_call_scope(self, monkeypatch, webhook_processor, active_call):
        """Test the provider call id and dedup key are bound while the event is applied."""
        bound = []

        async def capture(session, event, effects):
            bound.append(structlog.contextvars.get_contextvars())

        monkeypatch.setattr(webhook_processor, "_apply", capture)
        body, signature = signed(call_end(active_call.provider_call_id))

        outcome = await webhook_processor.process(body, signature)

        assert bound[0]["provider_call_id"] == active_call.provider_call_id
        assert bound[0]["dedup_key"] == outcome.dedup_key
        assert "dedup_key" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_error_event_fails_attempt(self, database, webhook_processor, active_call):
        """Test a provider error closes the attempt as failed."""
        body, signature = signed(
            {
                "type": "error",
                "call": {"id": active_call.provider_call_id},
                "error": {"message": "carrier rejected"},
            }
        )

        await webhook_processor.process(body, signature)

        attempt, lead, _ = await load(database, active_call.attempt_id)
        assert attempt.status == "failed"
        assert attempt.error_message == "carrier rejected"
        assert lead.status == "contacted"

    @pytest.mark.asyncio
    async def test_speech_update_connects(self, database, webhook_processor, active_call):
        """Test speech moves the attempt to connected."""
        body, signature = signed(
            {"type": "speech-update", "call": {"id": active_call.provider_call_id}, "role": "user", "status": "started"}
        )

        await webhook_processor.process(body, signature)

        attempt, _, _ = await load(database, active_call.attempt_id)
        assert attempt.status == "connected"

    @pytest.mark.asyncio
    async def test_transcript_chunks_stored(self, database, bus, webhook_processor, active_call):
        """Test partial transcripts are stored and broadcast."""
        events = bus.subscribe(Channel.CALL_EVENTS)
        body, signature = signed(
            {
                "type": "transcript",
                "call": {"id": active_call.provider_call_id},
                "role": "user",
                "transcript": "I might be interested",
            }
        )

        await webhook_processor.process(body, signature)

        async with database.session() as session:
            chunks = await CallAttemptRepository(session).get_transcript_chunks(active_call.attempt_id)
        assert [(c.role, c.text) for c in chunks] == [("user", "I might be interested")]
        assert events.get_nowait().type == "transcript_update"

    @pytest.mark.asyncio
    async def test_event_resolved_by_metadata(self, database, webhook_processor, lead, campaign):
        """Test an event racing the dispatcher finds the attempt by metadata."""
        async with database.session() as session:
            attempt = await CallAttemptRepository(session).create(
                CallAttemptModel(
                    account_id=campaign.account_id,
                    lead_id=lead.id,
                    campaign_id=campaign.id,
                )
            )
        body, signature = signed(
            {
                "type": "call-start",
                "call": {"id": "prov-late", "metadata": {"attempt_id": str(attempt.id)}},
            }
        )

        await webhook_processor.process(body, signature)

        refreshed, _, _ = await load(database, attempt.id)
        assert refreshed.provider_call_id == "prov-late"
        assert refreshed.status == "ringing"


# ============================================================================
# Tool calls
# ============================================================================


class TestToolCalls:
    """Agent tool invocations during a call."""

    @pytest.mark.asyncio
    async def test_schedule_callback_survives_call_end(self, database, webhook_processor, active_call):
        """Test a callback set during the call is kept by call-end."""
        tool_body, tool_sig = signed(
            {
                "type": "tool-calls",
                "call": {"id": active_call.provider_call_id},
                "toolCallList": [
                    {
                        "function": {
                            "name": "schedule_callback",
                            "arguments": json.dumps({"callback_time": "2024-03-15T14:00:00Z"}),
                        }
                    }
                ],
            }
        )
        end_body, end_sig = signed(call_end(active_call.provider_call_id))

        await webhook_processor.process(tool_body, tool_sig)
        await webhook_processor.process(end_body, end_sig)

        _, lead, _ = await load(database, active_call.attempt_id)
        assert lead.status == "callback"
        assert as_utc(lead.next_call_scheduled_at) == datetime(2024, 3, 15, 14, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_set_appointment_qualifies_lead(self, database, webhook_processor, active_call):
        """Test booking an appointment qualifies the lead."""
        body, signature = signed(
            {
                "type": "function-call",
                "call": {"id": active_call.provider_call_id},
                "functionCall": {
                    "name": "set_appointment",
                    "parameters": {"appointment_time": "2024-03-20T16:00:00Z"},
                },
            }
        )

        await webhook_processor.process(body, signature)

        _, lead, _ = await load(database, active_call.attempt_id)
        assert lead.status == "qualified"
        assert as_utc(lead.appointment_at) == datetime(2024, 3, 20, 16, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_capture_lead_info_merges_fields(self, database, webhook_processor, active_call):
        """Test captured details are merged into the lead's custom fields."""
        first_body, first_sig = signed(
            {
                "id": "evt-capture-1",
                "type": "function-call",
                "call": {"id": active_call.provider_call_id},
                "functionCall": {"name": "capture_lead_info", "parameters": {"budget": "5k"}},
            }
        )
        second_body, second_sig = signed(
            {
                "id": "evt-capture-2",
                "type": "function-call",
                "call": {"id": active_call.provider_call_id},
                "functionCall": {
                    "name": "capture_lead_info",
                    "parameters": {"budget": "10k", "decision_maker": True},
                },
            }
        )

        await webhook_processor.process(first_body, first_sig)
        await webhook_processor.process(second_body, second_sig)

        _, lead, _ = await load(database, active_call.attempt_id)
        assert lead.custom_fields["budget"] == "10k"
        assert lead.custom_fields["decision_maker"] is True
        assert lead.status == "calling"

    @pytest.mark.asyncio
    async def test_transfer_goes_to_interventions(self, bus, webhook_processor, active_call):
        """Test a transfer request is published on the interventions channel."""
        interventions = bus.subscribe(Channel.CALL_INTERVENTIONS)
        body, signature = signed(
            {
                "type": "tool-calls",
                "call": {"id": active_call.provider_call_id},
                "toolCalls": [{"name": "transfer_call", "parameters": {"transfer_to": "+12125550000"}}],
            }
        )

        await webhook_processor.process(body, signature)

        event = interventions.get_nowait()
        assert event.type == "transfer_requested"
        assert event.payload["transfer_to"] == "+12125550000"


# ============================================================================
# Rejections and failures
# ============================================================================


class TestRejections:
    """Deliveries that must not change state."""

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, database, webhook_processor, active_call):
        """Test a bad signature leaves the attempt untouched."""
        body, _ = signed(call_end(active_call.provider_call_id))

        outcome = await webhook_processor.process(body, "sha256=deadbeef")

        assert outcome.status == "rejected"
        attempt, _, campaign = await load(database, active_call.attempt_id)
        assert attempt.status == "initiated"
        assert campaign.total_calls == 0

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, webhook_processor, active_call):
        """Test an unsigned delivery is rejected."""
        body, _ = signed({"type": "call-start", "call": {"id": active_call.provider_call_id}})

        outcome = await webhook_processor.process(body, None)

        assert outcome.status == "rejected"
        assert outcome.error == "invalid_signature"

    @pytest.mark.asyncio
    async def test_invalid_json(self, webhook_processor):
        """Test a signed but non-JSON body fails without raising."""
        body = b"not json"

        outcome = await webhook_processor.process(body, compute_signature(body, WEBHOOK_SECRET))

        assert outcome.status == "failed"
        assert outcome.error == "invalid_json"

    @pytest.mark.asyncio
    async def test_missing_call_object(self, webhook_processor):
        """Test a payload without a call is recorded as failed."""
        body, signature = signed({"type": "call-start"})

        outcome = await webhook_processor.process(body, signature)

        assert outcome.status == "failed"
        assert outcome.error == "invalid_payload"

    @pytest.mark.asyncio
    async def test_unknown_call_acknowledged(self, webhook_processor):
        """Test events for unknown calls are logged and dropped."""
        body, signature = signed({"type": "call-start", "call": {"id": "never-dialed"}})

        outcome = await webhook_processor.process(body, signature)

        assert outcome.status == "processed"

    @pytest.mark.asyncio
    async def test_unhandled_type(self, webhook_processor, active_call):
        """Test unknown event types are accepted without effect."""
        body, signature = signed({"type": "model-output", "call": {"id": active_call.provider_call_id}})

        outcome = await webhook_processor.process(body, signature)

        assert outcome.status == "processed"
        assert outcome.event_type == "model-output"

    @pytest.mark.asyncio
    async def test_webhook_stats(self, webhook_processor, active_call):
        """Test stats count deliveries by outcome."""
        body, signature = signed(call_end(active_call.provider_call_id))
        await webhook_processor.process(body, signature)
        await webhook_processor.process(body, signature)
        await webhook_processor.process(body, "sha256=bad")

        stats = await webhook_processor.get_webhook_stats()

        assert stats["total_webhooks"] == 3
        assert stats["successful_webhooks"] == 1
        assert stats["duplicate_webhooks"] == 1
        assert stats["rejected_webhooks"] == 1
        assert len(stats["recent_errors"]) == 1
