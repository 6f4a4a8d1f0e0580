"""Base Telephony Provider Interface.

Defines the abstract interface for voice-call providers and the mapping
from provider call states to call attempt statuses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from campaign_dialer.core.exceptions import CallNotFoundError
from campaign_dialer.core.timeutil import utcnow
from campaign_dialer.db.models import CallStatus


# Provider call status to attempt status
PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.INITIATED,
    "scheduled": CallStatus.INITIATED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.CONNECTED,
    "forwarding": CallStatus.CONNECTED,
    "ended": CallStatus.COMPLETED,
    "completed": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "busy": CallStatus.BUSY,
    "no-answer": CallStatus.NO_ANSWER,
    "no_answer": CallStatus.NO_ANSWER,
    "voicemail": CallStatus.VOICEMAIL,
}

# Ended reasons that pin down the terminal status more precisely than "ended"
ENDED_REASON_STATUS_MAP: dict[str, CallStatus] = {
    "voicemail": CallStatus.VOICEMAIL,
    "customer-busy": CallStatus.BUSY,
    "busy": CallStatus.BUSY,
    "customer-did-not-answer": CallStatus.NO_ANSWER,
    "no-answer": CallStatus.NO_ANSWER,
    "no_answer": CallStatus.NO_ANSWER,
    "silence-timed-out": CallStatus.NO_ANSWER,
}


def map_provider_status(status: str | None, ended_reason: str | None = None) -> CallStatus:
    """Map provider state (and ended reason) onto an attempt status.

    Unknown states map to ``failed``.
    """
    if ended_reason:
        reason = ended_reason.lower()
        if reason in ENDED_REASON_STATUS_MAP:
            return ENDED_REASON_STATUS_MAP[reason]
        if "error" in reason or "failed" in reason:
            return CallStatus.FAILED
    return PROVIDER_STATUS_MAP.get((status or "").lower(), CallStatus.FAILED)


@dataclass
class OutboundCallRequest:
    """Outbound call to initiate."""

    to: str  # Lead phone number, E.164
    from_number_id: str | None  # Provider-side caller-id resource
    agent_id: str  # Voice agent / assistant
    customer_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderCall:
    """Provider's view of a call."""

    id: str
    status: str
    ended_reason: str | None = None
    duration_seconds: int | None = None
    cost: float | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    transcript: str | None = None
    recording_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def mapped_status(self) -> CallStatus:
        return map_provider_status(self.status, self.ended_reason)


class TelephonyProvider(ABC):
    """Abstract base class for voice-call providers.

    Implementations raise ``ProviderError`` (``transient`` set for
    retryable failures) instead of returning error results.
    """

    name: str = "base"

    @abstractmethod
    async def create_call(self, request: OutboundCallRequest) -> ProviderCall:
        """Initiate an outbound call.

        Returns:
            The provider's call record, including its call id
        """

    @abstractmethod
    async def get_call(self, call_id: str) -> ProviderCall:
        """Fetch the current state of a call.

        Raises:
            CallNotFoundError: provider has no record of the call
        """

    async def close(self) -> None:
        """Release HTTP resources."""


class MockTelephonyProvider(TelephonyProvider):
    """In-memory provider for development and tests.

    Calls are accepted immediately and remembered; ``fail_with`` makes
    the next ``create_call`` raise the given exception.
    """

    name = "mock"

    def __init__(self) -> None:
        self.calls: dict[str, ProviderCall] = {}
        self.requests: list[OutboundCallRequest] = []
        self.fail_with: Exception | None = None

    async def create_call(self, request: OutboundCallRequest) -> ProviderCall:
        self.requests.append(request)
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        call = ProviderCall(id=f"mock-{uuid4().hex[:12]}", status="queued", started_at=utcnow())
        self.calls[call.id] = call
        return call

    async def get_call(self, call_id: str) -> ProviderCall:
        call = self.calls.get(call_id)
        if call is None:
            raise CallNotFoundError(f"Call {call_id} not found", details={"call_id": call_id})
        return call
