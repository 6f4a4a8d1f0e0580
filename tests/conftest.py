"""Pytest configuration and fixtures for Campaign Dialer tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
import structlog

from campaign_dialer.config import (
    ComplianceSettings,
    DispatchSettings,
    JobSettings,
    TelephonySettings,
)
from campaign_dialer.core.events import EventBus
from campaign_dialer.db.models import CampaignModel, LeadModel, OutboundNumberModel
from campaign_dialer.db.repositories import (
    CampaignRepository,
    LeadRepository,
    OutboundNumberRepository,
)
from campaign_dialer.db.session import Database
from campaign_dialer.services.analysis import MockAnalysisClient
from campaign_dialer.services.compliance_gate import ComplianceGate
from campaign_dialer.services.dispatch_queue import DispatchQueue
from campaign_dialer.services.dispatcher import CallDispatcher
from campaign_dialer.services.job_processor import JobProcessor
from campaign_dialer.services.webhook_processor import WebhookProcessor, compute_signature
from campaign_dialer.telephony.base import MockTelephonyProvider

ACCOUNT_ID = "acct-1"
OTHER_ACCOUNT_ID = "acct-2"
WEBHOOK_SECRET = "whsec-test"
JWT_SECRET = "test-jwt-secret"

# Wednesday 2024-03-13 11:00 in New York (EDT)
WEEKDAY_MORNING = datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected into every component."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Isolate structlog contextvars between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


async def no_sleep(seconds: float) -> None:
    return None


class FakeTransport:
    """Records what the fan-out sends to one socket."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def of_type(self, type: str) -> list[dict[str, Any]]:
        return [message for message in self.sent if message["type"] == type]


def signed(body: dict[str, Any]) -> tuple[bytes, str]:
    """Serialize a webhook body and sign it with the test secret."""
    raw = json.dumps(body).encode("utf-8")
    return raw, compute_signature(raw, WEBHOOK_SECRET)


# ============================================================================
# Core fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(WEEKDAY_MORNING)


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[Database, None]:
    """Fresh in-memory database per test."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def provider() -> MockTelephonyProvider:
    return MockTelephonyProvider()


@pytest.fixture
def analysis() -> MockAnalysisClient:
    return MockAnalysisClient(score=80, recommended_action="book_meeting")


@pytest.fixture
def gate(database, clock) -> ComplianceGate:
    return ComplianceGate(database, ComplianceSettings(), clock=clock)


@pytest.fixture
def dispatcher(database, provider, bus, clock) -> CallDispatcher:
    return CallDispatcher(database, provider, bus, clock=clock)


@pytest.fixture
def dispatch_queue(database, bus, gate, dispatcher, clock) -> DispatchQueue:
    return DispatchQueue(
        database,
        bus,
        gate,
        dispatcher,
        DispatchSettings(interval_seconds=3600),
        clock=clock,
        sleep=no_sleep,
    )


@pytest.fixture
def job_processor(database, bus, dispatcher, gate, provider, analysis, clock) -> JobProcessor:
    return JobProcessor(
        database,
        bus,
        dispatcher,
        gate,
        provider,
        analysis,
        JobSettings(),
        clock=clock,
    )


@pytest.fixture
def webhook_processor(database, bus, clock) -> WebhookProcessor:
    return WebhookProcessor(
        database,
        bus,
        TelephonySettings(webhook_secret=WEBHOOK_SECRET, validate_signatures=True),
        clock=clock,
    )


# ============================================================================
# Data fixtures
# ============================================================================


@pytest_asyncio.fixture
async def make_campaign(database):
    """Factory creating an active campaign with its outbound numbers."""

    async def _make(
        *,
        account_id: str = ACCOUNT_ID,
        status: str = "active",
        numbers: int = 1,
        **fields: Any,
    ) -> CampaignModel:
        async with database.session() as session:
            campaign = await CampaignRepository(session).create(
                CampaignModel(
                    account_id=account_id,
                    name=fields.pop("name", "Spring Outreach"),
                    status=status,
                    agent_id=fields.pop("agent_id", "agent-1"),
                    **fields,
                )
            )
            repo = OutboundNumberRepository(session)
            for index in range(numbers):
                await repo.create(
                    OutboundNumberModel(
                        campaign_id=campaign.id,
                        phone_number=f"+1212555{index:04d}",
                        provider_number_id=f"pn-{index}",
                    )
                )
        return campaign

    return _make


@pytest_asyncio.fixture
async def campaign(make_campaign) -> CampaignModel:
    return await make_campaign()


@pytest_asyncio.fixture
async def make_lead(database):
    """Factory creating a lead in a campaign."""

    async def _make(
        campaign: CampaignModel,
        phone_number: str = "+12125550123",
        **fields: Any,
    ) -> LeadModel:
        async with database.session() as session:
            return await LeadRepository(session).create(
                LeadModel(
                    account_id=campaign.account_id,
                    campaign_id=campaign.id,
                    phone_number=phone_number,
                    first_name=fields.pop("first_name", "Jane"),
                    last_name=fields.pop("last_name", "Doe"),
                    **fields,
                )
            )

    return _make


@pytest_asyncio.fixture
async def lead(make_lead, campaign) -> LeadModel:
    return await make_lead(campaign)
