"""Service wiring and FastAPI dependencies.

Every component is built once at startup from the settings and shares one
``Database`` and one ``EventBus``. The container lives on ``app.state`` and
routes reach it through the dependencies below.

Usage:
    from campaign_dialer.dependencies import ServicesDep

    @router.get("/endpoint")
    async def handler(services: ServicesDep):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request

from campaign_dialer.config import Settings, get_settings
from campaign_dialer.core.events import EventBus
from campaign_dialer.core.security import resolve_secret
from campaign_dialer.core.timeutil import Clock, utcnow
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger
from campaign_dialer.services.analysis import AnalysisClient, create_analysis_client
from campaign_dialer.services.compliance_gate import ComplianceGate
from campaign_dialer.services.dispatch_queue import DispatchQueue
from campaign_dialer.services.dispatcher import CallDispatcher
from campaign_dialer.services.dnc import DNCRegistry
from campaign_dialer.services.job_processor import JobProcessor
from campaign_dialer.services.jurisdictions import DEFAULT_RULE_SET, load_rule_set
from campaign_dialer.services.realtime import FanoutHub
from campaign_dialer.services.webhook_processor import WebhookProcessor
from campaign_dialer.telephony import TelephonyProvider, create_telephony_provider

log = get_logger(__name__)


@dataclass
class Services:
    """Component registry passed by reference to the app."""

    settings: Settings
    database: Database
    bus: EventBus
    provider: TelephonyProvider
    analysis: AnalysisClient
    gate: ComplianceGate
    dispatcher: CallDispatcher
    dispatch_queue: DispatchQueue
    jobs: JobProcessor
    webhooks: WebhookProcessor
    fanout: FanoutHub
    jwt_secret: str


def build_services(
    settings: Settings,
    *,
    database: Database | None = None,
    provider: TelephonyProvider | None = None,
    analysis: AnalysisClient | None = None,
    clock: Clock = utcnow,
) -> Services:
    """Construct every component from settings.

    ``database``, ``provider`` and ``analysis`` may be supplied to swap in
    test doubles.
    """
    database = database or Database.from_settings(settings.database)
    bus = EventBus(queue_size=settings.realtime.subscriber_queue_size)
    provider = provider or create_telephony_provider(settings.telephony)
    analysis = analysis or create_analysis_client(settings.analysis)
    jwt_secret = resolve_secret(settings.jwt_secret_key, settings.environment)

    rules = DEFAULT_RULE_SET
    if settings.compliance.rules_file:
        rules = load_rule_set(settings.compliance.rules_file)

    gate = ComplianceGate(
        database,
        settings.compliance,
        rules=rules,
        dnc=DNCRegistry.from_settings(settings.compliance),
        clock=clock,
    )
    dispatcher = CallDispatcher(database, provider, bus, clock=clock)

    return Services(
        settings=settings,
        database=database,
        bus=bus,
        provider=provider,
        analysis=analysis,
        gate=gate,
        dispatcher=dispatcher,
        dispatch_queue=DispatchQueue(
            database, bus, gate, dispatcher, settings.dispatch, clock=clock
        ),
        jobs=JobProcessor(
            database,
            bus,
            dispatcher,
            gate,
            provider,
            analysis,
            settings.jobs,
            analysis_settings=settings.analysis,
            dispatch_settings=settings.dispatch,
            clock=clock,
        ),
        webhooks=WebhookProcessor(database, bus, settings.telephony, clock=clock),
        fanout=FanoutHub(
            bus,
            database,
            settings.realtime,
            secret=jwt_secret,
            algorithm=settings.jwt_algorithm,
            clock=clock,
        ),
        jwt_secret=jwt_secret,
    )


async def start_services(services: Services) -> None:
    settings = services.settings
    await services.database.create_all()
    await services.fanout.start()
    if settings.jobs.enabled:
        await services.jobs.start()
    if settings.dispatch.enabled:
        await services.dispatch_queue.start()


async def stop_services(services: Services) -> None:
    """Stop loops first, then release clients and connections."""
    await services.dispatch_queue.stop()
    await services.jobs.stop()
    await services.fanout.stop()
    await services.gate.close()
    await services.provider.close()
    await services.analysis.close()
    await services.database.dispose()


# =============================================================================
# Request Dependencies
# =============================================================================


def get_app_settings() -> Settings:
    return get_settings()


def get_services(request: Request) -> Services:
    return request.app.state.services


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
ServicesDep = Annotated[Services, Depends(get_services)]
