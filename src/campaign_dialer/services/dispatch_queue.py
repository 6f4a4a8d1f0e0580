"""Call Dispatch Queue.

Background loop that wakes on a fixed interval, selects dial-eligible
leads and available outbound numbers per active campaign, runs each
candidate through the compliance gate and dispatches allowed calls one
at a time with a spacing delay between them.

Features:
- Idempotent start/stop
- Overlapping ticks are skipped
- Per-campaign error isolation
- Metrics published after every tick
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID

from campaign_dialer.config import DispatchSettings
from campaign_dialer.core.events import Channel, EventBus
from campaign_dialer.core.timeutil import Clock, utcnow
from campaign_dialer.db.models import CampaignModel
from campaign_dialer.db.repositories import (
    CallAttemptRepository,
    CampaignRepository,
    LeadRepository,
    OutboundNumberRepository,
)
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger
from campaign_dialer.services.compliance_gate import ComplianceGate
from campaign_dialer.services.dispatcher import CallDispatcher
from campaign_dialer.services.jurisdictions import is_within_hours

log = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class QueueState(str, Enum):
    """Dispatch queue states."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class QueueMetrics:
    """Dispatch counters since the queue was created."""

    started_at: datetime | None = None
    ticks: int = 0
    ticks_skipped: int = 0
    dispatched: int = 0
    blocked: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ticks": self.ticks,
            "ticks_skipped": self.ticks_skipped,
            "dispatched": self.dispatched,
            "blocked": self.blocked,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_error": self.last_error,
        }


@dataclass
class TickReport:
    """What one tick did."""

    campaigns: int = 0
    dispatched: int = 0
    blocked: int = 0
    failed: int = 0
    skipped: int = 0
    ran: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "ran": self.ran,
            "campaigns": self.campaigns,
            "dispatched": self.dispatched,
            "blocked": self.blocked,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class DispatchQueue:
    """Periodic outbound dispatcher.

    Usage:
        queue = DispatchQueue(database, bus, gate, dispatcher, settings.dispatch)

        # In application lifespan
        await queue.start()
        ...
        await queue.stop()
    """

    def __init__(
        self,
        database: Database,
        bus: EventBus,
        gate: ComplianceGate,
        dispatcher: CallDispatcher,
        settings: DispatchSettings | None = None,
        *,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._db = database
        self._bus = bus
        self._gate = gate
        self._dispatcher = dispatcher
        self.settings = settings or DispatchSettings()
        self._clock = clock
        self._sleep = sleep

        self._state = QueueState.STOPPED
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._metrics = QueueMetrics()

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def metrics(self) -> QueueMetrics:
        return self._metrics

    @property
    def is_running(self) -> bool:
        return self._state == QueueState.RUNNING

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start the timer loop. No-op when already running."""
        if self._state != QueueState.STOPPED:
            log.debug("Dispatch queue already started", state=self._state.value)
            return

        self._stop_event.clear()
        self._metrics.started_at = self._clock()
        self._task = asyncio.create_task(self._run_loop())
        self._state = QueueState.RUNNING
        log.info(
            "Dispatch queue started",
            interval_seconds=self.settings.interval_seconds,
            spacing_seconds=self.settings.spacing_seconds,
        )

    async def stop(self) -> None:
        """Stop the timer. A dispatch already in flight runs to completion."""
        if self._state == QueueState.STOPPED:
            return

        self._state = QueueState.STOPPING
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            # Let an in-flight tick finish; only the idle wait is interrupted
            await asyncio.shield(task)

        self._state = QueueState.STOPPED
        log.info("Dispatch queue stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                self._metrics.errors += 1
                self._metrics.last_error = str(e)
                log.error("Dispatch tick failed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.settings.interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    # ========================================================================
    # Tick
    # ========================================================================

    async def tick(self) -> TickReport:
        """Run one dispatch pass over every active campaign.

        Returns:
            Report of the pass; ``ran`` is False when a previous tick was
            still in progress.
        """
        if self._tick_lock.locked():
            self._metrics.ticks_skipped += 1
            log.warning("Previous dispatch tick still running, skipping")
            return TickReport(ran=False)

        async with self._tick_lock:
            report = TickReport()
            now = self._clock()

            async with self._db.session() as session:
                campaigns = await CampaignRepository(session).get_dispatchable()
            report.campaigns = len(campaigns)

            for campaign in campaigns:
                if self._stop_event.is_set():
                    break
                try:
                    await self._process_campaign(campaign, report)
                except Exception as e:
                    self._metrics.errors += 1
                    self._metrics.last_error = str(e)
                    log.error(
                        "Campaign dispatch failed",
                        campaign_id=str(campaign.id),
                        campaign=campaign.name,
                        error=str(e),
                        exc_info=True,
                    )

            self._metrics.ticks += 1
            self._metrics.last_tick_at = now
            log.info("Dispatch tick finished", **report.to_dict())

        await self._publish_stats()
        return report

    async def _process_campaign(self, campaign: CampaignModel, report: TickReport) -> None:
        now = self._clock()
        if not is_within_hours(
            now, campaign.timezone, campaign.calling_hours_start, campaign.calling_hours_end
        ):
            log.debug("Campaign outside calling hours", campaign_id=str(campaign.id))
            return

        async with self._db.session() as session:
            numbers = await OutboundNumberRepository(session).get_available(
                campaign.id,
                now=now,
                max_daily_calls=self.settings.max_daily_calls_per_number,
                cooldown_seconds=self.settings.number_cooldown_seconds,
            )
            if not numbers:
                log.info("No available numbers for campaign", campaign_id=str(campaign.id))
                return

            leads = await LeadRepository(session).get_dialable(
                campaign.id,
                now=now,
                max_attempts=campaign.max_attempts_per_lead,
                limit=len(numbers),
            )

        if not leads:
            log.debug("No dialable leads for campaign", campaign_id=str(campaign.id))
            return

        log.info(
            "Dispatching campaign leads",
            campaign_id=str(campaign.id),
            leads=len(leads),
            numbers=len(numbers),
        )

        pairs = list(zip(leads, numbers))
        for index, (lead, number) in enumerate(pairs):
            if self._stop_event.is_set():
                break

            decision = await self._gate.check(lead, campaign)
            if not decision.allowed:
                # The number slot is consumed; no other lead takes it this tick
                report.blocked += 1
                self._metrics.blocked += 1
                log.info(
                    "Lead blocked by compliance",
                    lead_id=str(lead.id),
                    campaign_id=str(campaign.id),
                    reason=decision.reason,
                    blocked_until=decision.blocked_until.isoformat() if decision.blocked_until else None,
                )
                await self._bus.publish(
                    Channel.CALL_EVENTS,
                    "compliance_blocked",
                    {
                        "lead_id": str(lead.id),
                        "reason": decision.reason,
                        "blocked_until": (
                            decision.blocked_until.isoformat() if decision.blocked_until else None
                        ),
                        "score": decision.score,
                    },
                    account_id=campaign.account_id,
                    campaign_id=campaign.id,
                )
                continue

            result = await self._dispatcher.dispatch(lead.id, campaign.id, number.id)
            if result.dispatched:
                report.dispatched += 1
                self._metrics.dispatched += 1
            elif result.status == "failed":
                report.failed += 1
                self._metrics.failed += 1
            else:
                report.skipped += 1
                self._metrics.skipped += 1

            if index < len(pairs) - 1:
                await self._sleep(self.settings.spacing_seconds)

    # ========================================================================
    # Campaign control and maintenance
    # ========================================================================

    async def pause_campaign(self, campaign_id: UUID | str) -> bool:
        """Move an active campaign to paused. Returns False if it was not active."""
        return await self._toggle_campaign(campaign_id, "paused", ("active",), "campaign_paused")

    async def resume_campaign(self, campaign_id: UUID | str) -> bool:
        """Move a paused campaign back to active."""
        return await self._toggle_campaign(campaign_id, "active", ("paused",), "campaign_resumed")

    async def _toggle_campaign(
        self,
        campaign_id: UUID | str,
        status: str,
        from_statuses: tuple[str, ...],
        event_type: str,
    ) -> bool:
        async with self._db.session() as session:
            campaigns = CampaignRepository(session)
            campaign = await campaigns.get_or_raise(campaign_id)
            changed = await campaigns.set_status(
                campaign.id, status, from_statuses=from_statuses
            )

        if changed:
            log.info("Campaign status changed", campaign_id=str(campaign.id), status=status)
            await self._bus.publish(
                Channel.CAMPAIGN_UPDATES,
                event_type,
                {"campaign_id": str(campaign.id), "status": status},
                account_id=campaign.account_id,
                campaign_id=campaign.id,
            )
        return changed

    async def process_due_callbacks(self) -> int:
        """Release callback leads whose scheduled time has passed.

        Each due lead becomes ``contacted`` with its schedule cleared.

        Returns:
            Number of leads released
        """
        now = self._clock()
        async with self._db.session() as session:
            leads = LeadRepository(session)
            due = await leads.get_due_callbacks(now, limit=self.settings.callback_batch_size)
            for lead in due:
                await leads.update_where(
                    lead.id,
                    [],
                    status="contacted",
                    next_call_scheduled_at=None,
                )
                log.info("Callback released", lead_id=str(lead.id))
        return len(due)

    async def reset_daily_counters(self) -> int:
        """Zero the daily call count of every outbound number."""
        async with self._db.session() as session:
            count = await OutboundNumberRepository(session).reset_daily_counters()
        log.info("Daily number counters reset", numbers=count)
        return count

    # ========================================================================
    # Stats
    # ========================================================================

    async def get_queue_stats(self) -> dict[str, Any]:
        """Dialable leads, active attempts and available numbers across
        active campaigns, today's attempt counts and the queue metrics."""
        now = self._clock()
        pending_leads = 0
        available_numbers = 0
        async with self._db.session() as session:
            campaigns = await CampaignRepository(session).get_dispatchable()
            leads = LeadRepository(session)
            numbers = OutboundNumberRepository(session)
            for campaign in campaigns:
                pending_leads += await leads.count_dialable(
                    campaign.id, now=now, max_attempts=campaign.max_attempts_per_lead
                )
                available_numbers += await numbers.count_available(
                    campaign.id,
                    now=now,
                    max_daily_calls=self.settings.max_daily_calls_per_number,
                    cooldown_seconds=self.settings.number_cooldown_seconds,
                )
            attempts = CallAttemptRepository(session)
            active_calls = await attempts.count_active()
            today = await attempts.get_status_counts(now)

        return {
            "active_campaigns": len(campaigns),
            "pending_leads": pending_leads,
            "active_calls": active_calls,
            "available_numbers": available_numbers,
            "today": today,
            "metrics": self._metrics.to_dict(),
        }

    async def _publish_stats(self) -> None:
        try:
            stats = await self.get_queue_stats()
        except Exception as e:
            log.warning("Failed to collect queue stats", error=str(e))
            return
        await self._bus.publish(Channel.CAMPAIGN_UPDATES, "queue_stats", stats)

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "is_running": self.is_running,
            "tick_in_progress": self._tick_lock.locked(),
            "config": {
                "interval_seconds": self.settings.interval_seconds,
                "spacing_seconds": self.settings.spacing_seconds,
                "max_daily_calls_per_number": self.settings.max_daily_calls_per_number,
                "number_cooldown_seconds": self.settings.number_cooldown_seconds,
            },
            "metrics": self._metrics.to_dict(),
        }
