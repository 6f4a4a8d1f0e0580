"""Job Processor.

Durable, retrying task queue backed by the ``jobs`` table. A bounded pool
of worker tasks claims due jobs (highest priority first) and runs the
handler registered for the job type. Failed runs are rescheduled with the
job's backoff until its attempts are spent.

Job types:
- make-call: compliance check + dispatch for one lead
- analyze-call: external transcript scoring after a completed call
- retry-call: re-enqueue make-call at elevated priority
- update-call-status: apply a provider status to an attempt
- process-callback: put a lead on the callback schedule
- cleanup-stale-calls: reconcile attempts stuck in progress
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID

from campaign_dialer.config import AnalysisSettings, DispatchSettings, JobSettings
from campaign_dialer.core.events import Channel, EventBus
from campaign_dialer.core.exceptions import (
    CallNotFoundError,
    JobError,
    NotFoundError,
    ProviderError,
    UnknownJobError,
    ValidationError,
)
from campaign_dialer.core.retry import JobPolicy, is_transient_error
from campaign_dialer.core.timeutil import Clock, as_utc, utcnow
from campaign_dialer.db.models import (
    TERMINAL_STATUSES,
    CallAttemptModel,
    CallStatus,
    JobModel,
    LeadModel,
)
from campaign_dialer.db.repositories import (
    CallAttemptRepository,
    CampaignRepository,
    JobRepository,
    LeadRepository,
    OutboundNumberRepository,
)
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger, log_context
from campaign_dialer.services.alerts import raise_alert
from campaign_dialer.services.analysis import AnalysisClient, AnalysisRequest, MockAnalysisClient
from campaign_dialer.services.compliance_gate import ComplianceGate
from campaign_dialer.services.dispatcher import CallDispatcher
from campaign_dialer.telephony.base import TelephonyProvider, map_provider_status

log = get_logger(__name__)

JobHandler = Callable[["JobContext"], Awaitable["dict[str, Any] | None"]]

RETRY_PRIORITY = 5
CLEANUP_REASON = "Call cleanup - status unavailable"
FINISHED_JOB_RETENTION = timedelta(hours=24)


@dataclass
class ProcessorMetrics:
    """Job counters since the processor was created."""

    started_at: datetime | None = None
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "processed": self.processed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "last_error": self.last_error,
        }


class JobContext:
    """Handle passed to job handlers for input and progress reporting."""

    def __init__(self, database: Database, job: JobModel) -> None:
        self._db = database
        self.job = job
        self.payload: dict[str, Any] = dict(job.payload or {})
        self.progress_value = 0.0

    @property
    def attempt(self) -> int:
        return self.job.attempts_made

    def require(self, key: str) -> Any:
        """Payload field, failing the job without retry when absent."""
        value = self.payload.get(key)
        if value in (None, ""):
            raise JobError(f"Job payload is missing '{key}'", retryable=False)
        return value

    async def progress(self, value: float) -> None:
        self.progress_value = value
        async with self._db.session() as session:
            await JobRepository(session).set_progress(self.job.id, value)


class JobProcessor:
    """Worker pool over the durable job queue.

    Usage:
        processor = JobProcessor(database, bus, dispatcher, gate, provider)
        await processor.enqueue("make-call", {"lead_id": ..., "campaign_id": ...})
        await processor.start()
        ...
        await processor.stop()
    """

    def __init__(
        self,
        database: Database,
        bus: EventBus,
        dispatcher: CallDispatcher,
        gate: ComplianceGate,
        provider: TelephonyProvider,
        analysis: AnalysisClient | None = None,
        settings: JobSettings | None = None,
        *,
        analysis_settings: AnalysisSettings | None = None,
        dispatch_settings: DispatchSettings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._db = database
        self._bus = bus
        self._dispatcher = dispatcher
        self._gate = gate
        self._provider = provider
        self._analysis = analysis or MockAnalysisClient()
        self.settings = settings or JobSettings()
        self.analysis_settings = analysis_settings or AnalysisSettings()
        self.dispatch_settings = dispatch_settings or DispatchSettings()
        self._clock = clock

        self._handlers: dict[str, JobHandler] = {
            "make-call": self._make_call,
            "analyze-call": self._analyze_call,
            "retry-call": self._retry_call,
            "update-call-status": self._update_call_status,
            "process-callback": self._process_callback,
            "cleanup-stale-calls": self._cleanup_stale_calls,
        }

        self._running = False
        self._stop_event = asyncio.Event()
        self._workers: list[asyncio.Task] = []
        self._scheduler_task: asyncio.Task | None = None
        self._metrics = ProcessorMetrics()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def metrics(self) -> ProcessorMetrics:
        return self._metrics

    def register(self, name: str, handler: JobHandler) -> None:
        """Register or replace the handler for a job type."""
        self._handlers[name] = handler

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float | None = None,
        priority: int | None = None,
    ) -> JobModel:
        """Add a job using its type's retry policy.

        Raises:
            ValidationError: no handler for ``name``
        """
        if name not in self._handlers:
            raise ValidationError(f"Unknown job type: {name}", details={"name": name})

        async with self._db.session() as session:
            job = await JobRepository(session).enqueue(
                name,
                payload,
                now=self._clock(),
                delay_seconds=delay_seconds,
                priority=priority,
            )
        log.info("Job enqueued", job_id=str(job.id), name=name, priority=job.priority)
        return job

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start the worker pool and the cleanup scheduler."""
        if self._running:
            log.warning("Job processor already running")
            return

        self._running = True
        self._stop_event.clear()
        self._metrics.started_at = self._clock()
        self._workers = [
            asyncio.create_task(self._worker(index))
            for index in range(max(1, self.settings.concurrency))
        ]
        self._scheduler_task = asyncio.create_task(self._cleanup_scheduler())
        log.info("Job processor started", concurrency=len(self._workers))

    async def stop(self) -> None:
        """Stop claiming jobs. Jobs already running finish first."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None

        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        log.info("Job processor stopped")

    async def _worker(self, index: int) -> None:
        while not self._stop_event.is_set():
            try:
                job = await self.process_next()
            except Exception as e:
                log.error("Job worker error", worker=index, error=str(e), exc_info=True)
                job = None

            if job is None:
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.settings.poll_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass

    async def _cleanup_scheduler(self) -> None:
        """Enqueue the stale-call sweep on a fixed interval."""
        while self._running:
            try:
                await self.schedule_cleanup()
            except Exception as e:
                log.error("Cleanup scheduling failed", error=str(e))
            await asyncio.sleep(self.settings.cleanup_interval_seconds)

    async def schedule_cleanup(self) -> JobModel | None:
        """Enqueue cleanup-stale-calls unless one is already queued.

        Also drops finished jobs older than a day.
        """
        now = self._clock()
        async with self._db.session() as session:
            jobs = JobRepository(session)
            purged = await jobs.purge_finished(now - FINISHED_JOB_RETENTION)
            if await jobs.has_pending("cleanup-stale-calls"):
                return None
        if purged:
            log.info("Finished jobs purged", count=purged)
        return await self.enqueue(
            "cleanup-stale-calls", {"older_than_hours": self.settings.stale_call_hours}
        )

    # ========================================================================
    # Execution
    # ========================================================================

    async def process_next(self) -> JobModel | None:
        """Claim and run one due job.

        Returns:
            The job that ran, or None when nothing was due
        """
        async with self._db.session() as session:
            job = await JobRepository(session).claim_next(self._clock())
        if job is None:
            return None
        await self._execute(job)
        return job

    async def run_until_idle(self, limit: int = 100) -> int:
        """Run due jobs one after another until none is left. Returns jobs run."""
        count = 0
        while count < limit and await self.process_next() is not None:
            count += 1
        return count

    async def _execute(self, job: JobModel) -> None:
        with log_context(job_id=str(job.id), job_name=job.name):
            await self._run(job)

    async def _run(self, job: JobModel) -> None:
        self._metrics.processed += 1
        log.info("Job started", attempt=job.attempts_made, max_attempts=job.max_attempts)

        handler = self._handlers.get(job.name)
        context = JobContext(self._db, job)
        try:
            if handler is None:
                raise UnknownJobError(job.name)
            result = await handler(context)
        except Exception as e:
            await self._handle_failure(job, e)
            return

        async with self._db.session() as session:
            await JobRepository(session).complete(job.id, result, now=self._clock())
        self._metrics.completed += 1
        log.info("Job completed")

    async def _handle_failure(self, job: JobModel, error: Exception) -> None:
        now = self._clock()
        message = str(error)
        self._metrics.last_error = message

        if _is_retryable(error) and job.attempts_made < job.max_attempts:
            policy = JobPolicy(
                max_attempts=job.max_attempts,
                backoff_seconds=job.backoff_seconds,
                exponential=job.exponential_backoff,
            )
            delay = policy.backoff(job.attempts_made)
            async with self._db.session() as session:
                await JobRepository(session).reschedule(
                    job.id, run_at=now + timedelta(seconds=delay), error=message
                )
            self._metrics.retried += 1
            log.warning(
                "Job failed, retrying",
                job_id=str(job.id),
                name=job.name,
                attempt=job.attempts_made,
                delay_seconds=delay,
                error=message,
            )
            return

        async with self._db.session() as session:
            await JobRepository(session).fail(job.id, error=message, now=now)
        self._metrics.failed += 1
        log.error(
            "Job failed",
            job_id=str(job.id),
            name=job.name,
            attempts=job.attempts_made,
            payload=job.payload,
            error=message,
        )

        if job.name == "make-call":
            await self._on_make_call_exhausted(job, error)

    async def _on_make_call_exhausted(self, job: JobModel, error: Exception) -> None:
        payload = job.payload or {}
        if is_transient_error(error):
            await self.enqueue(
                "retry-call",
                {
                    "lead_id": payload.get("lead_id"),
                    "campaign_id": payload.get("campaign_id"),
                    "retry_reason": str(error),
                },
                delay_seconds=self.settings.transient_retry_delay_seconds,
            )
            log.info(
                "Campaign retry scheduled",
                lead_id=payload.get("lead_id"),
                delay_seconds=self.settings.transient_retry_delay_seconds,
            )

        try:
            await raise_alert(
                self._db,
                self._bus,
                type="call_dispatch_failed",
                severity="medium",
                title="Outbound call could not be placed",
                message=str(error),
                account_id=payload.get("account_id"),
                source="job_processor",
                data={"job_id": str(job.id), **payload},
            )
        except Exception as e:
            log.error("Failed to raise dispatch alert", job_id=str(job.id), error=str(e))

    async def get_stats(self) -> dict[str, Any]:
        async with self._db.session() as session:
            counts = await JobRepository(session).get_stats(self._clock())
        return {
            **counts,
            "workers": len(self._workers),
            "running": self._running,
            "metrics": self._metrics.to_dict(),
        }

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _make_call(self, ctx: JobContext) -> dict[str, Any]:
        lead_id = ctx.require("lead_id")
        campaign_id = ctx.require("campaign_id")

        await ctx.progress(0.1)
        async with self._db.session() as session:
            lead = await LeadRepository(session).get_or_raise(lead_id)
            campaign = await CampaignRepository(session).get_or_raise(campaign_id)

        await ctx.progress(0.2)
        decision = await self._gate.check(lead, campaign)
        if not decision.allowed:
            log.info("make-call blocked by compliance", lead_id=str(lead.id), reason=decision.reason)
            return {"status": "blocked", **decision.to_dict()}

        await ctx.progress(0.4)
        number_id = ctx.payload.get("number_id") or await self._pick_number(campaign.id)
        if number_id is None:
            raise JobError(f"No available outbound number for campaign {campaign.id}")

        result = await self._dispatcher.dispatch(lead.id, campaign.id, number_id)
        await ctx.progress(0.6)

        if result.status == "failed":
            error = ProviderError(result.reason or "Dispatch failed", transient=result.transient)
            if not result.transient:
                raise JobError(f"Call rejected: {result.reason}", retryable=False, cause=error)
            raise error

        await ctx.progress(0.8)
        return result.to_dict()

    async def _pick_number(self, campaign_id: UUID) -> UUID | None:
        async with self._db.session() as session:
            numbers = await OutboundNumberRepository(session).get_available(
                campaign_id,
                now=self._clock(),
                max_daily_calls=self.dispatch_settings.max_daily_calls_per_number,
                cooldown_seconds=self.dispatch_settings.number_cooldown_seconds,
            )
        return numbers[0].id if numbers else None

    async def _analyze_call(self, ctx: JobContext) -> dict[str, Any]:
        attempt_id = ctx.require("attempt_id")

        await ctx.progress(0.1)
        async with self._db.session() as session:
            attempts = CallAttemptRepository(session)
            attempt = await attempts.get(attempt_id)
            if attempt is None:
                raise JobError(f"Call attempt {attempt_id} not found", retryable=False)
            transcript = attempt.transcript
            if not transcript:
                chunks = await attempts.get_transcript_chunks(attempt.id)
                transcript = "\n".join(f"{c.role}: {c.text}" for c in chunks)

        if not transcript:
            return {"status": "skipped", "reason": "no_transcript"}

        await ctx.progress(0.2)
        result = await self._analysis.analyze(
            AnalysisRequest(
                call_id=attempt.provider_call_id or str(attempt.id),
                transcript=transcript,
                duration=attempt.duration_seconds,
                lead_id=str(attempt.lead_id),
                campaign_id=str(attempt.campaign_id),
            )
        )

        await ctx.progress(0.6)
        qualified = result.qualification_score >= self.analysis_settings.qualification_threshold
        async with self._db.session() as session:
            await CallAttemptRepository(session).update_where(
                attempt.id,
                [],
                qualification_score=result.qualification_score,
                recommended_action=result.recommended_action,
                analyzed_at=self._clock(),
            )
            lead_values: dict[str, Any] = {"qualification_score": result.qualification_score}
            if qualified:
                lead_values["status"] = "qualified"
            await LeadRepository(session).update_where(attempt.lead_id, [], **lead_values)

        await ctx.progress(0.8)
        log.info(
            "Call analyzed",
            attempt_id=str(attempt.id),
            score=result.qualification_score,
            qualified=qualified,
        )
        await self._bus.publish(
            Channel.CALL_EVENTS,
            "call_analyzed",
            {
                "attempt_id": str(attempt.id),
                "lead_id": str(attempt.lead_id),
                "qualification_score": result.qualification_score,
                "recommended_action": result.recommended_action,
                "qualified": qualified,
            },
            account_id=attempt.account_id,
            campaign_id=attempt.campaign_id,
            call_id=attempt.id,
        )
        return {
            "attempt_id": str(attempt.id),
            "qualification_score": result.qualification_score,
            "recommended_action": result.recommended_action,
            "qualified": qualified,
        }

    async def _retry_call(self, ctx: JobContext) -> dict[str, Any]:
        lead_id = ctx.require("lead_id")
        campaign_id = ctx.require("campaign_id")

        await ctx.progress(0.2)
        async with self._db.session() as session:
            lead = await LeadRepository(session).get_or_raise(lead_id)
            campaign = await CampaignRepository(session).get_or_raise(campaign_id)

        await ctx.progress(0.6)
        job = await self.enqueue(
            "make-call",
            {
                "lead_id": str(lead.id),
                "campaign_id": str(campaign.id),
                "account_id": campaign.account_id,
                "retry_reason": ctx.payload.get("retry_reason"),
            },
            priority=RETRY_PRIORITY,
        )
        log.info("Retry queued", lead_id=str(lead.id), reason=ctx.payload.get("retry_reason"))
        return {"lead_id": str(lead.id), "new_attempt_queued": True, "job_id": str(job.id)}

    async def _update_call_status(self, ctx: JobContext) -> dict[str, Any]:
        call_id = ctx.payload.get("call_id")
        attempt_id = ctx.payload.get("attempt_id")
        if not call_id and not attempt_id:
            raise JobError("Job payload needs 'call_id' or 'attempt_id'", retryable=False)

        await ctx.progress(0.2)
        async with self._db.session() as session:
            attempts = CallAttemptRepository(session)
            attempt = (
                await attempts.get_by_provider_call_id(call_id)
                if call_id
                else await attempts.get(attempt_id)
            )
        if attempt is None:
            raise JobError(f"Call attempt for {call_id or attempt_id} not found", retryable=False)

        status = ctx.payload.get("status")
        details: dict[str, Any] = {
            "duration_seconds": ctx.payload.get("duration"),
            "cost": ctx.payload.get("cost"),
            "ended_reason": ctx.payload.get("ended_reason"),
        }
        if status:
            mapped = status if status in STATUS_VALUES else map_provider_status(
                status, details["ended_reason"]
            ).value
        else:
            if not attempt.provider_call_id:
                raise JobError("Attempt has no provider call id to query", retryable=False)
            call = await self._provider.get_call(attempt.provider_call_id)
            mapped = call.mapped_status.value
            details.update(
                duration_seconds=call.duration_seconds,
                cost=call.cost,
                ended_reason=call.ended_reason,
                ended_at=call.ended_at,
            )

        await ctx.progress(0.6)
        changed = await self._apply_status(attempt, mapped, **details)
        return {"attempt_id": str(attempt.id), "status": mapped, "updated": changed}

    async def _apply_status(
        self,
        attempt: CallAttemptModel,
        status: str,
        *,
        error_message: str | None = None,
        **details: Any,
    ) -> bool:
        """Advance or close an attempt from a polled provider status.

        Terminal details are recorded once; campaign totals follow them.
        """
        now = self._clock()
        async with self._db.session() as session:
            attempts = CallAttemptRepository(session)
            if status not in TERMINAL_STATUSES:
                return await attempts.advance(attempt.id, status)

            duration = int(details.get("duration_seconds") or 0)
            cost = float(details.get("cost") or 0.0)
            recorded = await attempts.record_outcome(
                attempt.id,
                ended_reason=details.get("ended_reason") or f"status:{status}",
                ended_at=as_utc(details.get("ended_at")) or now,
                duration_seconds=duration,
                cost=cost,
            )
            if recorded:
                await CampaignRepository(session).add_call_totals(
                    attempt.campaign_id, duration_seconds=duration, cost=cost
                )

            close_values: dict[str, Any] = {}
            if error_message:
                close_values["error_message"] = error_message
            closed = await attempts.close(attempt.id, status, **close_values)
            if closed:
                await LeadRepository(session).update_where(
                    attempt.lead_id,
                    [LeadModel.status == "calling"],
                    status="contacted",
                    last_attempt_at=now,
                )

        if closed:
            await self._bus.publish(
                Channel.CALL_EVENTS,
                "call_status_updated",
                {
                    "attempt_id": str(attempt.id),
                    "lead_id": str(attempt.lead_id),
                    "status": status,
                    "error": error_message,
                },
                account_id=attempt.account_id,
                campaign_id=attempt.campaign_id,
                call_id=attempt.id,
            )
        return closed

    async def _process_callback(self, ctx: JobContext) -> dict[str, Any]:
        lead_id = ctx.require("lead_id")
        callback_time = ctx.require("callback_time")
        try:
            callback_at = as_utc(datetime.fromisoformat(str(callback_time).replace("Z", "+00:00")))
        except ValueError as e:
            raise JobError(f"Invalid callback_time: {callback_time}", retryable=False) from e

        await ctx.progress(0.2)
        async with self._db.session() as session:
            leads = LeadRepository(session)
            lead = await leads.get_or_raise(lead_id)
            await leads.update_where(
                lead.id, [], status="callback", next_call_scheduled_at=callback_at
            )

        await ctx.progress(0.6)
        log.info("Callback scheduled", lead_id=str(lead.id), callback_at=callback_at.isoformat())
        return {
            "lead_id": str(lead.id),
            "callback_time": callback_at.isoformat(),
            "reason": ctx.payload.get("reason"),
            "scheduled": True,
        }

    async def _cleanup_stale_calls(self, ctx: JobContext) -> dict[str, Any]:
        hours = float(ctx.payload.get("older_than_hours") or self.settings.stale_call_hours)
        cutoff = self._clock() - timedelta(hours=hours)

        await ctx.progress(0.2)
        async with self._db.session() as session:
            stale = list(await CallAttemptRepository(session).get_stale(cutoff))

        await ctx.progress(0.5)
        reconciled = 0
        force_closed = 0
        for attempt in stale:
            try:
                if not attempt.provider_call_id:
                    raise CallNotFoundError("Attempt was never acknowledged by the provider")
                call = await self._provider.get_call(attempt.provider_call_id)
            except ProviderError as e:
                log.warning(
                    "Stale call status unavailable, force-closing",
                    attempt_id=str(attempt.id),
                    provider_call_id=attempt.provider_call_id,
                    error=str(e),
                )
                if await self._apply_status(
                    attempt,
                    CallStatus.FAILED.value,
                    ended_reason="cleanup",
                    error_message=CLEANUP_REASON,
                ):
                    force_closed += 1
                continue

            if await self._apply_status(
                attempt,
                call.mapped_status.value,
                duration_seconds=call.duration_seconds,
                cost=call.cost,
                ended_reason=call.ended_reason,
                ended_at=call.ended_at,
            ):
                reconciled += 1

        await ctx.progress(0.9)
        log.info(
            "Stale call cleanup finished",
            stale_calls=len(stale),
            reconciled=reconciled,
            force_closed=force_closed,
        )
        return {"stale_calls": len(stale), "reconciled": reconciled, "force_closed": force_closed}


STATUS_VALUES = frozenset(status.value for status in CallStatus)


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, JobError):
        return error.retryable
    # Missing lead/campaign/number will not appear on a second run
    return not isinstance(error, NotFoundError)
