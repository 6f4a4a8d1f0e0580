"""Compliance Gate: admission control before every dispatch.

Blocking checks run in a fixed order and stop at the first hit:

1. DNC (internal registry, lead flag, optional external registry)
2. Unexpired prior block for the number
3. Attempt cap over the trailing window
4. Lead-local calling hours (legal floor intersected with jurisdiction rules)

Advisory checks (jurisdiction restrictions, consent, violation history)
only add recommendations and lower the score. Every evaluation writes one
compliance log row. Internal errors fail open with a degraded score.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import pytz
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.config import ComplianceSettings
from campaign_dialer.core.timeutil import Clock, as_utc, utcnow
from campaign_dialer.db.models import CampaignModel, ConsentRecordModel, LeadModel
from campaign_dialer.db.repositories import (
    CallAttemptRepository,
    ComplianceLogRepository,
    ConsentRepository,
    DNCRepository,
)
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger
from campaign_dialer.services.dnc import DNCRegistry
from campaign_dialer.services.jurisdictions import (
    DEFAULT_RULE_SET,
    RESTRICTION_RECOMMENDATIONS,
    RuleSet,
    effective_window,
    infer_region,
    infer_timezone,
    next_allowed_time,
)

log = get_logger(__name__)


# Score deductions per violation type
DEDUCTIONS: dict[str, int] = {
    "dnc": 50,
    "calling_hours": 30,
    "frequency": 25,
    "jurisdiction": 20,
    "violation_history": 15,
    "no_consent": 10,
}
FAIL_OPEN_SCORE = 50


@dataclass
class ComplianceDecision:
    """Result of one admission check."""

    allowed: bool
    reason: str | None = None
    blocked_until: datetime | None = None
    score: int = 100
    violations: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    jurisdiction: str | None = None
    timezone: str | None = None
    check_failed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "score": self.score,
            "violations": self.violations,
            "recommendations": self.recommendations,
            "jurisdiction": self.jurisdiction,
            "timezone": self.timezone,
            "check_failed": self.check_failed,
        }


@dataclass
class _Evaluation:
    """Mutable state while checks run."""

    deductions: list[str] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    reason: str | None = None
    blocked_until: datetime | None = None

    @property
    def blocked(self) -> bool:
        return self.reason is not None

    def block(self, kind: str, reason: str, until: datetime | None) -> None:
        self.deductions.append(kind)
        self.violations.append(reason)
        if not self.blocked:
            self.reason = reason
            self.blocked_until = until

    def advise(self, recommendation: str, deduction: str | None = None) -> None:
        if recommendation not in self.recommendations:
            self.recommendations.append(recommendation)
        if deduction:
            self.deductions.append(deduction)

    @property
    def score(self) -> int:
        return max(0, 100 - sum(DEDUCTIONS[d] for d in self.deductions))


class ComplianceGate:
    """Admission control engine.

    Usage:
        gate = ComplianceGate(database, settings.compliance)
        decision = await gate.check(lead, campaign)
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        database: Database,
        settings: ComplianceSettings | None = None,
        *,
        rules: RuleSet | None = None,
        dnc: DNCRegistry | None = None,
        clock: Clock = utcnow,
    ):
        self._db = database
        self.settings = settings or ComplianceSettings()
        self._rules = rules or DEFAULT_RULE_SET
        self._dnc = dnc or DNCRegistry()
        self._clock = clock

    @property
    def rules(self) -> RuleSet:
        return self._rules

    def use_rules(self, rules: RuleSet) -> None:
        """Swap the jurisdiction table; later checks use the new version."""
        log.info(
            "Jurisdiction rules replaced",
            previous_version=self._rules.version,
            version=rules.version,
        )
        self._rules = rules

    # ========================================================================
    # Admission check
    # ========================================================================

    async def check(
        self,
        lead: LeadModel,
        campaign: CampaignModel,
        *,
        now: datetime | None = None,
    ) -> ComplianceDecision:
        """Decide whether ``lead`` may be called for ``campaign`` now.

        Never raises: evaluation errors produce an allowed decision with a
        degraded score and ``check_failed`` set.
        """
        now = now or self._clock()
        try:
            async with self._db.session() as session:
                decision = await self._evaluate(session, lead, campaign, now)
                await self._record(session, lead, campaign, decision)
            return decision
        except Exception as e:
            log.error(
                "Compliance check failed, allowing call",
                lead_id=str(lead.id),
                campaign_id=str(campaign.id),
                phone=lead.phone_number,
                error=str(e),
                exc_info=True,
            )
            decision = ComplianceDecision(
                allowed=True,
                score=FAIL_OPEN_SCORE,
                violations=[f"System error: {e}"],
                recommendations=["Manual review required"],
                check_failed=True,
            )
            await self._record_failure(lead, campaign, decision, e)
            return decision

    async def _evaluate(
        self,
        session: AsyncSession,
        lead: LeadModel,
        campaign: CampaignModel,
        now: datetime,
    ) -> ComplianceDecision:
        phone = lead.phone_number
        evaluation = _Evaluation()
        _, state = infer_region(phone)
        tz_name = infer_timezone(phone, lead.timezone)

        # 1. DNC
        dnc = await self._dnc.check(session, phone, lead_flagged=lead.dnc_status)
        if dnc.listed:
            evaluation.block(
                "dnc",
                f"Number is on the Do Not Call list ({dnc.source})",
                now + timedelta(days=self.settings.dnc_block_days),
            )
        elif dnc.registry_error:
            evaluation.advise("External DNC registry unavailable, verify manually")

        # 2. Unexpired prior block
        logs = ComplianceLogRepository(session)
        if not evaluation.blocked:
            prior = await logs.get_active_block(phone, now)
            if prior is not None:
                evaluation.block(
                    "violation_history",
                    prior.reason or "Previously blocked",
                    as_utc(prior.blocked_until),
                )

        # 3. Attempt cap
        if not evaluation.blocked:
            since = now - timedelta(days=self.settings.attempt_window_days)
            attempts = await CallAttemptRepository(session).count_since(lead.id, since)
            if attempts >= campaign.max_attempts_per_lead:
                evaluation.block(
                    "frequency",
                    f"Maximum attempts reached ({attempts}/{campaign.max_attempts_per_lead})",
                    now + timedelta(days=self.settings.attempt_block_days),
                )

        # 4. Calling hours
        rule = self._rules.rule_for(state)
        if not evaluation.blocked:
            start, end = effective_window(
                rule, self.settings.floor_start_hour, self.settings.floor_end_hour
            )
            allowed_at = next_allowed_time(
                now, tz_name, start, end, sunday_calling=rule.sunday_calling
            )
            if allowed_at is not None:
                if not rule.sunday_calling and _is_local_sunday(now, tz_name):
                    kind = "jurisdiction"
                    reason = f"Outside permitted calling hours: Sunday calling restricted ({state})"
                else:
                    kind = "calling_hours"
                    reason = f"Outside permitted calling hours {start:02d}:00-{end:02d}:00 ({tz_name})"
                evaluation.block(kind, reason, as_utc(allowed_at))

        # Advisories
        for restriction in rule.special_restrictions:
            recommendation = RESTRICTION_RECOMMENDATIONS.get(restriction)
            if recommendation:
                evaluation.advise(recommendation)

        if not await ConsentRepository(session).has_consent(phone, campaign.id, now):
            evaluation.advise("Obtain explicit consent before calling", "no_consent")

        history_since = now - timedelta(days=self.settings.violation_history_days)
        if "violation_history" not in evaluation.deductions:
            if await logs.count_blocks_since(phone, history_since) > 0:
                evaluation.advise(
                    "Review prior compliance violations for this number", "violation_history"
                )

        return ComplianceDecision(
            allowed=not evaluation.blocked,
            reason=evaluation.reason,
            blocked_until=evaluation.blocked_until,
            score=evaluation.score,
            violations=evaluation.violations,
            recommendations=evaluation.recommendations,
            jurisdiction=state,
            timezone=tz_name,
        )

    async def _record(
        self,
        session: AsyncSession,
        lead: LeadModel,
        campaign: CampaignModel,
        decision: ComplianceDecision,
        reason: str | None = None,
    ) -> None:
        await ComplianceLogRepository(session).append(
            account_id=campaign.account_id,
            campaign_id=campaign.id,
            lead_id=lead.id,
            phone_number=lead.phone_number,
            action="call_check",
            result="allowed" if decision.allowed else "blocked",
            reason=reason or decision.reason,
            blocked_until=decision.blocked_until,
            compliance_score=decision.score,
            violations=decision.violations,
            recommendations=decision.recommendations,
            jurisdiction=decision.jurisdiction,
            rules_version=self._rules.version,
        )

    async def _record_failure(
        self,
        lead: LeadModel,
        campaign: CampaignModel,
        decision: ComplianceDecision,
        error: Exception,
    ) -> None:
        try:
            async with self._db.session() as session:
                await self._record(
                    session, lead, campaign, decision, reason=f"Compliance check failed: {error}"
                )
        except Exception as e:
            log.error(
                "Failed to record compliance check failure",
                lead_id=str(lead.id),
                error=str(e),
            )

    # ========================================================================
    # Registry and consent management
    # ========================================================================

    async def add_to_dnc(
        self,
        phone_number: str,
        *,
        reason: str | None = None,
        source: str = "internal",
        account_id: str | None = None,
    ) -> None:
        """Add a number to the internal DNC list and log the addition."""
        async with self._db.session() as session:
            await DNCRepository(session).add(
                phone_number, reason=reason, source=source, account_id=account_id
            )
            await ComplianceLogRepository(session).append(
                account_id=account_id,
                phone_number=phone_number,
                action="dnc_addition",
                result="blocked",
                reason=f"Added to Do Not Call list: {reason or 'requested'}",
                blocked_until=self._clock() + timedelta(days=self.settings.dnc_block_days),
                compliance_score=0,
                rules_version=self._rules.version,
            )
        log.info("Number added to DNC list", phone=phone_number, source=source)

    async def remove_from_dnc(self, phone_number: str, *, account_id: str | None = None) -> bool:
        async with self._db.session() as session:
            removed = await DNCRepository(session).remove(phone_number)
            if removed:
                await ComplianceLogRepository(session).append(
                    account_id=account_id,
                    phone_number=phone_number,
                    action="dnc_removal",
                    result="allowed",
                    reason="Removed from Do Not Call list",
                    rules_version=self._rules.version,
                )
        log.info("Number removed from DNC list", phone=phone_number, removed=removed)
        return removed

    async def record_consent(
        self,
        phone_number: str,
        *,
        campaign_id: UUID | str | None = None,
        consent_type: str = "express",
        source: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        async with self._db.session() as session:
            await ConsentRepository(session).create(
                ConsentRecordModel(
                    phone_number=phone_number,
                    campaign_id=UUID(str(campaign_id)) if campaign_id else None,
                    consent_type=consent_type,
                    source=source,
                    expires_at=expires_at,
                )
            )
        log.info("Consent recorded", phone=phone_number, consent_type=consent_type)

    async def get_dashboard(self, account_id: str | None = None) -> dict[str, Any]:
        """30-day compliance totals and the last week's violations."""
        now = self._clock()
        async with self._db.session() as session:
            logs = ComplianceLogRepository(session)
            summary = await logs.get_summary(now - timedelta(days=30), account_id)
            violations = await logs.get_recent_violations(
                now - timedelta(days=7), account_id=account_id, limit=10
            )
        return {
            "summary": summary,
            "recent_violations": [v.to_dict() for v in violations],
            "rules_version": self._rules.version,
        }

    async def close(self) -> None:
        await self._dnc.close()


def _is_local_sunday(now: datetime, tz_name: str) -> bool:
    try:
        tz = pytz.timezone(tz_name)
    except pytz.exceptions.UnknownTimeZoneError:
        return False
    return now.astimezone(tz).weekday() == 6
