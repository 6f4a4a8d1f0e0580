"""Tests for the compliance gate."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from campaign_dialer.db.models import CallAttemptModel
from campaign_dialer.db.repositories import CallAttemptRepository, ComplianceLogRepository
from campaign_dialer.services.compliance_gate import ComplianceGate
from campaign_dialer.services.dnc import DNCRegistry
from campaign_dialer.services.jurisdictions import JurisdictionRule, RuleSet


class BrokenRegistry(DNCRegistry):
    async def check(self, session, phone, *, lead_flagged=False):
        raise RuntimeError("registry exploded")


# ============================================================================
# Calling hours
# ============================================================================


class TestCallingHours:
    """Lead-local calling window checks."""

    @pytest.mark.asyncio
    async def test_allowed_inside_window(self, gate, lead, campaign):
        """Test a New York lead at 11:00 local is allowed."""
        decision = await gate.check(lead, campaign)

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.blocked_until is None
        assert decision.jurisdiction == "NY"
        assert decision.timezone == "America/New_York"

    @pytest.mark.asyncio
    async def test_too_early_blocks_until_same_day_start(self, gate, lead, campaign, clock):
        """Test 07:00 local is blocked until 08:00 local the same day."""
        clock.now = datetime(2024, 3, 13, 11, 0, tzinfo=timezone.utc)  # 07:00 EDT

        decision = await gate.check(lead, campaign)

        assert decision.allowed is False
        assert decision.reason.startswith("Outside permitted calling hours")
        assert decision.blocked_until == datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_too_late_blocks_until_next_day(self, gate, lead, campaign, clock):
        """Test 21:30 local moves to 08:00 local the next day."""
        clock.now = datetime(2024, 3, 14, 1, 30, tzinfo=timezone.utc)  # 21:30 EDT on the 13th

        decision = await gate.check(lead, campaign)

        assert decision.allowed is False
        assert decision.blocked_until == datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_sunday_restricted_jurisdiction(self, gate, lead, campaign, clock):
        """Test New York blocks Sunday calls until Monday morning."""
        clock.now = datetime(2024, 3, 17, 15, 0, tzinfo=timezone.utc)  # Sunday 11:00 EDT

        decision = await gate.check(lead, campaign)

        assert decision.allowed is False
        assert "Sunday" in decision.reason
        assert decision.blocked_until == datetime(2024, 3, 18, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_sunday_allowed_jurisdiction(self, gate, make_lead, campaign, clock):
        """Test Texas permits Sunday calls inside the window."""
        clock.now = datetime(2024, 3, 17, 16, 0, tzinfo=timezone.utc)  # Sunday 11:00 CDT
        texan = await make_lead(campaign, phone_number="+15125550123")

        decision = await gate.check(texan, campaign)

        assert decision.allowed is True
        assert decision.jurisdiction == "TX"
        assert decision.timezone == "America/Chicago"

    @pytest.mark.asyncio
    async def test_explicit_lead_timezone_wins(self, gate, make_lead, campaign, clock):
        """Test a lead's own timezone overrides the area code."""
        clock.now = datetime(2024, 3, 13, 13, 0, tzinfo=timezone.utc)  # 09:00 EDT, 06:00 PDT
        lead = await make_lead(campaign, timezone="America/Los_Angeles")

        decision = await gate.check(lead, campaign)

        assert decision.allowed is False
        assert decision.timezone == "America/Los_Angeles"
        assert decision.blocked_until == datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)


# ============================================================================
# Blocking checks
# ============================================================================


class TestBlockingChecks:
    """DNC, prior blocks and attempt caps."""

    @pytest.mark.asyncio
    async def test_internal_dnc_blocks(self, gate, lead, campaign, clock):
        """Test a number on the internal DNC list is blocked for a year."""
        await gate.add_to_dnc(lead.phone_number, reason="asked not to call")

        decision = await gate.check(lead, campaign)

        assert decision.allowed is False
        assert "Do Not Call" in decision.reason
        assert decision.blocked_until == datetime(2025, 3, 13, 15, 0, tzinfo=timezone.utc)
        assert decision.score < 100

    @pytest.mark.asyncio
    async def test_lead_dnc_flag_blocks(self, gate, make_lead, campaign):
        """Test the lead's own DNC flag blocks."""
        flagged = await make_lead(campaign, phone_number="+12125550999", dnc_status=True)

        decision = await gate.check(flagged, campaign)

        assert decision.allowed is False
        assert "Lead DNC flag" in decision.reason

    @pytest.mark.asyncio
    async def test_dnc_removal_unblocks(self, gate, lead, campaign):
        """Test removing a number from the DNC list allows it again."""
        await gate.add_to_dnc(lead.phone_number)
        assert await gate.remove_from_dnc(lead.phone_number) is True

        decision = await gate.check(lead, campaign)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_dnc_removal_lifts_recorded_block(self, gate, lead, campaign):
        """Test a DNC block recorded by an earlier check does not outlive the removal."""
        await gate.add_to_dnc(lead.phone_number)
        blocked = await gate.check(lead, campaign)
        assert blocked.allowed is False

        assert await gate.remove_from_dnc(lead.phone_number) is True
        decision = await gate.check(lead, campaign)

        assert decision.allowed is True
        assert decision.reason is None

    @pytest.mark.asyncio
    async def test_prior_block_respected_until_expiry(self, gate, lead, campaign, clock):
        """Test an unexpired block keeps the number blocked until blocked_until."""
        clock.now = datetime(2024, 3, 13, 11, 0, tzinfo=timezone.utc)  # 07:00 EDT
        first = await gate.check(lead, campaign)
        assert first.allowed is False

        clock.advance(minutes=30)
        second = await gate.check(lead, campaign)
        assert second.allowed is False
        assert second.blocked_until == first.blocked_until

        clock.now = datetime(2024, 3, 13, 13, 0, tzinfo=timezone.utc)  # 09:00 EDT
        third = await gate.check(lead, campaign)
        assert third.allowed is True
        assert "Review prior compliance violations for this number" in third.recommendations

    @pytest.mark.asyncio
    async def test_attempt_cap_blocks(self, database, gate, make_campaign, make_lead):
        """Test a lead at the campaign's attempt cap is blocked."""
        campaign = await make_campaign(max_attempts_per_lead=1)
        lead = await make_lead(campaign)
        async with database.session() as session:
            await CallAttemptRepository(session).create(
                CallAttemptModel(
                    account_id=campaign.account_id,
                    lead_id=lead.id,
                    campaign_id=campaign.id,
                    status="completed",
                )
            )

        decision = await gate.check(lead, campaign)

        assert decision.allowed is False
        assert decision.reason == "Maximum attempts reached (1/1)"


# ============================================================================
# Advisories, logging and failure handling
# ============================================================================


class TestAdvisories:
    """Score deductions and recommendations."""

    @pytest.mark.asyncio
    async def test_missing_consent_lowers_score(self, gate, lead, campaign):
        """Test advisories deduct score without blocking."""
        decision = await gate.check(lead, campaign)

        assert decision.allowed is True
        assert decision.score == 90
        assert "Obtain explicit consent before calling" in decision.recommendations
        assert "Obtain written consent documentation" in decision.recommendations

    @pytest.mark.asyncio
    async def test_recorded_consent_restores_score(self, gate, lead, campaign):
        """Test campaign consent removes the consent deduction."""
        await gate.record_consent(lead.phone_number, campaign_id=campaign.id, source="web_form")

        decision = await gate.check(lead, campaign)

        assert decision.score == 100
        assert "Obtain explicit consent before calling" not in decision.recommendations

    @pytest.mark.asyncio
    async def test_every_check_is_logged(self, database, gate, lead, campaign, clock):
        """Test one compliance log row per evaluation, allowed or blocked."""
        await gate.check(lead, campaign)
        clock.now = datetime(2024, 3, 13, 11, 0, tzinfo=timezone.utc)
        await gate.check(lead, campaign)

        async with database.session() as session:
            logs = ComplianceLogRepository(session)
            total = await logs.count()
            summary = await logs.get_summary(datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert total == 2
        assert summary["total_checks"] == 2
        assert summary["blocked_calls"] == 1

    @pytest.mark.asyncio
    async def test_fails_open_on_internal_error(self, database, lead, campaign, clock):
        """Test an evaluation error allows the call with a degraded score."""
        gate = ComplianceGate(database, dnc=BrokenRegistry(), clock=clock)

        decision = await gate.check(lead, campaign)

        assert decision.allowed is True
        assert decision.check_failed is True
        assert decision.score == 50
        assert decision.recommendations == ["Manual review required"]

        async with database.session() as session:
            assert await ComplianceLogRepository(session).count() == 1

    @pytest.mark.asyncio
    async def test_rules_can_be_replaced(self, gate, lead, campaign, clock):
        """Test swapping the rule table changes later decisions."""
        clock.now = datetime(2024, 3, 17, 15, 0, tzinfo=timezone.utc)  # Sunday
        gate.use_rules(
            RuleSet(version="test-2", rules={"NY": JurisdictionRule(sunday_calling=True)})
        )

        decision = await gate.check(lead, campaign)

        assert decision.allowed is True
        assert gate.rules.version == "test-2"

    @pytest.mark.asyncio
    async def test_dashboard(self, gate, lead, campaign, clock):
        """Test the dashboard reports totals and recent violations."""
        clock.now = datetime(2024, 3, 13, 11, 0, tzinfo=timezone.utc)
        await gate.check(lead, campaign)

        dashboard = await gate.get_dashboard(campaign.account_id)

        assert dashboard["summary"]["blocked_calls"] == 1
        assert len(dashboard["recent_violations"]) == 1
        assert dashboard["rules_version"] == gate.rules.version
