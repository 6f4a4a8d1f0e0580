"""Tests for core utilities: event bus, retry policies, exceptions, logging and tokens."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import structlog

from campaign_dialer.core.events import Channel, EventBus
from campaign_dialer.core.exceptions import (
    AuthenticationError,
    JobError,
    LeadNotFoundError,
    ProviderError,
)
from campaign_dialer.core.retry import (
    JobPolicy,
    RetryConfig,
    get_job_policy,
    is_transient_error,
    retry_async,
)
from campaign_dialer.core.security import (
    INSECURE_DEV_SECRET,
    Identity,
    bearer_token,
    create_access_token,
    decode_identity,
    resolve_secret,
)
from campaign_dialer.log import log_context, setup_logging
from conftest import ACCOUNT_ID, JWT_SECRET


# ============================================================================
# Event bus
# ============================================================================


class TestEventBus:
    """Publish/subscribe with bounded queues."""

    @pytest.mark.asyncio
    async def test_channel_filtering(self):
        """Test subscribers only receive their channels."""
        bus = EventBus()
        calls = bus.subscribe(Channel.CALL_EVENTS)
        everything = bus.subscribe()

        await bus.publish(Channel.CALL_EVENTS, "call_started", {"id": 1}, call_id="c-1")
        await bus.publish(Channel.SYSTEM_ALERTS, "system_alert", {"id": 2})

        assert calls.get_nowait().type == "call_started"
        with pytest.raises(asyncio.QueueEmpty):
            calls.get_nowait()
        assert [everything.get_nowait().type for _ in range(2)] == ["call_started", "system_alert"]

    @pytest.mark.asyncio
    async def test_scope_normalized_to_strings(self):
        """Test scope ids are carried as strings."""
        bus = EventBus()
        subscription = bus.subscribe(Channel.CAMPAIGN_UPDATES)

        event = await bus.publish(Channel.CAMPAIGN_UPDATES, "queue_paused", campaign_id=42)

        assert event.campaign_id == "42"
        assert subscription.get_nowait().to_dict()["channel"] == "campaign:updates"

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest(self):
        """Test a slow subscriber loses its oldest events, never blocking the publisher."""
        bus = EventBus(queue_size=2)
        subscription = bus.subscribe(Channel.CALL_EVENTS)

        for index in range(3):
            await bus.publish(Channel.CALL_EVENTS, f"event-{index}")

        assert subscription.dropped == 1
        assert [subscription.get_nowait().type for _ in range(2)] == ["event-1", "event-2"]
        assert bus.get_stats() == {"subscribers": 1, "published": 3, "dropped": 1}

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """Test unsubscribed queues receive nothing."""
        bus = EventBus()
        subscription = bus.subscribe(Channel.CALL_EVENTS)
        bus.unsubscribe(subscription)

        await bus.publish(Channel.CALL_EVENTS, "call_started")

        assert subscription.queue.empty()


# ============================================================================
# Retry
# ============================================================================


class TestRetry:
    """Backoff and transient classification."""

    def test_job_policy_backoff(self):
        """Test exponential and fixed job backoff."""
        exponential = JobPolicy(max_attempts=3, backoff_seconds=5.0)
        fixed = JobPolicy(max_attempts=3, backoff_seconds=5.0, exponential=False)

        assert [exponential.backoff(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]
        assert [fixed.backoff(n) for n in (1, 2, 3)] == [5.0, 5.0, 5.0]

    def test_registered_policies(self):
        """Test per-type policies and the default."""
        assert get_job_policy("make-call").max_attempts == 2
        assert get_job_policy("analyze-call").backoff_seconds == 5.0
        assert get_job_policy("cleanup-stale-calls").initial_delay_seconds == 5.0
        assert get_job_policy("unregistered") == JobPolicy()

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ProviderError("Carrier said no", transient=True), True),
            (ProviderError("Invalid phone number"), False),
            (RuntimeError("Connection timed out"), True),
            (RuntimeError("Network unreachable"), True),
            ("Rate limit exceeded", True),
            (ValueError("bad input"), False),
            (None, False),
        ],
    )
    def test_is_transient_error(self, error, expected):
        """Test transient classification by flag and message."""
        assert is_transient_error(error) is expected

    def test_delay_capped(self):
        """Test calculated delays respect max_delay."""
        config = RetryConfig(base_delay=10.0, max_delay=15.0, jitter=0.0)

        assert config.calculate_delay(1) == 10.0
        assert config.calculate_delay(4) == 15.0

    @pytest.mark.asyncio
    async def test_retry_async_succeeds_after_failures(self):
        """Test retry_async retries until the call succeeds."""
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("temporary")
            return "ok"

        result = await retry_async(flaky, config=RetryConfig(max_attempts=3, base_delay=0.0, jitter=0.0))

        assert result == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_retry_async_non_retryable(self):
        """Test non-retryable exceptions propagate immediately."""
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await retry_async(
                broken, config=RetryConfig(max_attempts=3, non_retryable_exceptions=(ValueError,))
            )
        assert len(calls) == 1


# ============================================================================
# Exceptions
# ============================================================================


class TestExceptions:
    """Exception hierarchy."""

    def test_to_dict(self):
        """Test API representation of errors."""
        error = LeadNotFoundError("Lead 1 not found", details={"id": "1"})

        assert error.status_code == 404
        assert error.to_dict() == {
            "error": "LEAD_NOT_FOUND",
            "message": "Lead 1 not found",
            "details": {"id": "1"},
        }

    def test_str_includes_cause(self):
        """Test the logging representation."""
        error = JobError("Call rejected", retryable=False, cause=ProviderError("Invalid number"))

        assert str(error) == "JOB_ERROR: Call rejected | cause=PROVIDER_ERROR: Invalid number"
        assert error.retryable is False


# ============================================================================
# Logging
# ============================================================================


class TestLogging:
    """Scoped structlog context."""

    def test_log_context_binds_and_restores(self):
        """Test nested scopes add fields and restore the outer ones on exit."""
        with log_context(job_id="job-1", job_name="make-call", skipped=None):
            outer = structlog.contextvars.get_contextvars()
            with log_context(job_id="job-2"):
                inner = structlog.contextvars.get_contextvars()
            restored = structlog.contextvars.get_contextvars()

        assert outer == {"job_id": "job-1", "job_name": "make-call"}
        assert inner["job_id"] == "job-2"
        assert inner["job_name"] == "make-call"
        assert restored == outer
        assert "job_id" not in structlog.contextvars.get_contextvars()

    def test_setup_binds_service_and_environment(self):
        """Test process-wide fields are bound at startup."""
        try:
            setup_logging(level="WARNING", service_name="campaign-dialer", environment="test")

            assert structlog.contextvars.get_contextvars() == {
                "service": "campaign-dialer",
                "environment": "test",
            }
        finally:
            structlog.contextvars.clear_contextvars()


# ============================================================================
# Tokens
# ============================================================================


class TestSecurity:
    """JWT identities and role checks."""

    def test_token_round_trip(self):
        """Test a token carries subject, account and role."""
        token = create_access_token(
            "user-1", account_id=ACCOUNT_ID, role="supervisor", secret=JWT_SECRET, permissions=["calls:read"]
        )

        identity = decode_identity(token, secret=JWT_SECRET)

        assert identity == Identity("user-1", ACCOUNT_ID, "supervisor", ("calls:read",))
        assert identity.is_elevated is True

    def test_expired_token(self):
        """Test expired tokens are rejected."""
        token = create_access_token(
            "user-1",
            account_id=ACCOUNT_ID,
            role="admin",
            secret=JWT_SECRET,
            expires_delta=timedelta(seconds=-5),
        )

        with pytest.raises(AuthenticationError, match="expired"):
            decode_identity(token, secret=JWT_SECRET)

    def test_token_without_account(self):
        """Test tokens must name an account."""
        token = create_access_token("user-1", account_id="", role="admin", secret=JWT_SECRET)

        with pytest.raises(AuthenticationError):
            decode_identity(token, secret=JWT_SECRET)

    def test_role_permissions(self):
        """Test which roles may watch calls, campaigns and intervene."""
        agent = Identity("a", ACCOUNT_ID, "agent")
        viewer = Identity("v", ACCOUNT_ID, "viewer")
        admin = Identity("ad", ACCOUNT_ID, "admin")

        assert agent.can_access_call() is True
        assert agent.can_access_campaign() is False
        assert agent.can_intervene() is False
        assert viewer.can_access_call() is False
        assert admin.can_access_campaign() is True
        assert admin.can_intervene() is True

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def", "abc.def"),
            ("bearer abc", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            (None, None),
        ],
    )
    def test_bearer_token(self, header, expected):
        """Test extracting the token from an Authorization header."""
        assert bearer_token(header) == expected

    def test_resolve_secret(self):
        """Test configured secrets pass through and missing ones are refused in production."""
        assert resolve_secret("configured") == "configured"
        with pytest.raises(ValueError):
            resolve_secret("", "production")
        with pytest.warns(RuntimeWarning):
            assert resolve_secret(None) == INSECURE_DEV_SECRET
