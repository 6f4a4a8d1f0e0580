"""Tests for the HTTP and WebSocket surface."""

from __future__ import annotations

import uuid
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from campaign_dialer.api.rate_limits import limiter
from campaign_dialer.config import Settings
from campaign_dialer.core.security import create_access_token
from campaign_dialer.main import create_app
from conftest import ACCOUNT_ID, JWT_SECRET, WEBHOOK_SECRET, signed


def auth_header(role: str) -> dict[str, str]:
    token = create_access_token(f"{role}-1", account_id=ACCOUNT_ID, role=role, secret=JWT_SECRET)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        debug=False,
        log_level="WARNING",
        jwt_secret_key=JWT_SECRET,
        database={"url": "sqlite+aiosqlite:///:memory:"},
        telephony={"provider": "mock", "webhook_secret": WEBHOOK_SECRET},
        jobs={"enabled": False},
        dispatch={"enabled": False},
    )


@pytest.fixture
def client(settings) -> Iterator[TestClient]:
    limiter.reset()
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    """Liveness, readiness and health."""

    def test_health(self, client):
        """Test health reports components."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"] == "ok"
        assert data["checks"]["dispatch_queue"] == "stopped"
        assert data["checks"]["job_processor"] == "stopped"
        assert data["checks"]["telephony"] == "mock"

    def test_ready_and_live(self, client):
        """Test readiness and liveness probes."""
        assert client.get("/ready").json() == {"status": "ready", "checks": {"database": "ok"}}
        assert client.get("/live").json() == {"status": "alive"}


# ============================================================================
# Webhooks
# ============================================================================


class TestWebhookEndpoint:
    """Provider webhook ingress."""

    def test_acknowledges_signed_event(self, client):
        """Test the webhook answers immediately and logs the delivery."""
        body, signature = signed({"type": "call-start", "call": {"id": "unknown-call"}})

        response = client.post(
            "/api/v1/webhooks/telephony",
            content=body,
            headers={"X-Signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        stats = client.get("/api/v1/webhooks/stats", headers=auth_header("admin")).json()
        assert stats["successful_webhooks"] == 1

    def test_acknowledges_bad_signature(self, client):
        """Test rejected deliveries still get a 200 and are recorded."""
        response = client.post(
            "/api/v1/webhooks/telephony",
            content=b'{"type": "call-start", "call": {"id": "x"}}',
            headers={"X-Signature": "sha256=bad"},
        )

        assert response.status_code == 200
        stats = client.get("/api/v1/webhooks/stats", headers=auth_header("supervisor")).json()
        assert stats["rejected_webhooks"] == 1

    def test_acknowledges_garbage(self, client):
        """Test non-JSON bodies never fail the response."""
        response = client.post("/api/v1/webhooks/telephony", content=b"\x00\x01")

        assert response.status_code == 200

    def test_stats_require_elevated_role(self, client):
        """Test webhook stats are not public."""
        assert client.get("/api/v1/webhooks/stats").status_code == 401
        assert client.get("/api/v1/webhooks/stats", headers=auth_header("agent")).status_code == 403


# ============================================================================
# Control endpoints
# ============================================================================


class TestDispatchEndpoints:
    """Dispatch queue control."""

    def test_requires_token(self, client):
        """Test missing and invalid tokens get 401."""
        assert client.get("/api/v1/dispatch/status").status_code == 401
        response = client.get(
            "/api/v1/dispatch/status", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_agent_forbidden(self, client):
        """Test agents cannot control dispatch."""
        response = client.post("/api/v1/dispatch/start", headers=auth_header("agent"))

        assert response.status_code == 403

    def test_supervisor_controls_queue(self, client):
        """Test start, status and stop."""
        headers = auth_header("supervisor")

        started = client.post("/api/v1/dispatch/start", headers=headers)
        stopped = client.post("/api/v1/dispatch/stop", headers=headers)

        assert started.status_code == 200
        assert started.json()["state"] == "running"
        assert stopped.json()["state"] == "stopped"

    def test_manual_tick(self, client):
        """Test a tick with nothing to dial."""
        response = client.post("/api/v1/dispatch/tick", headers=auth_header("admin"))

        assert response.status_code == 200
        assert response.json()["dispatched"] == 0

    def test_reset_daily_counters(self, client):
        """Test the daily counter reset is exposed to elevated roles only."""
        forbidden = client.post("/api/v1/dispatch/numbers/reset-daily", headers=auth_header("agent"))
        response = client.post("/api/v1/dispatch/numbers/reset-daily", headers=auth_header("admin"))

        assert forbidden.status_code == 403
        assert response.status_code == 200
        assert response.json() == {"numbers_reset": 0}

    def test_pause_unknown_campaign(self, client):
        """Test pausing a campaign that does not exist reports no change."""
        response = client.post(
            f"/api/v1/dispatch/campaigns/{uuid.uuid4()}/pause", headers=auth_header("admin")
        )

        assert response.status_code == 200
        assert response.json()["changed"] is False


class TestJobEndpoints:
    """Job queue API."""

    def test_enqueue_and_fetch(self, client):
        """Test a job can be enqueued and read back."""
        headers = auth_header("admin")

        created = client.post(
            "/api/v1/jobs",
            json={"name": "process-callback", "payload": {"lead_id": "x"}, "delay_seconds": 60},
            headers=headers,
        )

        assert created.status_code == 201
        job = created.json()
        assert job["status"] == "pending"
        assert job["payload"]["account_id"] == ACCOUNT_ID

        fetched = client.get(f"/api/v1/jobs/{job['id']}", headers=headers)
        assert fetched.json()["id"] == job["id"]

        stats = client.get("/api/v1/jobs/stats", headers=headers).json()
        assert stats["delayed"] == 1

    def test_unknown_job_type(self, client):
        """Test enqueueing an unregistered type is a validation error."""
        response = client.post("/api/v1/jobs", json={"name": "send-fax"}, headers=auth_header("admin"))

        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_missing_job(self, client):
        """Test unknown job ids are 404."""
        response = client.get(f"/api/v1/jobs/{uuid.uuid4()}", headers=auth_header("admin"))

        assert response.status_code == 404


class TestComplianceEndpoints:
    """DNC management and previews."""

    def test_dnc_add_and_remove(self, client):
        """Test managing the internal DNC list."""
        headers = auth_header("supervisor")

        added = client.post(
            "/api/v1/compliance/dnc", json={"phone_number": "+12125550123", "reason": "asked"}, headers=headers
        )
        removed = client.delete("/api/v1/compliance/dnc/+12125550123", headers=headers)

        assert added.status_code == 201
        assert removed.json()["removed"] is True

    def test_check_unknown_lead(self, client):
        """Test previewing a missing lead is a 404."""
        response = client.post(
            "/api/v1/compliance/check",
            json={"lead_id": str(uuid.uuid4()), "campaign_id": str(uuid.uuid4())},
            headers=auth_header("admin"),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "LEAD_NOT_FOUND"

    def test_dashboard(self, client):
        """Test the dashboard for the caller's account."""
        response = client.get("/api/v1/compliance/dashboard", headers=auth_header("admin"))

        assert response.status_code == 200
        assert response.json()["summary"]["total_checks"] == 0


# ============================================================================
# Realtime socket
# ============================================================================


class TestRealtimeSocket:
    """WebSocket handshake and messages."""

    def test_rejects_missing_token(self, client):
        """Test sockets without a token are closed before accept."""
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/v1/ws/realtime"):
                pass

    def test_rejects_invalid_token(self, client):
        """Test sockets with a bad token are closed."""
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/v1/ws/realtime?token=nope"):
                pass

    def test_connect_and_heartbeat(self, client):
        """Test a valid token gets a status frame and heartbeat acks."""
        token = create_access_token("u-1", account_id=ACCOUNT_ID, role="supervisor", secret=JWT_SECRET)

        with client.websocket_connect(f"/api/v1/ws/realtime?token={token}") as websocket:
            status = websocket.receive_json()
            websocket.send_text('{"type": "heartbeat"}')
            ack = websocket.receive_json()

        assert status["type"] == "system:status"
        assert f"account:{ACCOUNT_ID}" in status["payload"]["rooms"]
        assert ack["type"] == "heartbeat:ack"
