"""Health check endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from campaign_dialer import __version__
from campaign_dialer.dependencies import Services, ServicesDep


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    environment: str
    checks: dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str
    checks: dict[str, str]


@router.get("/health")
async def health_check(services: ServicesDep) -> HealthResponse:
    """Perform health check.

    Components checked:
    - Database: connectivity via SELECT 1
    - Dispatch queue and job processor: running state
    - Realtime: open socket count
    """
    checks: dict[str, Any] = {
        "api": "ok",
        "database": await _check_database(services),
        "dispatch_queue": services.dispatch_queue.state.value,
        "job_processor": "running" if services.jobs.is_running else "stopped",
        "realtime": {"connections": services.fanout.connection_count},
        "telephony": services.provider.name,
    }

    return HealthResponse(
        status="healthy" if checks["database"] == "ok" else "unhealthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        environment=services.settings.environment,
        checks=checks,
    )


@router.get("/ready")
async def readiness_check(services: ServicesDep) -> ReadinessResponse:
    """Ready when the database answers."""
    db_status = await _check_database(services)
    checks = {"database": db_status if isinstance(db_status, str) else "error"}
    return ReadinessResponse(
        status="ready" if checks["database"] == "ok" else "not_ready",
        checks=checks,
    )


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}


async def _check_database(services: Services) -> str | dict[str, Any]:
    try:
        async with services.database.session() as session:
            result = await session.execute(text("SELECT 1"))
            result.fetchone()
        return "ok"
    except Exception as e:
        return {
            "status": "error",
            "message": str(e),
        }
