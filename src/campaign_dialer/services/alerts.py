"""Operator alerts: persisted first, then published on ``system:alerts``."""
from __future__ import annotations

from typing import Any

from campaign_dialer.core.events import Channel, EventBus
from campaign_dialer.db.models import ALERT_SEVERITIES
from campaign_dialer.db.repositories import AlertRepository
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger

log = get_logger(__name__)


async def raise_alert(
    database: Database,
    bus: EventBus,
    *,
    type: str,
    severity: str,
    title: str,
    message: str | None = None,
    account_id: str | None = None,
    source: str | None = None,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Store an alert and publish it for routing by severity.

    Returns:
        The stored alert as a dict
    """
    if severity not in ALERT_SEVERITIES:
        raise ValueError(f"Unknown alert severity: {severity}")

    async with database.session() as session:
        alert = await AlertRepository(session).raise_alert(
            account_id=account_id,
            type=type,
            severity=severity,
            title=title,
            message=message,
            source=source,
            data=data or {},
        )
        payload = alert.to_dict()

    log.warning("System alert raised", alert_type=type, severity=severity, title=title)
    await bus.publish(Channel.SYSTEM_ALERTS, "system_alert", payload, account_id=account_id)
    return payload
