"""HTTP and WebSocket routers."""

from campaign_dialer.api import compliance, dispatch, health, jobs, realtime, webhooks

__all__ = [
    "compliance",
    "dispatch",
    "health",
    "jobs",
    "realtime",
    "webhooks",
]
