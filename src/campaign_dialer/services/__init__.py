"""Campaign dialer services.

- DispatchQueue: periodic per-campaign dispatch loop
- ComplianceGate: admission control before every dial
- CallDispatcher: attempt creation and provider call initiation
- WebhookProcessor: provider event state machine
- JobProcessor: durable retrying job queue
- FanoutHub: realtime websocket fan-out
"""

from campaign_dialer.services.compliance_gate import ComplianceDecision, ComplianceGate
from campaign_dialer.services.dispatch_queue import DispatchQueue, QueueState, TickReport
from campaign_dialer.services.dispatcher import CallDispatcher, DispatchResult
from campaign_dialer.services.job_processor import JobContext, JobProcessor
from campaign_dialer.services.realtime import FanoutHub
from campaign_dialer.services.webhook_processor import WebhookOutcome, WebhookProcessor

__all__ = [
    "CallDispatcher",
    "ComplianceDecision",
    "ComplianceGate",
    "DispatchQueue",
    "DispatchResult",
    "FanoutHub",
    "JobContext",
    "JobProcessor",
    "QueueState",
    "TickReport",
    "WebhookOutcome",
    "WebhookProcessor",
]
