"""ORM models for the campaign dialer."""
from campaign_dialer.db.models.alert import ALERT_SEVERITIES, SystemAlertModel
from campaign_dialer.db.models.call import (
    NON_TERMINAL_STATUSES,
    STATUS_RANK,
    TERMINAL_STATUSES,
    CallAttemptModel,
    CallStatus,
    TranscriptChunkModel,
)
from campaign_dialer.db.models.campaign import (
    CAMPAIGN_STATUSES,
    CampaignModel,
    OutboundNumberModel,
)
from campaign_dialer.db.models.compliance import (
    ComplianceLogModel,
    ConsentRecordModel,
    DNCEntryModel,
)
from campaign_dialer.db.models.job import JobModel
from campaign_dialer.db.models.lead import DIALABLE_LEAD_STATUSES, LEAD_STATUSES, LeadModel
from campaign_dialer.db.models.webhook import ProcessedWebhookEventModel, WebhookEventModel

__all__ = [
    # Campaigns
    "CAMPAIGN_STATUSES",
    "CampaignModel",
    "OutboundNumberModel",
    # Leads
    "LEAD_STATUSES",
    "DIALABLE_LEAD_STATUSES",
    "LeadModel",
    # Calls
    "CallStatus",
    "NON_TERMINAL_STATUSES",
    "TERMINAL_STATUSES",
    "STATUS_RANK",
    "CallAttemptModel",
    "TranscriptChunkModel",
    # Compliance
    "ComplianceLogModel",
    "DNCEntryModel",
    "ConsentRecordModel",
    # Webhooks
    "WebhookEventModel",
    "ProcessedWebhookEventModel",
    # Jobs
    "JobModel",
    # Alerts
    "ALERT_SEVERITIES",
    "SystemAlertModel",
]
