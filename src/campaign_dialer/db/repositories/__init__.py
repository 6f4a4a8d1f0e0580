"""Repository Layer.

Exports all repositories for data access:

Base:
- BaseRepository: Generic CRUD operations

Specialized:
- CampaignRepository / OutboundNumberRepository: campaigns and caller-ID pool
- LeadRepository: dial targets and eligibility queries
- CallAttemptRepository: attempt lifecycle with conditional updates
- ComplianceLogRepository / DNCRepository / ConsentRepository: admission data
- WebhookEventRepository / ProcessedEventRepository: webhook audit and dedup
- JobRepository: durable job queue
- AlertRepository: operator alerts
"""

from campaign_dialer.db.repositories.alerts import AlertRepository
from campaign_dialer.db.repositories.base import BaseRepository
from campaign_dialer.db.repositories.calls import CallAttemptRepository
from campaign_dialer.db.repositories.campaigns import CampaignRepository, OutboundNumberRepository
from campaign_dialer.db.repositories.compliance import (
    ComplianceLogRepository,
    ConsentRepository,
    DNCRepository,
)
from campaign_dialer.db.repositories.jobs import JobRepository
from campaign_dialer.db.repositories.leads import LeadRepository
from campaign_dialer.db.repositories.webhooks import ProcessedEventRepository, WebhookEventRepository

__all__ = [
    "BaseRepository",
    "AlertRepository",
    "CallAttemptRepository",
    "CampaignRepository",
    "OutboundNumberRepository",
    "ComplianceLogRepository",
    "ConsentRepository",
    "DNCRepository",
    "JobRepository",
    "LeadRepository",
    "ProcessedEventRepository",
    "WebhookEventRepository",
]
