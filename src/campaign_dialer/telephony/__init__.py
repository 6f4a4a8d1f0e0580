"""Voice telephony provider integrations."""
from campaign_dialer.telephony.base import (
    MockTelephonyProvider,
    OutboundCallRequest,
    ProviderCall,
    TelephonyProvider,
    map_provider_status,
)
from campaign_dialer.telephony.factory import create_telephony_provider

__all__ = [
    "MockTelephonyProvider",
    "OutboundCallRequest",
    "ProviderCall",
    "TelephonyProvider",
    "create_telephony_provider",
    "map_provider_status",
]
