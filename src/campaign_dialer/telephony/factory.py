"""Telephony Provider Factory.

Supported providers:
- vapi: hosted voice agents over REST
- mock: for development and testing
"""

from __future__ import annotations

from campaign_dialer.config import TelephonySettings
from campaign_dialer.log import get_logger
from campaign_dialer.telephony.base import MockTelephonyProvider, TelephonyProvider

log = get_logger(__name__)


def create_telephony_provider(settings: TelephonySettings) -> TelephonyProvider:
    """Create the configured provider.

    Falls back to the mock provider when credentials are missing.
    """
    provider = settings.provider.lower()
    log.info("Initializing telephony provider", provider=provider)

    if provider == "vapi":
        if not settings.api_key:
            log.warning("Vapi API key not configured, using mock provider")
            return MockTelephonyProvider()

        from campaign_dialer.telephony.vapi import VapiProvider

        return VapiProvider(
            api_key=settings.api_key,
            base_url=settings.api_url,
            timeout=settings.request_timeout,
        )

    if provider != "mock":
        log.warning("Unknown telephony provider, using mock", provider=provider)
    return MockTelephonyProvider()
