"""Do-not-call registry lookups.

The internal registry lives in ``dnc_entries``; the external (federal)
registry is an optional HTTP service. External failures never block a
call: they are reported as "not listed" together with an advisory.
"""
from __future__ import annotations

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_dialer.config import ComplianceSettings
from campaign_dialer.core.retry import RetryConfig, retry_async
from campaign_dialer.db.repositories import DNCRepository
from campaign_dialer.log import get_logger

log = get_logger(__name__)

# Transport failures only; HTTP error statuses are not retried
DNC_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=0.5,
    max_delay=2.0,
    retryable_exceptions=(httpx.TransportError,),
)


@dataclass
class DNCResult:
    """Outcome of a DNC lookup."""

    listed: bool
    source: str | None = None
    registry_error: str | None = None


class ExternalDNCClient:
    """Client for an external DNC registry.

    ``GET {base_url}/check/{phone}`` with a bearer key, answering
    ``{"on_list": bool, "list_source": str}``.
    """

    DEFAULT_SOURCE = "Federal DNC Registry"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def _fetch(self, phone: str) -> httpx.Response:
        response = await self._client.get(f"/check/{phone}")
        response.raise_for_status()
        return response

    async def check(self, phone: str) -> DNCResult:
        response = await retry_async(self._fetch, phone, config=DNC_RETRY_CONFIG)
        data = response.json()
        if data.get("on_list"):
            return DNCResult(listed=True, source=data.get("list_source") or self.DEFAULT_SOURCE)
        return DNCResult(listed=False)

    async def close(self) -> None:
        await self._client.aclose()


class DNCRegistry:
    """Combined internal + external DNC check."""

    def __init__(self, external: ExternalDNCClient | None = None):
        self.external = external

    @classmethod
    def from_settings(cls, settings: ComplianceSettings) -> DNCRegistry:
        external = None
        if settings.dnc_api_url and settings.dnc_api_key:
            external = ExternalDNCClient(
                settings.dnc_api_url, settings.dnc_api_key, timeout=settings.dnc_timeout
            )
        return cls(external)

    async def check(self, session: AsyncSession, phone: str, *, lead_flagged: bool = False) -> DNCResult:
        """Check a number against the internal list, then the external registry.

        Args:
            session: Open session for the internal registry
            phone: Number to check
            lead_flagged: The lead itself is marked DNC

        Returns:
            DNCResult; ``registry_error`` is set when the external lookup failed
        """
        if lead_flagged:
            return DNCResult(listed=True, source="Lead DNC flag")

        entry = await DNCRepository(session).get_entry(phone)
        if entry is not None:
            return DNCResult(listed=True, source=f"Internal DNC list ({entry.source})")

        if self.external is None:
            return DNCResult(listed=False)

        try:
            return await self.external.check(phone)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("External DNC lookup failed, treating as not listed", phone=phone, error=str(e))
            return DNCResult(listed=False, registry_error=str(e))

    async def close(self) -> None:
        if self.external is not None:
            await self.external.close()
