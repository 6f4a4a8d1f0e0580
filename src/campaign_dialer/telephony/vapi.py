"""Vapi Voice Provider Implementation.

Vapi runs the voice agent ("assistant") on its side; we only start calls
and read their state back. Lifecycle updates arrive via webhooks.

API Documentation: https://docs.vapi.ai/api-reference
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from campaign_dialer.core.exceptions import CallNotFoundError, ProviderError
from campaign_dialer.log import get_logger
from campaign_dialer.telephony.base import OutboundCallRequest, ProviderCall, TelephonyProvider

log = get_logger(__name__)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_call(data: dict[str, Any]) -> ProviderCall:
    """Build a ProviderCall from a Vapi call object."""
    started_at = _parse_time(data.get("startedAt"))
    ended_at = _parse_time(data.get("endedAt"))
    duration = data.get("duration")
    if duration is None and started_at and ended_at:
        duration = (ended_at - started_at).total_seconds()

    artifact = data.get("artifact") or {}
    return ProviderCall(
        id=str(data.get("id", "")),
        status=str(data.get("status", "")),
        ended_reason=data.get("endedReason"),
        duration_seconds=int(duration) if duration is not None else None,
        cost=float(data["cost"]) if data.get("cost") is not None else None,
        started_at=started_at,
        ended_at=ended_at,
        transcript=data.get("transcript") or artifact.get("transcript"),
        recording_url=data.get("recordingUrl") or artifact.get("recordingUrl"),
        raw=data,
    )


class VapiProvider(TelephonyProvider):
    """Vapi REST client.

    Attributes:
        api_key: Vapi private API key
        base_url: API base URL
    """

    name = "vapi"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.vapi.ai",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def create_call(self, request: OutboundCallRequest) -> ProviderCall:
        """Start an outbound call.

        Args:
            request: Target number, caller-id resource, agent and metadata

        Returns:
            Vapi call record (status ``queued``)
        """
        body: dict[str, Any] = {
            "assistantId": request.agent_id,
            "customer": {"number": request.to},
            "metadata": request.metadata,
        }
        if request.from_number_id:
            body["phoneNumberId"] = request.from_number_id
        if request.customer_name:
            body["customer"]["name"] = request.customer_name

        data = await self._request("POST", "/call", json=body)
        call = parse_call(data)
        if not call.id:
            raise ProviderError("Provider response did not include a call id", details=data)

        log.info("Vapi call created", provider_call_id=call.id, to=request.to)
        return call

    async def get_call(self, call_id: str) -> ProviderCall:
        data = await self._request("GET", f"/call/{call_id}", call_id=call_id)
        return parse_call(data)

    async def _request(
        self, method: str, path: str, *, call_id: str | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Send a request and translate failures into ProviderError."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            log.error("Vapi request timeout", method=method, path=path)
            raise ProviderError("Provider request timeout", transient=True, cause=e) from e
        except httpx.HTTPError as e:
            log.error("Vapi network error", method=method, path=path, error=str(e))
            raise ProviderError(f"Provider network error: {e}", transient=True, cause=e) from e

        if response.status_code in (200, 201):
            return response.json()

        try:
            error_data = response.json() if response.content else {}
        except ValueError:
            error_data = {}
        message = error_data.get("message") or f"HTTP {response.status_code}"
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)

        log.error(
            "Vapi request failed",
            method=method,
            path=path,
            status_code=response.status_code,
            error=message,
        )

        if response.status_code == 404 and call_id is not None:
            raise CallNotFoundError(
                f"Call {call_id} not found", provider_status=404, details={"call_id": call_id}
            )
        if response.status_code == 429:
            raise ProviderError(
                f"Provider rate_limit exceeded: {message}", transient=True, provider_status=429
            )
        if response.status_code >= 500:
            raise ProviderError(
                f"Provider temporary failure: {message}",
                transient=True,
                provider_status=response.status_code,
            )
        raise ProviderError(message, provider_status=response.status_code, details=error_data)

    async def close(self) -> None:
        await self._client.aclose()
