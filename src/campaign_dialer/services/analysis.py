"""Post-call transcript analysis.

Scoring is an external service; this module only ships the transcript
out and reads back a qualification score and recommended action.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from campaign_dialer.config import AnalysisSettings
from campaign_dialer.core.exceptions import AnalysisError
from campaign_dialer.log import get_logger

log = get_logger(__name__)


@dataclass
class AnalysisRequest:
    call_id: str
    transcript: str
    duration: int | None
    lead_id: str
    campaign_id: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "transcript": self.transcript,
            "duration": self.duration,
            "leadId": self.lead_id,
            "campaignId": self.campaign_id,
        }


@dataclass
class AnalysisResult:
    qualification_score: int
    recommended_action: str | None = None
    summary: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class AnalysisClient(ABC):
    """Interface of the scoring service."""

    @abstractmethod
    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        ...

    async def close(self) -> None:
        return None


class HttpAnalysisClient(AnalysisClient):
    """``POST {url}/analyze`` with a bearer key."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=url.rstrip("/"), timeout=timeout, headers=headers
        )

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        try:
            response = await self._client.post("/analyze", json=request.to_payload())
        except httpx.TimeoutException as e:
            raise AnalysisError("Analysis service timeout", cause=e) from e
        except httpx.TransportError as e:
            raise AnalysisError(f"Analysis service network error: {e}", cause=e) from e

        if response.status_code >= 400:
            raise AnalysisError(
                f"Analysis service returned {response.status_code}",
                details={"body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AnalysisError("Analysis service returned invalid JSON", cause=e) from e

        score = data.get("qualification_score", data.get("qualificationScore", data.get("score")))
        if score is None:
            raise AnalysisError("Analysis response has no qualification score", details=data)

        return AnalysisResult(
            qualification_score=int(score),
            recommended_action=data.get("recommended_action", data.get("recommendedAction")),
            summary=data.get("summary"),
            raw=data,
        )

    async def close(self) -> None:
        await self._client.aclose()


class MockAnalysisClient(AnalysisClient):
    """Fixed-score client for development and tests."""

    def __init__(self, score: int = 50, recommended_action: str | None = "follow_up"):
        self.score = score
        self.recommended_action = recommended_action
        self.requests: list[AnalysisRequest] = []

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        self.requests.append(request)
        return AnalysisResult(
            qualification_score=self.score,
            recommended_action=self.recommended_action,
        )


def create_analysis_client(settings: AnalysisSettings) -> AnalysisClient:
    """HTTP client when a service url is configured, else the mock."""
    if settings.url:
        return HttpAnalysisClient(settings.url, settings.api_key, timeout=settings.timeout)
    log.warning("Analysis service not configured, using mock scorer")
    return MockAnalysisClient()
