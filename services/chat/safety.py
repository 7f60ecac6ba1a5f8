"""Azure Content Safety text classifier.

`analyze` returns per-category severities and a blocked decision (any
category at severity 3 or above). Misconfiguration is raised before any
network call; request failures surface as `SafetyClassifierError` so each
caller decides whether to fail open or closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx

from packages.common.config import Settings, normalize_endpoint
from packages.common.errors import MisconfigurationError, SafetyClassifierError
from packages.schemas.chat import SafetyMetadata

log = logging.getLogger(__name__)

API_VERSION = "2023-10-01"
CATEGORIES = ["Hate", "Violence", "SelfHarm", "Sexual"]
BLOCK_SEVERITY = 3  # High or Critical on the four-level scale


@dataclass
class SafetyResult:
    blocked: bool
    categories: dict[str, int] = field(default_factory=dict)

    def metadata(self, checked_at: Optional[datetime] = None) -> SafetyMetadata:
        """Render the result as the metadata attached to moderation flags."""
        return SafetyMetadata(
            categories=dict(self.categories),
            blocked=self.blocked,
            created_at=checked_at or datetime.now(timezone.utc),
        )


class AzureContentSafetyClient:
    """Thin client for `contentsafety/text:analyze`."""

    def __init__(self, endpoint: str, key: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0) -> None:
        self.endpoint = endpoint
        self.key = key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def analyze(self, text: str) -> SafetyResult:
        """Classify `text`.

        Raises:
            MisconfigurationError: endpoint or key missing / not https.
            SafetyClassifierError: network failure, non-OK or malformed response.
        """
        if not self.endpoint or not self.key:
            raise MisconfigurationError("Content Safety is not configured")
        endpoint = normalize_endpoint(self.endpoint, "AZURE_CONTENT_SAFETY_ENDPOINT")
        try:
            res = await self._client.post(
                f"{endpoint}contentsafety/text:analyze",
                params={"api-version": API_VERSION},
                headers={"Ocp-Apim-Subscription-Key": self.key},
                json={"text": text, "categories": CATEGORIES, "outputType": "FourSeverityLevels"},
            )
        except httpx.HTTPError as e:
            raise SafetyClassifierError(f"Content Safety request failed: {e.__class__.__name__}") from e
        if res.is_error:
            raise SafetyClassifierError(f"Content Safety request failed: {res.status_code}")

        categories: dict[str, int] = {}
        blocked = False
        try:
            for item in res.json().get("categoriesAnalysis") or []:
                severity = int(item.get("severity") or 0)
                categories[item["category"]] = severity
                if severity >= BLOCK_SEVERITY:
                    blocked = True
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SafetyClassifierError("Content Safety returned an unreadable response") from e
        if blocked:
            log.info("content safety blocked text", extra={"categories": categories})
        return SafetyResult(blocked=blocked, categories=categories)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_safety_client(settings: Settings) -> AzureContentSafetyClient:
    return AzureContentSafetyClient(
        settings.AZURE_CONTENT_SAFETY_ENDPOINT,
        settings.AZURE_CONTENT_SAFETY_KEY,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
