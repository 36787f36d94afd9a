"""Provider status monitoring.

Reads the public status pages of each model provider and normalizes them
to one of ``operational``, ``degraded``, ``partial_outage``,
``major_outage`` or ``unknown``. OpenAI and Anthropic publish Atlassian
Statuspage summaries; Gemini status comes from the Google Cloud incident
feed. Results are cached for five minutes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

_logger = logging.getLogger("aihelm")

CACHE_TTL_SECONDS = 300.0
FETCH_TIMEOUT_SECONDS = 8.0

OPENAI_SUMMARY_URL = "https://status.openai.com/api/v2/summary.json"
ANTHROPIC_SUMMARY_URL = "https://status.claude.com/api/v2/summary.json"
GOOGLE_INCIDENTS_URL = "https://status.cloud.google.com/incidents.json"

# Vertex Gemini API product id in the Google Cloud incident feed.
GEMINI_PRODUCT_ID = "Z0FZJAMvEB4j3NbCJs6B"

_ATLASSIAN = {
    "openai": ("OpenAI", "https://status.openai.com", OPENAI_SUMMARY_URL, "Chat Completions"),
    "anthropic": (
        "Anthropic",
        "https://status.claude.com",
        ANTHROPIC_SUMMARY_URL,
        "Claude API (api.anthropic.com)",
    ),
}

_ATLASSIAN_LEVELS = {
    "operational": "operational",
    "degraded_performance": "degraded",
    "partial_outage": "partial_outage",
    "major_outage": "major_outage",
}

_SEVERITY_ORDER = {"low": 1, "medium": 2, "high": 3}
_SEVERITY_LEVELS = {"low": "degraded", "medium": "partial_outage", "high": "major_outage"}

_DESCRIPTIONS = {
    "operational": "{} is fully operational",
    "degraded": "{} is experiencing degraded performance",
    "partial_outage": "{} is experiencing a partial outage",
    "major_outage": "{} is experiencing a major outage",
    "unknown": "{} status is unknown",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProviderIncident:
    name: str
    status: str
    impact: str
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "status": self.status,
            "impact": self.impact,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ProviderStatus:
    """Normalized status of one provider."""

    provider: str
    status: str
    description: str
    updated_at: str
    status_page_url: str
    incidents: List[ProviderIncident] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status,
            "description": self.description,
            "updatedAt": self.updated_at,
            "statusPageUrl": self.status_page_url,
            "activeIncidents": [i.to_dict() for i in self.incidents],
        }


@dataclass
class AllProviderStatuses:
    fetched_at: str
    providers: Dict[str, ProviderStatus]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fetchedAt": self.fetched_at,
            "providers": {name: s.to_dict() for name, s in self.providers.items()},
        }


class ProviderStatusMonitor:
    """Fetches and caches provider status pages.

    A fetch failure never raises; the provider is reported as ``unknown``
    with the reason in its description.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
    ) -> None:
        self._transport = transport
        self._ttl = ttl_seconds
        self._cached: Optional[AllProviderStatuses] = None
        self._cached_at = 0.0

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    async def get_all_statuses(self) -> AllProviderStatuses:
        """Return every provider's status, refetching once the cache is stale."""
        now = time.time()
        if self._cached is not None and now - self._cached_at < self._ttl:
            return self._cached

        async with httpx.AsyncClient(
            timeout=FETCH_TIMEOUT_SECONDS, transport=self._transport
        ) as client:
            openai, anthropic, gemini = await asyncio.gather(
                self._fetch_atlassian(client, "openai"),
                self._fetch_atlassian(client, "anthropic"),
                self._fetch_google(client),
            )

        self._cached = AllProviderStatuses(
            fetched_at=_now_iso(),
            providers={"openai": openai, "anthropic": anthropic, "gemini": gemini},
        )
        self._cached_at = now
        return self._cached

    async def get_status(self, provider: str) -> ProviderStatus:
        """Return one provider's status from the shared cache.

        Raises:
            KeyError: If ``provider`` is not monitored.
        """
        return (await self.get_all_statuses()).providers[provider]

    async def _fetch_atlassian(self, client: httpx.AsyncClient, provider: str) -> ProviderStatus:
        label, page_url, summary_url, component_name = _ATLASSIAN[provider]
        try:
            resp = await client.get(summary_url)
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError("unexpected summary format")
        except (httpx.HTTPError, ValueError) as exc:
            _logger.warning("%s status page unavailable: %s", label, exc)
            return ProviderStatus(
                provider=provider,
                status="unknown",
                description="Could not reach {} status page: {}".format(label, exc),
                updated_at=_now_iso(),
                status_page_url=page_url,
            )

        # Component names sometimes gain a qualifier, e.g. "Claude API (api.anthropic.com)".
        components = data.get("components") or []
        base_name = component_name.split(" (")[0]
        component = next((c for c in components if c.get("name") == component_name), None)
        if component is None:
            component = next(
                (c for c in components if str(c.get("name", "")).startswith(base_name)), None
            )

        incidents = [
            ProviderIncident(
                name=inc.get("name", ""),
                status=inc.get("status", ""),
                impact=inc.get("impact", ""),
                created_at=inc.get("created_at", ""),
                updated_at=inc.get("updated_at", ""),
            )
            for inc in data.get("incidents") or []
            if inc.get("status") not in ("resolved", "postmortem")
        ]

        if component is None:
            return ProviderStatus(
                provider=provider,
                status="unknown",
                description="Could not find {} component".format(component_name),
                updated_at=(data.get("page") or {}).get("updated_at") or _now_iso(),
                status_page_url=page_url,
                incidents=incidents,
            )

        level = _ATLASSIAN_LEVELS.get(component.get("status", ""), "unknown")
        return ProviderStatus(
            provider=provider,
            status=level,
            description=_DESCRIPTIONS[level].format(label),
            updated_at=component.get("updated_at") or _now_iso(),
            status_page_url=page_url,
            incidents=incidents,
        )

    async def _fetch_google(self, client: httpx.AsyncClient) -> ProviderStatus:
        page_url = "https://status.cloud.google.com"
        try:
            resp = await client.get(GOOGLE_INCIDENTS_URL)
            resp.raise_for_status()
            feed = resp.json()
            if not isinstance(feed, list):
                raise ValueError("unexpected incident feed format")
        except (httpx.HTTPError, ValueError) as exc:
            _logger.warning("Google Cloud status page unavailable: %s", exc)
            return ProviderStatus(
                provider="gemini",
                status="unknown",
                description="Could not reach Google Cloud status page: {}".format(exc),
                updated_at=_now_iso(),
                status_page_url=page_url,
            )

        # An incident without an end timestamp is still active.
        active = [
            inc
            for inc in feed
            if not inc.get("end")
            and any(p.get("id") == GEMINI_PRODUCT_ID for p in inc.get("affected_products") or [])
        ]

        level = "operational"
        if active:
            worst = max(
                (inc.get("severity", "") for inc in active),
                key=lambda s: _SEVERITY_ORDER.get(s, 0),
            )
            level = _SEVERITY_LEVELS.get(worst, "degraded")

        return ProviderStatus(
            provider="gemini",
            status=level,
            description=_DESCRIPTIONS[level].format("Google Gemini"),
            updated_at=_now_iso(),
            status_page_url=page_url,
            incidents=[
                ProviderIncident(
                    name=inc.get("external_desc") or "Unnamed incident",
                    status=inc.get("status") or "investigating",
                    impact=inc.get("severity") or "unknown",
                    created_at=inc.get("begin") or inc.get("created") or "",
                    updated_at=inc.get("modified") or "",
                )
                for inc in active
            ],
        )
