"""Model discovery.

Lists each provider's model catalog and points every alias at the newest
matching model id. Runs on demand (admin endpoint) and periodically in the
background when enabled in config.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from aihelm.aliases import ModelAliasRegistry, ModelFamily
from aihelm.config import ProviderConfig, default_providers

_logger = logging.getLogger("aihelm")

# Snapshot dates ("-20250514", "-2024-08-06") are not versions.
_DATE_SUFFIX_RE = re.compile(r"-(?:\d{8}|\d{4}-\d{2}-\d{2})$")
_VERSION_RE = re.compile(r"(?<!\d)(\d+)[-.](\d{1,2})(?!\d)")
_SINGLE_VERSION_RE = re.compile(r"(\d+)")


@dataclass
class DiscoveryResult:
    alias: str
    previous_model_id: str
    new_model_id: str
    changed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alias": self.alias,
            "previousModelId": self.previous_model_id,
            "newModelId": self.new_model_id,
            "changed": self.changed,
        }


@dataclass
class DiscoveryReport:
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    results: List[DiscoveryResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    has_updates: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
            "hasUpdates": self.has_updates,
        }


def extract_version(model_id: str) -> float:
    """Pull a comparable version number out of a model id.

    "gemini-2.5-pro" -> 2.5, "claude-sonnet-4-5-20250514" -> 4.5,
    "claude-opus-4-20250514" -> 4, "gpt-5-nano" -> 5. A trailing snapshot
    date is ignored. Ids without digits rank lowest.
    """
    base = _DATE_SUFFIX_RE.sub("", model_id)
    match = _VERSION_RE.search(base)
    if match:
        return float("{}.{}".format(match.group(1), match.group(2)))
    single = _SINGLE_VERSION_RE.search(base)
    if single:
        return int(single.group(1))
    return 0


def find_best_match(family: ModelFamily, model_ids: List[str]) -> Optional[str]:
    """Pick the newest id in ``model_ids`` belonging to ``family``.

    Highest version wins; ties go to the shortest id, which prefers a base
    name over its date-suffixed snapshots.
    """
    matches = [m for m in model_ids if family.matches(m)]
    if not matches:
        return None
    matches.sort(key=lambda m: (-extract_version(m), len(m)))
    return matches[0]


class ModelDiscovery:
    """Queries provider model catalogs and updates the alias registry."""

    def __init__(
        self,
        registry: ModelAliasRegistry,
        providers: Optional[Dict[str, ProviderConfig]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._registry = registry
        self._providers = providers or default_providers()
        self._transport = transport
        self.last_report: Optional[DiscoveryReport] = None

    def _client(self, provider: ProviderConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=provider.timeout_seconds, transport=self._transport)

    async def list_models(self, provider: str, api_key: str) -> List[str]:
        """Return the model ids ``provider`` currently offers.

        Raises:
            httpx.HTTPError: If the catalog request fails.
            KeyError: If ``provider`` is not configured.
        """
        cfg = self._providers[provider]
        base = cfg.base_url.rstrip("/")
        async with self._client(cfg) as client:
            if provider == "openai":
                resp = await client.get(
                    base + "/models", headers={"Authorization": "Bearer " + api_key}
                )
                resp.raise_for_status()
                return [
                    m["id"]
                    for m in resp.json().get("data", [])
                    if m.get("owned_by") in ("openai", "system")
                ]
            if provider == "anthropic":
                resp = await client.get(
                    base + "/models",
                    params={"limit": 100},
                    headers={"x-api-key": api_key, "anthropic-version": "2023-06-01"},
                )
                resp.raise_for_status()
                return [m["id"] for m in resp.json().get("data", [])]
            if provider == "gemini":
                resp = await client.get(
                    base + "/models",
                    params={"pageSize": 100},
                    headers={"x-goog-api-key": api_key},
                )
                resp.raise_for_status()
                ids = []
                for m in resp.json().get("models", []):
                    name = m.get("name", "")
                    if name:
                        ids.append(name[len("models/"):] if name.startswith("models/") else name)
                return ids
        raise KeyError(provider)

    async def run(self, keys: Dict[str, str]) -> DiscoveryReport:
        """Discover models for every provider with a key and update aliases.

        Provider failures are recorded in the report; they never raise.
        Families whose provider returned nothing keep their current id.
        """
        report = DiscoveryReport()
        names = [name for name in self._providers if keys.get(name)]

        async def fetch(name: str) -> List[str]:
            try:
                return await self.list_models(name, keys[name])
            except (httpx.HTTPError, KeyError, ValueError) as exc:
                report.errors.append("{} discovery failed: {}".format(name, exc))
                return []

        catalogs = dict(zip(names, await asyncio.gather(*(fetch(n) for n in names))))

        for family in self._registry.families():
            ids = catalogs.get(family.provider)
            if not ids:
                continue
            previous = self._registry.resolve(family.alias)
            best = find_best_match(family, ids)
            if best and best != previous:
                self._registry.update(family.alias, best)
                report.results.append(DiscoveryResult(family.alias, previous, best, True))
                report.has_updates = True
            else:
                report.results.append(
                    DiscoveryResult(family.alias, previous, best or previous, False)
                )

        if report.has_updates:
            _logger.info(
                "Model discovery updated: %s",
                ", ".join(
                    "{} -> {}".format(r.alias, r.new_model_id) for r in report.results if r.changed
                ),
            )
        for error in report.errors:
            _logger.warning(error)

        self.last_report = report
        return report


async def run_periodically(
    discovery: ModelDiscovery,
    keys: Callable[[], Dict[str, str]],
    interval_seconds: float,
    startup_delay_seconds: float = 0.0,
) -> None:
    """Run discovery after a delay and then every ``interval_seconds``.

    Runs until cancelled. ``keys`` is called before each run so rotated
    environment keys are picked up.
    """
    await asyncio.sleep(startup_delay_seconds)
    while True:
        try:
            await discovery.run(keys())
        except Exception:
            _logger.exception("Scheduled model discovery failed")
        await asyncio.sleep(interval_seconds)
