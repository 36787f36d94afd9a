"""Model alias registry.

Maps version-free aliases (e.g. "gemini-pro") to the concrete provider model
ids currently in use (e.g. "gemini-2.5-pro"). The discovery service updates
the mapping as providers ship new versions, so router rules never need to
name a version string.

The registry is an explicit service object. Create one per application (or
per test) and pass it to the router and generation engine.
"""

import re
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple


class UnknownAliasError(Exception):
    """Raised when a name is neither a known alias nor a recognised model id."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.detail = "Unknown model alias or id: '{}'".format(name)
        super().__init__(self.detail)


@dataclass(frozen=True)
class ModelPricing:
    """USD per one million tokens."""

    input: float
    output: float


@dataclass(frozen=True)
class ModelFamily:
    """One model family per (provider, tier)."""

    alias: str
    provider: str
    display_name: str
    cost_tier: str
    speed_tier: str
    id_pattern: Pattern[str]
    default_model_id: str
    pricing: ModelPricing
    context_window: int
    strengths: Tuple[str, ...] = ()

    def matches(self, model_id: str) -> bool:
        return bool(self.id_pattern.search(model_id))

    def to_dict(self) -> Dict[str, object]:
        return {
            "alias": self.alias,
            "provider": self.provider,
            "displayName": self.display_name,
            "costTier": self.cost_tier,
            "speedTier": self.speed_tier,
            "defaultModelId": self.default_model_id,
            "pricing": {"input": self.pricing.input, "output": self.pricing.output},
            "contextWindow": self.context_window,
            "strengths": list(self.strengths),
        }


@dataclass(frozen=True)
class ResolvedModel:
    """A router entry resolved to something a provider can be called with."""

    alias: str
    provider: str
    model_id: str
    display_name: str
    family: ModelFamily


# Order matters for reverse lookup: flash-lite must be tried before flash.
DEFAULT_FAMILIES: Tuple[ModelFamily, ...] = (
    ModelFamily(
        alias="gemini-flash-lite",
        provider="gemini",
        display_name="Gemini Flash-Lite",
        cost_tier="ultra-low",
        speed_tier="ultra-fast",
        id_pattern=re.compile(r"^gemini-[\d.]+-flash-lite"),
        default_model_id="gemini-2.5-flash-lite",
        pricing=ModelPricing(0.10, 0.40),
        context_window=1_000_000,
        strengths=("speed", "cost", "high-volume", "simple-tasks"),
    ),
    ModelFamily(
        alias="gemini-flash",
        provider="gemini",
        display_name="Gemini Flash",
        cost_tier="low",
        speed_tier="fast",
        id_pattern=re.compile(r"^gemini-[\d.]+-flash$"),
        default_model_id="gemini-2.5-flash",
        pricing=ModelPricing(0.30, 2.50),
        context_window=1_000_000,
        strengths=("balanced", "multimodal", "production", "agents"),
    ),
    ModelFamily(
        alias="gemini-pro",
        provider="gemini",
        display_name="Gemini Pro",
        cost_tier="medium",
        speed_tier="medium",
        id_pattern=re.compile(r"^gemini-[\d.]+-pro"),
        default_model_id="gemini-2.5-pro",
        pricing=ModelPricing(1.25, 10.00),
        context_window=1_000_000,
        strengths=("math", "science", "long-context", "coding", "web-dev"),
    ),
    ModelFamily(
        alias="gpt-nano",
        provider="openai",
        display_name="GPT Nano",
        cost_tier="ultra-low",
        speed_tier="ultra-fast",
        id_pattern=re.compile(r"^gpt-\d+-nano"),
        default_model_id="gpt-5-nano",
        pricing=ModelPricing(0.15, 1.50),
        context_window=256_000,
        strengths=("speed", "mobile", "edge", "high-volume"),
    ),
    ModelFamily(
        alias="gpt-mini",
        provider="openai",
        display_name="GPT Mini",
        cost_tier="low",
        speed_tier="fast",
        id_pattern=re.compile(r"^gpt-\d+-mini"),
        default_model_id="gpt-5-mini",
        pricing=ModelPricing(0.50, 5.00),
        context_window=256_000,
        strengths=("balanced", "cost-efficient", "general-purpose"),
    ),
    ModelFamily(
        alias="gpt",
        provider="openai",
        display_name="GPT",
        cost_tier="medium",
        speed_tier="medium",
        id_pattern=re.compile(r"^gpt-\d+$"),
        default_model_id="gpt-5",
        pricing=ModelPricing(2.00, 8.00),
        context_window=256_000,
        strengths=("conversation", "multimodal", "reasoning", "general"),
    ),
    ModelFamily(
        alias="claude-haiku",
        provider="anthropic",
        display_name="Claude Haiku",
        cost_tier="low",
        speed_tier="ultra-fast",
        id_pattern=re.compile(r"^claude-haiku"),
        default_model_id="claude-haiku-4-5",
        pricing=ModelPricing(1.00, 5.00),
        context_window=200_000,
        strengths=("speed", "coding", "extended-thinking", "ui-scaffolding"),
    ),
    ModelFamily(
        alias="claude-sonnet",
        provider="anthropic",
        display_name="Claude Sonnet",
        cost_tier="medium",
        speed_tier="medium",
        id_pattern=re.compile(r"^claude-sonnet"),
        default_model_id="claude-sonnet-4-5",
        pricing=ModelPricing(3.00, 15.00),
        context_window=200_000,
        strengths=("best-coding", "complex-agents", "system-design", "production"),
    ),
    ModelFamily(
        alias="claude-opus",
        provider="anthropic",
        display_name="Claude Opus",
        cost_tier="premium",
        speed_tier="slow",
        id_pattern=re.compile(r"^claude-opus"),
        default_model_id="claude-opus-4-1",
        pricing=ModelPricing(15.00, 75.00),
        context_window=200_000,
        strengths=("creative", "edge-cases", "code-review", "polish", "deep-reasoning"),
    ),
)

_COST_ORDER = {"ultra-low": 0, "low": 1, "medium": 2, "high": 3, "premium": 4}


class ModelAliasRegistry:
    """Thread-safe alias -> concrete model id mapping."""

    def __init__(self, families: Iterable[ModelFamily] = DEFAULT_FAMILIES) -> None:
        self._families: Tuple[ModelFamily, ...] = tuple(families)
        self._by_alias: Dict[str, ModelFamily] = {f.alias: f for f in self._families}
        self._resolved: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.reset_to_defaults()

    def resolve(self, alias: str) -> str:
        """Return the current concrete id for ``alias``.

        A raw model id, or any unrecognised name, is returned unchanged.
        """
        with self._lock:
            return self._resolved.get(alias, alias)

    def reverse_lookup(self, model_id: str) -> Optional[ModelFamily]:
        """Find the family a concrete model id belongs to.

        Matching is by the family's id pattern, so versions released after
        this code was written still resolve to the right family.
        """
        for family in self._families:
            if family.matches(model_id):
                return family
        return None

    def update(self, alias: str, model_id: str) -> None:
        """Point ``alias`` at a new concrete model id.

        Raises:
            UnknownAliasError: If ``alias`` is not a known family alias.
        """
        if alias not in self._by_alias:
            raise UnknownAliasError(alias)
        with self._lock:
            self._resolved[alias] = model_id

    def reset_to_defaults(self) -> None:
        with self._lock:
            self._resolved = {f.alias: f.default_model_id for f in self._families}

    def family(self, alias: str) -> Optional[ModelFamily]:
        return self._by_alias.get(alias)

    def families(self) -> List[ModelFamily]:
        return list(self._families)

    def is_alias(self, name: str) -> bool:
        return name in self._by_alias

    def snapshot(self) -> Dict[str, str]:
        """Return a copy of the full alias -> model id map."""
        with self._lock:
            return dict(self._resolved)

    def resolve_model(self, name: str) -> ResolvedModel:
        """Resolve an alias or raw model id to a callable model.

        Args:
            name: A family alias or a concrete model id.

        Returns:
            A ResolvedModel naming the provider and concrete id.

        Raises:
            UnknownAliasError: If no family recognises ``name``.
        """
        family = self._by_alias.get(name)
        if family is not None:
            model_id = self.resolve(name)
        else:
            family = self.reverse_lookup(name)
            if family is None:
                raise UnknownAliasError(name)
            model_id = name
        return ResolvedModel(
            alias=family.alias,
            provider=family.provider,
            model_id=model_id,
            display_name=family.display_name,
            family=family,
        )

    def cheapest(self, providers: Iterable[str]) -> Optional[ResolvedModel]:
        """Return the lowest cost-tier model among the given providers."""
        allowed = set(providers)
        candidates = [f for f in self._families if f.provider in allowed]
        if not candidates:
            return None
        best = min(
            candidates,
            key=lambda f: (_COST_ORDER.get(f.cost_tier, 99), f.pricing.input + f.pricing.output),
        )
        return self.resolve_model(best.alias)

    def estimate_cost(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        """Estimate the USD cost of a call. Unknown models cost nothing."""
        family = self._by_alias.get(model_id) or self.reverse_lookup(model_id)
        if family is None:
            return 0.0
        return (
            input_tokens * family.pricing.input + output_tokens * family.pricing.output
        ) / 1_000_000
