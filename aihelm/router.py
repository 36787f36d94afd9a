"""Rule-based model routing.

Router rules are evaluated top to bottom against the request's analysis.
The first enabled rule that matches, and that names at least one model on
a provider the caller can use, supplies the ordered candidate list. When no
rule qualifies, the catch-all list is used.

Rule sets are versioned: every save appends an immutable version to the
store, and older versions can be inspected, diffed, or restored.
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from aihelm.aliases import ModelAliasRegistry, ResolvedModel, UnknownAliasError


class RoutingError(Exception):
    """Raised when a router config is invalid or no candidate is available."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


@dataclass(frozen=True)
class RuleConditions:
    """Conditions a request must meet for a rule to apply.

    Empty or unset conditions match everything.
    """

    task_types: List[str] = field(default_factory=list)
    complexity: List[str] = field(default_factory=list)
    security_score_max: Optional[int] = None
    prompt_length_min: Optional[int] = None
    prompt_length_max: Optional[int] = None
    custom_regex: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleConditions":
        return cls(
            task_types=list(data.get("taskTypes") or []),
            complexity=list(data.get("complexity") or []),
            security_score_max=data.get("securityScoreMax"),
            prompt_length_min=data.get("promptLengthMin"),
            prompt_length_max=data.get("promptLengthMax"),
            custom_regex=data.get("customRegex") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.task_types:
            out["taskTypes"] = list(self.task_types)
        if self.complexity:
            out["complexity"] = list(self.complexity)
        if self.security_score_max is not None:
            out["securityScoreMax"] = self.security_score_max
        if self.prompt_length_min is not None:
            out["promptLengthMin"] = self.prompt_length_min
        if self.prompt_length_max is not None:
            out["promptLengthMax"] = self.prompt_length_max
        if self.custom_regex:
            out["customRegex"] = self.custom_regex
        return out


@dataclass(frozen=True)
class RouterRule:
    """A single routing rule card."""

    id: str
    name: str
    model_priority: List[str]
    conditions: RuleConditions = field(default_factory=RuleConditions)
    enabled: bool = True
    reasoning: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouterRule":
        """Create a RouterRule from a dictionary (JSON or YAML parsed)."""
        if not data.get("id"):
            raise RoutingError("Router rule is missing an id")
        return cls(
            id=str(data["id"]),
            name=data.get("name", data["id"]),
            model_priority=list(data.get("modelPriority") or []),
            conditions=RuleConditions.from_dict(data.get("conditions") or {}),
            enabled=data.get("enabled", True),
            reasoning=data.get("reasoning", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "conditions": self.conditions.to_dict(),
            "modelPriority": list(self.model_priority),
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class RouterConfig:
    """An ordered rule list plus the catch-all priority list."""

    rules: List[RouterRule]
    catch_all: List[str]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouterConfig":
        return cls(
            rules=[RouterRule.from_dict(r) for r in data.get("rules") or []],
            catch_all=list(data.get("catchAll") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules": [r.to_dict() for r in self.rules],
            "catchAll": list(self.catch_all),
        }


@dataclass(frozen=True)
class RequestFeatures:
    """The parts of a request the router looks at."""

    message: str
    task_type: str = "general"
    complexity: str = "simple"
    security_score: int = 0


@dataclass(frozen=True)
class RouteSelection:
    """Ordered candidates for one request, plus why they were chosen."""

    candidates: List[ResolvedModel]
    reasoning: str
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None

    @property
    def primary(self) -> ResolvedModel:
        return self.candidates[0]


def default_router_config() -> RouterConfig:
    """The built-in rule set used until an administrator saves their own."""
    return RouterConfig.from_dict(
        {
            "rules": [
                {
                    "id": "default-simple",
                    "name": "Simple & fast tasks",
                    "conditions": {"complexity": ["simple"]},
                    "modelPriority": [
                        "gemini-flash-lite",
                        "gpt-nano",
                        "gemini-flash",
                        "gpt-mini",
                        "claude-haiku",
                    ],
                    "reasoning": "Cost-efficient models for simple tasks",
                },
                {
                    "id": "default-coding",
                    "name": "Complex coding",
                    "conditions": {
                        "taskTypes": ["coding"],
                        "complexity": ["moderate", "complex"],
                    },
                    "modelPriority": [
                        "claude-sonnet",
                        "gemini-pro",
                        "claude-haiku",
                        "gpt",
                        "gemini-flash",
                    ],
                    "reasoning": "Claude Sonnet excels at complex coding",
                },
                {
                    "id": "default-math",
                    "name": "Advanced math",
                    "conditions": {
                        "taskTypes": ["math"],
                        "complexity": ["moderate", "complex"],
                    },
                    "modelPriority": ["gemini-pro", "claude-opus", "gpt"],
                    "reasoning": "Gemini Pro leads in math reasoning",
                },
                {
                    "id": "default-creative",
                    "name": "Creative writing",
                    "conditions": {
                        "taskTypes": ["creative"],
                        "complexity": ["moderate", "complex"],
                    },
                    "modelPriority": ["claude-opus", "claude-sonnet", "gpt", "gemini-pro"],
                    "reasoning": "Claude models excel at style-preserving creative content",
                },
                {
                    "id": "default-analysis",
                    "name": "Deep analysis",
                    "conditions": {
                        "taskTypes": ["analysis"],
                        "complexity": ["moderate", "complex"],
                    },
                    "modelPriority": ["gemini-pro", "claude-opus", "gpt", "claude-sonnet"],
                    "reasoning": "Premium models for complex analytical tasks",
                },
                {
                    "id": "default-conversation",
                    "name": "Conversation",
                    "conditions": {"taskTypes": ["conversation"]},
                    "modelPriority": ["gpt", "claude-sonnet", "gemini-flash"],
                    "reasoning": "GPT provides natural, engaging dialogue",
                },
            ],
            "catchAll": [
                "gemini-flash",
                "gpt-mini",
                "gemini-flash-lite",
                "gpt-nano",
                "claude-haiku",
                "gpt",
                "gemini-pro",
            ],
        }
    )


def load_router_config(path: str) -> RouterConfig:
    """Load a router rule set from a YAML file.

    Args:
        path: Path to the YAML rules file.

    Returns:
        The parsed RouterConfig.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML is not a mapping.
    """
    rules_path = Path(path)
    if not rules_path.exists():
        raise FileNotFoundError("Router rules file not found: {}".format(path))

    with open(rules_path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Router rules file must contain a YAML mapping at the top level")

    return RouterConfig.from_dict(raw)


def validate_router_config(config: RouterConfig, registry: ModelAliasRegistry) -> None:
    """Check that every priority entry resolves and rule ids are unique.

    Raises:
        RoutingError: Describing the first problem found.
    """
    seen = set()
    for rule in config.rules:
        if rule.id in seen:
            raise RoutingError("Duplicate router rule id: '{}'".format(rule.id))
        seen.add(rule.id)
        if not rule.model_priority:
            raise RoutingError("Rule '{}' has an empty model priority list".format(rule.id))
        for name in rule.model_priority:
            try:
                registry.resolve_model(name)
            except UnknownAliasError as exc:
                raise RoutingError("Rule '{}': {}".format(rule.id, exc.detail)) from exc

    if not config.catch_all:
        raise RoutingError("The catch-all list must name at least one model")
    for name in config.catch_all:
        try:
            registry.resolve_model(name)
        except UnknownAliasError as exc:
            raise RoutingError("Catch-all: {}".format(exc.detail)) from exc


class ModelRouter:
    """Evaluates a RouterConfig against request features."""

    def __init__(self, registry: ModelAliasRegistry) -> None:
        self._registry = registry

    def matches(self, rule: RouterRule, features: RequestFeatures) -> bool:
        """Return True if ``rule`` is enabled and all its conditions hold."""
        if not rule.enabled:
            return False
        cond = rule.conditions

        if cond.task_types and features.task_type not in cond.task_types:
            return False
        if cond.complexity and features.complexity not in cond.complexity:
            return False
        if cond.security_score_max is not None and features.security_score > cond.security_score_max:
            return False
        if cond.prompt_length_min is not None and len(features.message) < cond.prompt_length_min:
            return False
        if cond.prompt_length_max is not None and len(features.message) > cond.prompt_length_max:
            return False

        if cond.custom_regex:
            try:
                pattern = re.compile(cond.custom_regex, re.IGNORECASE)
            except re.error:
                # An unparseable regex is ignored rather than blocking the rule.
                pattern = None
            if pattern is not None and not pattern.search(features.message):
                return False

        return True

    def candidates(
        self, names: Iterable[str], available_providers: Optional[Iterable[str]] = None
    ) -> List[ResolvedModel]:
        """Resolve a priority list, keeping only usable, distinct models."""
        allowed = set(available_providers) if available_providers is not None else None
        out: List[ResolvedModel] = []
        seen = set()
        for name in names:
            try:
                resolved = self._registry.resolve_model(name)
            except UnknownAliasError:
                continue
            if allowed is not None and resolved.provider not in allowed:
                continue
            if resolved.model_id in seen:
                continue
            seen.add(resolved.model_id)
            out.append(resolved)
        return out

    def select_candidates(
        self,
        config: RouterConfig,
        features: RequestFeatures,
        available_providers: Optional[Iterable[str]] = None,
    ) -> RouteSelection:
        """Pick the ordered candidate list for a request.

        Args:
            config: The active router config.
            features: Classification results and the message text.
            available_providers: Providers the caller holds keys for. None
                means every provider is usable.

        Returns:
            A RouteSelection with at least one candidate.

        Raises:
            RoutingError: If neither a rule nor the catch-all yields a
                usable model.
        """
        providers = list(available_providers) if available_providers is not None else None

        for rule in config.rules:
            if not self.matches(rule, features):
                continue
            found = self.candidates(rule.model_priority, providers)
            if not found:
                continue
            return RouteSelection(
                candidates=found,
                reasoning=rule.reasoning or "Matched rule: {}".format(rule.name),
                matched_rule_id=rule.id,
                matched_rule_name=rule.name,
            )

        found = self.candidates(config.catch_all, providers)
        if not found:
            raise RoutingError(
                "No model is available for the configured providers: {}".format(
                    ", ".join(sorted(providers or [])) or "(none)"
                )
            )
        return RouteSelection(
            candidates=found,
            reasoning="No rule matched. Using catch-all: {}".format(found[0].display_name),
        )


@dataclass(frozen=True)
class RouterConfigVersion:
    """One immutable saved version of a router config."""

    version: int
    config: RouterConfig
    change_description: str
    changed_by: str
    user_id: Optional[str] = None
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        out = self.config.to_dict()
        out.update(
            {
                "version": self.version,
                "changeDescription": self.change_description,
                "changedBy": self.changed_by,
                "userId": self.user_id,
                "createdAt": self.created_at,
            }
        )
        return out


def diff_configs(old: RouterConfig, new: RouterConfig) -> Dict[str, Any]:
    """Describe the rule-level differences between two configs."""
    old_rules = {r.id: r for r in old.rules}
    new_rules = {r.id: r for r in new.rules}
    return {
        "added": [r.to_dict() for r in new.rules if r.id not in old_rules],
        "removed": [r.to_dict() for r in old.rules if r.id not in new_rules],
        "modified": [
            {"before": old_rules[r.id].to_dict(), "after": r.to_dict()}
            for r in new.rules
            if r.id in old_rules and old_rules[r.id] != r
        ],
        "catchAllChanged": old.catch_all != new.catch_all,
    }


class RouterConfigStore:
    """Versioned router configs with an org scope and per-user overrides.

    Versions are numbered per scope starting at 1 and never modified.
    A user's override, when present, takes precedence over the org config.
    """

    def __init__(
        self,
        registry: ModelAliasRegistry,
        initial: Optional[RouterConfig] = None,
        created_by: str = "system",
    ) -> None:
        self._registry = registry
        self._versions: Dict[Optional[str], List[RouterConfigVersion]] = {None: []}
        self._lock = threading.Lock()
        self.save(
            initial or default_router_config(),
            change_description="Initial config seeded from default rules",
            changed_by=created_by,
        )

    def save(
        self,
        config: RouterConfig,
        change_description: str = "",
        changed_by: str = "admin",
        user_id: Optional[str] = None,
    ) -> RouterConfigVersion:
        """Validate ``config`` and append it as the newest version.

        Raises:
            RoutingError: If the config does not validate.
        """
        validate_router_config(config, self._registry)
        with self._lock:
            versions = self._versions.setdefault(user_id, [])
            entry = RouterConfigVersion(
                version=len(versions) + 1,
                config=config,
                change_description=change_description,
                changed_by=changed_by,
                user_id=user_id,
            )
            versions.append(entry)
            return entry

    def active(self, user_id: Optional[str] = None) -> RouterConfigVersion:
        with self._lock:
            if user_id is not None and self._versions.get(user_id):
                return self._versions[user_id][-1]
            return self._versions[None][-1]

    def history(self, user_id: Optional[str] = None) -> List[RouterConfigVersion]:
        """All versions of a scope, newest first."""
        with self._lock:
            return list(reversed(self._versions.get(user_id, [])))

    def get_version(self, version: int, user_id: Optional[str] = None) -> RouterConfigVersion:
        with self._lock:
            versions = self._versions.get(user_id, [])
            if not 1 <= version <= len(versions):
                raise RoutingError("Router config version {} not found".format(version))
            return versions[version - 1]

    def revert(
        self, version: int, changed_by: str = "admin", user_id: Optional[str] = None
    ) -> RouterConfigVersion:
        """Restore an older version by saving a copy of it as the newest."""
        target = self.get_version(version, user_id)
        return self.save(
            target.config,
            change_description="Reverted to version {}".format(version),
            changed_by=changed_by,
            user_id=user_id,
        )

    def diff(self, a: int, b: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        return diff_configs(
            self.get_version(a, user_id).config, self.get_version(b, user_id).config
        )
