"""Configuration loader for AI Helm.

Reads a JSON config file containing provider endpoints, demo-mode admission
limits, the security threshold, generation retry bounds, and auth tokens.
Provider API keys (the server-side demo keys) are resolved from environment
variables named in the config, never stored in the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

PROVIDER_NAMES = ("gemini", "openai", "anthropic")

_DEFAULT_BASE_URLS = {
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
}

_DEFAULT_KEY_ENVS = {
    "gemini": "DEMO_GEMINI_KEY",
    "openai": "DEMO_OPENAI_KEY",
    "anthropic": "DEMO_ANTHROPIC_KEY",
}


@dataclass
class ProviderConfig:
    """Connection settings for a single LLM provider."""

    name: str
    base_url: str
    api_key_env: str
    timeout_seconds: float = 60.0

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the server-side (demo) API key from the environment."""
        return os.getenv(self.api_key_env) or None


@dataclass
class DemoConfig:
    """Admission limits for unauthenticated (demo) usage."""

    enabled: bool = True
    max_per_session: int = 10
    max_per_origin: int = 30
    window_seconds: float = 3600.0
    daily_budget_usd: float = 2.0


@dataclass
class SecurityConfig:
    """Security gate settings."""

    threshold: int = 8


@dataclass
class GenerationConfig:
    """Generation engine settings."""

    max_quality_retries: int = 2
    validate_responses: bool = True
    allow_stub: bool = False


@dataclass
class DiscoveryConfig:
    """Background model discovery settings."""

    enabled: bool = False
    interval_hours: float = 24.0
    startup_delay_seconds: float = 30.0


@dataclass
class AuthConfig:
    """Token authentication configuration."""

    enabled: bool = False
    user_tokens: Dict[str, str] = field(default_factory=dict)  # user_id -> sha256
    admin_keys: Dict[str, str] = field(default_factory=dict)  # key_name -> sha256


@dataclass
class HelmConfig:
    """Top-level AI Helm configuration."""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    demo: DemoConfig = field(default_factory=DemoConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    router_file: Optional[str] = None
    log_file: str = "logs/aihelm.log"

    def demo_keys(self) -> Dict[str, str]:
        """Return the server-side demo keys that are currently set."""
        keys: Dict[str, str] = {}
        for name, provider in self.providers.items():
            if provider.api_key:
                keys[name] = provider.api_key
        return keys


def default_providers() -> Dict[str, ProviderConfig]:
    """Provider settings used when the config file omits a provider."""
    return {
        name: ProviderConfig(
            name=name,
            base_url=_DEFAULT_BASE_URLS[name],
            api_key_env=_DEFAULT_KEY_ENVS[name],
        )
        for name in PROVIDER_NAMES
    }


def load_config(path: Union[str, Path]) -> HelmConfig:
    """Load AI Helm configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved HelmConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object at the top level")

    providers = default_providers()
    for name, prov in raw.get("providers", {}).items():
        if name not in PROVIDER_NAMES:
            raise ValueError(f"Unknown provider in config: {name}")
        providers[name] = ProviderConfig(
            name=name,
            base_url=prov.get("base_url", _DEFAULT_BASE_URLS[name]),
            api_key_env=prov.get("api_key_env", _DEFAULT_KEY_ENVS[name]),
            timeout_seconds=float(prov.get("timeout_seconds", 60.0)),
        )

    demo_raw = raw.get("demo", {})
    demo = DemoConfig(
        enabled=demo_raw.get("enabled", True),
        max_per_session=int(demo_raw.get("max_per_session", 10)),
        max_per_origin=int(demo_raw.get("max_per_origin", 30)),
        window_seconds=float(demo_raw.get("window_seconds", 3600.0)),
        daily_budget_usd=float(demo_raw.get("daily_budget_usd", 2.0)),
    )

    security_raw = raw.get("security", {})
    threshold = int(security_raw.get("threshold", 8))
    if not 1 <= threshold <= 10:
        raise ValueError(f"security.threshold must be between 1 and 10, got {threshold}")
    security = SecurityConfig(threshold=threshold)

    generation_raw = raw.get("generation", {})
    generation = GenerationConfig(
        max_quality_retries=int(generation_raw.get("max_quality_retries", 2)),
        validate_responses=generation_raw.get("validate_responses", True),
        allow_stub=generation_raw.get("allow_stub", False),
    )

    discovery_raw = raw.get("discovery", {})
    discovery = DiscoveryConfig(
        enabled=discovery_raw.get("enabled", False),
        interval_hours=float(discovery_raw.get("interval_hours", 24.0)),
        startup_delay_seconds=float(discovery_raw.get("startup_delay_seconds", 30.0)),
    )

    auth_raw = raw.get("auth", {})
    auth = AuthConfig(
        enabled=auth_raw.get("enabled", False),
        user_tokens=auth_raw.get("user_tokens", {}),
        admin_keys=auth_raw.get("admin_keys", {}),
    )

    return HelmConfig(
        providers=providers,
        demo=demo,
        security=security,
        generation=generation,
        discovery=discovery,
        auth=auth,
        router_file=raw.get("router_file"),
        log_file=raw.get("log_file", "logs/aihelm.log"),
    )
