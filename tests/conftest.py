"""Shared test fixtures for AI Helm tests."""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import pytest

from aihelm.config import HelmConfig, load_config
from aihelm.models import GenerationParameters, KeyValidationResult

CLASSIFICATION_REPLY = json.dumps(
    {
        "intent": "User wants a short explanation",
        "sentiment": "neutral",
        "sentimentDetail": "Calm curiosity",
        "style": "casual",
        "taskType": "general",
        "complexity": "simple",
        "promptQuality": {
            "score": 70,
            "clarity": 75,
            "specificity": 60,
            "actionability": 75,
            "suggestions": ["Say what level of detail you want"],
        },
    }
)

DEFAULT_REPLIES: Dict[str, str] = {
    "risk": "SCORE: 1\nEXPLANATION: Benign request",
    "classify": CLASSIFICATION_REPLY,
    "intent": "User wants a short explanation",
    "sentiment": "SENTIMENT: neutral\nDETAIL: Calm curiosity",
    "style": "casual",
    "optimize": "Explain this clearly and briefly.",
    "tune": "TEMPERATURE: 0.5\nTOP_P: 0.9\nMAX_TOKENS: 2000",
    "validate": (
        "USER SEEKING: A short explanation\n"
        "VALIDATION: The response answers the question\n"
        "QUALITY: pass\n"
        "FAIL_REASON: none"
    ),
    "research": "NO",
}

_KINDS = (
    ("You are a security analyst", "risk"),
    ("You are an advanced AI analysis engine", "classify"),
    ("You are an intent analyzer", "intent"),
    ("You are a sentiment analyzer", "sentiment"),
    ("You are a communication style analyzer", "style"),
    ("You are a prompt optimizer", "optimize"),
    ("You are an AI parameter tuner", "tune"),
    ("You are validating", "validate"),
    ("Decide whether", "research"),
)

Reply = Union[str, Exception, Callable[[str, str], str]]
StreamItem = Union[str, Exception, asyncio.Event]


def prompt_kind(system: str) -> str:
    for prefix, kind in _KINDS:
        if system.startswith(prefix):
            return kind
    return "other"


@dataclass
class Call:
    provider: str
    model: str
    system: str
    prompt: str
    api_key: Optional[str]
    kind: str = "other"


class FakeLLM:
    """Scripted LLMClient.

    ``replies`` overrides the answer per prompt kind; a reply may be a
    string, an exception to raise, or a callable of (system, prompt).
    ``streams`` scripts generation per model id; items are text fragments,
    exceptions to raise mid-stream, or events to block on.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, Reply]] = None,
        streams: Optional[Dict[str, List[StreamItem]]] = None,
        default_stream: Optional[List[StreamItem]] = None,
    ) -> None:
        self.replies: Dict[str, Reply] = dict(DEFAULT_REPLIES)
        self.replies.update(replies or {})
        self.streams = streams or {}
        self.default_stream = default_stream or ["Recursion is ", "a function calling itself."]
        self.complete_calls: List[Call] = []
        self.stream_calls: List[Call] = []
        self.key_checks: List[Call] = []

    def kinds(self) -> List[str]:
        return [c.kind for c in self.complete_calls]

    async def complete(
        self,
        provider: str,
        model: str,
        system: str,
        prompt: str,
        api_key: Optional[str],
        params: Optional[GenerationParameters] = None,
    ) -> str:
        kind = prompt_kind(system)
        self.complete_calls.append(Call(provider, model, system, prompt, api_key, kind))
        reply = self.replies.get(kind, "")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(system, prompt)
        return reply

    async def validate_key(self, provider: str, api_key: str) -> KeyValidationResult:
        """Keys starting with "bad" are rejected."""
        self.key_checks.append(Call(provider, "", "", "", api_key, "validate_key"))
        if api_key.startswith("bad"):
            return KeyValidationResult(valid=False, error="Invalid API key")
        return KeyValidationResult(valid=True)

    async def stream(
        self,
        provider: str,
        model: str,
        system: str,
        prompt: str,
        api_key: Optional[str],
        params: Optional[GenerationParameters] = None,
    ) -> AsyncIterator[str]:
        self.stream_calls.append(Call(provider, model, system, prompt, api_key, "generate"))
        for item in self.streams.get(model, self.default_stream):
            await asyncio.sleep(0)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item


def _make_config(tmp_path: Path, overrides: Optional[Dict[str, Any]] = None) -> str:
    """Write a minimal test config and return its path."""
    config: Dict[str, Any] = {
        "providers": {
            "gemini": {"api_key_env": "TEST_GEMINI_KEY"},
            "openai": {"api_key_env": "TEST_OPENAI_KEY"},
            "anthropic": {"api_key_env": "TEST_ANTHROPIC_KEY"},
        },
        "demo": {
            "enabled": True,
            "max_per_session": 5,
            "max_per_origin": 10,
            "daily_budget_usd": 2.0,
        },
        "security": {"threshold": 8},
        "generation": {"max_quality_retries": 2},
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture(autouse=True)
def _clear_provider_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real provider keys in the environment out of tests."""
    for name in (
        "TEST_GEMINI_KEY",
        "TEST_OPENAI_KEY",
        "TEST_ANTHROPIC_KEY",
        "DEMO_GEMINI_KEY",
        "DEMO_OPENAI_KEY",
        "DEMO_ANTHROPIC_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> HelmConfig:
    """Return a loaded test HelmConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM()
