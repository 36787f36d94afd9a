"""Provider adapter for Gemini, OpenAI and Anthropic.

Every call is made through httpx against the provider's REST API and read
as a server-sent event stream, so callers get text fragments as they
arrive. A stub mode returns canned text when no API key is available and
stubbing is enabled, which lets the service run without credentials.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

import httpx

from aihelm.config import ProviderConfig, default_providers
from aihelm.models import GenerationParameters, KeyValidationResult

_logger = logging.getLogger("aihelm")

ANTHROPIC_VERSION = "2023-06-01"

# Analysis calls are short and deterministic.
ANALYSIS_PARAMETERS = GenerationParameters(temperature=0.3, top_p=1.0, max_tokens=500)

_PROVIDER_LABELS = {"gemini": "Gemini", "openai": "OpenAI", "anthropic": "Anthropic"}

_STUB_RESPONSE = (
    "This is a stub response from AI Helm. "
    "Configure a valid API key to get real completions."
)


class ProviderError(Exception):
    """Raised when a provider call fails for any reason."""

    def __init__(
        self,
        provider: str,
        model: str,
        detail: str,
        status_code: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.detail = detail
        self.status_code = status_code
        super().__init__("{} ({}): {}".format(provider, model, detail))


class LLMClient(Protocol):
    """What the pipeline needs from a model provider."""

    def stream(
        self,
        provider: str,
        model: str,
        system: str,
        prompt: str,
        api_key: Optional[str],
        params: Optional[GenerationParameters] = None,
    ) -> AsyncIterator[str]:
        ...

    async def complete(
        self,
        provider: str,
        model: str,
        system: str,
        prompt: str,
        api_key: Optional[str],
        params: Optional[GenerationParameters] = None,
    ) -> str:
        ...

    async def validate_key(self, provider: str, api_key: str) -> KeyValidationResult:
        ...


class HttpLLMClient:
    """LLMClient backed by the providers' HTTP APIs."""

    def __init__(
        self,
        providers: Optional[Dict[str, ProviderConfig]] = None,
        allow_stub: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._providers = providers or default_providers()
        self._allow_stub = allow_stub
        self._transport = transport

    async def complete(
        self,
        provider: str,
        model: str,
        system: str,
        prompt: str,
        api_key: Optional[str],
        params: Optional[GenerationParameters] = None,
    ) -> str:
        """Run a call to completion and return the full text."""
        parts: List[str] = []
        async for fragment in self.stream(
            provider, model, system, prompt, api_key, params or ANALYSIS_PARAMETERS
        ):
            parts.append(fragment)
        return "".join(parts).strip()

    async def validate_key(self, provider: str, api_key: str) -> KeyValidationResult:
        """Check ``api_key`` against the provider's model listing.

        Listing models is authenticated but free, so no tokens are spent.
        Failures are reported in the result rather than raised.
        """
        config = self._providers.get(provider)
        if config is None:
            return KeyValidationResult(valid=False, error="Unknown provider")
        if not api_key:
            return KeyValidationResult(valid=False, error="API key is required")

        label = _PROVIDER_LABELS.get(provider, provider)
        try:
            async with httpx.AsyncClient(
                timeout=config.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.get(
                    config.base_url.rstrip("/") + "/models",
                    headers=_auth_headers(provider, api_key),
                )
        except httpx.HTTPError as exc:
            _logger.warning("%s key validation failed: %s", label, exc)
            return KeyValidationResult(
                valid=False, error="{} API error: {}".format(label, type(exc).__name__)
            )

        if resp.status_code < 400:
            return KeyValidationResult(valid=True)
        detail = _error_message(resp.content, resp.status_code)
        # Gemini answers a bad key with 400 rather than 401.
        if resp.status_code in (401, 403) or "API key not valid" in detail:
            return KeyValidationResult(valid=False, error="Invalid API key")
        if resp.status_code == 429:
            return KeyValidationResult(valid=False, error="API quota exceeded")
        return KeyValidationResult(valid=False, error="{} API error: {}".format(label, detail))

    async def stream(
        self,
        provider: str,
        model: str,
        system: str,
        prompt: str,
        api_key: Optional[str],
        params: Optional[GenerationParameters] = None,
    ) -> AsyncIterator[str]:
        """Stream text fragments from a provider.

        Args:
            provider: One of "gemini", "openai", "anthropic".
            model: The concrete model id.
            system: System instructions.
            prompt: The user prompt.
            api_key: Key to call with. Falls back to stub text when empty
                and stubbing is enabled.
            params: Sampling parameters.

        Yields:
            Text fragments in arrival order.

        Raises:
            ProviderError: On any transport, HTTP or payload failure.
        """
        params = params or GenerationParameters()
        config = self._providers.get(provider)
        if config is None:
            raise ProviderError(provider, model, "Unsupported provider")

        if not api_key:
            if not self._allow_stub:
                raise ProviderError(provider, model, "No API key available")
            async for fragment in _stub_stream():
                yield fragment
            return

        url, headers, body = _build_request(config, model, system, prompt, params, api_key)
        extract = _EXTRACTORS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=config.timeout_seconds, transport=self._transport
            ) as client:
                async with client.stream("POST", url, json=body, headers=headers) as resp:
                    if resp.status_code >= 400:
                        raw = await resp.aread()
                        raise ProviderError(
                            provider,
                            model,
                            _error_message(raw, resp.status_code),
                            status_code=resp.status_code,
                        )
                    async for data in _sse_data(resp):
                        text = extract(data)
                        if text:
                            yield text
        except httpx.HTTPError as exc:
            raise ProviderError(
                provider, model, "{}: {}".format(type(exc).__name__, exc)
            ) from exc
        except ValueError as exc:
            raise ProviderError(provider, model, str(exc)) from exc


async def _stub_stream() -> AsyncIterator[str]:
    words = _STUB_RESPONSE.split(" ")
    for i, word in enumerate(words):
        await asyncio.sleep(0)
        yield word if i == len(words) - 1 else word + " "


async def _sse_data(resp: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Yield decoded JSON payloads from an SSE response."""
    async for line in resp.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            _logger.debug("Skipping undecodable stream line: %s", data[:200])


def _auth_headers(provider: str, api_key: str) -> Dict[str, str]:
    if provider == "openai":
        return {"Authorization": "Bearer {}".format(api_key)}
    if provider == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
    return {"x-goog-api-key": api_key}


def _error_message(raw: bytes, status_code: int) -> str:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return "HTTP {}".format(status_code)
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return "HTTP {}: {}".format(status_code, error["message"])
    return "HTTP {}".format(status_code)


def _build_request(
    config: ProviderConfig,
    model: str,
    system: str,
    prompt: str,
    params: GenerationParameters,
    api_key: str,
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    base = config.base_url.rstrip("/")

    if config.name == "openai":
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return (
            "{}/chat/completions".format(base),
            _auth_headers(config.name, api_key),
            {
                "model": model,
                "messages": messages,
                "temperature": params.temperature,
                "top_p": params.top_p,
                "max_tokens": params.max_tokens,
                "stream": True,
            },
        )

    if config.name == "anthropic":
        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }
        if system:
            body["system"] = system
        return (
            "{}/messages".format(base),
            _auth_headers(config.name, api_key),
            body,
        )

    body = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": params.temperature,
            "topP": params.top_p,
            "maxOutputTokens": params.max_tokens,
        },
    }
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    return (
        "{}/models/{}:streamGenerateContent?alt=sse".format(base, model),
        _auth_headers(config.name, api_key),
        body,
    )


def _openai_text(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or [{}]
    return (choices[0].get("delta") or {}).get("content") or ""


def _anthropic_text(data: Dict[str, Any]) -> str:
    if data.get("type") == "error":
        raise ValueError((data.get("error") or {}).get("message", "stream error"))
    if data.get("type") != "content_block_delta":
        return ""
    delta = data.get("delta") or {}
    return delta.get("text", "") if delta.get("type") == "text_delta" else ""


def _gemini_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or [{}]
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts)


_EXTRACTORS = {
    "openai": _openai_text,
    "anthropic": _anthropic_text,
    "gemini": _gemini_text,
}
