"""Tests for the HTTP provider adapter."""

import json
from typing import Dict, List

import httpx
import pytest

from aihelm.models import GenerationParameters
from aihelm.provider import HttpLLMClient, ProviderError


def _sse(*payloads: Dict) -> bytes:
    lines = ["data: {}\n\n".format(json.dumps(p)) for p in payloads]
    return "".join(lines).encode()


class _Capture:
    """MockTransport handler that records requests and replays one body."""

    def __init__(self, body: bytes, status_code: int = 200) -> None:
        self.body = body
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            self.status_code,
            content=self.body,
            headers={"content-type": "text/event-stream"},
        )

    @property
    def last_json(self) -> Dict:
        return json.loads(self.requests[-1].content)


def _client(handler: _Capture, allow_stub: bool = False) -> HttpLLMClient:
    return HttpLLMClient(allow_stub=allow_stub, transport=httpx.MockTransport(handler))


async def _collect(client: HttpLLMClient, provider: str, model: str, key: str = "k") -> List[str]:
    return [
        part
        async for part in client.stream(
            provider, model, "be brief", "hello", key, GenerationParameters(max_tokens=100)
        )
    ]


class TestOpenAI:
    @pytest.mark.asyncio
    async def test_request_and_stream(self) -> None:
        handler = _Capture(
            _sse(
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}}]},
            )
            + b"data: [DONE]\n\n"
        )
        parts = await _collect(_client(handler), "openai", "gpt-5-mini", key="sk-test")

        assert parts == ["Hel", "lo"]
        request = handler.requests[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = handler.last_json
        assert body["model"] == "gpt-5-mini"
        assert body["stream"] is True
        assert body["max_tokens"] == 100
        assert body["messages"][0] == {"role": "system", "content": "be brief"}
        assert body["messages"][1] == {"role": "user", "content": "hello"}


class TestAnthropic:
    @pytest.mark.asyncio
    async def test_request_and_stream(self) -> None:
        handler = _Capture(
            _sse(
                {"type": "message_start", "message": {}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
                {"type": "content_block_delta", "delta": {"type": "input_json_delta"}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "!"}},
                {"type": "message_stop"},
            )
        )
        parts = await _collect(_client(handler), "anthropic", "claude-haiku-4-5", key="ak")

        assert parts == ["Hi", "!"]
        request = handler.requests[0]
        assert request.url.path.endswith("/messages")
        assert request.headers["x-api-key"] == "ak"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = handler.last_json
        assert body["system"] == "be brief"
        assert body["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_stream_error_event(self) -> None:
        handler = _Capture(
            _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        )
        with pytest.raises(ProviderError) as exc_info:
            await _collect(_client(handler), "anthropic", "claude-haiku-4-5")
        assert "Overloaded" in exc_info.value.detail


class TestGemini:
    @pytest.mark.asyncio
    async def test_request_and_stream(self) -> None:
        handler = _Capture(
            _sse(
                {"candidates": [{"content": {"parts": [{"text": "Good "}]}}]},
                {"candidates": [{"content": {"parts": [{"text": "day"}]}}]},
            )
        )
        parts = await _collect(_client(handler), "gemini", "gemini-2.5-flash", key="gk")

        assert parts == ["Good ", "day"]
        request = handler.requests[0]
        assert request.url.path.endswith("/models/gemini-2.5-flash:streamGenerateContent")
        assert request.url.params["alt"] == "sse"
        assert request.headers["x-goog-api-key"] == "gk"
        body = handler.last_json
        assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert body["generationConfig"]["maxOutputTokens"] == 100


class TestErrors:
    """Every failure surfaces as ProviderError."""

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        handler = _Capture(
            json.dumps({"error": {"message": "Rate limit reached"}}).encode(), status_code=429
        )
        with pytest.raises(ProviderError) as exc_info:
            await _collect(_client(handler), "openai", "gpt-5")
        assert exc_info.value.status_code == 429
        assert exc_info.value.detail == "HTTP 429: Rate limit reached"

    @pytest.mark.asyncio
    async def test_http_error_without_body(self) -> None:
        handler = _Capture(b"upstream gone", status_code=502)
        with pytest.raises(ProviderError) as exc_info:
            await _collect(_client(handler), "gemini", "gemini-2.5-pro")
        assert exc_info.value.detail == "HTTP 502"

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = HttpLLMClient(transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderError) as exc_info:
            await _collect(client, "openai", "gpt-5")
        assert "ConnectError" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_unsupported_provider(self) -> None:
        with pytest.raises(ProviderError):
            await _collect(HttpLLMClient(), "mistral", "large")

    @pytest.mark.asyncio
    async def test_missing_key_without_stub(self) -> None:
        handler = _Capture(b"")
        with pytest.raises(ProviderError) as exc_info:
            await _collect(_client(handler), "openai", "gpt-5", key="")
        assert exc_info.value.detail == "No API key available"
        assert handler.requests == []


class TestComplete:
    @pytest.mark.asyncio
    async def test_joins_and_strips(self) -> None:
        handler = _Capture(
            _sse(
                {"choices": [{"delta": {"content": "  SCORE: 2\n"}}]},
                {"choices": [{"delta": {"content": "EXPLANATION: fine  "}}]},
            )
        )
        text = await _client(handler).complete("openai", "gpt-5-mini", "s", "p", "k")
        assert text == "SCORE: 2\nEXPLANATION: fine"
        assert handler.last_json["max_tokens"] == 500

    @pytest.mark.asyncio
    async def test_stub_mode(self) -> None:
        handler = _Capture(b"")
        text = await _client(handler, allow_stub=True).complete("gemini", "m", "s", "p", None)
        assert text.startswith("This is a stub response")
        assert handler.requests == []


class TestValidateKey:
    """Key checks hit the model listing and never raise."""

    @pytest.mark.asyncio
    async def test_valid_key(self) -> None:
        handler = _Capture(json.dumps({"data": []}).encode())
        result = await _client(handler).validate_key("anthropic", "sk-ant-test")

        assert result.valid is True
        assert result.error is None
        request = handler.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/v1/models"
        assert request.headers["x-api-key"] == "sk-ant-test"

    @pytest.mark.asyncio
    async def test_unauthorized(self) -> None:
        handler = _Capture(b"{}", status_code=401)
        result = await _client(handler).validate_key("openai", "sk-wrong")
        assert result.valid is False
        assert result.error == "Invalid API key"
        assert handler.requests[0].headers["authorization"] == "Bearer sk-wrong"

    @pytest.mark.asyncio
    async def test_gemini_bad_key_is_400(self) -> None:
        body = json.dumps({"error": {"message": "API key not valid. Please pass a valid API key."}})
        result = await _client(_Capture(body.encode(), status_code=400)).validate_key(
            "gemini", "AIza-wrong"
        )
        assert result.error == "Invalid API key"

    @pytest.mark.asyncio
    async def test_quota_exceeded(self) -> None:
        result = await _client(_Capture(b"", status_code=429)).validate_key("openai", "sk")
        assert result.error == "API quota exceeded"

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        result = await _client(_Capture(b"", status_code=500)).validate_key("anthropic", "k")
        assert result.error == "Anthropic API error: HTTP 500"

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = HttpLLMClient(transport=httpx.MockTransport(handler))
        result = await client.validate_key("gemini", "k")
        assert result.valid is False
        assert result.error == "Gemini API error: ConnectError"

    @pytest.mark.asyncio
    async def test_empty_key_and_unknown_provider(self) -> None:
        handler = _Capture(b"")
        client = _client(handler)
        assert (await client.validate_key("openai", "")).error == "API key is required"
        assert (await client.validate_key("mistral", "k")).error == "Unknown provider"
        assert handler.requests == []
