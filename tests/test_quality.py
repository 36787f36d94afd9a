"""Tests for response validation and research classification."""

import pytest
from conftest import FakeLLM

from aihelm.provider import ProviderError
from aihelm.quality import ResponseValidator, classify_research, parse_validation


class TestParseValidation:
    """The validator fails open on anything it cannot read."""

    def test_pass(self) -> None:
        result = parse_validation(
            "USER SEEKING: A recipe\nVALIDATION: Gives a recipe\nQUALITY: pass\nFAIL_REASON: none"
        )
        assert result.passed is True
        assert result.fail_reason is None
        assert result.user_summary == "A recipe"
        assert result.validation == "Gives a recipe"

    def test_fail_with_reason(self) -> None:
        result = parse_validation("QUALITY: FAIL\nFAIL_REASON: refusal")
        assert result.passed is False
        assert result.fail_reason == "refusal"

    def test_unknown_reason_becomes_low_quality(self) -> None:
        result = parse_validation("QUALITY: fail\nFAIL_REASON: grumpy")
        assert result.fail_reason == "low_quality"

    def test_unreadable_passes(self) -> None:
        assert parse_validation("¯\\_(ツ)_/¯").passed is True


class TestResponseValidator:
    """Tests for the validator model call."""

    @pytest.mark.asyncio
    async def test_empty_response_fails_without_model_call(self) -> None:
        llm = FakeLLM()
        result = await ResponseValidator(llm).validate("q", "intent", "   ", "g", "m", "k")
        assert result.passed is False
        assert result.fail_reason == "incomplete"
        assert llm.complete_calls == []

    @pytest.mark.asyncio
    async def test_model_verdict(self) -> None:
        llm = FakeLLM(replies={"validate": "QUALITY: fail\nFAIL_REASON: off_topic"})
        result = await ResponseValidator(llm).validate(
            "How do I boil an egg?", "cooking", "Paris is in France.", "g", "m", "k"
        )
        assert result.fail_reason == "off_topic"
        assert "Paris is in France." in llm.complete_calls[0].prompt

    @pytest.mark.asyncio
    async def test_provider_failure_passes(self) -> None:
        llm = FakeLLM(replies={"validate": ProviderError("g", "m", "down")})
        result = await ResponseValidator(llm).validate("q", "i", "an answer", "g", "m", "k")
        assert result.passed is True


class TestClassifyResearch:
    """Tests for the deep-research classifier."""

    @pytest.mark.asyncio
    async def test_model_yes(self) -> None:
        llm = FakeLLM(replies={"research": "YES"})
        assert await classify_research(llm, "anything", "g", "m", "k") is True

    @pytest.mark.asyncio
    async def test_model_no_overrides_keywords(self) -> None:
        llm = FakeLLM(replies={"research": "no."})
        assert await classify_research(llm, "compare these", "g", "m", "k") is False

    @pytest.mark.asyncio
    async def test_keyword_fallback_without_model(self) -> None:
        llm = FakeLLM()
        assert await classify_research(llm, "Do a comprehensive comparison", None, None, None)
        assert not await classify_research(llm, "What is 2+2?", None, None, None)
        assert llm.complete_calls == []

    @pytest.mark.asyncio
    async def test_keyword_fallback_on_failure(self) -> None:
        llm = FakeLLM(replies={"research": ProviderError("g", "m", "down")})
        assert await classify_research(llm, "Research the EV market", "g", "m", "k") is True
