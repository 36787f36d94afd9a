"""Tests for the classification stage."""

import pytest
from conftest import FakeLLM

from aihelm.analysis import (
    ClassificationStage,
    estimate_complexity,
    estimate_prompt_quality,
    estimate_task_type,
    extract_json,
)
from aihelm.models import AnalysisResult
from aihelm.provider import ProviderError


class TestHeuristics:
    """Tests for the local fallback estimators."""

    def test_extract_json_unwraps_fence(self) -> None:
        assert extract_json('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert extract_json('  {"a": 1} ') == '{"a": 1}'

    @pytest.mark.parametrize(
        "message,task_type",
        [
            ("Please debug this function", "coding"),
            ("Solve this equation for x", "math"),
            ("Write a poem about autumn", "creative"),
            ("Let's chat for a bit", "conversation"),
            ("Analyze these sales figures", "analysis"),
            ("What time is it in Tokyo", "general"),
        ],
    )
    def test_task_type(self, message: str, task_type: str) -> None:
        assert estimate_task_type(message) == task_type

    def test_complexity_by_length(self) -> None:
        assert estimate_complexity("short") == "simple"
        assert estimate_complexity("x" * 301) == "moderate"
        assert estimate_complexity("x" * 1001) == "complex"

    def test_prompt_quality_short_prompt(self) -> None:
        quality = estimate_prompt_quality("help")
        assert quality.clarity == 20
        assert quality.specificity == 30
        assert quality.actionability == 25
        assert quality.score == 25
        assert "Add more detail to your request" in quality.suggestions

    def test_prompt_quality_specific_question(self) -> None:
        quality = estimate_prompt_quality(
            "Can you explain specifically how Python decorators wrap functions?"
        )
        assert quality.specificity == 75
        assert quality.actionability == 65
        assert quality.suggestions == ["Consider adding context or constraints"]


class TestClassificationStage:
    """Tests for the structured call and its fallback."""

    @pytest.mark.asyncio
    async def test_structured_reply(self) -> None:
        llm = FakeLLM()
        result = await ClassificationStage(llm).classify("Explain recursion", "gemini", "m", "k")
        assert result.intent == "User wants a short explanation"
        assert result.style == "casual"
        assert result.promptQuality.score == 70
        assert llm.kinds() == ["classify"]

    @pytest.mark.asyncio
    async def test_fenced_reply(self) -> None:
        llm = FakeLLM()
        llm.replies["classify"] = "```json\n{}\n```".format(llm.replies["classify"])
        result = await ClassificationStage(llm).classify("Explain recursion", "gemini", "m", "k")
        assert result.taskType == "general"

    @pytest.mark.asyncio
    async def test_invalid_json_uses_fallback(self) -> None:
        llm = FakeLLM(
            replies={
                "classify": "not json at all",
                "intent": "User wants to fix a bug",
                "sentiment": "SENTIMENT: negative\nDETAIL: Mild frustration",
                "style": "technical",
            }
        )
        result = await ClassificationStage(llm).classify(
            "Please debug this function", "gemini", "m", "k"
        )
        assert result.intent == "User wants to fix a bug"
        assert result.sentiment == "negative"
        assert result.sentimentDetail == "Mild frustration"
        assert result.style == "technical"
        assert result.taskType == "coding"
        assert sorted(llm.kinds()) == ["classify", "intent", "sentiment", "style"]

    @pytest.mark.asyncio
    async def test_schema_violation_uses_fallback(self) -> None:
        llm = FakeLLM(replies={"classify": '{"intent": "x", "sentiment": "ecstatic"}'})
        result = await ClassificationStage(llm).classify("hello", "gemini", "m", "k")
        assert result.sentiment == "neutral"

    @pytest.mark.asyncio
    async def test_provider_down_still_classifies(self) -> None:
        down = ProviderError("gemini", "m", "unavailable")
        llm = FakeLLM(
            replies={"classify": down, "intent": down, "sentiment": down, "style": down}
        )
        result = await ClassificationStage(llm).classify("Solve 2x = 4", "gemini", "m", "k")
        assert result.taskType == "math"
        assert result.sentiment == "neutral"
        assert result.style == "neutral"
        assert result.intent.startswith("User is asking for help")


class TestSecurityFloor:
    """Security fields on an AnalysisResult can be raised but never lowered."""

    @staticmethod
    def _result(score: int) -> AnalysisResult:
        return AnalysisResult(
            intent="x",
            promptQuality=estimate_prompt_quality("help"),
            securityScore=score,
            securityExplanation="Recon questions",
        )

    def test_higher_score_raises(self) -> None:
        raised = self._result(4).with_security_floor(7, "Exploit walkthrough")
        assert raised.securityScore == 7
        assert raised.securityExplanation == "Exploit walkthrough"

    def test_lower_score_is_ignored(self) -> None:
        original = self._result(6)
        assert original.with_security_floor(2, "Looks fine") is original
        assert original.securityScore == 6
        assert original.securityExplanation == "Recon questions"

    def test_capped_at_ten(self) -> None:
        assert self._result(0).with_security_floor(14, "x").securityScore == 10
