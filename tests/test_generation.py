"""Tests for the generation engine and the shared candidate loop."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
from conftest import FakeLLM

from aihelm.aliases import ModelAliasRegistry, ResolvedModel
from aihelm.generation import CandidateLoop, CandidatesExhausted, GenerationEngine
from aihelm.jobs import Job, JobCancelled, JobState
from aihelm.models import EventStatus, GenerationParameters, Phase
from aihelm.provider import ProviderError
from aihelm.quality import ResponseValidator

Event = Tuple[str, str, Optional[Dict[str, Any]]]


def _generating_job() -> Job:
    job = Job(session_id="s")
    for state in (
        JobState.SCANNING,
        JobState.SCREENING,
        JobState.CLASSIFYING,
        JobState.ROUTING,
        JobState.OPTIMIZING,
        JobState.GENERATING,
    ):
        job.transition(state)
    return job


def _models(*names: str) -> List[ResolvedModel]:
    registry = ModelAliasRegistry()
    return [registry.resolve_model(n) for n in names]


class _Recorder:
    def __init__(self) -> None:
        self.events: List[Event] = []

    async def __call__(
        self,
        phase: Phase,
        status: EventStatus,
        payload: Optional[Dict[str, Any]],
        error: Optional[str],
    ) -> None:
        self.events.append((phase.value, status.value, payload))

    def phases(self) -> List[str]:
        return [p for p, _, _ in self.events]

    def of(self, phase: str) -> List[Event]:
        return [e for e in self.events if e[0] == phase]


async def _generate(
    llm: FakeLLM,
    candidates: List[ResolvedModel],
    recorder: _Recorder,
    job: Optional[Job] = None,
    max_quality_retries: int = 2,
):
    engine = GenerationEngine(llm, ResponseValidator(llm), max_quality_retries=max_quality_retries)
    analysis_model = _models("gemini-flash-lite")[0]
    return await engine.generate(
        job or _generating_job(),
        recorder,
        candidates,
        {"gemini": "g-key", "openai": "o-key", "anthropic": "a-key"},
        "system",
        "prompt",
        GenerationParameters(),
        "user message",
        "user intent",
        analysis_model,
    )


class TestCandidateLoop:
    """Tests for the bounded try-advance loop."""

    def test_empty_candidates(self) -> None:
        with pytest.raises(CandidatesExhausted):
            CandidateLoop([])

    def test_budget_limits_advances(self) -> None:
        loop = CandidateLoop(["a", "b", "c"], budgets={"quality": 1})
        assert loop.can_advance("quality") is True
        assert loop.advance("quality") == "b"
        assert loop.can_advance("quality") is False
        assert loop.can_advance("provider") is True

    @pytest.mark.asyncio
    async def test_flags_result_when_exhausted(self) -> None:
        loop = CandidateLoop(["a"], budgets={})

        async def attempt(candidate: str) -> str:
            return "bad"

        async def on_failure(kind: str, reason: str, failed: str, nxt: Optional[str]) -> None:
            raise AssertionError("no advance expected")

        outcome = await loop.run(attempt, lambda r, e: ("quality", "low"), on_failure)
        assert outcome.flagged is True
        assert outcome.result == "bad"


class TestStreaming:
    """Tests for a clean single-candidate generation."""

    @pytest.mark.asyncio
    async def test_event_order(self) -> None:
        llm = FakeLLM(default_stream=["Hel", "lo"])
        recorder = _Recorder()
        job = _generating_job()
        result = await _generate(llm, _models("gpt-mini"), recorder, job=job)

        assert result.text == "Hello"
        assert result.model.model_id == "gpt-5-mini"
        assert result.attempts == 1
        assert result.flagged is False
        assert recorder.phases() == [
            "generating",
            "response_chunk",
            "response_chunk",
            "generating",
            "response",
            "validating",
            "validating",
        ]
        assert [e[2]["token"] for e in recorder.of("response_chunk")] == ["Hel", "lo"]
        assert recorder.of("response")[0][2]["response"] == "Hello"
        assert job.state is JobState.VALIDATING
        assert job.text == "Hello"

    @pytest.mark.asyncio
    async def test_validation_disabled(self) -> None:
        llm = FakeLLM()
        engine = GenerationEngine(llm, ResponseValidator(llm), validate_responses=False)
        recorder = _Recorder()
        candidates = _models("gpt")
        await engine.generate(
            _generating_job(),
            recorder,
            candidates,
            {"openai": "k"},
            "s",
            "p",
            GenerationParameters(),
            "m",
            "i",
            candidates[0],
        )
        assert "validating" not in recorder.phases()
        assert llm.kinds() == []


class TestProviderFailover:
    """A provider fault moves to the next candidate exactly once."""

    @pytest.mark.asyncio
    async def test_single_provider_error_before_next_attempt(self) -> None:
        llm = FakeLLM(
            streams={
                "gemini-2.5-flash": [ProviderError("gemini", "gemini-2.5-flash", "503 overloaded")],
                "gpt-5-mini": ["From ", "OpenAI"],
            }
        )
        recorder = _Recorder()
        result = await _generate(llm, _models("gemini-flash", "gpt-mini"), recorder)

        errors = recorder.of("provider_error")
        assert len(errors) == 1
        payload = errors[0][2]
        assert payload["failedProvider"] == "gemini"
        assert payload["nextProvider"] == "openai"
        assert payload["nextModel"] == "gpt-5-mini"

        phases = recorder.phases()
        error_at = phases.index("provider_error")
        second_attempt = [
            i for i, e in enumerate(recorder.events)
            if e[0] == "generating" and e[1] == "processing"
        ][1]
        assert error_at < second_attempt

        responses = recorder.of("response")
        assert len(responses) == 1
        assert responses[0][2]["model"] == "gpt-5-mini"
        assert result.text == "From OpenAI"
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_partial_stream_is_cleared(self) -> None:
        llm = FakeLLM(
            streams={
                "gemini-2.5-flash": ["half an ", ProviderError("gemini", "x", "reset")],
                "gpt-5-mini": ["whole answer"],
            }
        )
        recorder = _Recorder()
        job = _generating_job()
        result = await _generate(llm, _models("gemini-flash", "gpt-mini"), recorder, job=job)

        phases = recorder.phases()
        assert phases.index("response_clear") < phases.index("provider_error")
        assert result.text == "whole answer"
        assert job.text == "whole answer"

    @pytest.mark.asyncio
    async def test_all_providers_fail(self) -> None:
        llm = FakeLLM(
            streams={
                "gemini-2.5-flash": [ProviderError("gemini", "a", "down")],
                "gpt-5-mini": [ProviderError("openai", "b", "down too")],
            }
        )
        recorder = _Recorder()
        with pytest.raises(CandidatesExhausted):
            await _generate(llm, _models("gemini-flash", "gpt-mini"), recorder)

        errors = recorder.of("provider_error")
        assert len(errors) == 2
        assert errors[-1][2].get("nextModel") is None
        assert recorder.of("response") == []


class TestQualityRetry:
    """A failed validation retries on the next candidate within budget."""

    @staticmethod
    def _validator_reply(system: str, prompt: str) -> str:
        if "I cannot help" in prompt:
            return "QUALITY: fail\nFAIL_REASON: refusal"
        return "QUALITY: pass\nFAIL_REASON: none"

    @pytest.mark.asyncio
    async def test_retry_on_next_candidate(self) -> None:
        llm = FakeLLM(
            replies={"validate": self._validator_reply},
            streams={"claude-sonnet-4-5": ["I cannot help"], "gpt-5": ["Sure, here it is"]},
        )
        recorder = _Recorder()
        result = await _generate(llm, _models("claude-sonnet", "gpt"), recorder)

        retry = recorder.of("retrying")
        assert len(retry) == 1
        assert retry[0][2]["failReason"] == "refusal"
        assert retry[0][2]["nextModel"] == "gpt-5"
        assert recorder.phases().index("response_clear") < recorder.phases().index("retrying")
        assert result.text == "Sure, here it is"
        assert result.flagged is False

    @pytest.mark.asyncio
    async def test_bound_reached_accepts_and_flags(self) -> None:
        llm = FakeLLM(replies={"validate": self._validator_reply}, default_stream=["I cannot help"])
        recorder = _Recorder()
        result = await _generate(
            llm, _models("claude-sonnet", "gpt", "gemini-pro"), recorder, max_quality_retries=1
        )

        assert len(recorder.of("retrying")) == 1
        assert len(llm.stream_calls) == 2
        assert result.flagged is True
        assert result.text == "I cannot help"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self) -> None:
        gate = asyncio.Event()
        llm = FakeLLM(streams={"gpt-5": ["partial ", gate, "never"]})
        recorder = _Recorder()
        job = _generating_job()

        task = asyncio.create_task(_generate(llm, _models("gpt"), recorder, job=job))
        for _ in range(50):
            await asyncio.sleep(0)
            if job.text:
                break
        job.token.cancel()

        with pytest.raises(JobCancelled):
            await task
        assert job.text == "partial "
        assert recorder.of("response") == []
