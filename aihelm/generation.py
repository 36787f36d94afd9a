"""Generation engine.

Streams a response from the first routed candidate and moves down the
candidate list when something goes wrong. Two kinds of failure advance the
list: a provider fault (the call errored) and a quality fault (the response
failed validation). Both go through one CandidateLoop, which bounds how
many times each kind may advance.
"""

import logging
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from aihelm.aliases import ResolvedModel
from aihelm.jobs import Job, JobState
from aihelm.models import (
    ChunkPayload,
    EventStatus,
    GenerationParameters,
    Phase,
    ProviderErrorPayload,
    RetryPayload,
)
from aihelm.provider import LLMClient, ProviderError
from aihelm.quality import ResponseValidator, ValidationResult

_logger = logging.getLogger("aihelm")

T = TypeVar("T")
R = TypeVar("R")

PROVIDER_FAULT = "provider"
QUALITY_FAULT = "quality"

Emit = Callable[[Phase, EventStatus, Optional[Dict[str, Any]], Optional[str]], Awaitable[None]]


class CandidatesExhausted(Exception):
    """Raised when every candidate has failed and nothing can be returned."""

    def __init__(self, detail: str, last_error: Optional[BaseException] = None) -> None:
        self.detail = detail
        self.last_error = last_error
        super().__init__(detail)


@dataclass
class LoopOutcome(Generic[T, R]):
    """The accepted result and where it came from."""

    result: R
    candidate: T
    attempts: int
    flagged: bool = False


class CandidateLoop(Generic[T]):
    """Try candidates in order, advancing on classified failures.

    ``budgets`` caps how many times each failure kind may advance the list;
    kinds without a budget are limited only by the number of candidates.
    When a failure cannot advance and the attempt produced a result, that
    result is accepted and flagged. When it produced only an error, the loop
    raises CandidatesExhausted.
    """

    def __init__(self, candidates: Sequence[T], budgets: Optional[Dict[str, int]] = None) -> None:
        if not candidates:
            raise CandidatesExhausted("No candidates to try")
        self._candidates = list(candidates)
        self._budgets = dict(budgets or {})
        self.index = 0
        self.attempts = 0

    @property
    def current(self) -> T:
        return self._candidates[self.index]

    def peek_next(self) -> Optional[T]:
        if self.index + 1 < len(self._candidates):
            return self._candidates[self.index + 1]
        return None

    def can_advance(self, kind: str) -> bool:
        if self.peek_next() is None:
            return False
        budget = self._budgets.get(kind)
        return budget is None or budget > 0

    def advance(self, kind: str) -> T:
        if not self.can_advance(kind):
            raise CandidatesExhausted("No further candidates for {} failure".format(kind))
        if kind in self._budgets:
            self._budgets[kind] -= 1
        self.index += 1
        return self.current

    async def run(
        self,
        attempt: Callable[[T], Awaitable[R]],
        classify: Callable[[Optional[R], Optional[Exception]], Optional[Tuple[str, str]]],
        on_failure: Callable[[str, str, T, Optional[T]], Awaitable[None]],
        retry_on: Tuple[type, ...] = (),
    ) -> LoopOutcome[T, R]:
        """Run attempts until one is accepted.

        Args:
            attempt: Called with the current candidate.
            classify: Maps (result, error) to None for success, or a
                (kind, reason) pair describing the failure.
            on_failure: Notified with (kind, reason, failed, next) before the
                loop advances. ``next`` is None when the loop cannot advance.
            retry_on: Exception types that count as classifiable failures.
                Anything else propagates.

        Raises:
            CandidatesExhausted: If an erroring attempt cannot advance.
        """
        while True:
            candidate = self.current
            self.attempts += 1
            result: Optional[R] = None
            error: Optional[Exception] = None
            try:
                result = await attempt(candidate)
            except retry_on as exc:
                error = exc

            verdict = classify(result, error)
            if verdict is None:
                return LoopOutcome(result=result, candidate=candidate, attempts=self.attempts)

            kind, reason = verdict
            if not self.can_advance(kind):
                if error is not None:
                    await on_failure(kind, reason, candidate, None)
                    raise CandidatesExhausted(
                        "All candidates failed; last error: {}".format(reason), error
                    )
                return LoopOutcome(
                    result=result, candidate=candidate, attempts=self.attempts, flagged=True
                )

            await on_failure(kind, reason, candidate, self.peek_next())
            self.advance(kind)


@dataclass
class Attempt:
    text: str
    validation: ValidationResult


@dataclass
class GenerationResult:
    text: str
    model: ResolvedModel
    attempts: int
    flagged: bool = False
    validation: Optional[ValidationResult] = None


class GenerationEngine:
    """Streams, validates and fails over across routed candidates."""

    def __init__(
        self,
        llm: LLMClient,
        validator: ResponseValidator,
        max_quality_retries: int = 2,
        validate_responses: bool = True,
    ) -> None:
        self._llm = llm
        self._validator = validator
        self._max_quality_retries = max_quality_retries
        self._validate_responses = validate_responses

    async def generate(
        self,
        job: Job,
        emit: Emit,
        candidates: Sequence[ResolvedModel],
        keys: Dict[str, str],
        system: str,
        prompt: str,
        params: GenerationParameters,
        message: str,
        intent: str,
        analysis_model: ResolvedModel,
    ) -> GenerationResult:
        """Generate a validated response for ``job``.

        Args:
            job: The running job; its text accumulates streamed fragments.
            emit: Sends a phase event for this job.
            candidates: Routed models in priority order.
            keys: API key per provider.
            system: System prompt.
            prompt: The optimized user prompt.
            params: Sampling parameters.
            message: The redacted user message, for validation.
            intent: The classified intent, for validation.
            analysis_model: Model used for response validation.

        Returns:
            The accepted GenerationResult.

        Raises:
            CandidatesExhausted: If every candidate's provider call failed.
            JobCancelled: If the job's token fires.
        """
        loop: CandidateLoop[ResolvedModel] = CandidateLoop(
            candidates, budgets={QUALITY_FAULT: self._max_quality_retries}
        )
        async def attempt(model: ResolvedModel) -> Attempt:
            job.candidate_index = loop.index
            await emit(
                Phase.GENERATING,
                EventStatus.PROCESSING,
                {"provider": model.provider, "model": model.model_id, "attempt": loop.attempts},
                None,
            )
            stream = self._llm.stream(
                model.provider, model.model_id, system, prompt, keys.get(model.provider), params
            )
            async for fragment in job.token.iterate(stream):
                job.append_text(fragment)
                await emit(
                    Phase.RESPONSE_CHUNK,
                    EventStatus.PROCESSING,
                    ChunkPayload(token=fragment).model_dump(),
                    None,
                )

            text = job.text
            await emit(
                Phase.GENERATING,
                EventStatus.COMPLETED,
                {"message": "Response generated by {}".format(model.display_name)},
                None,
            )
            await emit(
                Phase.RESPONSE,
                EventStatus.COMPLETED,
                {"response": text, "provider": model.provider, "model": model.model_id},
                None,
            )

            job.transition(JobState.VALIDATING)
            if not self._validate_responses:
                return Attempt(text=text, validation=ValidationResult(passed=True))

            await emit(Phase.VALIDATING, EventStatus.PROCESSING, None, None)
            validation = await job.token.guard(
                self._validator.validate(
                    message,
                    intent,
                    text,
                    analysis_model.provider,
                    analysis_model.model_id,
                    keys.get(analysis_model.provider),
                )
            )
            await emit(
                Phase.VALIDATING,
                EventStatus.COMPLETED,
                {
                    "passed": validation.passed,
                    "failReason": validation.fail_reason,
                    "userSummary": validation.user_summary,
                    "validation": validation.validation,
                },
                None,
            )
            return Attempt(text=text, validation=validation)

        def classify(
            result: Optional[Attempt], error: Optional[Exception]
        ) -> Optional[Tuple[str, str]]:
            if error is not None:
                detail = error.detail if isinstance(error, ProviderError) else str(error)
                return PROVIDER_FAULT, detail
            if result is not None and not result.validation.passed:
                return QUALITY_FAULT, result.validation.fail_reason or "low_quality"
            return None

        async def on_failure(
            kind: str, reason: str, failed: ResolvedModel, nxt: Optional[ResolvedModel]
        ) -> None:
            if kind == PROVIDER_FAULT:
                _logger.warning(
                    "Provider %s (%s) failed for job %s: %s",
                    failed.provider,
                    failed.model_id,
                    job.id,
                    reason,
                )
                if job.text:
                    job.clear_text()
                    await emit(Phase.RESPONSE_CLEAR, EventStatus.PROCESSING, None, None)
                await emit(
                    Phase.PROVIDER_ERROR,
                    EventStatus.PROCESSING,
                    ProviderErrorPayload(
                        failedProvider=failed.provider,
                        failedModel=failed.model_id,
                        error=reason,
                        nextProvider=nxt.provider if nxt else None,
                        nextModel=nxt.model_id if nxt else None,
                    ).model_dump(),
                    None,
                )
                if nxt is not None:
                    job.transition(JobState.PROVIDER_FAILOVER)
                    job.transition(JobState.GENERATING)
                return

            # Quality fault with a next candidate available.
            job.clear_text()
            await emit(Phase.RESPONSE_CLEAR, EventStatus.PROCESSING, None, None)
            await emit(
                Phase.RETRYING,
                EventStatus.PROCESSING,
                RetryPayload(
                    failReason=reason,
                    attempt=loop.attempts + 1,
                    nextProvider=nxt.provider,
                    nextModel=nxt.model_id,
                ).model_dump(),
                None,
            )
            job.transition(JobState.QUALITY_RETRY)
            job.transition(JobState.GENERATING)

        outcome = await loop.run(attempt, classify, on_failure, retry_on=(ProviderError,))
        if outcome.flagged:
            _logger.info(
                "Job %s accepted a response that failed validation after %d attempts",
                job.id,
                outcome.attempts,
            )
        return GenerationResult(
            text=outcome.result.text,
            model=outcome.candidate,
            attempts=outcome.attempts,
            flagged=outcome.flagged,
            validation=outcome.result.validation,
        )
