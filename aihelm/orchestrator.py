"""Per-connection job orchestration.

One JobOrchestrator serves one WebSocket connection. It parses inbound
commands, runs at most one analyze job at a time as a background task (so
the connection can still receive ``cancel``), and reports every pipeline
phase to the client as a JobEvent.

Pipeline order: scan -> admission (demo path only) -> security screening ->
classification -> routing -> prompt optimization and tuning -> generation
-> complete.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from aihelm import dlp
from aihelm.aliases import ModelAliasRegistry, ResolvedModel
from aihelm.analysis import ClassificationStage
from aihelm.budget import DemoBudgetTracker
from aihelm.config import PROVIDER_NAMES, HelmConfig
from aihelm.context import UserProgressTracker, build_system_context
from aihelm.generation import CandidatesExhausted, GenerationEngine
from aihelm.jobs import Job, JobCancelled, JobState
from aihelm.models import (
    AnalysisResult,
    AnalyzeCommand,
    AnalyzePayload,
    CancelCommand,
    CancelledPayload,
    EventStatus,
    JobEvent,
    Phase,
    SecurityHaltPayload,
    inbound_command_adapter,
)
from aihelm.optimizer import PromptOptimizer
from aihelm.provider import HttpLLMClient, LLMClient
from aihelm.quality import ResponseValidator
from aihelm.router import (
    ModelRouter,
    RequestFeatures,
    RouterConfigStore,
    RoutingError,
    load_router_config,
)
from aihelm.security import SecurityGate
from aihelm.telemetry import log_job_event

_logger = logging.getLogger("aihelm")

CANCEL_MARKER = "\n\n[Cancelled]"
UNKNOWN_INTENT = "Not yet determined; infer it from the message itself"

# Phases that open with `processing` and must close with `completed` or `error`.
_STAGE_PHASES = frozenset(
    {
        Phase.SECURITY,
        Phase.INTENT,
        Phase.SENTIMENT,
        Phase.STYLE,
        Phase.PROMPT_QUALITY,
        Phase.MODEL,
        Phase.PROMPT,
        Phase.PARAMETERS,
        Phase.GENERATING,
        Phase.VALIDATING,
    }
)

Send = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class Services:
    """Shared, process-wide collaborators handed to every orchestrator."""

    config: HelmConfig
    llm: LLMClient
    registry: ModelAliasRegistry
    router: ModelRouter
    router_store: RouterConfigStore
    budget: DemoBudgetTracker
    security: SecurityGate
    classifier: ClassificationStage
    optimizer: PromptOptimizer
    validator: ResponseValidator
    engine: GenerationEngine
    progress: UserProgressTracker = field(default_factory=UserProgressTracker)

    @classmethod
    def from_config(
        cls,
        config: HelmConfig,
        llm: Optional[LLMClient] = None,
        registry: Optional[ModelAliasRegistry] = None,
        router_store: Optional[RouterConfigStore] = None,
    ) -> "Services":
        """Build the service graph for ``config``."""
        llm = llm or HttpLLMClient(config.providers, allow_stub=config.generation.allow_stub)
        registry = registry or ModelAliasRegistry()
        if router_store is None:
            initial = load_router_config(config.router_file) if config.router_file else None
            router_store = RouterConfigStore(registry, initial)
        validator = ResponseValidator(llm)
        return cls(
            config=config,
            llm=llm,
            registry=registry,
            router=ModelRouter(registry),
            router_store=router_store,
            budget=DemoBudgetTracker(
                max_per_session=config.demo.max_per_session,
                max_per_origin=config.demo.max_per_origin,
                daily_budget_usd=config.demo.daily_budget_usd,
                window_seconds=config.demo.window_seconds,
            ),
            security=SecurityGate(config.security.threshold),
            classifier=ClassificationStage(llm),
            optimizer=PromptOptimizer(llm),
            validator=validator,
            engine=GenerationEngine(
                llm,
                validator,
                max_quality_retries=config.generation.max_quality_retries,
                validate_responses=config.generation.validate_responses,
            ),
        )


class _AdmissionDenied(Exception):
    def __init__(self, reason: str, code: Optional[str]) -> None:
        self.reason = reason
        self.code = code
        super().__init__(reason)


class JobOrchestrator:
    """Runs analyze jobs for a single connection."""

    def __init__(
        self,
        services: Services,
        session_id: str,
        origin: str,
        send: Send,
        user_id: Optional[str] = None,
    ) -> None:
        self._services = services
        self.session_id = session_id
        self.origin = origin
        self.user_id = user_id
        self._send = send
        self._job: Optional[Job] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._silenced: set = set()
        self._open_phases: Dict[str, List[Phase]] = {}
        self._closed = False

    @property
    def active_job(self) -> Optional[Job]:
        return self._job

    @property
    def task(self) -> Optional["asyncio.Task[None]"]:
        return self._task

    async def handle(self, raw: Any) -> None:
        """Dispatch one inbound command (text frame or decoded JSON)."""
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            command = inbound_command_adapter.validate_python(data)
        except (ValueError, ValidationError) as exc:
            _logger.info("Rejected malformed command on session %s: %s", self.session_id, exc)
            await self._send_event(
                JobEvent(
                    jobId="",
                    phase=Phase.STARTED,
                    status=EventStatus.ERROR,
                    error="Invalid command: {}".format(_first_error(exc)),
                )
            )
            return

        if isinstance(command, AnalyzeCommand):
            await self.start(command.payload)
        elif isinstance(command, CancelCommand):
            await self.cancel(command.jobId)

    async def start(self, payload: AnalyzePayload) -> Optional[str]:
        """Start a job for ``payload``.

        Returns:
            The new job id, or None if the request was rejected because a
            job is already running on this connection.
        """
        if self._job is not None and not self._job.terminal:
            rejected_id = str(uuid.uuid4())
            await self._send_event(
                JobEvent(
                    jobId=rejected_id,
                    phase=Phase.STARTED,
                    status=EventStatus.ERROR,
                    payload={"activeJobId": self._job.id},
                    error="A job is already running on this connection. "
                    "Cancel it or wait for it to finish.",
                )
            )
            log_job_event(
                job_id=rejected_id,
                session_id=self.session_id,
                outcome="rejected",
                demo=False,
                error="job already running",
            )
            return None

        job = Job(session_id=self.session_id)
        self._job = job
        self._task = asyncio.create_task(self._run(job, payload))
        return job.id

    async def cancel(self, job_id: str) -> bool:
        """Cancel the running job if ``job_id`` names it.

        The streamed text is kept with a cancellation marker appended, a
        ``cancelled`` event is sent, and the job emits nothing afterwards.
        """
        job = self._job
        if job is None or job.id != job_id or job.terminal:
            _logger.info("Ignoring cancel for unknown or finished job %s", job_id)
            return False

        job.token.cancel()
        job.transition(JobState.CANCELLED)
        job.append_text(CANCEL_MARKER)
        self._silenced.add(job.id)
        await self._send_event(
            JobEvent(
                jobId=job.id,
                phase=Phase.CANCELLED,
                status=EventStatus.COMPLETED,
                payload=CancelledPayload(response=job.text).model_dump(),
            )
        )
        return True

    async def close(self) -> None:
        """Tear down on disconnect: stop the running job and send nothing more."""
        self._closed = True
        job = self._job
        if job is not None and not job.terminal:
            job.token.cancel()
            job.transition(JobState.CANCELLED)
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        self._job = None
        self._task = None

    # --- internals ---

    async def _send_event(self, event: JobEvent) -> None:
        if self._closed:
            return
        try:
            await self._send(event.to_wire())
        except Exception as exc:
            # The socket is gone; stop emitting for this connection.
            _logger.warning("Dropping events for session %s: %s", self.session_id, exc)
            self._closed = True

    async def _emit(
        self,
        job: Job,
        phase: Phase,
        status: EventStatus,
        payload: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if job.id in self._silenced:
            return
        open_phases = self._open_phases.setdefault(job.id, [])
        if phase in _STAGE_PHASES:
            if status is EventStatus.PROCESSING:
                if phase not in open_phases:
                    open_phases.append(phase)
            elif phase in open_phases:
                open_phases.remove(phase)
        await self._send_event(
            JobEvent(jobId=job.id, phase=phase, status=status, payload=payload, error=error)
        )

    async def _fail(self, job: Job, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Close every phase still in progress with an error, then end the job."""
        if not job.terminal:
            job.transition(JobState.ERROR)
        for phase in self._open_phases.pop(job.id, []):
            await self._emit(job, phase, EventStatus.ERROR, None, message)
        await self._emit(job, Phase.COMPLETE, EventStatus.ERROR, payload, message)

    async def _run(self, job: Job, payload: AnalyzePayload) -> None:
        outcome = "error"
        summary: Dict[str, Any] = {"demo": False}
        error: Optional[str] = None
        try:
            outcome = await self._pipeline(job, payload, summary)
        except JobCancelled:
            outcome = "cancelled"
        except _AdmissionDenied as exc:
            error = exc.reason
            await self._fail(job, exc.reason, {"reason": exc.reason, "code": exc.code})
        except (CandidatesExhausted, RoutingError) as exc:
            error = exc.detail
            _logger.warning("Job %s failed in %s: %s", job.id, job.state.value, exc.detail)
            await self._fail(job, exc.detail)
        except Exception as exc:
            if job.state is JobState.CANCELLED:
                outcome = "cancelled"
            else:
                error = str(exc)
                _logger.exception("Job %s failed unexpectedly in phase %s", job.id, job.state.value)
                await self._fail(job, "An unexpected error occurred while processing your request.")
        finally:
            self._open_phases.pop(job.id, None)
            if job.state is JobState.CANCELLED:
                outcome = "cancelled"
            log_job_event(
                job_id=job.id,
                session_id=self.session_id,
                outcome=outcome,
                demo=summary.get("demo", False),
                provider=summary.get("provider"),
                model=summary.get("model"),
                attempts=summary.get("attempts", 0),
                cost_usd=summary.get("cost"),
                security_score=summary.get("security_score"),
                error=error,
            )

    def _resolve_keys(self, payload: AnalyzePayload) -> Dict[str, str]:
        user_keys = payload.apiKeys.present()
        if user_keys:
            return user_keys
        return self._services.config.demo_keys()

    def _available_providers(self, keys: Dict[str, str]) -> List[str]:
        if self._services.config.generation.allow_stub:
            return list(PROVIDER_NAMES)
        return [name for name in PROVIDER_NAMES if keys.get(name)]

    async def _pipeline(self, job: Job, payload: AnalyzePayload, summary: Dict[str, Any]) -> str:
        services = self._services
        token = job.token

        await self._emit(job, Phase.STARTED, EventStatus.COMPLETED, {"jobId": job.id})

        job.conversation_id = payload.conversationId
        if not job.conversation_id:
            job.conversation_id = str(uuid.uuid4())
            await self._emit(
                job,
                Phase.CONVERSATION_CREATED,
                EventStatus.COMPLETED,
                {"conversationId": job.conversation_id},
            )

        # --- Scanning ---
        job.transition(JobState.SCANNING)
        scan = dlp.scan(payload.message)
        if scan.has_sensitive_data:
            await self._emit(job, Phase.DLP_WARNING, EventStatus.COMPLETED, scan.to_dict())
        message = scan.redacted_message
        history = [
            h.model_copy(update={"content": dlp.scan(h.content).redacted_message})
            for h in payload.conversationHistory
        ]

        keys = self._resolve_keys(payload)
        demo = not payload.apiKeys.present()
        summary["demo"] = demo
        if demo and self.user_id is None:
            if not services.config.demo.enabled:
                raise _AdmissionDenied(
                    "Demo mode is disabled. Add your own API keys to continue.", "demo_disabled"
                )
            decision = services.budget.can_send(self.session_id, self.origin)
            if not decision.allowed:
                raise _AdmissionDenied(decision.reason or "Not allowed", decision.code)
            summary["demo_remaining"] = decision.remaining

        providers = self._available_providers(keys)
        if not providers:
            raise _AdmissionDenied("No API keys are available for any provider.", "no_keys")
        analysis_model = services.registry.cheapest(providers)
        analysis_key = keys.get(analysis_model.provider)

        # --- Screening ---
        token.raise_if_cancelled()
        job.transition(JobState.SCREENING)
        await self._emit(job, Phase.SECURITY, EventStatus.PROCESSING)
        verdict = await token.guard(
            services.security.assess(
                message,
                UNKNOWN_INTENT,
                services.llm,
                analysis_model.provider,
                analysis_model.model_id,
                analysis_key,
            )
        )
        summary["security_score"] = verdict.score
        await self._emit(
            job,
            Phase.SECURITY,
            EventStatus.COMPLETED,
            {
                "securityScore": verdict.score,
                "securityExplanation": verdict.explanation,
                "threshold": verdict.threshold,
            },
        )
        if verdict.halted:
            job.transition(JobState.HALTED)
            halt = SecurityHaltPayload(
                securityScore=verdict.score,
                threshold=verdict.threshold,
                securityExplanation=verdict.explanation,
                message="This request was blocked by the security policy.",
            ).model_dump()
            await self._emit(job, Phase.SECURITY_HALT, EventStatus.COMPLETED, halt)
            await self._emit(job, Phase.COMPLETE, EventStatus.COMPLETED, halt)
            return "halted"

        # --- Classifying ---
        job.transition(JobState.CLASSIFYING)
        for phase in (Phase.INTENT, Phase.SENTIMENT, Phase.STYLE, Phase.PROMPT_QUALITY):
            await self._emit(job, phase, EventStatus.PROCESSING)
        classification = await token.guard(
            services.classifier.classify(
                message, analysis_model.provider, analysis_model.model_id, analysis_key
            )
        )
        analysis = AnalysisResult(**classification.model_dump()).with_security_floor(
            verdict.score, verdict.explanation
        )
        await self._emit(
            job,
            Phase.INTENT,
            EventStatus.COMPLETED,
            {
                "intent": analysis.intent,
                "taskType": analysis.taskType,
                "complexity": analysis.complexity,
            },
        )
        await self._emit(
            job,
            Phase.SENTIMENT,
            EventStatus.COMPLETED,
            {"sentiment": analysis.sentiment, "detail": analysis.sentimentDetail},
        )
        await self._emit(job, Phase.STYLE, EventStatus.COMPLETED, {"style": analysis.style})
        await self._emit(
            job,
            Phase.PROMPT_QUALITY,
            EventStatus.COMPLETED,
            analysis.promptQuality.model_dump(),
        )

        # --- Routing ---
        token.raise_if_cancelled()
        job.transition(JobState.ROUTING)
        await self._emit(job, Phase.MODEL, EventStatus.PROCESSING)
        features = RequestFeatures(
            message=message,
            task_type=analysis.taskType,
            complexity="complex" if payload.useDeepResearch else analysis.complexity,
            security_score=analysis.securityScore,
        )
        active = services.router_store.active(self.user_id)
        selection = services.router.select_candidates(active.config, features, providers)
        primary = selection.primary
        await self._emit(
            job,
            Phase.MODEL,
            EventStatus.COMPLETED,
            {
                "provider": primary.provider,
                "model": primary.model_id,
                "alias": primary.alias,
                "displayName": primary.display_name,
                "reasoning": selection.reasoning,
                "matchedRuleId": selection.matched_rule_id,
                "matchedRuleName": selection.matched_rule_name,
                "routerVersion": active.version,
                "candidates": [_describe(c) for c in selection.candidates],
            },
        )

        # --- Optimizing ---
        job.transition(JobState.OPTIMIZING)
        await self._emit(job, Phase.PROMPT, EventStatus.PROCESSING)
        optimized = await token.guard(
            services.optimizer.optimize(
                message,
                history,
                analysis,
                analysis_model.provider,
                analysis_model.model_id,
                analysis_key,
            )
        )
        await self._emit(job, Phase.PROMPT, EventStatus.COMPLETED, {"optimizedPrompt": optimized})

        await self._emit(job, Phase.PARAMETERS, EventStatus.PROCESSING)
        params = await token.guard(
            services.optimizer.tune(
                optimized,
                analysis,
                primary.model_id,
                analysis_model.provider,
                analysis_model.model_id,
                analysis_key,
                deep_research=payload.useDeepResearch,
            )
        )
        await self._emit(job, Phase.PARAMETERS, EventStatus.COMPLETED, params.model_dump())

        # --- Generating ---
        job.transition(JobState.GENERATING)
        system_context = build_system_context(
            payload.systemPrompt, services.progress.get(self.user_id)
        )
        result = await services.engine.generate(
            job,
            lambda phase, status, data, err: self._emit(job, phase, status, data, err),
            selection.candidates,
            keys,
            system_context,
            optimized,
            params,
            message,
            analysis.intent,
            analysis_model,
        )
        summary.update(
            provider=result.model.provider,
            model=result.model.model_id,
            attempts=result.attempts,
        )

        if demo:
            cost = services.registry.estimate_cost(
                result.model.model_id,
                _estimate_tokens(system_context + optimized),
                _estimate_tokens(result.text),
            )
            services.budget.record_cost(cost)
            summary["cost"] = cost

        token.raise_if_cancelled()
        job.transition(JobState.COMPLETE)
        services.progress.record(self.user_id, analysis.promptQuality.score)
        await self._emit(
            job,
            Phase.COMPLETE,
            EventStatus.COMPLETED,
            {
                "response": result.text,
                "provider": result.model.provider,
                "model": result.model.model_id,
                "attempts": result.attempts,
                "qualityFlagged": result.flagged,
                "conversationId": job.conversation_id,
                "analysis": analysis.model_dump(),
                "demoRemaining": summary.get("demo_remaining"),
            },
        )
        return "complete"


def _describe(model: ResolvedModel) -> Dict[str, str]:
    return {"alias": model.alias, "provider": model.provider, "model": model.model_id}


def _estimate_tokens(text: str) -> int:
    # Roughly four characters per token across providers.
    return max(1, len(text) // 4)


def _first_error(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        errors = exc.errors()
        if errors:
            loc = ".".join(str(part) for part in errors[0].get("loc", ()))
            return "{} ({})".format(errors[0].get("msg", "invalid"), loc) if loc else errors[0].get("msg", "invalid")
    return str(exc)
