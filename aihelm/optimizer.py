"""Prompt optimizer and parameter tuner.

The optimizer rewrites the redacted message into a clearer prompt for the
generation model, using prior turns as context. The tuner asks a model for
sampling parameters and clamps whatever comes back to safe ranges. Both
degrade to a usable default when the model call fails.
"""

import logging
import re
from typing import List, Optional, Pattern

from aihelm.models import Classification, ConversationMessage, GenerationParameters
from aihelm.provider import LLMClient, ProviderError

_logger = logging.getLogger("aihelm")

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0
DEFAULT_MAX_TOKENS = 4000
MIN_MAX_TOKENS = 500
MAX_MAX_TOKENS = 16000
DEEP_RESEARCH_MIN_TOKENS = 8000

OPTIMIZER_SYSTEM_PROMPT = """You are a prompt optimizer. Given a user's message, conversation history, and its analysis, create an improved version that:
1. Includes relevant conversation context when necessary
2. Clarifies the intent if needed
3. Maintains the user's tone and style
4. Makes the request more specific and actionable
5. References previous messages if they provide helpful context

Keep improvements subtle - don't completely rewrite unless necessary.
If the prompt is already clear and well-formed, return it unchanged.

Respond with ONLY the optimized prompt, nothing else."""

TUNER_SYSTEM_PROMPT = """You are an AI parameter tuner. Based on the task characteristics, recommend optimal parameters:
- temperature: 0.0-1.0 (lower for factual, higher for creative)
- top_p: 0.0-1.0 (nucleus sampling, usually 0.9-1.0)
- max_tokens: 500-16000 (response length - be generous for comprehensive answers)

Consider:
- Intent: {intent}
- Sentiment: {sentiment}
- Target model: {model}
- Task: {task}...

Guidelines:
- Simple questions: 1000-2000 tokens
- Explanations/tutorials: 3000-6000 tokens
- Code generation: 4000-8000 tokens
- Long-form content: 8000-16000 tokens

Respond in this exact format:
TEMPERATURE: [0.0-1.0]
TOP_P: [0.0-1.0]
MAX_TOKENS: [500-16000]"""

_TEMPERATURE_RE = re.compile(r"TEMPERATURE:\s*([\d.]+)", re.IGNORECASE)
_TOP_P_RE = re.compile(r"TOP_P:\s*([\d.]+)", re.IGNORECASE)
_MAX_TOKENS_RE = re.compile(r"MAX_TOKENS:\s*(\d+)", re.IGNORECASE)


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _parse_float(pattern: Pattern[str], text: str, default: float) -> float:
    match = pattern.search(text)
    if not match:
        return default
    try:
        return float(match.group(1))
    except ValueError:
        return default


def parse_parameters(text: str, deep_research: bool = False) -> GenerationParameters:
    """Parse a tuner reply into clamped generation parameters.

    Missing or malformed values fall back to 0.7 / 1.0 / 4000. Deep
    research raises the token floor to 8000.
    """
    temperature = _parse_float(_TEMPERATURE_RE, text, DEFAULT_TEMPERATURE)
    top_p = _parse_float(_TOP_P_RE, text, DEFAULT_TOP_P)
    tokens_match = _MAX_TOKENS_RE.search(text)
    max_tokens = int(tokens_match.group(1)) if tokens_match else DEFAULT_MAX_TOKENS

    max_tokens = int(_clamp(max_tokens, MIN_MAX_TOKENS, MAX_MAX_TOKENS))
    if deep_research:
        max_tokens = max(max_tokens, DEEP_RESEARCH_MIN_TOKENS)

    return GenerationParameters(
        temperature=_clamp(temperature, 0.0, 1.0),
        top_p=_clamp(top_p, 0.0, 1.0),
        max_tokens=max_tokens,
    )


def format_history(history: List[ConversationMessage]) -> str:
    if not history:
        return ""
    lines = ["{}: {}".format(m.role, m.content) for m in history]
    return "Previous conversation:\n{}\n\n".format("\n".join(lines))


class PromptOptimizer:
    """Rewrites prompts and tunes sampling parameters with an analysis model."""

    def __init__(self, llm: LLMClient) -> None:
        self._llm = llm

    async def optimize(
        self,
        message: str,
        history: List[ConversationMessage],
        analysis: Classification,
        provider: str,
        model: str,
        api_key: Optional[str],
    ) -> str:
        """Return an improved prompt, or ``message`` itself on any failure."""
        user_prompt = (
            '{history}Current message: "{message}"\n'
            "Intent: {intent}\n"
            "Sentiment: {sentiment}\n"
            "Style: {style}\n\n"
            "Optimized version:"
        ).format(
            history=format_history(history),
            message=message,
            intent=analysis.intent,
            sentiment=analysis.sentiment,
            style=analysis.style,
        )
        try:
            reply = await self._llm.complete(
                provider, model, OPTIMIZER_SYSTEM_PROMPT, user_prompt, api_key
            )
        except ProviderError as exc:
            _logger.warning("Prompt optimization failed, using original: %s", exc.detail)
            return message
        return reply.strip() or message

    async def tune(
        self,
        prompt: str,
        analysis: Classification,
        target_model: str,
        provider: str,
        model: str,
        api_key: Optional[str],
        deep_research: bool = False,
    ) -> GenerationParameters:
        """Ask the analysis model for sampling parameters for ``target_model``."""
        system = TUNER_SYSTEM_PROMPT.format(
            intent=analysis.intent,
            sentiment=analysis.sentiment,
            model=target_model,
            task=prompt[:100],
        )
        try:
            reply = await self._llm.complete(
                provider, model, system, "Tune parameters for this task", api_key
            )
        except ProviderError as exc:
            _logger.warning("Parameter tuning failed, using defaults: %s", exc.detail)
            reply = ""
        return parse_parameters(reply, deep_research=deep_research)
