"""Classification stage.

One structured-output call returns intent, sentiment, style, task type,
complexity and prompt quality together. If that call fails or its JSON does
not validate, the stage falls back to three small single-field prompts plus
local heuristics, so a job always gets a classification.
"""

import asyncio
import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from aihelm.models import Classification, GenerationParameters, PromptQuality
from aihelm.provider import LLMClient, ProviderError

_logger = logging.getLogger("aihelm")

CLASSIFICATION_SYSTEM_PROMPT = """You are an advanced AI analysis engine. Analyze the user's message and return a JSON object with ALL of the following fields. Respond with ONLY valid JSON, no markdown or explanation.

{
  "intent": "1-2 sentence description of what the user is trying to accomplish",
  "sentiment": "positive" | "neutral" | "negative",
  "sentimentDetail": "2-3 word emotion description",
  "style": "formal" | "casual" | "technical" | "concise" | "verbose" | "neutral",
  "taskType": "coding" | "math" | "creative" | "conversation" | "analysis" | "general",
  "complexity": "simple" | "moderate" | "complex",
  "promptQuality": {
    "score": 0-100 overall quality score,
    "clarity": 0-100 how clear and unambiguous the request is,
    "specificity": 0-100 how specific vs vague the request is,
    "actionability": 0-100 how easy it is to act on this request,
    "suggestions": ["improvement suggestion 1", "improvement suggestion 2"]
  }
}

PROMPT QUALITY SCORING:
- 0-30: Poor - vague, unclear, or missing context
- 31-60: Fair - understandable but could be more specific
- 61-80: Good - clear and specific with minor improvements possible
- 81-100: Excellent - well-crafted, specific, and actionable

Provide 1-3 short improvement suggestions. If the prompt is already excellent, suggest advanced techniques."""

INTENT_SYSTEM_PROMPT = """You are an intent analyzer. Describe in 1-2 sentences what the user is trying to accomplish and, if relevant, the topic or domain.

Respond with ONLY the intent description, nothing else."""

SENTIMENT_SYSTEM_PROMPT = """You are a sentiment analyzer. Classify the emotional tone of the user's message as positive, neutral, or negative, and give a 2-3 word description of the specific emotion.

Respond in this exact format:
SENTIMENT: [positive/neutral/negative]
DETAIL: [brief emotion description]"""

STYLE_SYSTEM_PROMPT = """You are a communication style analyzer. Classify the writing style of the user's message as one of: formal, casual, technical, concise, verbose, neutral

Respond with ONLY the style category, nothing else."""

CLASSIFICATION_PARAMETERS = GenerationParameters(temperature=0.3, top_p=1.0, max_tokens=800)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

_TASK_PATTERNS = [
    ("coding", re.compile(r"\b(code|coding|program|debug|refactor|function|api|bug)\b")),
    ("math", re.compile(r"\b(math|calculate|equation|solve|theorem|proof)\b")),
    ("creative", re.compile(r"\b(write|story|creative|blog|article|poem)\b")),
    ("conversation", re.compile(r"\b(chat|talk|discuss|conversation)\b")),
    ("analysis", re.compile(r"\b(analyze|research|study|investigate)\b")),
]

_SPECIFICS_RE = re.compile(r"\b(specifically|exactly|for example|such as)\b", re.IGNORECASE)

_SENTIMENTS = ("positive", "neutral", "negative")
_STYLES = ("formal", "casual", "technical", "concise", "verbose", "neutral")


def extract_json(text: str) -> str:
    """Return the JSON body of a reply, unwrapping a markdown code fence."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def estimate_task_type(message: str) -> str:
    lowered = message.lower()
    for task_type, pattern in _TASK_PATTERNS:
        if pattern.search(lowered):
            return task_type
    return "general"


def estimate_complexity(message: str) -> str:
    if len(message) > 1000:
        return "complex"
    if len(message) > 300:
        return "moderate"
    return "simple"


def estimate_prompt_quality(message: str) -> PromptQuality:
    """Score a prompt from surface features when no model score is available."""
    words = len(message.split())
    has_question = "?" in message
    has_specifics = bool(_SPECIFICS_RE.search(message))

    clarity = min(100, max(20, 50 + words if words > 3 else 20))
    specificity = 75 if has_specifics else 55 if words > 10 else 30
    actionability = 65 if has_question else 50 if words > 5 else 25
    score = round((clarity + specificity + actionability) / 3)

    suggestions = []
    if words < 5:
        suggestions.append("Add more detail to your request")
    if not has_question and not has_specifics:
        suggestions.append("Be more specific about what you need")
    if not suggestions:
        suggestions.append("Consider adding context or constraints")

    return PromptQuality(
        score=score,
        clarity=clarity,
        specificity=specificity,
        actionability=actionability,
        suggestions=suggestions,
    )


class ClassificationStage:
    """Classifies a redacted message with one model call and a fallback."""

    def __init__(self, llm: LLMClient) -> None:
        self._llm = llm

    async def classify(
        self, message: str, provider: str, model: str, api_key: Optional[str]
    ) -> Classification:
        """Classify ``message`` using the given analysis model.

        Args:
            message: The redacted user message.
            provider: Provider of the analysis model.
            model: Concrete analysis model id.
            api_key: Key for ``provider``.

        Returns:
            A Classification. Never raises for model or parse failures.
        """
        try:
            reply = await self._llm.complete(
                provider,
                model,
                CLASSIFICATION_SYSTEM_PROMPT,
                message,
                api_key,
                CLASSIFICATION_PARAMETERS,
            )
            return Classification.model_validate(json.loads(extract_json(reply)))
        except (ProviderError, ValueError, ValidationError) as exc:
            _logger.warning("Structured classification failed, using fallback: %s", exc)

        return await self._fallback(message, provider, model, api_key)

    async def _fallback(
        self, message: str, provider: str, model: str, api_key: Optional[str]
    ) -> Classification:
        intent_reply, sentiment_reply, style_reply = await asyncio.gather(
            self._ask(provider, model, INTENT_SYSTEM_PROMPT, message, api_key),
            self._ask(provider, model, SENTIMENT_SYSTEM_PROMPT, message, api_key),
            self._ask(provider, model, STYLE_SYSTEM_PROMPT, message, api_key),
        )

        task_type = estimate_task_type(message)
        intent = intent_reply or "User is asking for help with a {} task".format(task_type)

        sentiment, detail = "neutral", "Analysis unavailable"
        if sentiment_reply:
            s_match = re.search(r"SENTIMENT:\s*(\w+)", sentiment_reply, re.IGNORECASE)
            d_match = re.search(r"DETAIL:\s*(.+)", sentiment_reply, re.IGNORECASE)
            if s_match and s_match.group(1).lower() in _SENTIMENTS:
                sentiment = s_match.group(1).lower()
            detail = d_match.group(1).strip() if d_match else "Neutral tone"

        style = (style_reply or "").strip().lower()
        if style not in _STYLES:
            style = "neutral"

        return Classification(
            intent=intent,
            taskType=task_type,
            complexity=estimate_complexity(message),
            sentiment=sentiment,
            sentimentDetail=detail,
            style=style,
            promptQuality=estimate_prompt_quality(message),
        )

    async def _ask(
        self, provider: str, model: str, system: str, message: str, api_key: Optional[str]
    ) -> str:
        try:
            return await self._llm.complete(provider, model, system, message, api_key)
        except ProviderError as exc:
            _logger.warning("Fallback classification call failed: %s", exc.detail)
            return ""
