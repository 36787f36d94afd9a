"""Post-generation response validation and research classification.

The validator checks that a generated response actually addresses what the
user asked for. It fails open: if the verdict cannot be obtained or parsed,
the response passes.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from aihelm.provider import LLMClient, ProviderError

_logger = logging.getLogger("aihelm")

FAIL_REASONS = ("refusal", "off_topic", "incomplete", "low_quality")

VALIDATOR_SYSTEM_PROMPT = """You are validating an AI response to ensure it properly addresses the user's request.

A response FAILS if it:
- Refuses to answer or says it cannot help when the question is reasonable
- Asks for context that was already provided in the conversation
- Gives a completely off-topic answer
- Provides a clearly inadequate or empty response

Most responses should PASS. Only flag genuine failures where the user clearly did not get what they asked for."""

VALIDATOR_USER_PROMPT = """User's original message: "{message}"
Detected user intent: {intent}

AI's response: "{response}"

Provide your assessment in this exact format:
USER SEEKING: [one sentence summary of what the user wanted]
VALIDATION: [one sentence assessment of the response]
QUALITY: [pass or fail]
FAIL_REASON: [refusal | off_topic | incomplete | low_quality | none]"""

RESEARCH_SYSTEM_PROMPT = """Decide whether the user's message needs in-depth, multi-source research (comparisons, literature reviews, market or technical investigations) rather than a direct answer.

Respond with ONLY one word: YES or NO."""

_SEEKING_RE = re.compile(r"USER SEEKING:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_VALIDATION_RE = re.compile(r"VALIDATION:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_QUALITY_RE = re.compile(r"QUALITY:\s*(pass|fail)", re.IGNORECASE)
_FAIL_REASON_RE = re.compile(r"FAIL_REASON:\s*(\w+)", re.IGNORECASE)
_RESEARCH_HINT_RE = re.compile(
    r"\b(research|compare|comparison|literature|in-depth|comprehensive|investigate|survey|pros and cons)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ValidationResult:
    passed: bool
    fail_reason: Optional[str] = None
    user_summary: str = "Understanding of the topic"
    validation: str = "Response addresses the user's request"


def parse_validation(text: str) -> ValidationResult:
    """Parse a validator reply. An unreadable verdict counts as a pass."""
    seeking = _SEEKING_RE.search(text)
    validation = _VALIDATION_RE.search(text)
    quality = _QUALITY_RE.search(text)
    reason = _FAIL_REASON_RE.search(text)

    passed = quality.group(1).lower() == "pass" if quality else True
    fail_reason = None
    if not passed:
        fail_reason = reason.group(1).lower() if reason else "low_quality"
        if fail_reason not in FAIL_REASONS:
            fail_reason = "low_quality"

    return ValidationResult(
        passed=passed,
        fail_reason=fail_reason,
        user_summary=seeking.group(1).strip() if seeking else "Understanding of the topic",
        validation=(
            validation.group(1).strip() if validation else "Response addresses the user's request"
        ),
    )


class ResponseValidator:
    """Asks an analysis model whether a response meets the user's intent."""

    def __init__(self, llm: LLMClient) -> None:
        self._llm = llm

    async def validate(
        self,
        message: str,
        intent: str,
        response: str,
        provider: str,
        model: str,
        api_key: Optional[str],
    ) -> ValidationResult:
        if not response.strip():
            return ValidationResult(
                passed=False, fail_reason="incomplete", validation="The response was empty"
            )
        prompt = VALIDATOR_USER_PROMPT.format(message=message, intent=intent, response=response)
        try:
            reply = await self._llm.complete(
                provider, model, VALIDATOR_SYSTEM_PROMPT, prompt, api_key
            )
        except ProviderError as exc:
            _logger.warning("Response validation unavailable, passing: %s", exc.detail)
            return ValidationResult(passed=True)
        return parse_validation(reply)


async def classify_research(
    llm: LLMClient,
    message: str,
    provider: Optional[str],
    model: Optional[str],
    api_key: Optional[str],
) -> bool:
    """Decide whether ``message`` calls for deep research.

    Uses a single model call when a model is available and falls back to
    keyword matching otherwise.
    """
    if provider and model:
        try:
            reply = await llm.complete(provider, model, RESEARCH_SYSTEM_PROMPT, message, api_key)
            answer = reply.strip().upper()
            if answer.startswith("YES"):
                return True
            if answer.startswith("NO"):
                return False
        except ProviderError as exc:
            _logger.warning("Research classification failed: %s", exc.detail)
    return bool(_RESEARCH_HINT_RE.search(message))
