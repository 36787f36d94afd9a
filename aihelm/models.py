"""Wire models for AI Helm.

Inbound WebSocket commands, outbound job events, analysis results, and the
HTTP request/response envelopes used by the auxiliary endpoints.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Phase(str, Enum):
    """Closed set of phase names carried by job events."""

    STARTED = "started"
    CONVERSATION_CREATED = "conversation_created"
    DLP_WARNING = "dlp_warning"
    INTENT = "intent"
    SENTIMENT = "sentiment"
    STYLE = "style"
    SECURITY = "security"
    SECURITY_HALT = "security_halt"
    PROMPT_QUALITY = "promptQuality"
    MODEL = "model"
    PROMPT = "prompt"
    PARAMETERS = "parameters"
    GENERATING = "generating"
    RESPONSE_CHUNK = "response_chunk"
    RESPONSE = "response"
    PROVIDER_ERROR = "provider_error"
    RETRYING = "retrying"
    RESPONSE_CLEAR = "response_clear"
    CANCELLED = "cancelled"
    VALIDATING = "validating"
    COMPLETE = "complete"


class EventStatus(str, Enum):
    """Lifecycle status of a phase."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class JobEvent(BaseModel):
    """A single phase update sent to the client."""

    jobId: str
    phase: Phase
    status: EventStatus
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for the socket, omitting empty optional fields."""
        return self.model_dump(mode="json", exclude_none=True)


# --- Typed payloads for the phases that carry structured data ---


class ChunkPayload(BaseModel):
    token: str


class ProviderErrorPayload(BaseModel):
    failedProvider: str
    failedModel: str
    error: str
    nextProvider: Optional[str] = None
    nextModel: Optional[str] = None


class RetryPayload(BaseModel):
    failReason: str
    attempt: int
    nextProvider: str
    nextModel: str


class SecurityHaltPayload(BaseModel):
    securityHalted: bool = True
    securityScore: int
    threshold: int
    securityExplanation: str
    message: str


class CancelledPayload(BaseModel):
    response: str
    cancelled: bool = True


# --- Inbound commands ---


class APIKeys(BaseModel):
    """User-supplied provider keys. Empty strings mean "not provided"."""

    gemini: str = ""
    openai: str = ""
    anthropic: str = ""

    def present(self) -> Dict[str, str]:
        return {name: key for name, key in self.model_dump().items() if key}


class ConversationMessage(BaseModel):
    """A prior turn of the conversation."""

    role: Literal["user", "assistant"]
    content: str


class AnalyzePayload(BaseModel):
    message: str = Field(..., min_length=1)
    conversationHistory: List[ConversationMessage] = Field(default_factory=list)
    conversationId: Optional[str] = None
    useDeepResearch: bool = False
    apiKeys: APIKeys = Field(default_factory=APIKeys)
    presetId: Optional[str] = None
    systemPrompt: Optional[str] = None


class AnalyzeCommand(BaseModel):
    type: Literal["analyze"]
    payload: AnalyzePayload


class CancelCommand(BaseModel):
    type: Literal["cancel"]
    jobId: str = Field(..., min_length=1)


InboundCommand = Annotated[
    Union[AnalyzeCommand, CancelCommand], Field(discriminator="type")
]

inbound_command_adapter: TypeAdapter = TypeAdapter(InboundCommand)


# --- Analysis results ---

TaskType = Literal["coding", "math", "creative", "conversation", "analysis", "general"]
Complexity = Literal["simple", "moderate", "complex"]
Sentiment = Literal["positive", "neutral", "negative"]
Style = Literal["formal", "casual", "technical", "concise", "verbose", "neutral"]


class PromptQuality(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: int = Field(..., ge=0, le=100)
    clarity: int = Field(..., ge=0, le=100)
    specificity: int = Field(..., ge=0, le=100)
    actionability: int = Field(..., ge=0, le=100)
    suggestions: List[str] = Field(default_factory=list)


class Classification(BaseModel):
    """Output of the classification stage (everything but security)."""

    model_config = ConfigDict(frozen=True)

    intent: str
    taskType: TaskType = "general"
    complexity: Complexity = "simple"
    sentiment: Sentiment = "neutral"
    sentimentDetail: str = "Neutral tone"
    style: Style = "neutral"
    promptQuality: PromptQuality


class AnalysisResult(Classification):
    """Full per-job analysis. Security fields may only be raised."""

    securityScore: int = Field(0, ge=0, le=10)
    securityExplanation: str = "No significant security concerns detected"

    def with_security_floor(self, score: int, explanation: str) -> "AnalysisResult":
        """Return a copy whose security score is at least ``score``."""
        if score <= self.securityScore:
            return self
        return self.model_copy(
            update={"securityScore": min(score, 10), "securityExplanation": explanation}
        )


class GenerationParameters(BaseModel):
    temperature: float = Field(0.7, ge=0.0, le=1.0)
    top_p: float = Field(1.0, ge=0.0, le=1.0)
    max_tokens: int = Field(4000, ge=1)


# --- HTTP envelopes ---


class DemoStatus(BaseModel):
    enabled: bool
    remainingMessages: int
    maxMessages: int
    budgetExhausted: bool


class ResearchClassificationRequest(BaseModel):
    message: str = Field(..., min_length=1)
    apiKeys: APIKeys = Field(default_factory=APIKeys)


class ResearchClassificationResponse(BaseModel):
    isResearch: bool


class KeyValidationRequest(BaseModel):
    provider: Literal["gemini", "openai", "anthropic"]
    apiKey: str = Field(..., min_length=1)


class KeyValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None


class SecurityThresholdUpdate(BaseModel):
    threshold: int = Field(..., ge=1, le=10)


class DemoLimitsUpdate(BaseModel):
    maxPerSession: Optional[int] = Field(default=None, ge=1)
    maxPerOrigin: Optional[int] = Field(default=None, ge=1)
    dailyBudgetUsd: Optional[float] = Field(default=None, ge=0)


class RouterConfigUpdate(BaseModel):
    rules: List[Dict[str, Any]]
    catchAll: List[str]
    changeDescription: str = ""
    userId: Optional[str] = None


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
