"""
Domain models for AI request orchestration.

AIRequest and AIResponse are immutable once built (frozen pydantic models).
ModelDescriptor is registered externally and read-only to the orchestrator.
"""
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AIRequestType(str, Enum):
    CODE_COMPLETION = "code_completion"
    NATURAL_LANGUAGE = "natural_language"
    PREDICTIVE_ANALYSIS = "predictive_analysis"
    DEBUG_ASSISTANCE = "debug_assistance"
    CONTEXT_ANALYSIS = "context_analysis"


class RequestPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class PrivacyLevel(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    LOCAL_ONLY = "local_only"


class ModelProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OLLAMA = "ollama"
    HUGGINGFACE = "huggingface"
    CUSTOM = "custom"


# Providers that run on infrastructure the user controls
LOCAL_PROVIDERS = frozenset({ModelProvider.OLLAMA, ModelProvider.CUSTOM})


class ModelCapability(str, Enum):
    CODE_COMPLETION = "code_completion"
    TEXT_GENERATION = "text_generation"
    CODE_ANALYSIS = "code_analysis"
    NATURAL_LANGUAGE = "natural_language"
    REASONING = "reasoning"
    MULTIMODAL = "multimodal"


class Dependency(BaseModel):
    name: str
    version: str = "*"
    type: str = "production"


class ProjectContext(BaseModel):
    """Opaque project description attached to every request."""

    project_id: str
    language: str = "typescript"
    framework: Optional[str] = None
    dependencies: List[Dependency] = Field(default_factory=list)
    privacy_level: PrivacyLevel = PrivacyLevel.INTERNAL
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AIRequest(BaseModel):
    """
    One unit of work for the orchestrator.

    ``context`` is optional at the type level so that the orchestrator (not
    the constructor) reports a missing context as InvalidRequest.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: AIRequestType
    context: Optional[ProjectContext] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: RequestPriority = RequestPriority.NORMAL
    privacy_level: PrivacyLevel = PrivacyLevel.INTERNAL
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def prompt(self) -> str:
        """Best-effort prompt text from the payload."""
        for key in ("prompt", "query", "code"):
            value = self.payload.get(key)
            if isinstance(value, str) and value:
                return value
        return ""


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None


class AIResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    request_id: str
    result: Any
    confidence: float = Field(..., ge=0.0, le=1.0)
    model_used: str
    processing_time: float = Field(..., ge=0.0, description="Milliseconds")
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ModelDescriptor(BaseModel):
    """
    A model a gateway can serve.

    ``provider_id`` names the gateway (registry key) that executes requests
    for this model; ``provider`` is the backend kind used for privacy rules.
    """

    model_config = ConfigDict(frozen=True)

    model_id: str
    provider: ModelProvider
    provider_id: str
    capabilities: List[ModelCapability] = Field(default_factory=list)
    cost_per_token: float = Field(0.0, ge=0.0)
    max_tokens: int = Field(4096, gt=0)
    response_time: float = Field(1000.0, ge=0.0, description="Observed latency in ms")
    accuracy: float = Field(0.8, ge=0.0, le=1.0)
    availability: float = Field(0.99, ge=0.0, le=1.0)


class ModelSelection(BaseModel):
    model_id: str
    provider: ModelProvider
    provider_id: str
    confidence: float
    estimated_cost: float
    estimated_latency: float
    reasoning: str


class ValidationIssueType(str, Enum):
    ACCURACY = "accuracy"
    SAFETY = "safety"
    PRIVACY = "privacy"
    PERFORMANCE = "performance"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ValidationIssue(BaseModel):
    type: ValidationIssueType
    severity: IssueSeverity
    description: str
    suggestion: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool
    confidence: float
    issues: List[ValidationIssue] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class ResourceUsage(BaseModel):
    cpu: float = 0.0
    memory: float = 0.0
    network: float = 0.0


class PerformanceMetrics(BaseModel):
    response_time: float
    throughput: float
    error_rate: float
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    user_satisfaction: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)


class UserFeedback(BaseModel):
    request_id: str
    rating: int = Field(..., ge=1, le=5)
    feedback: str = ""
    accepted: bool = False
    timestamp: datetime = Field(default_factory=utc_now)
    context: str = ""


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthStatus(BaseModel):
    status: HealthState
    response_time: float = 0.0
    error_rate: float = 0.0
    last_checked: datetime = Field(default_factory=utc_now)
    issues: List[str] = Field(default_factory=list)


class RouteAssignment(BaseModel):
    request_id: str
    model_id: str
    priority: RequestPriority
    estimated_processing_time: float


class RoutingPlan(BaseModel):
    routes: List[RouteAssignment] = Field(default_factory=list)
    estimated_latency: float = 0.0
    estimated_cost: float = 0.0
    load_distribution: Dict[str, int] = Field(default_factory=dict)


class ProviderRequest(BaseModel):
    """Provider-neutral call description produced by a converter."""

    model: str
    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: int = 256
    temperature: float = 0.2
    stop: List[str] = Field(default_factory=list)


class ProviderResponse(BaseModel):
    """Backend answer after wire-format decoding."""

    content: str
    finish_reason: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
