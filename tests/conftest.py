"""
Shared fixtures: fake clocks, model descriptors and a scripted gateway.
"""
from typing import Any, Dict, List, Optional

import pytest

from codeintel.core.errors import ModelUnavailableError
from codeintel.models.requests import (
    AIRequest,
    AIRequestType,
    AIResponse,
    HealthState,
    HealthStatus,
    ModelCapability,
    ModelDescriptor,
    ModelProvider,
    PrivacyLevel,
    ProjectContext,
    TokenUsage,
)


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


ALL_CAPABILITIES = [
    ModelCapability.CODE_COMPLETION,
    ModelCapability.TEXT_GENERATION,
    ModelCapability.CODE_ANALYSIS,
    ModelCapability.NATURAL_LANGUAGE,
    ModelCapability.REASONING,
]


def make_model(
    model_id: str = "model-a",
    provider: ModelProvider = ModelProvider.OPENAI,
    provider_id: Optional[str] = None,
    **overrides: Any,
) -> ModelDescriptor:
    fields: Dict[str, Any] = dict(
        model_id=model_id,
        provider=provider,
        provider_id=provider_id or provider.value,
        capabilities=list(ALL_CAPABILITIES),
        cost_per_token=0.00001,
        max_tokens=4096,
        response_time=500.0,
        accuracy=0.9,
        availability=0.99,
    )
    fields.update(overrides)
    return ModelDescriptor(**fields)


def make_request(
    request_id: str = "req-1",
    request_type: AIRequestType = AIRequestType.NATURAL_LANGUAGE,
    privacy_level: PrivacyLevel = PrivacyLevel.INTERNAL,
    payload: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> AIRequest:
    return AIRequest(
        id=request_id,
        type=request_type,
        context=ProjectContext(project_id="proj", privacy_level=privacy_level),
        payload=payload if payload is not None else {"prompt": "Explain closures"},
        privacy_level=privacy_level,
        **overrides,
    )


def make_response(
    request_id: str = "req-1",
    result: Any = "A closure captures variables.",
    confidence: float = 0.9,
    model_used: str = "model-a",
    processing_time: float = 50.0,
    tokens: Optional[TokenUsage] = None,
) -> AIResponse:
    return AIResponse(
        id=f"resp_{request_id}",
        request_id=request_id,
        result=result,
        confidence=confidence,
        model_used=model_used,
        processing_time=processing_time,
        tokens=tokens or TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30, cost=0.0003),
    )


class ScriptedGateway:
    """
    Stand-in for ProviderGateway.

    ``outcomes`` is consumed per call: an AIResponse is returned, an
    exception is raised, a callable is awaited with the request.
    """

    def __init__(
        self,
        provider_id: str = "openai",
        models: Optional[List[ModelDescriptor]] = None,
        outcomes: Optional[List[Any]] = None,
        health: HealthState = HealthState.HEALTHY,
        kind: ModelProvider = ModelProvider.OPENAI,
    ):
        self.provider_id = provider_id
        self.kind = kind
        self.default_models = models if models is not None else [make_model(provider=kind, provider_id=provider_id)]
        self.outcomes = list(outcomes or [])
        self.health = health
        self.calls: List[Dict[str, Any]] = []
        self.health_checks = 0
        self.closed = False

    @property
    def provider(self) -> ModelProvider:
        return self.kind

    async def process_request(self, request, model=None, timeout_seconds=None):
        self.calls.append({"request": request, "model": model, "timeout_seconds": timeout_seconds})
        if not self.outcomes:
            return make_response(request.id, model_used=model.model_id if model else "model-a")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(request, model)
        return outcome

    async def health_check(self) -> HealthStatus:
        self.health_checks += 1
        if self.health == HealthState.UNHEALTHY:
            return HealthStatus(status=HealthState.UNHEALTHY, response_time=0.0, error_rate=1.0, issues=["down"])
        return HealthStatus(status=self.health, response_time=5.0, error_rate=0.0)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def unavailable_error():
    return ModelUnavailableError("backend down", retryable=True)
