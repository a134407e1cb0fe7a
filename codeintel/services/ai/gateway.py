"""
Provider gateway: one wrapper per AI backend.

Responsibilities:
- Sliding 60s rate limit per backend (RateLimitExceeded, retryable)
- AIRequest -> ProviderRequest -> wire body via the backend's adapter
- Backend failures mapped onto the closed error taxonomy
- Heuristic confidence for every response
- Health and model-list probes

Error mapping:
    401                 -> AuthenticationFailed (non-retryable)
    429                 -> RateLimitExceeded (retryable)
    5xx                 -> ModelUnavailable (retryable)
    other 4xx           -> InvalidRequest (non-retryable)
    timeout             -> Timeout (retryable)
    connection refused  -> NetworkError (retryable)
    circuit open        -> ModelUnavailable (retryable)
"""
import time
import uuid
from typing import Dict, List, Optional

import httpx

from codeintel.core.circuit_breaker import CircuitBreakerOpenError, CircuitState
from codeintel.core.config import ProviderConfig
from codeintel.core.errors import (
    AIError,
    AuthenticationFailedError,
    InvalidRequestError,
    ModelUnavailableError,
    NetworkError,
    RateLimitExceededError,
    RequestTimeoutError,
)
from codeintel.core.logging import get_logger
from codeintel.core.metrics import record_provider_request, record_provider_tokens
from codeintel.core.rate_limit import SlidingWindowRateLimiter
from codeintel.core.tracing import get_tracer, set_span_attribute
from codeintel.models.requests import (
    AIRequest,
    AIResponse,
    HealthState,
    HealthStatus,
    ModelCapability,
    ModelDescriptor,
    ModelProvider,
    ProviderRequest,
    ProviderResponse,
    TokenUsage,
)
from codeintel.services.ai.llm_client import LLMClient
from codeintel.services.ai.providers import ProviderAdapter, build_provider_request, get_adapter

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


def calculate_confidence(
    content: str,
    finish_reason: Optional[str],
    prompt_tokens: int,
    completion_tokens: int,
) -> float:
    """
    Heuristic confidence for a backend answer.

    Starts at 0.8; +0.1 for a clean stop, -0.1 for a length-truncated stop,
    -0.3 for a content-filter stop; up to +0.1 for response length
    (len/1000) and up to +0.1 for the completion/prompt token ratio.
    Clamped to [0, 1].
    """
    confidence = 0.8

    if finish_reason == "stop":
        confidence += 0.1
    elif finish_reason == "length":
        confidence -= 0.1
    elif finish_reason == "content_filter":
        confidence -= 0.3

    if content:
        confidence += min(0.1, len(content) / 1000)

    token_ratio = completion_tokens / max(prompt_tokens, 1)
    confidence += min(0.1, token_ratio * 0.1)

    return max(0.0, min(1.0, confidence))


def validate_provider_request(request: ProviderRequest, request_id: Optional[str] = None) -> None:
    """Reject malformed provider requests before they consume rate-limit quota."""
    problems: List[str] = []
    if not request.model:
        problems.append("model is required")
    if not request.prompt or not request.prompt.strip():
        problems.append("prompt is required")
    if request.max_tokens <= 0:
        problems.append("max_tokens must be positive")
    if not 0.0 <= request.temperature <= 2.0:
        problems.append("temperature must be between 0 and 2")
    if problems:
        raise InvalidRequestError(
            f"Invalid provider request: {', '.join(problems)}",
            request_id=request_id,
            model_id=request.model or None,
        )


class ProviderGateway:
    """Wraps one backend endpoint."""

    def __init__(
        self,
        provider_id: str,
        adapter: ProviderAdapter,
        client: LLMClient,
        rate_limiter: SlidingWindowRateLimiter,
        default_models: Optional[List[ModelDescriptor]] = None,
    ):
        self.provider_id = provider_id
        self.adapter = adapter
        self.client = client
        self.rate_limiter = rate_limiter
        self.default_models = list(default_models or [])

    @property
    def provider(self):
        return self.adapter.kind

    def _resolve_model(self, model: Optional[ModelDescriptor], request_id: str) -> ModelDescriptor:
        if model is not None:
            return model
        if not self.default_models:
            raise ModelUnavailableError(
                f"Provider {self.provider_id} has no models configured",
                request_id=request_id,
                retryable=False,
            )
        return self.default_models[0]

    async def process_request(
        self,
        request: AIRequest,
        model: Optional[ModelDescriptor] = None,
        timeout_seconds: Optional[float] = None,
    ) -> AIResponse:
        """
        Execute ``request`` on this backend.

        Raises:
            AIError subclass for every failure (see module docstring)
        """
        descriptor = self._resolve_model(model, request.id)
        provider_request = build_provider_request(request, descriptor)
        validate_provider_request(provider_request, request_id=request.id)

        if self.adapter.requires_api_key and not self.client.api_key:
            raise AuthenticationFailedError(
                f"No API key configured for provider {self.provider_id}",
                request_id=request.id,
                model_id=descriptor.model_id,
            )

        self.rate_limiter.acquire(request_id=request.id)

        tracer = get_tracer()
        with tracer.start_as_current_span("provider.request"):
            set_span_attribute("provider.id", self.provider_id)
            set_span_attribute("provider.model", descriptor.model_id)
            set_span_attribute("ai.request_id", request.id)

            start = time.perf_counter()
            try:
                data = await self.client.post_json(
                    self.adapter.completion_path,
                    self.adapter.encode_request(provider_request),
                    timeout_seconds=timeout_seconds,
                )
                provider_response = self.adapter.decode_response(data)
            except Exception as exc:
                duration = time.perf_counter() - start
                error = self.map_error(exc, request_id=request.id, model_id=descriptor.model_id)
                record_provider_request(self.provider_id, descriptor.model_id, error.code.value, duration)
                logger.warning(
                    "provider_request_failed",
                    provider=self.provider_id,
                    model=descriptor.model_id,
                    request_id=request.id,
                    error_code=error.code.value,
                    retryable=error.retryable,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    latency_ms=int(duration * 1000),
                )
                raise error from exc

            duration = time.perf_counter() - start
            record_provider_request(self.provider_id, descriptor.model_id, "success", duration)

        response = self.from_provider_response(
            provider_response,
            request=request,
            model=descriptor,
            processing_time=duration * 1000.0,
        )
        record_provider_tokens(
            self.provider_id,
            descriptor.model_id,
            response.tokens.prompt_tokens,
            response.tokens.completion_tokens,
            response.tokens.cost or 0.0,
        )
        logger.info(
            "provider_request_completed",
            provider=self.provider_id,
            model=descriptor.model_id,
            request_id=request.id,
            finish_reason=provider_response.finish_reason,
            confidence=response.confidence,
            total_tokens=response.tokens.total_tokens,
            latency_ms=int(response.processing_time),
        )
        return response

    def from_provider_response(
        self,
        provider_response: ProviderResponse,
        request: AIRequest,
        model: ModelDescriptor,
        processing_time: float,
    ) -> AIResponse:
        """Decoded backend answer -> AIResponse."""
        total_tokens = provider_response.prompt_tokens + provider_response.completion_tokens
        return AIResponse(
            id=f"resp_{uuid.uuid4().hex}",
            request_id=request.id,
            result=provider_response.content,
            confidence=calculate_confidence(
                provider_response.content,
                provider_response.finish_reason,
                provider_response.prompt_tokens,
                provider_response.completion_tokens,
            ),
            model_used=provider_response.model or model.model_id,
            processing_time=processing_time,
            tokens=TokenUsage(
                prompt_tokens=provider_response.prompt_tokens,
                completion_tokens=provider_response.completion_tokens,
                total_tokens=total_tokens,
                cost=total_tokens * model.cost_per_token,
            ),
            metadata={
                "provider": self.provider_id,
                "finish_reason": provider_response.finish_reason,
            },
        )

    def map_error(
        self,
        exc: BaseException,
        request_id: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> AIError:
        """Classify a transport/backend failure."""
        context: Dict[str, object] = {"provider": self.provider_id}

        if isinstance(exc, AIError):
            return exc

        if isinstance(exc, CircuitBreakerOpenError):
            return ModelUnavailableError(
                f"Provider {self.provider_id} is temporarily unavailable (circuit {exc.state.value})",
                request_id=request_id,
                model_id=model_id,
                context=context,
            )

        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            context["status_code"] = status
            if status == 401:
                return AuthenticationFailedError(
                    f"Authentication failed for provider {self.provider_id}",
                    request_id=request_id, model_id=model_id, context=context,
                )
            if status == 429:
                retry_after = exc.response.headers.get("Retry-After")
                retry_after_ms = None
                if retry_after and retry_after.isdigit():
                    retry_after_ms = float(retry_after) * 1000.0
                return RateLimitExceededError(
                    f"Provider {self.provider_id} rate limit exceeded",
                    retry_after_ms=retry_after_ms,
                    request_id=request_id, model_id=model_id, context=context,
                )
            if status >= 500:
                return ModelUnavailableError(
                    f"Provider {self.provider_id} returned {status}",
                    request_id=request_id, model_id=model_id, context=context,
                )
            return InvalidRequestError(
                f"Provider {self.provider_id} rejected the request with {status}",
                request_id=request_id, model_id=model_id, context=context,
            )

        if isinstance(exc, httpx.TimeoutException):
            return RequestTimeoutError(
                f"Provider {self.provider_id} timed out",
                request_id=request_id, model_id=model_id, context=context,
            )

        if isinstance(exc, (httpx.ConnectError, ConnectionRefusedError)):
            return NetworkError(
                f"Cannot connect to provider {self.provider_id}",
                request_id=request_id, model_id=model_id, context=context,
            )

        if isinstance(exc, httpx.TransportError):
            return NetworkError(
                f"Transport error talking to provider {self.provider_id}: {exc}",
                request_id=request_id, model_id=model_id, context=context,
            )

        return ModelUnavailableError(
            f"Unexpected error from provider {self.provider_id}: {exc}",
            request_id=request_id, model_id=model_id, context=context,
        )

    async def health_check(self) -> HealthStatus:
        """Probe the models endpoint; an open circuit is reported as unhealthy."""
        breaker_metrics = self.client.circuit_breaker.get_metrics()
        if self.client.circuit_breaker.state == CircuitState.OPEN:
            return HealthStatus(
                status=HealthState.UNHEALTHY,
                error_rate=breaker_metrics["error_rate"],
                issues=[f"circuit breaker open for {self.provider_id}"],
            )

        start = time.perf_counter()
        try:
            data = await self.client.get_json(
                self.adapter.models_path, timeout_seconds=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            healthy = bool(self.adapter.decode_models(data))
        except Exception as exc:
            response_time = (time.perf_counter() - start) * 1000.0
            logger.warning(
                "provider_health_check_failed",
                provider=self.provider_id,
                error=str(exc),
                error_type=type(exc).__name__,
                latency_ms=int(response_time),
            )
            return HealthStatus(
                status=HealthState.UNHEALTHY,
                response_time=response_time,
                error_rate=1.0,
                issues=[str(exc) or type(exc).__name__],
            )

        response_time = (time.perf_counter() - start) * 1000.0
        status = HealthStatus(
            status=HealthState.HEALTHY if healthy else HealthState.DEGRADED,
            response_time=response_time,
            error_rate=breaker_metrics["error_rate"],
            issues=[] if healthy else ["provider reported no models"],
        )
        logger.debug(
            "provider_health_check_completed",
            provider=self.provider_id,
            status=status.status.value,
            latency_ms=int(response_time),
        )
        return status

    async def get_available_models(self) -> List[ModelDescriptor]:
        """
        Models served by this backend.

        Remote model ids are intersected with the configured descriptors
        (which carry cost/latency/accuracy); falls back to the configured
        list when the probe fails.
        """
        try:
            data = await self.client.get_json(
                self.adapter.models_path, timeout_seconds=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            remote_ids = set(self.adapter.decode_models(data))
        except Exception as exc:
            logger.warning(
                "provider_models_fetch_failed",
                provider=self.provider_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return list(self.default_models)

        available = [m for m in self.default_models if m.model_id in remote_ids]
        logger.debug(
            "provider_models_fetched",
            provider=self.provider_id,
            remote_count=len(remote_ids),
            available_count=len(available),
        )
        return available or list(self.default_models)

    async def aclose(self) -> None:
        await self.client.aclose()


DEFAULT_CAPABILITIES = [
    ModelCapability.CODE_COMPLETION,
    ModelCapability.TEXT_GENERATION,
    ModelCapability.CODE_ANALYSIS,
    ModelCapability.NATURAL_LANGUAGE,
    ModelCapability.REASONING,
]

# Starting estimates until observed values are registered
DEFAULT_RESPONSE_TIME_MS = {
    ModelProvider.OPENAI: 800.0,
    ModelProvider.OLLAMA: 1500.0,
}
DEFAULT_ACCURACY = {
    ModelProvider.OPENAI: 0.9,
    ModelProvider.OLLAMA: 0.75,
}


def build_gateway(
    config: ProviderConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderGateway:
    """Construct a gateway (client, breaker, limiter, descriptors) from config."""
    kind = ModelProvider(config.provider)
    adapter = get_adapter(kind)
    client = LLMClient(
        name=config.name,
        api_base=config.api_base,
        api_key=config.api_key,
        timeout_seconds=config.timeout_seconds,
        http_client=http_client,
    )
    limiter = SlidingWindowRateLimiter(config.name, config.rate_limit_per_minute)
    models = [
        ModelDescriptor(
            model_id=model_id,
            provider=kind,
            provider_id=config.name,
            capabilities=list(DEFAULT_CAPABILITIES),
            cost_per_token=config.cost_per_token,
            response_time=DEFAULT_RESPONSE_TIME_MS.get(kind, 1000.0),
            accuracy=DEFAULT_ACCURACY.get(kind, 0.8),
        )
        for model_id in config.models
    ]
    logger.info(
        "provider_gateway_built",
        provider=config.name,
        kind=kind.value,
        models=config.models,
        rate_limit_per_minute=config.rate_limit_per_minute,
    )
    return ProviderGateway(config.name, adapter, client, limiter, default_models=models)
