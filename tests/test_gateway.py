"""
Tests for ProviderGateway: wire conversion, error mapping, confidence and probes.

The backend is an httpx.MockTransport so no network is touched.
"""
import json

import httpx
import pytest

from codeintel.core.circuit_breaker import CircuitBreaker
from codeintel.core.config import ProviderConfig
from codeintel.core.errors import (
    AuthenticationFailedError,
    InvalidRequestError,
    ModelUnavailableError,
    NetworkError,
    RateLimitExceededError,
    RequestTimeoutError,
)
from codeintel.core.rate_limit import SlidingWindowRateLimiter
from codeintel.models.requests import AIRequestType, HealthState, ModelProvider
from codeintel.services.ai.gateway import (
    ProviderGateway,
    build_gateway,
    calculate_confidence,
)
from codeintel.services.ai.llm_client import LLMClient
from codeintel.services.ai.providers import OLLAMA_ADAPTER, OPENAI_ADAPTER
from conftest import FakeClock, make_model, make_request


def openai_completion(content="const x = 1;", finish_reason="stop", prompt_tokens=10, completion_tokens=5):
    return {
        "model": "gpt-4o-mini",
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def make_gateway(handler, adapter=OPENAI_ADAPTER, api_key="sk-test", limit=60, breaker=None):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = LLMClient(
        name="openai",
        api_base="https://llm.test/v1",
        api_key=api_key,
        http_client=http_client,
        circuit_breaker=breaker,
    )
    limiter = SlidingWindowRateLimiter("openai", limit, clock=FakeClock())
    model = make_model("gpt-4o-mini", provider=adapter.kind, provider_id="openai", cost_per_token=0.001)
    return ProviderGateway("openai", adapter, client, limiter, default_models=[model])


class TestCalculateConfidence:

    def test_clean_stop(self):
        assert calculate_confidence("hello world", "stop", 10, 5) == pytest.approx(0.961)

    def test_length_truncation_lowers_confidence(self):
        assert calculate_confidence("", "length", 10, 0) == pytest.approx(0.7)

    def test_content_filter(self):
        assert calculate_confidence("", "content_filter", 10, 0) == pytest.approx(0.5)

    def test_clamped_to_one(self):
        assert calculate_confidence("x" * 5000, "stop", 1, 100) == 1.0


@pytest.mark.asyncio
async def test_process_request_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=openai_completion())

    gateway = make_gateway(handler)
    response = await gateway.process_request(make_request(payload={"prompt": "Say hi"}))

    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "gpt-4o-mini"
    assert seen["body"]["messages"][-1] == {"role": "user", "content": "Say hi"}

    assert response.request_id == "req-1"
    assert response.id.startswith("resp_")
    assert response.result == "const x = 1;"
    assert response.model_used == "gpt-4o-mini"
    assert response.tokens.total_tokens == 15
    assert response.tokens.cost == pytest.approx(0.015)
    assert response.metadata == {"provider": "openai", "finish_reason": "stop"}
    assert 0.0 <= response.confidence <= 1.0


@pytest.mark.asyncio
async def test_code_completion_request_uses_stop_sequences():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=openai_completion())

    gateway = make_gateway(handler)
    request = make_request(request_type=AIRequestType.CODE_COMPLETION, payload={"code": "const x = "})
    await gateway.process_request(request)

    assert seen["body"]["max_tokens"] == 150
    assert seen["body"]["temperature"] == 0.1
    assert "\n\n" in seen["body"]["stop"]


@pytest.mark.asyncio
async def test_ollama_wire_format():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"model": "codellama", "response": "return a + b", "done": True, "prompt_eval_count": 8, "eval_count": 4},
        )

    gateway = make_gateway(handler, adapter=OLLAMA_ADAPTER, api_key=None)
    response = await gateway.process_request(make_request())

    assert seen["url"].endswith("/api/generate")
    assert seen["body"]["stream"] is False
    assert response.result == "return a + b"
    assert response.tokens.total_tokens == 12
    assert response.metadata["finish_reason"] == "stop"


@pytest.mark.asyncio
async def test_empty_prompt_is_invalid_and_spends_no_quota():
    gateway = make_gateway(lambda request: httpx.Response(200, json=openai_completion()), limit=1)

    with pytest.raises(InvalidRequestError):
        await gateway.process_request(make_request(payload={}))

    assert gateway.rate_limiter.remaining() == 1


@pytest.mark.asyncio
async def test_missing_api_key_fails_authentication():
    gateway = make_gateway(lambda request: httpx.Response(200, json=openai_completion()), api_key=None)

    with pytest.raises(AuthenticationFailedError) as exc_info:
        await gateway.process_request(make_request())
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_local_rate_limit():
    gateway = make_gateway(lambda request: httpx.Response(200, json=openai_completion()), limit=2)
    await gateway.process_request(make_request("r1"))
    await gateway.process_request(make_request("r2"))

    with pytest.raises(RateLimitExceededError):
        await gateway.process_request(make_request("r3"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_cls, retryable",
    [
        (401, AuthenticationFailedError, False),
        (429, RateLimitExceededError, True),
        (500, ModelUnavailableError, True),
        (503, ModelUnavailableError, True),
        (400, InvalidRequestError, False),
        (404, InvalidRequestError, False),
        (422, InvalidRequestError, False),
    ],
)
async def test_http_status_mapping(status, error_cls, retryable):
    gateway = make_gateway(lambda request: httpx.Response(status, json={"error": "nope"}))

    with pytest.raises(error_cls) as exc_info:
        await gateway.process_request(make_request())

    error = exc_info.value
    assert error.retryable is retryable
    assert error.request_id == "req-1"
    assert error.model_id == "gpt-4o-mini"
    assert error.context["status_code"] == status


@pytest.mark.asyncio
async def test_429_retry_after_header():
    gateway = make_gateway(lambda request: httpx.Response(429, headers={"Retry-After": "7"}))

    with pytest.raises(RateLimitExceededError) as exc_info:
        await gateway.process_request(make_request())
    assert exc_info.value.retry_after_ms == 7000.0


@pytest.mark.asyncio
async def test_timeout_mapping():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(RequestTimeoutError) as exc_info:
        await make_gateway(handler).process_request(make_request())
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_connection_refused_mapping():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError) as exc_info:
        await make_gateway(handler).process_request(make_request())
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_client_errors_do_not_trip_the_breaker():
    breaker = CircuitBreaker("openai", min_requests_for_threshold=2, clock=FakeClock())
    gateway = make_gateway(lambda request: httpx.Response(400), breaker=breaker)

    for i in range(4):
        with pytest.raises(InvalidRequestError):
            await gateway.process_request(make_request(f"r{i}"))

    assert breaker.get_metrics()["state"] == "closed"


@pytest.mark.asyncio
async def test_open_circuit_maps_to_model_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    breaker = CircuitBreaker("openai", min_requests_for_threshold=2, clock=FakeClock())
    gateway = make_gateway(handler, breaker=breaker)
    for i in range(2):
        with pytest.raises(ModelUnavailableError):
            await gateway.process_request(make_request(f"r{i}"))

    with pytest.raises(ModelUnavailableError) as exc_info:
        await gateway.process_request(make_request("r-open"))

    assert "circuit" in exc_info.value.message
    assert len(calls) == 2


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_healthy_when_models_listed(self):
        def handler(request):
            assert request.url.path == "/v1/models"
            return httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}]})

        status = await make_gateway(handler).health_check()
        assert status.status == HealthState.HEALTHY
        assert status.issues == []

    @pytest.mark.asyncio
    async def test_degraded_when_no_models(self):
        status = await make_gateway(lambda request: httpx.Response(200, json={"data": []})).health_check()
        assert status.status == HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_unhealthy_on_error(self):
        status = await make_gateway(lambda request: httpx.Response(500)).health_check()
        assert status.status == HealthState.UNHEALTHY
        assert status.error_rate == 1.0


@pytest.mark.asyncio
async def test_get_available_models_intersects_remote_list():
    gateway = make_gateway(lambda request: httpx.Response(200, json={"data": [{"id": "other"}, {"id": "gpt-4o-mini"}]}))
    models = await gateway.get_available_models()
    assert [m.model_id for m in models] == ["gpt-4o-mini"]


@pytest.mark.asyncio
async def test_get_available_models_falls_back_on_failure():
    gateway = make_gateway(lambda request: httpx.Response(500))
    models = await gateway.get_available_models()
    assert [m.model_id for m in models] == ["gpt-4o-mini"]


def test_build_gateway_from_config():
    config = ProviderConfig(
        provider="ollama",
        name="local-ollama",
        api_base="http://localhost:11434",
        models=["codellama", "llama3"],
        rate_limit_per_minute=5,
    )
    gateway = build_gateway(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))

    assert gateway.provider_id == "local-ollama"
    assert gateway.provider == ModelProvider.OLLAMA
    assert gateway.rate_limiter.limit == 5
    assert [m.model_id for m in gateway.default_models] == ["codellama", "llama3"]
    assert all(m.provider_id == "local-ollama" for m in gateway.default_models)


def test_build_gateway_rejects_unknown_provider():
    config = ProviderConfig(provider="anthropic", name="claude", api_base="https://api.example.test")
    with pytest.raises(ValueError):
        build_gateway(config)
