"""
Model selection and routing.

Scoring is a fixed weighted sum over the descriptor's observed figures:

    score = 0.4 * accuracy
          + 0.3 * max(0, 1 - response_time / 1000)
          + 0.2 * max(0, 1 - cost_per_token / 0.01)
          + 0.1 * availability
          + 0.1 if priority >= HIGH

Candidates are filtered by health, capability and privacy before scoring.
Ties keep registration order (stable sort), so identical inputs always pick
the same model.
"""
import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from codeintel.core.errors import ModelUnavailableError, PrivacyViolationError
from codeintel.core.logging import get_logger
from codeintel.models.requests import (
    LOCAL_PROVIDERS,
    AIRequest,
    AIResponse,
    AIRequestType,
    HealthState,
    HealthStatus,
    ModelCapability,
    ModelDescriptor,
    ModelSelection,
    PrivacyLevel,
    RequestPriority,
    RouteAssignment,
    RoutingPlan,
)
from codeintel.services.ai.gateway import ProviderGateway

logger = get_logger(__name__)

HEALTH_CACHE_TTL_SECONDS = 60.0
ROUTING_HISTORY_LIMIT = 1000

# Rough prompt + completion size per request type
ESTIMATED_TOKENS: Dict[AIRequestType, int] = {
    AIRequestType.CODE_COMPLETION: 150,
    AIRequestType.NATURAL_LANGUAGE: 300,
    AIRequestType.PREDICTIVE_ANALYSIS: 500,
    AIRequestType.DEBUG_ASSISTANCE: 400,
}
DEFAULT_ESTIMATED_TOKENS = 200

REQUIRED_CAPABILITY: Dict[AIRequestType, ModelCapability] = {
    AIRequestType.CODE_COMPLETION: ModelCapability.CODE_COMPLETION,
    AIRequestType.NATURAL_LANGUAGE: ModelCapability.NATURAL_LANGUAGE,
    AIRequestType.PREDICTIVE_ANALYSIS: ModelCapability.CODE_ANALYSIS,
    AIRequestType.DEBUG_ASSISTANCE: ModelCapability.REASONING,
}


def required_capability(request_type: AIRequestType) -> ModelCapability:
    return REQUIRED_CAPABILITY.get(request_type, ModelCapability.TEXT_GENERATION)


def estimate_cost(request: AIRequest, model: ModelDescriptor) -> float:
    tokens = ESTIMATED_TOKENS.get(request.type, DEFAULT_ESTIMATED_TOKENS)
    return tokens * model.cost_per_token


def score_model(model: ModelDescriptor, request: AIRequest) -> Tuple[float, str]:
    """Return (raw score, human-readable reasoning)."""
    factors: List[str] = []

    score = model.accuracy * 0.4
    factors.append(f"accuracy: {model.accuracy}")

    performance = max(0.0, 1.0 - model.response_time / 1000.0)
    score += performance * 0.3
    factors.append(f"performance: {performance:.2f}")

    cost_score = max(0.0, 1.0 - model.cost_per_token / 0.01)
    score += cost_score * 0.2
    factors.append(f"cost: {cost_score:.2f}")

    score += model.availability * 0.1
    factors.append(f"availability: {model.availability}")

    if request.priority >= RequestPriority.HIGH:
        score += 0.1
        factors.append("priority boost")

    return score, f"Factors: {', '.join(factors)} | Total: {score:.3f}"


class ModelSelector:
    """
    Registry of gateways and model descriptors plus the selection policy.

    Gateways are keyed by provider id; each model names the gateway that
    serves it through ``ModelDescriptor.provider_id``. Models whose gateway
    is not registered count as healthy until marked otherwise but cannot be
    routed.
    """

    def __init__(
        self,
        gateways: Optional[Iterable[ProviderGateway]] = None,
        models: Optional[Iterable[ModelDescriptor]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._gateways: Dict[str, ProviderGateway] = {}
        self._models: Dict[str, ModelDescriptor] = {}
        self._health: Dict[str, Tuple[HealthStatus, float]] = {}
        self._provider_health: Dict[str, Tuple[HealthStatus, float]] = {}
        self._probes: Dict[str, "asyncio.Future[HealthStatus]"] = {}
        self._routing_history: Deque[Dict[str, object]] = deque(maxlen=ROUTING_HISTORY_LIMIT)
        self._clock = clock
        for gateway in gateways or []:
            self.register_gateway(gateway)
        for model in models or []:
            self.register_model(model)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_gateway(self, gateway: ProviderGateway, register_models: bool = True) -> None:
        """Add a gateway (and, by default, its configured models)."""
        self._gateways[gateway.provider_id] = gateway
        self._provider_health.pop(gateway.provider_id, None)
        logger.info("gateway_registered", provider_id=gateway.provider_id, provider=gateway.provider.value)
        if register_models:
            for model in gateway.default_models:
                self.register_model(model)

    def get_gateway(self, provider_id: str) -> Optional[ProviderGateway]:
        return self._gateways.get(provider_id)

    def get_gateways(self) -> List[ProviderGateway]:
        return list(self._gateways.values())

    def register_model(self, model: ModelDescriptor) -> None:
        self._models[model.model_id] = model
        self._health.pop(model.model_id, None)
        logger.info(
            "model_registered",
            model_id=model.model_id,
            provider=model.provider.value,
            provider_id=model.provider_id,
        )

    def unregister_model(self, model_id: str) -> bool:
        removed = self._models.pop(model_id, None) is not None
        self._health.pop(model_id, None)
        if removed:
            logger.info("model_unregistered", model_id=model_id)
        return removed

    def get_model(self, model_id: str) -> Optional[ModelDescriptor]:
        return self._models.get(model_id)

    def get_available_models(self) -> List[ModelDescriptor]:
        """All registered models, in registration order."""
        return list(self._models.values())

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def mark_model_unhealthy(self, model_id: str, reason: str = "marked unhealthy") -> None:
        self._health[model_id] = (
            HealthStatus(status=HealthState.UNHEALTHY, error_rate=1.0, issues=[reason]),
            self._clock(),
        )
        logger.warning("model_marked_unhealthy", model_id=model_id, reason=reason)

    def record_health(self, model_id: str, status: HealthStatus) -> None:
        self._health[model_id] = (status, self._clock())

    def record_provider_health(self, provider_id: str, status: HealthStatus) -> None:
        self._provider_health[provider_id] = (status, self._clock())

    def _fresh(self, entry: Optional[Tuple[HealthStatus, float]]) -> bool:
        return entry is not None and self._clock() - entry[1] < HEALTH_CACHE_TTL_SECONDS

    async def _probe_gateway(self, gateway: ProviderGateway) -> HealthStatus:
        try:
            status = await gateway.health_check()
        except Exception as exc:
            logger.warning(
                "provider_health_probe_failed",
                provider_id=gateway.provider_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            status = HealthStatus(status=HealthState.UNHEALTHY, error_rate=1.0, issues=[str(exc)])
        self.record_provider_health(gateway.provider_id, status)
        return status

    async def get_provider_health(self, gateway: ProviderGateway) -> HealthStatus:
        """
        Cached gateway health, refreshed through one probe after 60s.

        Concurrent callers share the probe that is already in flight.
        """
        cached = self._provider_health.get(gateway.provider_id)
        if self._fresh(cached):
            return cached[0]

        task = self._probes.get(gateway.provider_id)
        if task is None:
            task = asyncio.ensure_future(self._probe_gateway(gateway))
            self._probes[gateway.provider_id] = task
            task.add_done_callback(lambda _: self._probes.pop(gateway.provider_id, None))
        return await asyncio.shield(task)

    async def get_model_health(self, model: ModelDescriptor) -> HealthStatus:
        """Model override if one was recorded, otherwise its gateway's health."""
        cached = self._health.get(model.model_id)
        if self._fresh(cached):
            return cached[0]

        gateway = self._gateways.get(model.provider_id)
        if gateway is None:
            if cached:
                return cached[0]
            return HealthStatus(status=HealthState.HEALTHY)
        return await self.get_provider_health(gateway)

    async def get_healthy_models(self, exclude: Iterable[str] = ()) -> List[ModelDescriptor]:
        excluded = set(exclude)
        models = [m for m in self._models.values() if m.model_id not in excluded]
        statuses = await asyncio.gather(*(self.get_model_health(m) for m in models))
        return [m for m, status in zip(models, statuses) if status.status != HealthState.UNHEALTHY]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def estimate_cost(self, request: AIRequest, model: ModelDescriptor) -> float:
        return estimate_cost(request, model)

    async def select_model(self, request: AIRequest, exclude: Iterable[str] = ()) -> ModelSelection:
        """
        Pick the best model for ``request``.

        Raises:
            ModelUnavailableError: nothing healthy, or nothing with the
                required capability (non-retryable)
            PrivacyViolationError: local-only request with no local model
        """
        candidates = await self.get_healthy_models(exclude)
        if not candidates:
            raise ModelUnavailableError("No healthy models available", request_id=request.id)

        capability = required_capability(request.type)
        candidates = [m for m in candidates if capability in m.capabilities]
        if not candidates:
            raise ModelUnavailableError(
                f"No model supports capability {capability.value}",
                request_id=request.id,
                retryable=False,
                context={"capability": capability.value},
            )

        if request.privacy_level == PrivacyLevel.LOCAL_ONLY:
            candidates = [m for m in candidates if m.provider in LOCAL_PROVIDERS]
            if not candidates:
                raise PrivacyViolationError(
                    "No local models available for local-only request",
                    request_id=request.id,
                )

        scored = [(model,) + score_model(model, request) for model in candidates]
        scored.sort(key=lambda item: item[1], reverse=True)
        best, score, reasoning = scored[0]

        selection = ModelSelection(
            model_id=best.model_id,
            provider=best.provider,
            provider_id=best.provider_id,
            confidence=min(1.0, score),
            estimated_cost=estimate_cost(request, best),
            estimated_latency=best.response_time,
            reasoning=reasoning,
        )
        logger.debug(
            "model_scored",
            request_id=request.id,
            candidates=[(m.model_id, round(s, 3)) for m, s, _ in scored],
        )
        return selection

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def route_request(
        self,
        request: AIRequest,
        selection: ModelSelection,
        timeout_seconds: Optional[float] = None,
    ) -> AIResponse:
        """
        Execute ``request`` on the gateway that serves the selected model.

        Raises:
            ModelUnavailableError: model unknown, unhealthy or without a gateway
            AIError: whatever the gateway raises
        """
        model = self._models.get(selection.model_id)
        if model is None:
            raise ModelUnavailableError(
                f"Model {selection.model_id} is not registered",
                request_id=request.id,
                model_id=selection.model_id,
            )
        status = await self.get_model_health(model)
        if status.status == HealthState.UNHEALTHY:
            raise ModelUnavailableError(
                f"Model {selection.model_id} is unhealthy",
                request_id=request.id,
                model_id=selection.model_id,
            )
        gateway = self._gateways.get(model.provider_id)
        if gateway is None:
            raise ModelUnavailableError(
                f"No gateway registered for provider {model.provider_id}",
                request_id=request.id,
                model_id=model.model_id,
            )

        self._routing_history.append(
            {
                "request_id": request.id,
                "model_id": model.model_id,
                "provider_id": model.provider_id,
                "timestamp": time.time(),
            }
        )
        logger.debug(
            "request_routed",
            request_id=request.id,
            model_id=model.model_id,
            provider_id=model.provider_id,
        )
        return await gateway.process_request(request, model, timeout_seconds=timeout_seconds)

    async def handle_failover(self, request: AIRequest, failed_model_id: str) -> AIResponse:
        """Mark ``failed_model_id`` unhealthy, re-select without it and execute."""
        self.mark_model_unhealthy(failed_model_id, reason="failover")
        failover_request = request.model_copy(
            update={"id": f"{request.id}_failover_{int(time.time() * 1000)}"}
        )
        selection = await self.select_model(failover_request, exclude=[failed_model_id])
        logger.info(
            "model_failover",
            request_id=request.id,
            failed_model_id=failed_model_id,
            new_model_id=selection.model_id,
        )
        return await self.route_request(failover_request, selection)

    async def balance_load(self, requests: List[AIRequest]) -> RoutingPlan:
        """Plan routes for a batch, highest priority first."""
        ordered = sorted(requests, key=lambda r: r.priority, reverse=True)
        plan = RoutingPlan()

        for request in ordered:
            try:
                selection = await self.select_model(request)
            except Exception as exc:
                logger.warning(
                    "load_balance_route_failed",
                    request_id=request.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue

            plan.routes.append(
                RouteAssignment(
                    request_id=request.id,
                    model_id=selection.model_id,
                    priority=request.priority,
                    estimated_processing_time=selection.estimated_latency,
                )
            )
            plan.estimated_latency = max(plan.estimated_latency, selection.estimated_latency)
            plan.estimated_cost += selection.estimated_cost
            plan.load_distribution[selection.model_id] = plan.load_distribution.get(selection.model_id, 0) + 1

        return plan

    def get_routing_history(self) -> List[Dict[str, object]]:
        return list(self._routing_history)
