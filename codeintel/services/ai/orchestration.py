"""
Request orchestration.

Responsibilities:
- Validate requests and enforce the concurrency cap (admission control)
- Drive selection -> execution -> response validation
- Keep rolling performance and feedback windows
- Adapt the concurrency cap from recent performance
- Flag when user feedback suggests the models need retraining

NON-responsibilities:
- Does NOT retry failed requests (callers decide, using ``retryable``)
- Does NOT queue rejected requests
- Does NOT know provider wire formats

Admission is a lock-guarded check-then-insert on the in-flight map; the lock
is never held across an ``await``.
"""
import asyncio
import math
import time
import uuid
from collections import deque
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from codeintel.core.cancellation import CancellationToken, check_cancelled
from codeintel.core.config import OrchestratorConfig
from codeintel.core.errors import (
    AIError,
    InsufficientResourcesError,
    InvalidRequestError,
    ModelUnavailableError,
    QualityThresholdNotMetError,
    RequestTimeoutError,
)
from codeintel.core.logging import get_logger, set_ai_request_id
from codeintel.core.metrics import (
    MetricsSink,
    NullMetricsSink,
    record_admission_rejection,
    record_ai_request,
    record_retraining_signal,
    record_validation_issue,
    snapshot_resource_usage,
)
from codeintel.core.tracing import get_tracer, set_span_attribute
from codeintel.models.requests import (
    AIRequest,
    AIResponse,
    IssueSeverity,
    ModelSelection,
    PerformanceMetrics,
    ResourceUsage,
    TokenUsage,
    UserFeedback,
    ValidationIssue,
    ValidationIssueType,
    ValidationResult,
)
from codeintel.services.ai.selection import ModelSelector

logger = get_logger(__name__)

RetrainingCallback = Callable[[Dict[str, Any]], None]


def _consume_result(task: "asyncio.Task") -> None:
    # Late provider results are discarded; retrieve the exception so asyncio
    # does not report it as never retrieved.
    if not task.cancelled():
        task.exception()


class RequestOrchestrator:
    """
    Central coordination for AI requests.

    Args:
        selector: model registry and routing
        config: admission, quality and adaptive-control settings
        metrics_sink: receives ``ai_response_time``, ``ai_throughput``,
            ``ai_error_rate`` and ``ai_user_satisfaction``
        retraining_callback: invoked with a summary when negative feedback
            crosses the threshold
    """

    def __init__(
        self,
        selector: ModelSelector,
        config: Optional[OrchestratorConfig] = None,
        metrics_sink: Optional[MetricsSink] = None,
        retraining_callback: Optional[RetrainingCallback] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.selector = selector
        self.config = config or OrchestratorConfig()
        self.metrics_sink = metrics_sink or NullMetricsSink()
        self.retraining_callback = retraining_callback
        self._clock = clock

        self._max_concurrent_requests = self.config.max_concurrent_requests
        self._active_requests: Dict[str, AIRequest] = {}
        self._active_lock = Lock()

        self._performance_history: Deque[PerformanceMetrics] = deque(maxlen=self.config.metrics_buffer_size)
        self._feedback_history: Deque[UserFeedback] = deque(maxlen=self.config.feedback_buffer_size)
        self._history_lock = Lock()

        self._model_preferences: Dict[str, Any] = {}
        self._retraining_signals = 0

    @property
    def max_concurrent_requests(self) -> int:
        return self._max_concurrent_requests

    @property
    def in_flight(self) -> int:
        with self._active_lock:
            return len(self._active_requests)

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def _validate_request(self, request: AIRequest) -> None:
        missing = [
            name
            for name, value in (("id", request.id), ("type", request.type), ("context", request.context))
            if not value
        ]
        if missing:
            raise InvalidRequestError(
                f"Invalid request: missing required fields: {', '.join(missing)}",
                request_id=request.id or None,
                context={"missing": missing},
            )

    def _admit(self, request: AIRequest) -> None:
        with self._active_lock:
            if request.id in self._active_requests:
                raise InvalidRequestError(
                    f"Request {request.id} is already in flight",
                    request_id=request.id,
                )
            in_flight = len(self._active_requests)
            if in_flight < self._max_concurrent_requests:
                self._active_requests[request.id] = request
                in_flight += 1
                admitted = True
            else:
                admitted = False
            limit = self._max_concurrent_requests

        self.metrics_sink.record_metric("ai_in_flight_requests", in_flight)
        if not admitted:
            record_admission_rejection()
            raise InsufficientResourcesError(
                "Maximum concurrent requests exceeded",
                request_id=request.id,
                context={"in_flight": in_flight, "max_concurrent_requests": limit},
            )

    def _release(self, request_id: str) -> None:
        with self._active_lock:
            self._active_requests.pop(request_id, None)
            in_flight = len(self._active_requests)
        self.metrics_sink.record_metric("ai_in_flight_requests", in_flight)

    async def process_request(
        self,
        request: AIRequest,
        cancellation: Optional[CancellationToken] = None,
    ) -> AIResponse:
        """
        Process one AI request.

        Raises:
            InvalidRequestError: missing id/type/context
            InsufficientResourcesError: concurrency cap reached (never queued)
            QualityThresholdNotMetError: response has a critical issue
            AIError: selection or provider failure, propagated unchanged
            OperationCancelledError: cancelled before the backend call
        """
        start = self._clock()
        admitted = False
        set_ai_request_id(request.id or None)

        tracer = get_tracer()
        with tracer.start_as_current_span("ai.process_request"):
            set_span_attribute("ai.request_id", request.id)
            set_span_attribute("ai.request_type", request.type.value if request.type else "")
            try:
                logger.info(
                    "ai_request_started",
                    request_id=request.id,
                    request_type=request.type.value if request.type else None,
                    priority=int(request.priority),
                    privacy_level=request.privacy_level.value,
                )

                self._validate_request(request)
                self._admit(request)
                admitted = True

                check_cancelled(cancellation)
                response = await self._execute(request, cancellation)

                validation = self.validate_response(response)
                if not validation.is_valid:
                    raise QualityThresholdNotMetError(
                        "Response validation failed: "
                        + ", ".join(issue.description for issue in validation.issues),
                        request_id=request.id,
                        model_id=response.model_used,
                    )

                processing_time = (self._clock() - start) * 1000.0
                self.track_performance_metrics(
                    PerformanceMetrics(
                        response_time=processing_time,
                        throughput=1000.0 / max(processing_time, 1e-3),
                        error_rate=0.0,
                        resource_usage=ResourceUsage(**snapshot_resource_usage()),
                        user_satisfaction=response.confidence,
                    )
                )
                record_ai_request(request.type.value, "success")
                logger.info(
                    "ai_request_completed",
                    request_id=request.id,
                    processing_time=processing_time,
                    model_used=response.model_used,
                    confidence=response.confidence,
                )
                return response

            except Exception as exc:
                processing_time = (self._clock() - start) * 1000.0
                self._handle_request_error(request, exc, processing_time)
                raise

            finally:
                if admitted:
                    self._release(request.id)

    async def _execute(
        self,
        request: AIRequest,
        cancellation: Optional[CancellationToken] = None,
    ) -> AIResponse:
        """
        Race model selection plus the provider call against the request timeout.

        The work is not cancelled when the timeout wins; it finishes in the
        background and its result is dropped.
        """
        timeout_seconds = self.config.request_timeout_ms / 1000.0
        deadline = self._clock() + timeout_seconds
        selected: Dict[str, ModelSelection] = {}

        async def select_and_route() -> AIResponse:
            selection = await self.route_to_optimal_model(request)
            selected["selection"] = selection
            check_cancelled(cancellation)
            remaining = max(0.0, deadline - self._clock())
            return await self.selector.route_request(request, selection, timeout_seconds=remaining)

        task = asyncio.ensure_future(select_and_route())
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
        if task in done:
            return task.result()

        task.add_done_callback(_consume_result)
        selection = selected.get("selection")
        raise RequestTimeoutError(
            f"Request timed out after {self.config.request_timeout_ms:.0f}ms",
            request_id=request.id,
            model_id=selection.model_id if selection else None,
        )

    def _handle_request_error(self, request: AIRequest, exc: BaseException, processing_time: float) -> None:
        error_code = exc.code.value if isinstance(exc, AIError) else type(exc).__name__
        retryable = exc.retryable if isinstance(exc, AIError) else False

        logger.error(
            "ai_request_failed",
            request_id=request.id,
            error=str(exc),
            error_code=error_code,
            processing_time=processing_time,
            retryable=retryable,
        )
        record_ai_request(request.type.value if request.type else "unknown", error_code)
        self.track_performance_metrics(
            PerformanceMetrics(
                response_time=processing_time,
                throughput=0.0,
                error_rate=1.0,
                user_satisfaction=0.0,
            )
        )

    async def route_to_optimal_model(self, request: AIRequest) -> ModelSelection:
        tracer = get_tracer()
        with tracer.start_as_current_span("ai.route_model"):
            try:
                if not self.selector.get_available_models():
                    raise ModelUnavailableError("No AI models available", request_id=request.id, retryable=False)

                selection = await self.selector.select_model(request)
            except Exception as exc:
                logger.error(
                    "ai_model_routing_failed",
                    request_id=request.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise

            set_span_attribute("ai.model_id", selection.model_id)
            logger.debug(
                "ai_model_selected",
                request_id=request.id,
                model_id=selection.model_id,
                confidence=selection.confidence,
                estimated_cost=selection.estimated_cost,
                estimated_latency=selection.estimated_latency,
                reasoning=selection.reasoning,
            )
            return selection

    # ------------------------------------------------------------------
    # Response handling
    # ------------------------------------------------------------------

    def aggregate_responses(self, responses: List[AIResponse]) -> AIResponse:
        """
        Combine several responses (ensembles, multi-step processing).

        Mean confidence, max processing time, summed tokens. The result and
        model come from the response with the best confidence per millisecond
        (earliest wins ties).
        """
        if not responses:
            raise InvalidRequestError("No responses to aggregate")
        if len(responses) == 1:
            return responses[0]

        best = responses[0]
        best_score = best.confidence / max(best.processing_time, 1.0)
        for candidate in responses[1:]:
            score = candidate.confidence / max(candidate.processing_time, 1.0)
            if score > best_score:
                best, best_score = candidate, score

        confidence = float(np.mean([r.confidence for r in responses]))
        tokens = TokenUsage(
            prompt_tokens=sum(r.tokens.prompt_tokens for r in responses),
            completion_tokens=sum(r.tokens.completion_tokens for r in responses),
            total_tokens=sum(r.tokens.total_tokens for r in responses),
            cost=sum(r.tokens.cost or 0.0 for r in responses),
        )

        aggregated = best.model_copy(
            update={
                "id": f"aggregated_{int(time.time() * 1000)}",
                "confidence": confidence,
                "processing_time": max(r.processing_time for r in responses),
                "tokens": tokens,
            }
        )
        logger.debug(
            "ai_responses_aggregated",
            response_count=len(responses),
            confidence=confidence,
            selected_response=best.id,
        )
        return aggregated

    def validate_response(self, response: AIResponse) -> ValidationResult:
        issues: List[ValidationIssue] = []

        if response.confidence < self.config.quality_threshold:
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.ACCURACY,
                    severity=IssueSeverity.MEDIUM,
                    description=(
                        f"Response confidence {response.confidence} below threshold "
                        f"{self.config.quality_threshold}"
                    ),
                    suggestion="Consider using a more capable model or providing more context",
                )
            )

        if response.processing_time > self.config.max_response_time_ms:
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.PERFORMANCE,
                    severity=IssueSeverity.HIGH,
                    description=(
                        f"Response time {response.processing_time}ms exceeds target "
                        f"{self.config.max_response_time_ms}ms"
                    ),
                    suggestion="Consider optimizing model selection or using caching",
                )
            )

        result = response.result
        if result is None or (isinstance(result, str) and not result.strip()):
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.ACCURACY,
                    severity=IssueSeverity.CRITICAL,
                    description="Response contains no meaningful content",
                    suggestion="Retry with different model or adjust request parameters",
                )
            )

        for issue in issues:
            record_validation_issue(issue.type.value, issue.severity.value)

        return ValidationResult(
            is_valid=not any(i.severity == IssueSeverity.CRITICAL for i in issues),
            confidence=response.confidence,
            issues=issues,
            suggestions=[i.suggestion for i in issues if i.suggestion],
        )

    # ------------------------------------------------------------------
    # Performance window and adaptive concurrency
    # ------------------------------------------------------------------

    def track_performance_metrics(self, metrics: PerformanceMetrics) -> None:
        with self._history_lock:
            self._performance_history.append(metrics)

        self.metrics_sink.record_metric("ai_response_time", metrics.response_time)
        self.metrics_sink.record_metric("ai_throughput", metrics.throughput)
        self.metrics_sink.record_metric("ai_error_rate", metrics.error_rate)
        self.metrics_sink.record_metric("ai_user_satisfaction", metrics.user_satisfaction)

    def get_performance_history(self) -> List[PerformanceMetrics]:
        with self._history_lock:
            return list(self._performance_history)

    def optimize_resource_allocation(self) -> int:
        """
        Nudge the concurrency cap from recent performance; returns the cap.

        A hysteresis band around the response-time target: shrink when the
        recent mean is above ``slow_response_ratio`` x target, grow when it is
        below ``fast_response_ratio`` x target and errors are rare.
        """
        with self._history_lock:
            if len(self._performance_history) < self.config.optimization_min_samples:
                return self._max_concurrent_requests
            recent = list(self._performance_history)[-self.config.optimization_window:]

        avg_response_time = float(np.mean([m.response_time for m in recent]))
        avg_error_rate = float(np.mean([m.error_rate for m in recent]))
        target = self.config.max_response_time_ms

        logger.info(
            "ai_resource_optimization",
            avg_response_time=avg_response_time,
            avg_error_rate=avg_error_rate,
            target_response_time=target,
            sample_size=len(recent),
        )

        with self._active_lock:
            current = self._max_concurrent_requests
            if avg_response_time > target * self.config.slow_response_ratio:
                new_limit = max(1, math.floor(current * self.config.shrink_factor))
            elif (
                avg_response_time < target * self.config.fast_response_ratio
                and avg_error_rate < self.config.max_error_rate_for_growth
            ):
                new_limit = min(self.config.max_concurrency_ceiling, math.ceil(current * self.config.grow_factor))
            else:
                new_limit = current
            self._max_concurrent_requests = new_limit

        if new_limit != current:
            logger.info("ai_concurrency_limit_changed", old_limit=current, new_limit=new_limit)
        self.metrics_sink.record_metric("ai_concurrency_limit", new_limit)
        return new_limit

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def record_user_feedback(self, feedback: UserFeedback) -> bool:
        """Store feedback; returns True when a retraining signal was emitted."""
        with self._history_lock:
            self._feedback_history.append(feedback)
            recent = list(self._feedback_history)[-self.config.feedback_window:]

        logger.info(
            "ai_user_feedback_recorded",
            request_id=feedback.request_id,
            rating=feedback.rating,
            accepted=feedback.accepted,
            feedback_length=len(feedback.feedback),
        )

        negative_ratio = sum(1 for f in recent if f.rating < 3) / len(recent)
        if negative_ratio <= self.config.negative_feedback_threshold or len(recent) < self.config.feedback_min_samples:
            return False

        summary = {"negative_ratio": negative_ratio, "sample_size": len(recent)}
        logger.warning("ai_retraining_needed", **summary)
        record_retraining_signal()
        self._retraining_signals += 1
        if self.retraining_callback is not None:
            try:
                self.retraining_callback(summary)
            except Exception as exc:
                logger.error(
                    "ai_retraining_callback_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return True

    def update_model_preferences(self, preferences: Dict[str, Any]) -> None:
        self._model_preferences.update(preferences)
        logger.info("ai_model_preferences_updated", preferences=preferences)

    def get_model_preferences(self) -> Dict[str, Any]:
        return dict(self._model_preferences)

    def get_statistics(self) -> Dict[str, Any]:
        with self._active_lock:
            in_flight = len(self._active_requests)
            limit = self._max_concurrent_requests
        with self._history_lock:
            samples = len(self._performance_history)
            feedback = len(self._feedback_history)
        return {
            "in_flight": in_flight,
            "max_concurrent_requests": limit,
            "performance_samples": samples,
            "feedback_entries": feedback,
            "retraining_signals": self._retraining_signals,
            "available_models": len(self.selector.get_available_models()),
        }


def new_request_id(prefix: str = "req") -> str:
    return f"{prefix}_{uuid.uuid4().hex}"
