"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: HTTP rate, errors, duration
- AI Metrics: orchestrator throughput, latency, error rate, satisfaction,
  admission control and the adaptive concurrency cap
- Provider Metrics: per-backend requests, latency, tokens, rate-limit hits
- Completion Metrics: ranking latency, suggestion counts, cache hits/misses
- Resource Metrics: CPU, memory (psutil)

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration, _distribution for distributions
- Gauges: No special suffix

The orchestrator reports through the ``MetricsSink`` protocol
(``record_metric(name, value)``); ``PrometheusMetricsSink`` maps those names
onto the collectors below.
"""
from typing import Dict, Optional, Protocol

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from codeintel.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry,
)

# ============================================================================
# AI ORCHESTRATION METRICS
# ============================================================================

ai_requests_total = Counter(
    "ai_requests_total",
    "Total number of AI requests processed by the orchestrator",
    ["request_type", "status"],  # status: success | error code
    registry=registry,
)

ai_response_time_seconds = Histogram(
    "ai_response_time_seconds",
    "AI request processing time in seconds",
    buckets=[0.025, 0.05, 0.1, 0.2, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

ai_throughput = Gauge(
    "ai_throughput",
    "Most recent per-request throughput sample (requests/second)",
    registry=registry,
)

ai_error_rate = Gauge(
    "ai_error_rate",
    "Most recent error-rate sample (0 or 1 per request)",
    registry=registry,
)

ai_user_satisfaction = Gauge(
    "ai_user_satisfaction",
    "Most recent user satisfaction proxy (response confidence)",
    registry=registry,
)

ai_in_flight_requests = Gauge(
    "ai_in_flight_requests",
    "Number of AI requests currently admitted",
    registry=registry,
)

ai_concurrency_limit = Gauge(
    "ai_concurrency_limit",
    "Current adaptive concurrency cap",
    registry=registry,
)

ai_admission_rejections_total = Counter(
    "ai_admission_rejections_total",
    "Requests rejected because the concurrency cap was reached",
    registry=registry,
)

ai_validation_issues_total = Counter(
    "ai_validation_issues_total",
    "Validation issues found on AI responses",
    ["issue_type", "severity"],
    registry=registry,
)

ai_retraining_signals_total = Counter(
    "ai_retraining_signals_total",
    "Times negative feedback crossed the retraining threshold",
    registry=registry,
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

provider_requests_total = Counter(
    "provider_requests_total",
    "Total number of backend calls",
    ["provider", "model", "status"],
    registry=registry,
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Backend call latency in seconds",
    ["provider"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

provider_tokens_total = Counter(
    "provider_tokens_total",
    "Tokens consumed by backend calls",
    ["provider", "model", "kind"],  # kind: prompt | completion
    registry=registry,
)

provider_cost_total = Counter(
    "provider_cost_total",
    "Estimated backend cost",
    ["provider", "model"],
    registry=registry,
)

provider_rate_limit_hits_total = Counter(
    "provider_rate_limit_hits_total",
    "Calls rejected by the per-provider sliding window",
    ["provider"],
    registry=registry,
)

# ============================================================================
# COMPLETION METRICS
# ============================================================================

completion_ranking_latency_seconds = Histogram(
    "completion_ranking_latency_seconds",
    "Local completion ranking latency in seconds",
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1],
    registry=registry,
)

completion_score_distribution = Histogram(
    "completion_score_distribution",
    "Distribution of ranked completion scores",
    buckets=[0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
    registry=registry,
)

completion_suggestions_total = Counter(
    "completion_suggestions_total",
    "Completion suggestions returned",
    ["source"],  # local | ai
    registry=registry,
)

completion_ai_fallback_total = Counter(
    "completion_ai_fallback_total",
    "AI-assisted completions that degraded to local-only",
    ["reason"],
    registry=registry,
)

completion_acceptance_total = Counter(
    "completion_acceptance_total",
    "Completion feedback events",
    ["accepted"],
    registry=registry,
)

cache_hits_total = Counter(
    "cache_hits_total",
    "Total number of cache hits",
    ["cache_type"],
    registry=registry,
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total number of cache misses",
    ["cache_type"],
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)


# ============================================================================
# METRICS SINK
# ============================================================================

class MetricsSink(Protocol):
    """Fire-and-forget named metric recorder used by the orchestrator."""

    def record_metric(self, name: str, value: float) -> None:
        ...


class PrometheusMetricsSink:
    """Maps orchestrator metric names onto Prometheus collectors."""

    def record_metric(self, name: str, value: float) -> None:
        if name == "ai_response_time":
            # Orchestrator reports milliseconds
            ai_response_time_seconds.observe(value / 1000.0)
        elif name == "ai_throughput":
            ai_throughput.set(value)
        elif name == "ai_error_rate":
            ai_error_rate.set(value)
        elif name == "ai_user_satisfaction":
            ai_user_satisfaction.set(value)
        elif name == "ai_concurrency_limit":
            ai_concurrency_limit.set(value)
        elif name == "ai_in_flight_requests":
            ai_in_flight_requests.set(value)
        else:
            logger.debug("metrics_unknown_name", name=name, value=value)


class NullMetricsSink:
    def record_metric(self, name: str, value: float) -> None:
        return None


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """Strip query strings and trailing slashes to keep label cardinality low."""
    if "?" in path:
        path = path.split("?")[0]
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics (RED metrics)."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_ai_request(request_type: str, status: str) -> None:
    ai_requests_total.labels(request_type=request_type, status=status).inc()


def record_admission_rejection() -> None:
    ai_admission_rejections_total.inc()


def record_validation_issue(issue_type: str, severity: str) -> None:
    ai_validation_issues_total.labels(issue_type=issue_type, severity=severity).inc()


def record_retraining_signal() -> None:
    ai_retraining_signals_total.inc()


def record_provider_request(
    provider: str,
    model: str,
    status: str,
    duration_seconds: float,
) -> None:
    """Record one backend call (success or failure)."""
    provider_requests_total.labels(provider=provider, model=model, status=status).inc()
    provider_request_duration_seconds.labels(provider=provider).observe(duration_seconds)


def record_provider_tokens(
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    cost: float = 0.0,
) -> None:
    """Record token usage and estimated cost for a backend call."""
    if prompt_tokens:
        provider_tokens_total.labels(provider=provider, model=model, kind="prompt").inc(prompt_tokens)
    if completion_tokens:
        provider_tokens_total.labels(provider=provider, model=model, kind="completion").inc(completion_tokens)
    if cost > 0:
        provider_cost_total.labels(provider=provider, model=model).inc(cost)


def record_rate_limit_hit(provider: str) -> None:
    provider_rate_limit_hits_total.labels(provider=provider).inc()


def record_completion_ranking(duration_seconds: float, scores: Optional[list] = None) -> None:
    """Record ranking latency and the score of every returned completion."""
    completion_ranking_latency_seconds.observe(duration_seconds)
    for score in scores or []:
        completion_score_distribution.observe(score)


def record_completion_suggestions(source: str, count: int) -> None:
    if count > 0:
        completion_suggestions_total.labels(source=source).inc(count)


def record_completion_ai_fallback(reason: str) -> None:
    completion_ai_fallback_total.labels(reason=reason).inc()


def record_completion_acceptance(accepted: bool) -> None:
    completion_acceptance_total.labels(accepted=str(accepted).lower()).inc()


def record_cache_hit(cache_type: str) -> None:
    cache_hits_total.labels(cache_type=cache_type).inc()


def record_cache_miss(cache_type: str) -> None:
    cache_misses_total.labels(cache_type=cache_type).inc()


def snapshot_resource_usage() -> Dict[str, float]:
    """
    Current process-level resource usage.

    Returns:
        Dict with cpu (percent), memory (bytes RSS), network (always 0.0,
        per-request network accounting is not tracked)
    """
    try:
        process = psutil.Process()
        return {
            "cpu": float(process.cpu_percent(interval=None)),
            "memory": float(process.memory_info().rss),
            "network": 0.0,
        }
    except psutil.Error as e:
        logger.warning(
            "metrics_resource_snapshot_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        return {"cpu": 0.0, "memory": 0.0, "network": 0.0}


def update_resource_metrics() -> None:
    """Refresh system CPU and memory gauges (called on scrape)."""
    try:
        system_cpu_usage_percent.set(psutil.cpu_percent(interval=0.1))
        system_memory_usage_bytes.set(psutil.virtual_memory().used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """Prometheus metrics in text format."""
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
