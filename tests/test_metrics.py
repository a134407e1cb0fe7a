"""
Unit tests for Prometheus metrics collection.

Tests verify:
- RED metrics (Rate, Errors, Duration) are recorded correctly
- AI, provider and completion metrics are recorded through their helpers
- The orchestrator metrics sink maps names onto collectors
- Resource metrics (CPU, memory) are updated and failures are contained
- Metrics endpoint output is valid Prometheus text
"""
from unittest.mock import MagicMock, patch

import psutil
import pytest

from codeintel.core.metrics import (
    NullMetricsSink,
    PrometheusMetricsSink,
    ai_concurrency_limit,
    ai_error_rate,
    get_metrics,
    get_metrics_content_type,
    normalize_endpoint,
    record_admission_rejection,
    record_ai_request,
    record_cache_hit,
    record_cache_miss,
    record_completion_acceptance,
    record_completion_ai_fallback,
    record_completion_ranking,
    record_completion_suggestions,
    record_http_request,
    record_provider_request,
    record_provider_tokens,
    record_rate_limit_hit,
    record_retraining_signal,
    record_validation_issue,
    registry,
    snapshot_resource_usage,
    system_cpu_usage_percent,
    system_memory_usage_bytes,
    update_resource_metrics,
)


def sample(name, **labels):
    return registry.get_sample_value(name, labels) or 0.0


class TestEndpointNormalization:
    """Test endpoint path normalization."""

    def test_query_string_removed(self):
        assert normalize_endpoint("/completions?debug=1") == "/completions"

    def test_trailing_slash_removed(self):
        assert normalize_endpoint("/health/") == "/health"

    def test_root_kept(self):
        assert normalize_endpoint("/") == "/"

    def test_other_endpoints_kept(self):
        assert normalize_endpoint("/health/providers") == "/health/providers"


class TestREDMetrics:
    """Test RED metrics (Rate, Errors, Duration)."""

    def test_record_http_request_success(self):
        before = sample("http_requests_total", method="GET", endpoint="/assist", status="200")
        errors_before = sample("http_errors_total", method="GET", endpoint="/assist", status_code="200")

        record_http_request(method="GET", endpoint="/assist", status_code=200, duration_seconds=0.1)

        assert sample("http_requests_total", method="GET", endpoint="/assist", status="200") == before + 1
        assert sample("http_errors_total", method="GET", endpoint="/assist", status_code="200") == errors_before
        assert sample("http_request_duration_seconds_count", method="GET", endpoint="/assist") >= 1

    @pytest.mark.parametrize("status_code", [400, 429, 502])
    def test_record_http_request_error(self, status_code):
        before = sample("http_errors_total", method="POST", endpoint="/assist", status_code=str(status_code))

        record_http_request(method="POST", endpoint="/assist/", status_code=status_code, duration_seconds=0.05)

        assert sample(
            "http_errors_total", method="POST", endpoint="/assist", status_code=str(status_code)
        ) == before + 1


class TestAIMetrics:

    def test_record_ai_request(self):
        before = sample("ai_requests_total", request_type="code_completion", status="success")
        record_ai_request("code_completion", "success")
        assert sample("ai_requests_total", request_type="code_completion", status="success") == before + 1

    def test_counters(self):
        rejections = sample("ai_admission_rejections_total")
        retraining = sample("ai_retraining_signals_total")
        issues = sample("ai_validation_issues_total", issue_type="accuracy", severity="medium")

        record_admission_rejection()
        record_retraining_signal()
        record_validation_issue("accuracy", "medium")

        assert sample("ai_admission_rejections_total") == rejections + 1
        assert sample("ai_retraining_signals_total") == retraining + 1
        assert sample("ai_validation_issues_total", issue_type="accuracy", severity="medium") == issues + 1


class TestProviderMetrics:

    def test_record_provider_request(self):
        before = sample("provider_requests_total", provider="openai", model="gpt-4", status="success")
        record_provider_request("openai", "gpt-4", "success", 0.3)
        assert sample("provider_requests_total", provider="openai", model="gpt-4", status="success") == before + 1

    def test_record_provider_tokens(self):
        prompt = sample("provider_tokens_total", provider="openai", model="gpt-4", kind="prompt")
        completion = sample("provider_tokens_total", provider="openai", model="gpt-4", kind="completion")
        cost = sample("provider_cost_total", provider="openai", model="gpt-4")

        record_provider_tokens("openai", "gpt-4", prompt_tokens=100, completion_tokens=50, cost=0.015)

        assert sample("provider_tokens_total", provider="openai", model="gpt-4", kind="prompt") == prompt + 100
        assert sample("provider_tokens_total", provider="openai", model="gpt-4", kind="completion") == completion + 50
        assert sample("provider_cost_total", provider="openai", model="gpt-4") == pytest.approx(cost + 0.015)

    def test_zero_cost_not_recorded(self):
        before = sample("provider_cost_total", provider="ollama", model="codellama")
        record_provider_tokens("ollama", "codellama", prompt_tokens=10, completion_tokens=0, cost=0.0)
        assert sample("provider_cost_total", provider="ollama", model="codellama") == before

    def test_record_rate_limit_hit(self):
        before = sample("provider_rate_limit_hits_total", provider="openai")
        record_rate_limit_hit("openai")
        assert sample("provider_rate_limit_hits_total", provider="openai") == before + 1


class TestCompletionMetrics:

    def test_ranking_latency_and_scores(self):
        latency = sample("completion_ranking_latency_seconds_count")
        scores = sample("completion_score_distribution_count")

        record_completion_ranking(0.002, scores=[0.9, 0.4])

        assert sample("completion_ranking_latency_seconds_count") == latency + 1
        assert sample("completion_score_distribution_count") == scores + 2

    def test_suggestions_skip_empty_batches(self):
        before = sample("completion_suggestions_total", source="ai")
        record_completion_suggestions("ai", 0)
        record_completion_suggestions("ai", 3)
        assert sample("completion_suggestions_total", source="ai") == before + 3

    def test_fallback_and_acceptance(self):
        fallback = sample("completion_ai_fallback_total", reason="timeout")
        accepted = sample("completion_acceptance_total", accepted="true")
        rejected = sample("completion_acceptance_total", accepted="false")

        record_completion_ai_fallback("timeout")
        record_completion_acceptance(True)
        record_completion_acceptance(False)

        assert sample("completion_ai_fallback_total", reason="timeout") == fallback + 1
        assert sample("completion_acceptance_total", accepted="true") == accepted + 1
        assert sample("completion_acceptance_total", accepted="false") == rejected + 1

    def test_cache_hits_and_misses(self):
        hits = sample("cache_hits_total", cache_type="completion")
        misses = sample("cache_misses_total", cache_type="completion")

        record_cache_hit("completion")
        record_cache_miss("completion")

        assert sample("cache_hits_total", cache_type="completion") == hits + 1
        assert sample("cache_misses_total", cache_type="completion") == misses + 1


class TestMetricsSinks:

    def test_prometheus_sink_sets_gauges(self):
        sink = PrometheusMetricsSink()
        sink.record_metric("ai_error_rate", 1.0)
        sink.record_metric("ai_concurrency_limit", 12)

        assert ai_error_rate._value.get() == 1.0
        assert ai_concurrency_limit._value.get() == 12

    def test_prometheus_sink_converts_response_time_to_seconds(self):
        before = sample("ai_response_time_seconds_sum")
        PrometheusMetricsSink().record_metric("ai_response_time", 250.0)
        assert sample("ai_response_time_seconds_sum") == pytest.approx(before + 0.25)

    def test_unknown_metric_is_ignored(self):
        PrometheusMetricsSink().record_metric("not_a_metric", 1.0)

    def test_null_sink(self):
        assert NullMetricsSink().record_metric("ai_error_rate", 1.0) is None


class TestResourceMetrics:
    """Test resource metrics (CPU, memory)."""

    @patch("codeintel.core.metrics.psutil")
    def test_update_resource_metrics(self, mock_psutil):
        mock_psutil.cpu_percent.return_value = 45.5
        mock_memory = MagicMock()
        mock_memory.used = 1024 * 1024 * 1024
        mock_psutil.virtual_memory.return_value = mock_memory

        update_resource_metrics()

        assert system_cpu_usage_percent._value.get() == 45.5
        assert system_memory_usage_bytes._value.get() == 1024 * 1024 * 1024

    @patch("codeintel.core.metrics.psutil")
    def test_update_resource_metrics_handles_errors(self, mock_psutil):
        mock_psutil.cpu_percent.side_effect = RuntimeError("psutil unavailable")
        update_resource_metrics()

    def test_snapshot_resource_usage(self):
        usage = snapshot_resource_usage()
        assert set(usage) == {"cpu", "memory", "network"}
        assert usage["memory"] > 0
        assert usage["network"] == 0.0

    def test_snapshot_resource_usage_on_error(self, monkeypatch):
        def broken():
            raise psutil.NoSuchProcess(pid=0)

        monkeypatch.setattr(psutil, "Process", broken)
        assert snapshot_resource_usage() == {"cpu": 0.0, "memory": 0.0, "network": 0.0}


class TestMetricsEndpoint:

    @patch("codeintel.core.metrics.update_resource_metrics")
    def test_get_metrics_is_prometheus_text(self, mock_update):
        record_ai_request("natural_language", "success")

        output = get_metrics()

        mock_update.assert_called_once()
        assert isinstance(output, bytes)
        text = output.decode("utf-8")
        assert "# HELP ai_requests_total" in text
        assert "# TYPE ai_requests_total counter" in text

    def test_content_type(self):
        assert get_metrics_content_type().startswith("text/plain")
