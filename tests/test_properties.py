"""
Property-based tests for ranking, admission and adaptive concurrency.

Uses Hypothesis to check invariants over generated inputs.
"""
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from codeintel.core.config import OrchestratorConfig
from codeintel.core.errors import RateLimitExceededError
from codeintel.core.rate_limit import SlidingWindowRateLimiter
from codeintel.models.completion import CompletionItem, CompletionKind, FactorKind, RelevanceFactor
from codeintel.models.requests import PerformanceMetrics
from codeintel.services.ai.orchestration import RequestOrchestrator
from codeintel.services.ai.selection import ModelSelector
from codeintel.services.completion.features import pattern_match_score, weighted_score
from codeintel.services.completion.ranking import RelevanceRanker
from codeintel.services.completion.service import merge_suggestions
from conftest import FakeClock

identifiers = st.text(alphabet="abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_", min_size=1, max_size=20)
unit_floats = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)


def orchestrator_with_cap(cap: int) -> RequestOrchestrator:
    config = OrchestratorConfig(max_concurrent_requests=cap, max_concurrency_ceiling=20)
    return RequestOrchestrator(ModelSelector(gateways=[]), config=config)


def feed(orchestrator: RequestOrchestrator, response_times, error_rate: float = 0.0) -> None:
    for response_time in response_times:
        orchestrator.track_performance_metrics(
            PerformanceMetrics(response_time=response_time, throughput=1.0, error_rate=error_rate)
        )


class TestPatternScoreProperties:

    @given(name=identifiers)
    def test_exact_match_scores_highest(self, name):
        assert pattern_match_score(name, name) == 1.0

    @given(name=identifiers, suffix=identifiers)
    def test_prefix_scores_at_least_prefix_level(self, name, suffix):
        assert pattern_match_score(name + suffix, name) >= 0.9

    @given(name=identifiers, query=identifiers)
    def test_score_is_a_known_level(self, name, query):
        assert pattern_match_score(name, query) in {1.0, 0.9, 0.8, 0.6, 0.4, 0.1}


class TestWeightedScoreProperties:

    @given(
        pairs=st.lists(
            st.tuples(unit_floats, st.floats(min_value=0.01, max_value=1.0, allow_nan=False)),
            min_size=1,
            max_size=8,
        )
    )
    def test_stays_within_factor_bounds(self, pairs):
        factors = [
            RelevanceFactor(type=FactorKind.CONTEXT_MATCH, score=score, weight=weight, description="")
            for score, weight in pairs
        ]
        result = weighted_score(factors)
        scores = [score for score, _ in pairs]
        assert min(scores) - 1e-9 <= result <= max(scores) + 1e-9


class TestPreferenceProperties:

    @given(decisions=st.lists(st.booleans(), max_size=60))
    def test_preferences_stay_clamped(self, decisions):
        ranker = RelevanceRanker()
        for accepted in decisions:
            value = ranker.update_preference("total", CompletionKind.GENERIC_EXPRESSION, accepted)
            assert -1.0 <= value <= 1.0

    @given(count=st.integers(min_value=1, max_value=40))
    def test_acceptance_never_lowers_preference(self, count):
        ranker = RelevanceRanker()
        previous = ranker.get_preference("total", CompletionKind.GENERIC_EXPRESSION)
        for _ in range(count):
            current = ranker.update_preference("total", CompletionKind.GENERIC_EXPRESSION, True)
            assert current >= previous
            previous = current


class TestRateLimiterProperties:

    @given(limit=st.integers(min_value=1, max_value=50))
    @settings(max_examples=30)
    def test_admits_exactly_limit_calls(self, limit):
        limiter = SlidingWindowRateLimiter("openai", limit, clock=FakeClock())
        for _ in range(limit):
            limiter.acquire()

        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.acquire()
        assert 0.0 <= exc_info.value.retry_after_ms <= 60000.0
        assert limiter.remaining() == 0


class TestConcurrencyOptimizerProperties:

    @given(
        cap=st.integers(min_value=1, max_value=20),
        response_times=st.lists(st.floats(min_value=241.0, max_value=1e5, allow_nan=False), min_size=10, max_size=30),
    )
    @settings(max_examples=40)
    def test_slow_responses_shrink_the_cap(self, cap, response_times):
        orchestrator = orchestrator_with_cap(cap)
        feed(orchestrator, response_times)

        new_cap = orchestrator.optimize_resource_allocation()

        assert new_cap >= 1
        assert new_cap < cap or cap == 1

    @given(
        cap=st.integers(min_value=1, max_value=20),
        response_times=st.lists(st.floats(min_value=0.0, max_value=159.0, allow_nan=False), min_size=10, max_size=30),
    )
    @settings(max_examples=40)
    def test_fast_error_free_responses_never_shrink_the_cap(self, cap, response_times):
        orchestrator = orchestrator_with_cap(cap)
        feed(orchestrator, response_times)

        new_cap = orchestrator.optimize_resource_allocation()

        assert cap <= new_cap <= 20


class TestMergeProperties:

    @given(
        entries=st.lists(st.tuples(identifiers, unit_floats), max_size=30),
        limit=st.integers(min_value=1, max_value=20),
    )
    def test_merged_items_are_unique_sorted_and_bounded(self, entries, limit):
        items = [
            CompletionItem(
                label=label,
                insert_text=label,
                kind="variable",
                sort_text=label,
                filter_text=label,
                source="local",
                confidence=confidence,
            )
            for label, confidence in entries
        ]

        merged = merge_suggestions(items, limit)

        labels = [item.label for item in merged]
        assert len(labels) == len(set(labels))
        assert len(merged) <= limit
        confidences = [item.confidence for item in merged]
        assert confidences == sorted(confidences, reverse=True)
