"""
Relevance ranking for completion suggestions.

Pipeline per call:
1. Filter: completion kind, syntax context, query, symbol confidence floor
2. Score: relevance factors (see ``features``) combined by weighted mean
3. Stable sort by score descending
4. Drop duplicate names (first occurrence wins)
5. Drop completions below the confidence floor
6. Truncate to ``max_suggestions``

User preferences are keyed by (symbol name, completion kind) and nudged by
+0.1 on acceptance / -0.05 on rejection, clamped to [-1, 1]. The map is an
LRU bounded by ``max_preferences``.
"""
import time
from collections import OrderedDict, deque
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from codeintel.core.config import RankingConfig
from codeintel.core.logging import get_logger
from codeintel.core.metrics import record_completion_ranking
from codeintel.core.tracing import get_tracer, set_span_attribute
from codeintel.models.completion import (
    CompletionContext,
    CompletionKind,
    FactorKind,
    RankedCompletion,
    RelevanceFactor,
    SymbolInfo,
)
from codeintel.services.completion import features

logger = get_logger(__name__)

ACCEPT_ADJUSTMENT = 0.1
REJECT_ADJUSTMENT = -0.05
RANKING_TIMES_LIMIT = 1000

PreferenceKey = Tuple[str, CompletionKind]


class RelevanceRanker:
    """Scores candidate symbols against a completion context."""

    def __init__(self, config: Optional[RankingConfig] = None):
        self.config = config or RankingConfig()
        self._preferences: "OrderedDict[PreferenceKey, float]" = OrderedDict()
        self._lock = Lock()
        self._ranking_times: Deque[float] = deque(maxlen=RANKING_TIMES_LIMIT)

    def _weight(self, factor: FactorKind) -> float:
        return self.config.weights[factor.value]

    def _get_preference(self, key: PreferenceKey) -> float:
        with self._lock:
            return self._preferences.get(key, 0.0)

    def filter_symbols(
        self,
        symbols: Sequence[SymbolInfo],
        context: CompletionContext,
        query: Optional[str] = None,
    ) -> List[SymbolInfo]:
        return [
            symbol
            for symbol in symbols
            if features.is_valid_for_completion_kind(symbol, context.completion_type)
            and features.is_valid_for_syntax(symbol, context.syntax_context)
            and features.matches_query(symbol.name, query, self.config.enable_fuzzy_matching)
            and symbol.confidence >= self.config.min_confidence
        ]

    def compute_factors(
        self,
        symbol: SymbolInfo,
        context: CompletionContext,
        query: Optional[str] = None,
    ) -> List[RelevanceFactor]:
        usage = features.find_usage(symbol, context.recent_usage)
        factors = [
            RelevanceFactor(
                type=FactorKind.CONTEXT_MATCH,
                weight=self._weight(FactorKind.CONTEXT_MATCH),
                score=features.context_match_score(symbol, context),
                description="How well the symbol matches the current context",
            ),
            RelevanceFactor(
                type=FactorKind.USAGE_FREQUENCY,
                weight=self._weight(FactorKind.USAGE_FREQUENCY),
                score=features.usage_frequency_score(usage),
                description="How frequently the symbol is used",
            ),
            RelevanceFactor(
                type=FactorKind.RECENCY,
                weight=self._weight(FactorKind.RECENCY),
                score=features.recency_score(usage),
                description="How recently the symbol was used",
            ),
            RelevanceFactor(
                type=FactorKind.TYPE_COMPATIBILITY,
                weight=self._weight(FactorKind.TYPE_COMPATIBILITY),
                score=features.type_compatibility_score(symbol.type, context.expected_type),
                description="How well the symbol type matches the expected type",
            ),
            RelevanceFactor(
                type=FactorKind.SCOPE_PROXIMITY,
                weight=self._weight(FactorKind.SCOPE_PROXIMITY),
                score=features.scope_proximity_score(symbol.scope),
                description="How close the symbol is in the scope hierarchy",
            ),
        ]

        if query:
            factors.append(
                RelevanceFactor(
                    type=FactorKind.PATTERN_MATCH,
                    weight=self._weight(FactorKind.PATTERN_MATCH),
                    score=features.pattern_match_score(symbol.name, query),
                    description="How well the symbol matches the query pattern",
                )
            )

        if self.config.personalized_ranking:
            preference = self._get_preference((symbol.name, context.completion_type))
            factors.append(
                RelevanceFactor(
                    type=FactorKind.USER_PREFERENCE,
                    weight=self._weight(FactorKind.USER_PREFERENCE),
                    score=features.preference_score(preference),
                    description="User preference based on past interactions",
                )
            )

        return factors

    def rank_completions(
        self,
        symbols: Sequence[SymbolInfo],
        context: CompletionContext,
        query: Optional[str] = None,
    ) -> List[RankedCompletion]:
        """Rank ``symbols`` for ``context``; deterministic for identical inputs."""
        start = time.perf_counter()
        tracer = get_tracer()
        with tracer.start_as_current_span("completion.rank"):
            candidates = self.filter_symbols(symbols, context, query)

            scored: List[RankedCompletion] = []
            for symbol in candidates:
                factors = self.compute_factors(symbol, context, query)
                score = features.weighted_score(factors)
                scored.append(
                    RankedCompletion(
                        symbol=symbol,
                        score=score,
                        confidence=features.completion_confidence(symbol, factors),
                        relevance_factors=factors,
                        insert_text=features.insert_text_for(symbol, context.completion_type),
                        display_text=features.display_text_for(symbol),
                        documentation=symbol.documentation,
                        sort_text=features.sort_text_for(symbol, score),
                        filter_text=symbol.name,
                    )
                )

            # list.sort is stable: equal scores keep input order
            scored.sort(key=lambda c: c.score, reverse=True)

            seen = set()
            final: List[RankedCompletion] = []
            for completion in scored:
                if completion.symbol.name in seen:
                    continue
                seen.add(completion.symbol.name)
                if completion.confidence >= self.config.min_confidence:
                    final.append(completion)

            final = final[: self.config.max_suggestions]
            set_span_attribute("completion.candidates", len(symbols))
            set_span_attribute("completion.results", len(final))

        duration = time.perf_counter() - start
        with self._lock:
            self._ranking_times.append(duration * 1000.0)
        record_completion_ranking(duration, [c.score for c in final])

        logger.debug(
            "completions_ranked",
            original_count=len(symbols),
            filtered_count=len(candidates),
            final_count=len(final),
            completion_type=context.completion_type.value,
            query=query,
            processing_time_ms=round(duration * 1000.0, 3),
        )
        return final

    def update_user_preferences(
        self,
        completion: RankedCompletion,
        accepted: bool,
        context: CompletionContext,
    ) -> float:
        """Nudge the stored preference; returns the new value."""
        return self.update_preference(completion.symbol.name, context.completion_type, accepted)

    def update_preference(self, symbol_name: str, completion_type: CompletionKind, accepted: bool) -> float:
        key = (symbol_name, completion_type)
        adjustment = ACCEPT_ADJUSTMENT if accepted else REJECT_ADJUSTMENT
        with self._lock:
            current = self._preferences.pop(key, 0.0)
            updated = max(-1.0, min(1.0, current + adjustment))
            self._preferences[key] = updated
            while len(self._preferences) > self.config.max_preferences:
                self._preferences.popitem(last=False)

        logger.debug(
            "completion_preference_updated",
            symbol=symbol_name,
            completion_type=completion_type.value,
            accepted=accepted,
            preference=updated,
        )
        return updated

    def get_preference(self, symbol_name: str, completion_type: CompletionKind) -> float:
        return self._get_preference((symbol_name, completion_type))

    def clear_preferences(self) -> None:
        with self._lock:
            self._preferences.clear()
        logger.info("completion_preferences_cleared")

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            items = list(self._preferences.items())
            times = list(self._ranking_times)
        items.sort(key=lambda item: item[1], reverse=True)
        average = sum(times) / len(times) if times else 0.0
        return {
            "total_preferences": len(items),
            "average_ranking_time_ms": average,
            "top_symbols": [
                {"symbol": name, "completion_type": kind.value, "preference": preference}
                for (name, kind), preference in items[:10]
            ],
        }
