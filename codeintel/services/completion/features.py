"""
Relevance factor computation for completion ranking.

Each factor maps (symbol, context) to a score in [0, 1]:

- context_match:      0.5 * symbol confidence + 0.3 if the kind fits the
                      completion type + 0.2 local / 0.1 global, capped at 1
- usage_frequency:    frequency / 100, 0.1 when never used
- recency:            linear decay over 24h since last use, floor 0.1
- type_compatibility: 1.0 exact, 0.7 substring either way, 0.2 otherwise,
                      0.5 when no type is expected
- scope_proximity:    local 1.0, imported 0.8, global 0.6, other 0.4
- pattern_match:      exact 1.0, prefix 0.9, camelCase acronym 0.8,
                      substring 0.6, subsequence 0.4, else 0.1
- user_preference:    stored preference in [-1, 1] rescaled to [0, 1]

The overall score is the weighted mean over the factors present.
"""
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import numpy as np

from codeintel.models.completion import (
    CompletionContext,
    CompletionKind,
    RelevanceFactor,
    SymbolInfo,
    SymbolKind,
    SyntaxContext,
    UsagePattern,
)

# Frequency treated as "always used"
MAX_USAGE_FREQUENCY = 100.0
RECENCY_WINDOW_HOURS = 24.0
UNUSED_SCORE = 0.1
STRONG_FACTOR_THRESHOLD = 0.8
STRONG_FACTOR_BONUS = 0.05

SCOPE_SCORES = {
    "local": 1.0,
    "imported": 0.8,
    "global": 0.6,
}
DEFAULT_SCOPE_SCORE = 0.4


def is_valid_for_completion_kind(symbol: SymbolInfo, kind: CompletionKind) -> bool:
    if kind == CompletionKind.MEMBER_ACCESS:
        return symbol.kind in (SymbolKind.PROPERTY, SymbolKind.METHOD)
    if kind == CompletionKind.FUNCTION_CALL:
        return symbol.kind in (SymbolKind.FUNCTION, SymbolKind.METHOD, SymbolKind.CONSTRUCTOR)
    if kind == CompletionKind.TYPE_ANNOTATION:
        return symbol.kind in (SymbolKind.TYPE, SymbolKind.INTERFACE, SymbolKind.CLASS)
    if kind == CompletionKind.IMPORT_STATEMENT:
        return symbol.scope == "global" or symbol.kind == SymbolKind.MODULE
    if kind == CompletionKind.VARIABLE_DECLARATION:
        return symbol.kind in (SymbolKind.VARIABLE, SymbolKind.CONSTANT, SymbolKind.FUNCTION)
    return True


def is_valid_for_syntax(symbol: SymbolInfo, syntax: SyntaxContext) -> bool:
    # Nothing is suggested inside strings or comments
    if syntax.in_string or syntax.in_comment:
        return False
    if syntax.in_function and symbol.kind == SymbolKind.CLASS:
        return False
    return True


def fuzzy_match(text: str, query: str) -> bool:
    """True if every character of ``query`` appears in ``text`` in order."""
    position = 0
    for char in text:
        if position < len(query) and char == query[position]:
            position += 1
    return position == len(query)


def camel_case_match(name: str, query: str) -> bool:
    """Acronym of the capitals in ``name`` starts with ``query`` (case-insensitive)."""
    capitals = "".join(c for c in name if c.isupper())
    if not capitals:
        return False
    return capitals.lower().startswith(query.lower())


def matches_query(name: str, query: Optional[str], enable_fuzzy: bool = True) -> bool:
    if not query:
        return True
    name_lower = name.lower()
    query_lower = query.lower()
    if name_lower == query_lower or name_lower.startswith(query_lower):
        return True
    if enable_fuzzy:
        return fuzzy_match(name_lower, query_lower)
    return query_lower in name_lower


def find_usage(symbol: SymbolInfo, recent_usage: Sequence[UsagePattern]) -> Optional[UsagePattern]:
    for pattern in recent_usage:
        if pattern.symbol == symbol.name:
            return pattern
    return None


def context_match_score(symbol: SymbolInfo, context: CompletionContext) -> float:
    score = symbol.confidence * 0.5
    if is_valid_for_completion_kind(symbol, context.completion_type):
        score += 0.3
    if symbol.scope == "local":
        score += 0.2
    elif symbol.scope == "global":
        score += 0.1
    return min(1.0, score)


def usage_frequency_score(usage: Optional[UsagePattern]) -> float:
    if usage is None:
        return UNUSED_SCORE
    return min(1.0, usage.frequency / MAX_USAGE_FREQUENCY)


def recency_score(usage: Optional[UsagePattern], now: Optional[datetime] = None) -> float:
    if usage is None:
        return UNUSED_SCORE
    now = now or datetime.now(timezone.utc)
    last_used = usage.last_used
    if last_used.tzinfo is None:
        last_used = last_used.replace(tzinfo=timezone.utc)
    hours = (now - last_used).total_seconds() / 3600.0
    return max(UNUSED_SCORE, min(1.0, 1.0 - hours / RECENCY_WINDOW_HOURS))


def type_compatibility_score(symbol_type: str, expected_type: Optional[str]) -> float:
    if not expected_type:
        return 0.5
    if symbol_type == expected_type:
        return 1.0
    if expected_type in symbol_type or symbol_type in expected_type:
        return 0.7
    return 0.2


def scope_proximity_score(scope: str) -> float:
    return SCOPE_SCORES.get(scope, DEFAULT_SCOPE_SCORE)


def pattern_match_score(name: str, query: str) -> float:
    name_lower = name.lower()
    query_lower = query.lower()
    if name_lower == query_lower:
        return 1.0
    if name_lower.startswith(query_lower):
        return 0.9
    if camel_case_match(name, query_lower):
        return 0.8
    if query_lower in name_lower:
        return 0.6
    if fuzzy_match(name_lower, query_lower):
        return 0.4
    return 0.1


def preference_score(preference: float) -> float:
    return (preference + 1.0) / 2.0


def weighted_score(factors: Sequence[RelevanceFactor]) -> float:
    """Weighted mean of factor scores; 0 when no weight is present."""
    if not factors:
        return 0.0
    weights = np.array([f.weight for f in factors], dtype=float)
    scores = np.array([f.score for f in factors], dtype=float)
    total_weight = weights.sum()
    if total_weight <= 0:
        return 0.0
    return float(np.dot(weights, scores) / total_weight)


def completion_confidence(symbol: SymbolInfo, factors: Sequence[RelevanceFactor]) -> float:
    confidence = symbol.confidence
    confidence += STRONG_FACTOR_BONUS * sum(1 for f in factors if f.score > STRONG_FACTOR_THRESHOLD)
    if symbol.is_deprecated:
        confidence *= 0.5
    return float(np.clip(confidence, 0.0, 1.0))


def insert_text_for(symbol: SymbolInfo, kind: CompletionKind) -> str:
    if kind == CompletionKind.FUNCTION_CALL and symbol.kind in (SymbolKind.FUNCTION, SymbolKind.METHOD):
        return f"{symbol.name}()"
    return symbol.name


def display_text_for(symbol: SymbolInfo) -> str:
    text = symbol.name
    if symbol.type and symbol.type != "unknown":
        text += f": {symbol.type}"
    if symbol.is_deprecated:
        text += " (deprecated)"
    return text


def sort_text_for(symbol: SymbolInfo, score: float) -> str:
    # Inverted so that ascending sort_text matches descending score
    return f"{1 - score:.3f}_{symbol.name}"


def describe(factors: List[RelevanceFactor]) -> List[str]:
    return [f"{f.type.value}={f.score:.2f}" for f in factors]
