"""
Completion service: local ranking merged with optional AI suggestions.

Flow for one request:
1. Cancellation checkpoint, then the 30s cache (position, text, query, symbols)
2. Context extraction (classifier), cancellation checkpoint
3. Local ranking (always)
4. AI suggestions when the context calls for them, raced against
   ``response_timeout_ms``; any failure or timeout degrades to local only
5. Merge: dedupe by label, sort by confidence, truncate

The AI path is best-effort: it never fails the request.
"""
import asyncio
import hashlib
import time
import uuid
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Tuple

from codeintel.core.cancellation import CancellationToken
from codeintel.core.config import CompletionServiceConfig
from codeintel.core.logging import get_logger
from codeintel.core.metrics import (
    record_cache_hit,
    record_cache_miss,
    record_completion_acceptance,
    record_completion_ai_fallback,
    record_completion_suggestions,
)
from codeintel.core.tracing import get_tracer, set_span_attribute
from codeintel.models.completion import (
    CompletionContext,
    CompletionItem,
    CompletionKind,
    Position,
    RankedCompletion,
    SymbolInfo,
)
from codeintel.models.requests import (
    AIRequest,
    AIRequestType,
    AIResponse,
    ProjectContext,
    RequestPriority,
)
from codeintel.services.ai.orchestration import RequestOrchestrator
from codeintel.services.completion import features
from codeintel.services.completion.context import CompletionContextClassifier
from codeintel.services.completion.ranking import RelevanceRanker

logger = get_logger(__name__)

CACHE_TYPE = "completion"


def _consume_result(task: "asyncio.Task") -> None:
    if not task.cancelled():
        task.exception()


def should_use_ai(context: CompletionContext) -> bool:
    """Whether the AI path is worth its latency for this context."""
    symbol_count = len(context.available_symbols)
    if context.completion_type == CompletionKind.MEMBER_ACCESS and symbol_count > 5:
        return False
    if context.completion_type in (CompletionKind.GENERIC_EXPRESSION, CompletionKind.VARIABLE_DECLARATION):
        return True
    return symbol_count < 3


def local_item(completion: RankedCompletion, processing_time: float) -> CompletionItem:
    return CompletionItem(
        label=completion.symbol.name,
        insert_text=completion.insert_text,
        kind=completion.symbol.kind.value,
        detail=completion.display_text,
        documentation=completion.documentation,
        sort_text=completion.sort_text,
        filter_text=completion.filter_text,
        source="local",
        confidence=completion.confidence,
        relevance_factors=features.describe(completion.relevance_factors),
        processing_time=processing_time,
    )


def parse_ai_response(response: AIResponse, processing_time: float, limit: int = 5) -> List[CompletionItem]:
    """One suggestion per non-empty line of the model output."""
    result = response.result if isinstance(response.result, str) else ""
    lines = [line.strip() for line in result.split("\n")]
    suggestions = [line for line in lines if line][:limit]
    return [
        CompletionItem(
            label=suggestion,
            insert_text=suggestion,
            kind="text",
            detail=f"AI suggestion ({response.model_used})",
            documentation=f"Generated by AI with {response.confidence * 100:.1f}% confidence",
            sort_text=f"ai_{index:03d}",
            filter_text=suggestion,
            source="ai",
            confidence=response.confidence,
            relevance_factors=["ai_generated"],
            model_used=response.model_used,
            processing_time=processing_time,
        )
        for index, suggestion in enumerate(suggestions)
    ]


def merge_suggestions(items: Sequence[CompletionItem], limit: int) -> List[CompletionItem]:
    seen = set()
    merged: List[CompletionItem] = []
    for item in items:
        if item.label in seen:
            continue
        seen.add(item.label)
        merged.append(item)
    merged.sort(key=lambda item: item.confidence, reverse=True)
    return merged[:limit]


class CompletionService:
    """Completion surface over the classifier, the ranker and the orchestrator."""

    def __init__(
        self,
        classifier: CompletionContextClassifier,
        ranker: RelevanceRanker,
        orchestrator: Optional[RequestOrchestrator] = None,
        config: Optional[CompletionServiceConfig] = None,
        clock=time.monotonic,
    ):
        self.classifier = classifier
        self.ranker = ranker
        self.orchestrator = orchestrator
        self.config = config or CompletionServiceConfig()
        self._clock = clock

        self._cache: "OrderedDict[str, Tuple[float, List[CompletionItem]]]" = OrderedDict()
        self._cache_lock = Lock()

        self._stats_lock = Lock()
        self._total_requests = 0
        self._cache_hits = 0
        self._average_response_time = 0.0
        self._user_satisfaction = 0.0

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @staticmethod
    def cache_key(
        file: str,
        position: Position,
        document: str = "",
        query: Optional[str] = None,
        symbols: Optional[Sequence[SymbolInfo]] = None,
        project_context: Optional[ProjectContext] = None,
    ) -> str:
        """Position plus a digest of everything that shapes the result."""
        digest = hashlib.md5(document.encode())
        digest.update(b"\x00" + (query or "").encode())
        if project_context is not None:
            digest.update(b"\x00" + project_context.model_dump_json().encode())
        for symbol in symbols or []:
            digest.update(b"\x00" + symbol.model_dump_json().encode())
        return f"{file}:{position.line}:{position.character}:{digest.hexdigest()}"

    def _get_cached(self, key: str) -> Optional[List[CompletionItem]]:
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, items = entry
            if self._clock() - stored_at >= self.config.cache_ttl_seconds:
                del self._cache[key]
                return None
            return list(items)

    def _store(self, key: str, items: List[CompletionItem]) -> None:
        with self._cache_lock:
            self._cache.pop(key, None)
            self._cache[key] = (self._clock(), list(items))
            while len(self._cache) > self.config.cache_max_entries:
                self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
        logger.debug("completion_cache_cleared")

    # ------------------------------------------------------------------
    # Provide
    # ------------------------------------------------------------------

    async def provide(
        self,
        document: str,
        position: Position,
        file: str = "untitled",
        project_context: Optional[ProjectContext] = None,
        query: Optional[str] = None,
        symbols: Optional[Sequence[SymbolInfo]] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> List[CompletionItem]:
        """Suggestions for ``position`` in ``document``; empty if cancelled."""
        start = time.perf_counter()
        with self._stats_lock:
            self._total_requests += 1

        if cancellation is not None and cancellation.is_cancelled:
            return []

        key = self.cache_key(file, position, document, query, symbols, project_context)
        cached = self._get_cached(key)
        if cached is not None:
            record_cache_hit(CACHE_TYPE)
            with self._stats_lock:
                self._cache_hits += 1
            logger.debug("completion_cache_hit", file=file, line=position.line, character=position.character)
            return cached
        record_cache_miss(CACHE_TYPE)

        tracer = get_tracer()
        with tracer.start_as_current_span("completion.provide"):
            context = self.classifier.extract_context(
                document,
                position,
                file=file,
                project_context=project_context,
                symbols=symbols,
            )
            if cancellation is not None and cancellation.is_cancelled:
                return []

            local_start = time.perf_counter()
            ranked = self.ranker.rank_completions(context.available_symbols, context, query)
            local_time = (time.perf_counter() - local_start) * 1000.0
            items = [local_item(c, local_time) for c in ranked]
            record_completion_suggestions("local", len(items))

            if self.config.enable_ai_completions and self.orchestrator is not None and should_use_ai(context):
                ai_items = await self._ai_suggestions(document, context, project_context, cancellation)
                record_completion_suggestions("ai", len(ai_items))
                items.extend(ai_items)

            suggestions = merge_suggestions(items, self.config.max_suggestions)
            set_span_attribute("completion.type", context.completion_type.value)
            set_span_attribute("completion.suggestions", len(suggestions))

        if suggestions:
            self._store(key, suggestions)

        processing_time = (time.perf_counter() - start) * 1000.0
        with self._stats_lock:
            n = self._total_requests
            self._average_response_time = (self._average_response_time * (n - 1) + processing_time) / n

        logger.debug(
            "completion_items_provided",
            file=file,
            completion_type=context.completion_type.value,
            suggestion_count=len(suggestions),
            processing_time=processing_time,
        )
        return suggestions

    def build_ai_request(
        self,
        document: str,
        context: CompletionContext,
        project_context: Optional[ProjectContext],
    ) -> AIRequest:
        lines = document.split("\n")
        line = context.cursor_position.line
        current = lines[line] if line < len(lines) else ""
        project = project_context or ProjectContext(project_id=context.current_file)
        return AIRequest(
            id=f"cmp_{uuid.uuid4().hex}",
            type=AIRequestType.CODE_COMPLETION,
            context=project,
            payload={
                "code": current[: context.cursor_position.character],
                "context": context.surrounding_code,
                "completionType": context.completion_type.value,
                "expectedType": context.expected_type,
            },
            priority=RequestPriority.HIGH,
            privacy_level=project.privacy_level,
        )

    async def _ai_suggestions(
        self,
        document: str,
        context: CompletionContext,
        project_context: Optional[ProjectContext],
        cancellation: Optional[CancellationToken],
    ) -> List[CompletionItem]:
        if cancellation is not None and cancellation.is_cancelled:
            record_completion_ai_fallback("cancelled")
            return []

        request = self.build_ai_request(document, context, project_context)
        start = time.perf_counter()
        timeout_seconds = self.config.response_timeout_ms / 1000.0

        task = asyncio.ensure_future(self.orchestrator.process_request(request, cancellation=cancellation))
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)

        if task not in done:
            # The orchestrator call keeps running; its result is dropped
            task.add_done_callback(_consume_result)
            record_completion_ai_fallback("timeout")
            logger.warning(
                "ai_completion_timeout",
                request_id=request.id,
                timeout_ms=self.config.response_timeout_ms,
            )
            return []

        exc = task.exception()
        if exc is not None:
            record_completion_ai_fallback(type(exc).__name__)
            logger.warning(
                "ai_completion_failed",
                request_id=request.id,
                error=str(exc),
                error_type=type(exc).__name__,
                processing_time=(time.perf_counter() - start) * 1000.0,
            )
            return []

        if cancellation is not None and cancellation.is_cancelled:
            record_completion_ai_fallback("cancelled")
            return []

        response = task.result()
        processing_time = (time.perf_counter() - start) * 1000.0
        items = parse_ai_response(response, processing_time, self.config.max_ai_suggestions)
        logger.debug(
            "ai_completions_generated",
            request_id=request.id,
            count=len(items),
            model_used=response.model_used,
            confidence=response.confidence,
            processing_time=processing_time,
        )
        return items

    # ------------------------------------------------------------------
    # Feedback and statistics
    # ------------------------------------------------------------------

    def track_acceptance(self, item: CompletionItem, accepted: bool, context: CompletionContext) -> None:
        """Feed an accept/reject decision back into ranking and usage patterns."""
        # AI labels are free-form generated lines, not symbols
        if item.source == "local":
            self.ranker.update_preference(item.label, context.completion_type, accepted)
        self.classifier.update_usage_patterns(
            context.current_file,
            item.label,
            context.surrounding_code,
            accepted,
        )
        smoothing = self.config.satisfaction_smoothing
        with self._stats_lock:
            self._user_satisfaction = self._user_satisfaction * (1 - smoothing) + (1.0 if accepted else 0.0) * smoothing
        record_completion_acceptance(accepted)
        logger.debug(
            "completion_acceptance_tracked",
            label=item.label,
            accepted=accepted,
            source=item.source,
            confidence=item.confidence,
        )

    def get_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            total = self._total_requests
            return {
                "total_requests": total,
                "average_response_time": self._average_response_time,
                "cache_hit_rate": self._cache_hits / total if total else 0.0,
                "user_satisfaction_score": self._user_satisfaction,
            }
