"""
Application configuration.

Values come from environment variables (optionally loaded from a ``.env`` file
at the repository root) with defaults matching the documented behaviour:

Orchestrator:
- AI_MAX_CONCURRENT_REQUESTS (default: 10)
- AI_REQUEST_TIMEOUT_MS (default: 30000)
- AI_RETRY_ATTEMPTS (default: 3)
- AI_FALLBACK_STRATEGY: fail_fast | graceful_degradation | best_effort
- AI_QUALITY_THRESHOLD (default: 0.7)
- AI_MAX_RESPONSE_TIME_MS (default: 200)

Providers:
- LLM_API_BASE, LLM_API_KEY, LLM_MODELS (comma separated), LLM_RATE_LIMIT_PER_MINUTE
- OLLAMA_BASE_URL, OLLAMA_MODELS, OLLAMA_RATE_LIMIT_PER_MINUTE

Completion:
- COMPLETION_ENABLE_AI (default: true)
- COMPLETION_MAX_SUGGESTIONS (default: 20)
- COMPLETION_RESPONSE_TIMEOUT_MS (default: 200)
"""
import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from codeintel.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ENV_PATH = Path(__file__).parent.parent.parent / ".env"


class FallbackStrategy(str, Enum):
    """What callers do when an AI request fails."""
    FAIL_FAST = "fail_fast"
    GRACEFUL_DEGRADATION = "graceful_degradation"
    BEST_EFFORT = "best_effort"


DEFAULT_FACTOR_WEIGHTS: Dict[str, float] = {
    "context_match": 0.25,
    "usage_frequency": 0.20,
    "recency": 0.15,
    "type_compatibility": 0.15,
    "scope_proximity": 0.10,
    "pattern_match": 0.10,
    "user_preference": 0.03,
    "semantic_similarity": 0.02,
}


class OrchestratorConfig(BaseModel):
    """Admission control, quality gates and the adaptive concurrency band."""

    max_concurrent_requests: int = Field(10, ge=1)
    max_concurrency_ceiling: int = Field(20, ge=1)
    request_timeout_ms: float = Field(30000.0, gt=0)
    retry_attempts: int = Field(3, ge=1)
    fallback_strategy: FallbackStrategy = FallbackStrategy.GRACEFUL_DEGRADATION
    quality_threshold: float = Field(0.7, ge=0.0, le=1.0)
    max_response_time_ms: float = Field(200.0, gt=0)

    metrics_buffer_size: int = 1000
    feedback_buffer_size: int = 5000
    optimization_min_samples: int = 10
    optimization_window: int = 100
    shrink_factor: float = 0.8
    grow_factor: float = 1.2
    slow_response_ratio: float = 1.2
    fast_response_ratio: float = 0.8
    max_error_rate_for_growth: float = 0.05
    feedback_window: int = 100
    feedback_min_samples: int = 50
    negative_feedback_threshold: float = 0.3


class RankingConfig(BaseModel):
    """Relevance ranker settings."""

    max_suggestions: int = Field(20, ge=1)
    min_confidence: float = Field(0.1, ge=0.0, le=1.0)
    enable_fuzzy_matching: bool = True
    personalized_ranking: bool = True
    max_preferences: int = Field(10000, ge=1)
    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_FACTOR_WEIGHTS))

    @field_validator("weights")
    @classmethod
    def validate_weights(cls, value: Dict[str, float]) -> Dict[str, float]:
        unknown = set(value) - set(DEFAULT_FACTOR_WEIGHTS)
        if unknown:
            raise ValueError(f"unknown factor weights: {sorted(unknown)}")
        if any(w < 0 for w in value.values()):
            raise ValueError("factor weights must be non-negative")
        merged = dict(DEFAULT_FACTOR_WEIGHTS)
        merged.update(value)
        return merged


class ProviderConfig(BaseModel):
    """One backend endpoint."""

    provider: str = Field(..., description="openai | ollama")
    name: str
    api_base: str
    api_key: Optional[str] = None
    models: List[str] = Field(default_factory=list)
    timeout_seconds: float = 30.0
    rate_limit_per_minute: int = Field(60, ge=1)
    cost_per_token: float = 0.0


class CompletionServiceConfig(BaseModel):
    """Completion surface settings (local + AI merge)."""

    enable_ai_completions: bool = True
    max_suggestions: int = Field(20, ge=1)
    max_ai_suggestions: int = 5
    response_timeout_ms: float = 200.0
    cache_ttl_seconds: float = 30.0
    cache_max_entries: int = 100
    usage_pattern_capacity: int = 1000
    satisfaction_smoothing: float = 0.1


class Settings(BaseModel):
    """Top-level settings assembled at process start."""

    service_name: str = "codeintel_api"
    log_level: str = "INFO"
    log_json: bool = True
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    completion: CompletionServiceConfig = Field(default_factory=CompletionServiceConfig)
    providers: List[ProviderConfig] = Field(default_factory=list)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "Settings":
        """Build settings from environment variables (and .env if present)."""
        env_path = env_path or DEFAULT_ENV_PATH
        if env_path.exists():
            load_dotenv(env_path)
            logger.info("env_loaded", env_path=str(env_path))

        orchestrator = OrchestratorConfig(
            max_concurrent_requests=int(os.getenv("AI_MAX_CONCURRENT_REQUESTS", "10")),
            request_timeout_ms=float(os.getenv("AI_REQUEST_TIMEOUT_MS", "30000")),
            retry_attempts=int(os.getenv("AI_RETRY_ATTEMPTS", "3")),
            fallback_strategy=FallbackStrategy(
                os.getenv("AI_FALLBACK_STRATEGY", FallbackStrategy.GRACEFUL_DEGRADATION.value)
            ),
            quality_threshold=float(os.getenv("AI_QUALITY_THRESHOLD", "0.7")),
            max_response_time_ms=float(os.getenv("AI_MAX_RESPONSE_TIME_MS", "200")),
        )
        ranking = RankingConfig(
            max_suggestions=int(os.getenv("RANKING_MAX_SUGGESTIONS", "20")),
            min_confidence=float(os.getenv("RANKING_MIN_CONFIDENCE", "0.1")),
            personalized_ranking=os.getenv("RANKING_PERSONALIZED", "true").lower() == "true",
        )
        completion = CompletionServiceConfig(
            enable_ai_completions=os.getenv("COMPLETION_ENABLE_AI", "true").lower() == "true",
            max_suggestions=int(os.getenv("COMPLETION_MAX_SUGGESTIONS", "20")),
            response_timeout_ms=float(os.getenv("COMPLETION_RESPONSE_TIMEOUT_MS", "200")),
        )

        return cls(
            service_name=os.getenv("SERVICE_NAME", "codeintel_api"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=os.getenv("LOG_JSON", "true").lower() == "true",
            orchestrator=orchestrator,
            ranking=ranking,
            completion=completion,
            providers=_providers_from_env(),
        )


def _split_models(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [m.strip() for m in value.split(",") if m.strip()]


def _providers_from_env() -> List[ProviderConfig]:
    providers: List[ProviderConfig] = []

    api_key = os.getenv("LLM_API_KEY")
    if api_key:
        providers.append(
            ProviderConfig(
                provider="openai",
                name=os.getenv("LLM_PROVIDER_NAME", "openai"),
                api_base=os.getenv("LLM_API_BASE", "https://api.openai.com/v1"),
                api_key=api_key,
                models=_split_models(os.getenv("LLM_MODELS", "gpt-4o-mini")),
                timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "30") or "30"),
                rate_limit_per_minute=int(os.getenv("LLM_RATE_LIMIT_PER_MINUTE", "60")),
                cost_per_token=float(os.getenv("LLM_COST_PER_TOKEN", "0.000002") or "0"),
            )
        )

    ollama_base = os.getenv("OLLAMA_BASE_URL")
    if ollama_base:
        providers.append(
            ProviderConfig(
                provider="ollama",
                name="ollama",
                api_base=ollama_base,
                models=_split_models(os.getenv("OLLAMA_MODELS", "codellama")),
                timeout_seconds=float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "60") or "60"),
                rate_limit_per_minute=int(os.getenv("OLLAMA_RATE_LIMIT_PER_MINUTE", "120")),
            )
        )

    if not providers:
        logger.warning(
            "no_providers_configured",
            message="Set LLM_API_KEY or OLLAMA_BASE_URL to enable AI completions",
        )
    return providers
