"""
Response models for API endpoints.

These models define the structure of API responses.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from codeintel.models.completion import CompletionItem, CompletionKind


class CompletionResponse(BaseModel):
    """Suggestions for one cursor position."""
    items: List[CompletionItem] = Field(default_factory=list)
    completion_type: Optional[CompletionKind] = None
    processing_time_ms: float = 0.0


class AssistResponse(BaseModel):
    """Result of a natural-language or debugging request."""
    request_id: str
    result: Any
    confidence: float
    model_used: str
    processing_time_ms: float
    total_tokens: int = 0
    cost: Optional[float] = None


class ProviderHealth(BaseModel):
    provider_id: str
    status: str
    response_time_ms: float = 0.0
    error_rate: float = 0.0
    issues: List[str] = Field(default_factory=list)
    circuit_breaker: Dict[str, Any] = Field(default_factory=dict)
    rate_limit: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    detail: str
    status_code: int
    code: Optional[str] = None
    retryable: Optional[bool] = None
    trace_id: Optional[str] = None
