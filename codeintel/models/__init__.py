"""Pydantic models for requests, responses and completions."""

from .requests import (
    AIRequest,
    AIRequestType,
    AIResponse,
    ModelCapability,
    ModelDescriptor,
    ModelProvider,
    ModelSelection,
    PrivacyLevel,
    ProjectContext,
    RequestPriority,
    TokenUsage,
    UserFeedback,
)
from .completion import (
    CompletionContext,
    CompletionKind,
    RankedCompletion,
    SymbolInfo,
    SymbolKind,
)

__all__ = [
    "AIRequest",
    "AIRequestType",
    "AIResponse",
    "CompletionContext",
    "CompletionKind",
    "ModelCapability",
    "ModelDescriptor",
    "ModelProvider",
    "ModelSelection",
    "PrivacyLevel",
    "ProjectContext",
    "RankedCompletion",
    "RequestPriority",
    "SymbolInfo",
    "SymbolKind",
    "TokenUsage",
    "UserFeedback",
]
