"""
Natural-language and debugging assistance.

POST /assist
Routes the request through the orchestrator, retrying retryable failures
according to the configured fallback strategy.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from codeintel.core.logging import get_logger, set_ai_request_id
from codeintel.core.retry import retry_ai_call
from codeintel.dependencies import Services, get_services
from codeintel.models.requests import (
    AIRequest,
    AIRequestType,
    PrivacyLevel,
    ProjectContext,
    RequestPriority,
)
from codeintel.models.responses import AssistResponse
from codeintel.services.ai.orchestration import new_request_id

logger = get_logger(__name__)
router = APIRouter()


class AssistRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    type: AIRequestType = AIRequestType.NATURAL_LANGUAGE
    project_context: ProjectContext
    code: Optional[str] = None
    max_tokens: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    priority: RequestPriority = RequestPriority.NORMAL
    privacy_level: Optional[PrivacyLevel] = None


def build_assist_request(body: AssistRequest) -> AIRequest:
    payload: Dict[str, Any] = {"prompt": body.prompt}
    if body.type == AIRequestType.DEBUG_ASSISTANCE:
        payload["error"] = body.prompt
    if body.code:
        payload["code"] = body.code
    if body.max_tokens is not None:
        payload["max_tokens"] = body.max_tokens
    if body.temperature is not None:
        payload["temperature"] = body.temperature
    return AIRequest(
        id=new_request_id("assist"),
        type=body.type,
        context=body.project_context,
        payload=payload,
        priority=body.priority,
        privacy_level=body.privacy_level or body.project_context.privacy_level,
    )


@router.post("", response_model=AssistResponse)
async def assist(
    body: AssistRequest,
    services: Services = Depends(get_services),
):
    """
    Answer a prompt with the best available model.

    AIError failures are mapped to HTTP responses by the application's
    exception handler.
    """
    request = build_assist_request(body)
    set_ai_request_id(request.id)
    config = services.orchestrator.config

    response = await retry_ai_call(
        services.orchestrator.process_request,
        request,
        retry_attempts=config.retry_attempts,
        fallback_strategy=config.fallback_strategy,
    )

    logger.info(
        "assist_request_completed",
        request_id=request.id,
        request_type=request.type.value,
        model_used=response.model_used,
        confidence=response.confidence,
    )
    return AssistResponse(
        request_id=request.id,
        result=response.result,
        confidence=response.confidence,
        model_used=response.model_used,
        processing_time_ms=response.processing_time,
        total_tokens=response.tokens.total_tokens,
        cost=response.tokens.cost,
    )
