"""
Code completion endpoints.

POST /completions           ranked suggestions for a cursor position
POST /completions/feedback  accept/reject signal for a shown suggestion
"""
import time
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from codeintel.core.logging import get_logger
from codeintel.dependencies import Services, get_services
from codeintel.models.completion import CompletionItem, Position, SymbolInfo
from codeintel.models.requests import ProjectContext
from codeintel.models.responses import CompletionResponse

logger = get_logger(__name__)
router = APIRouter()


class CompletionRequest(BaseModel):
    document: str
    line: int = Field(..., ge=0)
    character: int = Field(..., ge=0)
    file: str = "untitled"
    project_context: Optional[ProjectContext] = None
    query: Optional[str] = None
    symbols: List[SymbolInfo] = Field(default_factory=list)


class CompletionFeedbackRequest(BaseModel):
    document: str
    line: int = Field(..., ge=0)
    character: int = Field(..., ge=0)
    file: str = "untitled"
    item: CompletionItem
    accepted: bool


@router.post("", response_model=CompletionResponse)
async def complete(
    body: CompletionRequest,
    services: Services = Depends(get_services),
):
    """
    Suggestions for the cursor position in ``document``.

    Local symbols are always ranked; AI suggestions are merged in when the
    context calls for them and the backend answers in time.
    """
    start = time.perf_counter()
    position = Position(line=body.line, character=body.character)
    items = await services.completions.provide(
        body.document,
        position,
        file=body.file,
        project_context=body.project_context,
        query=body.query,
        symbols=body.symbols,
    )
    processing_time_ms = (time.perf_counter() - start) * 1000.0

    context = services.classifier.extract_context(body.document, position, file=body.file)
    logger.info(
        "completion_request_completed",
        file=body.file,
        completion_type=context.completion_type.value,
        suggestion_count=len(items),
        processing_time_ms=round(processing_time_ms, 3),
    )
    return CompletionResponse(
        items=items,
        completion_type=context.completion_type,
        processing_time_ms=processing_time_ms,
    )


@router.post("/feedback")
async def completion_feedback(
    body: CompletionFeedbackRequest,
    services: Services = Depends(get_services),
):
    position = Position(line=body.line, character=body.character)
    context = services.classifier.extract_context(body.document, position, file=body.file)
    services.completions.track_acceptance(body.item, body.accepted, context)
    return {
        "status": "recorded",
        "label": body.item.label,
        "accepted": body.accepted,
        "preference": services.ranker.get_preference(body.item.label, context.completion_type),
    }
