"""
GET /metrics: scrape target for the HTTP, AI, provider and completion collectors.
"""
from fastapi import APIRouter, Response

from codeintel.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("", response_class=Response)
async def scrape() -> Response:
    """Exposition text; CPU and memory gauges are sampled just before rendering."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
