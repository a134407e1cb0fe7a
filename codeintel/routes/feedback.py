"""
User feedback on AI responses.

POST /feedback
Negative feedback trends raise a retraining signal (logged and counted).
"""
from fastapi import APIRouter, Depends

from codeintel.core.logging import get_logger
from codeintel.dependencies import Services, get_services
from codeintel.models.requests import UserFeedback

logger = get_logger(__name__)
router = APIRouter()


@router.post("")
async def submit_feedback(
    feedback: UserFeedback,
    services: Services = Depends(get_services),
):
    retraining_needed = services.orchestrator.record_user_feedback(feedback)
    logger.info(
        "user_feedback_received",
        request_id=feedback.request_id,
        rating=feedback.rating,
        accepted=feedback.accepted,
        retraining_needed=retraining_needed,
    )
    return {
        "status": "recorded",
        "request_id": feedback.request_id,
        "retraining_needed": retraining_needed,
    }
