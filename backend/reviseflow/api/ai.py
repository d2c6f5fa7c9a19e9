"""
AI endpoints: tutoring chat and image generation.
All endpoints require Firebase JWT authentication and pass the request guards.
"""
import logging
import time

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reviseflow.ai import InferenceProvider, get_inference_provider
from reviseflow.auth.dependencies import get_current_user
from reviseflow.config import settings
from reviseflow.database import get_db
from reviseflow.errors import EntitlementError
from reviseflow.middleware.request_guards import guard_ai_request
from reviseflow.models.user import User
from reviseflow.schemas.ai import ChatRequest, ChatResponse, ImageRequest, ImageResponse, UsageSummary
from reviseflow.services.chat_service import ChatService
from reviseflow.services.entitlement_service import EntitlementService
from reviseflow.services.quota_plans import QuotaConfig
from reviseflow.services.quota_service import QuotaService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(guard_ai_request)])

chat_service = ChatService(QuotaService(QuotaConfig.from_settings(settings)))


def get_chat_service() -> ChatService:
    return chat_service


def get_provider() -> InferenceProvider:
    """Inference provider dependency; 503 when it is not configured."""
    try:
        return get_inference_provider()
    except ValueError as e:
        logger.error(f"Inference provider unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI provider not configured"
        )


def to_http_exception(error: EntitlementError) -> HTTPException:
    """Map a service error to its HTTP response."""
    return HTTPException(
        status_code=error.status_code,
        detail={"code": error.code, "message": error.message, "retryable": error.retryable},
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    provider: InferenceProvider = Depends(get_provider),
    service: ChatService = Depends(get_chat_service),
):
    """
    Answer a question within the caller's token quota.

    Errors: 400 bad attachment, 403 model not on plan, 429 quota exhausted,
    502 provider failure (the reservation is refunded).
    """
    start_time = time.time()
    # Read once: a rollback inside the service expires current_user
    user_id = current_user.id
    entitlement = await EntitlementService.get_entitlement(db, user_id)

    try:
        outcome = await service.chat(
            db,
            provider,
            user_id=user_id,
            role=entitlement.role,
            timezone=request.timezone or entitlement.timezone,
            question=request.question,
            history=request.history,
            attachments=[a.model_dump() for a in request.attachments],
            model=request.model,
            detailed=request.detailed,
        )
    except EntitlementError as e:
        if e.status_code >= 500:
            logger.error(
                f"Chat failed for user {user_id}: {e.message}",
                extra={
                    "event": "chat_failed",
                    "user_id": user_id,
                    "duration_ms": (time.time() - start_time) * 1000,
                    "error": e.message,
                }
            )
        raise to_http_exception(e)

    logger.info(
        f"Chat answered for user {user_id}",
        extra={
            "event": "chat_completed",
            "user_id": user_id,
            "model": outcome.model,
            "degraded": outcome.degraded,
            "duration_ms": round((time.time() - start_time) * 1000, 2),
        }
    )
    return ChatResponse(
        reply=outcome.reply,
        model=outcome.model,
        usage=UsageSummary(**outcome.usage.to_dict()),
        remaining_tokens=outcome.remaining_tokens,
    )


@router.post("/image", response_model=ImageResponse)
async def generate_image(
    request: ImageRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    provider: InferenceProvider = Depends(get_provider),
    service: ChatService = Depends(get_chat_service),
):
    """
    Generate one image within the caller's daily image quota.

    Errors: 403 model not on plan, 429 daily limit reached, 502 provider failure.
    """
    user_id = current_user.id
    entitlement = await EntitlementService.get_entitlement(db, user_id)

    try:
        outcome = await service.generate_image(
            db,
            provider,
            user_id=user_id,
            role=entitlement.role,
            timezone=request.timezone or entitlement.timezone,
            prompt=request.prompt,
            model=request.model,
        )
    except EntitlementError as e:
        raise to_http_exception(e)

    return ImageResponse(
        image_url=outcome.image_url,
        revised_prompt=outcome.revised_prompt,
        model=outcome.model,
        size=outcome.size,
    )
