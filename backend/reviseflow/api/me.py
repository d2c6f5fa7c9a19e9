"""
User profile endpoints.
Returns entitlement and quota information about the authenticated user.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reviseflow.api.ai import get_chat_service, to_http_exception
from reviseflow.auth.dependencies import get_current_user
from reviseflow.database import get_db
from reviseflow.errors import EntitlementError
from reviseflow.models.user import User
from reviseflow.schemas.entitlement import EntitlementResponse, QuotaResponse
from reviseflow.services.chat_service import ChatService
from reviseflow.services.entitlement_service import EntitlementService

router = APIRouter()


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Get tier, role, subscription and timezone for the authenticated user.
    Users without a billing history are reported as free.
    """
    entitlement = await EntitlementService.get_entitlement(db, current_user.id)
    return EntitlementResponse.model_validate(entitlement)


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    model: Optional[str] = Query(None, description="Model id; the plan default when omitted"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """
    Get usage and remaining tokens for the current period.
    Requires valid Firebase JWT token.
    """
    entitlement = await EntitlementService.get_entitlement(db, current_user.id)
    try:
        snapshot = await service.quota.snapshot(
            db,
            user_id=current_user.id,
            role=entitlement.role,
            timezone=entitlement.timezone,
            model=model,
        )
    except EntitlementError as e:
        raise to_http_exception(e)
    return QuotaResponse.model_validate(snapshot)
