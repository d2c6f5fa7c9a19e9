"""
API router aggregator.
Includes all route modules.
"""
from fastapi import APIRouter
from reviseflow.api import health, ai, me, webhooks

api_router = APIRouter()

# Include route modules
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(ai.router, prefix="/ai", tags=["ai"])
api_router.include_router(me.router, prefix="/me", tags=["me"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
