"""
Database models package.
"""
from reviseflow.models.base import Base
from reviseflow.models.user import User
from reviseflow.models.entitlement import UserEntitlement, Tier
from reviseflow.models.ai_usage import AIUsageCounter, ImageUsageCounter
from reviseflow.models.billing import BillingCustomer, BillingSubscription
from reviseflow.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "Base",
    "User",
    "UserEntitlement",
    "Tier",
    "AIUsageCounter",
    "ImageUsageCounter",
    "BillingCustomer",
    "BillingSubscription",
    "WebhookEvent",
    "WebhookEventStatus",
]
