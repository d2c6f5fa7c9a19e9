"""
Business logic services.
"""
from reviseflow.services.quota_service import QuotaService, Reservation
from reviseflow.services.chat_service import ChatService
from reviseflow.services.entitlement_service import EntitlementService
from reviseflow.services.usage_store import UsageStore
from reviseflow.services.webhook_service import WebhookService, WebhookConfig

__all__ = [
    "QuotaService",
    "Reservation",
    "ChatService",
    "EntitlementService",
    "UsageStore",
    "WebhookService",
    "WebhookConfig",
]
