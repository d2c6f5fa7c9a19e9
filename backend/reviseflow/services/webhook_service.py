"""
Idempotent billing webhook processor.

Per event id: unseen -> processing -> processed | failed. Failed records and
processing records older than the staleness threshold can be reclaimed by a
later delivery; anything else is a duplicate and is acknowledged without
side effects.

Every handled event type reduces to "locate the subscription, recompute the
tier from it, apply". SUBSCRIPTION_LOCATORS says how to find the
subscription for each type.
"""
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
import logging
import time

from sqlalchemy import update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from reviseflow.database import dialect_insert
from reviseflow.models.base import utcnow
from reviseflow.models.webhook_event import WebhookEvent, WebhookEventStatus
from reviseflow.services.entitlement_service import EntitlementService, compute_tier
from reviseflow.utils.logging import log_webhook_event
from reviseflow.utils.metrics import webhook_events_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookConfig:
    """Idempotency tuning, passed in at construction."""
    stale_after_seconds: int = 600
    error_max_length: int = 500

    @classmethod
    def from_settings(cls, settings) -> "WebhookConfig":
        return cls(
            stale_after_seconds=settings.webhook_stale_after_seconds,
            error_max_length=settings.webhook_error_max_length,
        )


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    RECLAIMED = "reclaimed"
    DUPLICATE = "duplicate"


@dataclass
class WebhookOutcome:
    """Result of handling one delivery."""
    event_id: str
    event_type: str
    status: str  # processed, duplicate, failed
    action: Optional[str] = None  # applied, skipped, ignored
    user_id: Optional[str] = None
    tier: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


def _object_id(value: Any) -> Optional[str]:
    """Id of a possibly expanded Stripe reference."""
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id from an invoice, old and new API layouts."""
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription"))


@dataclass(frozen=True)
class SubscriptionLocator:
    """
    How to find the subscription for an event type.

    retrieve_id is None when the event object is the subscription itself;
    otherwise it extracts the id to fetch from the billing provider.
    """
    retrieve_id: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None
    force_free: bool = False
    clears_subscription: bool = False


SUBSCRIPTION_LOCATORS: Dict[str, SubscriptionLocator] = {
    "checkout.session.completed": SubscriptionLocator(retrieve_id=lambda obj: _object_id(obj.get("subscription"))),
    "customer.subscription.created": SubscriptionLocator(),
    "customer.subscription.updated": SubscriptionLocator(),
    "customer.subscription.deleted": SubscriptionLocator(clears_subscription=True),
    "invoice.paid": SubscriptionLocator(retrieve_id=invoice_subscription_id),
    "invoice.payment_succeeded": SubscriptionLocator(retrieve_id=invoice_subscription_id),
    "invoice.payment_failed": SubscriptionLocator(retrieve_id=invoice_subscription_id, force_free=True),
}


class WebhookService:
    """Applies verified billing events to entitlement state exactly once."""

    def __init__(self, billing_client, config: Optional[WebhookConfig] = None):
        self.billing = billing_client
        self.config = config or WebhookConfig()

    async def claim(self, db: AsyncSession, event_id: str, event_type: str) -> ClaimResult:
        """
        Take ownership of an event id before any side effect.

        Inserts a processing record; if one exists, reclaims it only when it
        failed or has been processing longer than the staleness threshold.
        """
        now = utcnow()
        inserted = await db.execute(
            dialect_insert(db, WebhookEvent)
            .values(
                event_id=event_id,
                event_type=event_type,
                status=WebhookEventStatus.PROCESSING,
                attempts=1,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(WebhookEvent.event_id)
        )
        if inserted.first() is not None:
            await db.commit()
            return ClaimResult.CLAIMED

        stale_before = now - timedelta(seconds=self.config.stale_after_seconds)
        reclaimed = await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .where(
                or_(
                    WebhookEvent.status == WebhookEventStatus.FAILED,
                    and_(
                        WebhookEvent.status == WebhookEventStatus.PROCESSING,
                        WebhookEvent.updated_at < stale_before,
                    ),
                )
            )
            .values(
                status=WebhookEventStatus.PROCESSING,
                last_error=None,
                attempts=WebhookEvent.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if reclaimed.rowcount > 0:
            return ClaimResult.RECLAIMED
        return ClaimResult.DUPLICATE

    async def mark_processed(self, db: AsyncSession, event_id: str) -> None:
        """Finalize the record. Not committed here; shares the entitlement commit."""
        now = utcnow()
        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(
                status=WebhookEventStatus.PROCESSED,
                last_error=None,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, db: AsyncSession, event_id: str, error: str) -> None:
        """Record a failure with a truncated message so a retry can reclaim it."""
        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(
                status=WebhookEventStatus.FAILED,
                last_error=(error or "unknown error")[: self.config.error_max_length],
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def resolve_user(
        self,
        db: AsyncSession,
        event_object: Dict[str, Any],
        subscription: Dict[str, Any],
    ) -> Optional[str]:
        """
        Find the affected user. First match wins:
        1. explicit user id (subscription metadata, event object metadata, client_reference_id)
        2. known subscription id
        3. known customer id
        """
        subscription_metadata = subscription.get("metadata") or {}
        object_metadata = event_object.get("metadata") or {}
        for candidate in (
            subscription_metadata.get("user_id"),
            object_metadata.get("user_id"),
            event_object.get("client_reference_id"),
        ):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()

        user_id = await EntitlementService.find_user_by_subscription(db, _object_id(subscription.get("id")))
        if user_id:
            return user_id

        customer_id = _object_id(subscription.get("customer")) or _object_id(event_object.get("customer"))
        return await EntitlementService.find_user_by_customer(db, customer_id)

    async def apply_event(
        self, db: AsyncSession, event: Dict[str, Any]
    ) -> Tuple[str, Optional[str], Optional[str]]:
        """
        Apply one event's entitlement effect (no commit).

        Returns:
            (action, user_id, tier) where action is applied, skipped or ignored
        """
        event_type = event["type"]
        event_object = event["data"]["object"]

        locator = SUBSCRIPTION_LOCATORS.get(event_type)
        if locator is None:
            return "ignored", None, None
        if event_type == "checkout.session.completed" and event_object.get("mode") != "subscription":
            return "ignored", None, None

        if locator.retrieve_id is None:
            subscription = event_object
        else:
            subscription_id = locator.retrieve_id(event_object)
            if not subscription_id:
                return "skipped", None, None
            subscription = await self.billing.retrieve_subscription(subscription_id)

        user_id = await self.resolve_user(db, event_object, subscription)
        if not user_id:
            return "skipped", None, None

        subscription_id = _object_id(subscription.get("id"))
        customer_id = _object_id(subscription.get("customer")) or _object_id(event_object.get("customer"))
        tier = compute_tier(subscription, force_free=locator.force_free)

        await EntitlementService.apply_tier(
            db,
            user_id=user_id,
            tier=tier,
            subscription_id=None if locator.clears_subscription else subscription_id,
        )
        if customer_id:
            await EntitlementService.link_customer(db, customer_id, user_id)
        if subscription_id:
            plan = (subscription.get("metadata") or {}).get("plan")
            await EntitlementService.link_subscription(
                db,
                subscription_id=subscription_id,
                user_id=user_id,
                customer_id=customer_id,
                status=subscription.get("status"),
                plan=plan if isinstance(plan, str) else None,
            )
        return "applied", user_id, tier

    async def handle_event(self, db: AsyncSession, event: Dict[str, Any]) -> WebhookOutcome:
        """
        Process a verified event: claim, apply, finalize.

        Returns:
            WebhookOutcome; status "failed" means the provider should retry
        """
        start_time = time.time()
        event_id = event["id"]
        event_type = event["type"]

        claim = await self.claim(db, event_id, event_type)
        if claim == ClaimResult.DUPLICATE:
            webhook_events_total.labels(event_type=event_type, outcome="duplicate").inc()
            log_webhook_event(logger, event_id=event_id, event_type=event_type, outcome="duplicate")
            return WebhookOutcome(event_id=event_id, event_type=event_type, status="duplicate")

        try:
            action, user_id, tier = await self.apply_event(db, event)
            await self.mark_processed(db, event_id)
            await db.commit()
        except Exception as e:
            await db.rollback()
            error = str(e) or e.__class__.__name__
            await self.mark_failed(db, event_id, error)
            webhook_events_total.labels(event_type=event_type, outcome="failed").inc()
            log_webhook_event(
                logger,
                event_id=event_id,
                event_type=event_type,
                outcome="failed",
                duration_ms=(time.time() - start_time) * 1000,
                error=error,
            )
            return WebhookOutcome(
                event_id=event_id, event_type=event_type, status="failed", error=error
            )

        outcome = "processed" if action == "applied" else action
        webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        log_webhook_event(
            logger,
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            user_id=user_id,
            duration_ms=(time.time() - start_time) * 1000,
            tier=tier,
            reclaimed=claim == ClaimResult.RECLAIMED,
        )
        return WebhookOutcome(
            event_id=event_id,
            event_type=event_type,
            status="processed",
            action=action,
            user_id=user_id,
            tier=tier,
        )
