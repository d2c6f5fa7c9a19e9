"""
Webhook endpoints for external services.
Handles Stripe subscription events and keeps user entitlements in sync.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request, Header
from sqlalchemy.ext.asyncio import AsyncSession
import stripe
import logging

from reviseflow.database import get_db
from reviseflow.config import settings
from reviseflow.middleware.request_guards import guard_webhook_request
from reviseflow.services.billing_client import StripeBillingClient, get_billing_client
from reviseflow.services.webhook_service import WebhookService, WebhookConfig

router = APIRouter()
logger = logging.getLogger(__name__)

webhook_config = WebhookConfig.from_settings(settings)


@router.post("/stripe", dependencies=[Depends(guard_webhook_request)])
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    billing: StripeBillingClient = Depends(get_billing_client),
    stripe_signature: str = Header(None, alias="stripe-signature")
):
    """
    Stripe webhook endpoint for subscription lifecycle events.

    Handles checkout.session.completed, customer.subscription.*, invoice.paid,
    invoice.payment_succeeded and invoice.payment_failed. Other types are
    acknowledged.

    Security:
    - Validates Stripe signature over the raw body
    - Idempotent per event id (duplicates return 200 without reprocessing)

    Returns 200 when accepted or duplicate, 400 for bad signature or body,
    500 when processing failed so Stripe retries.
    """
    if not billing.webhook_configured():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook secret not configured"
        )

    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    # Raw body: the signature covers the exact bytes
    body = await request.body()

    try:
        event = billing.construct_event(body, stripe_signature)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid signature: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )
    except (ValueError, UnicodeDecodeError) as e:
        logger.error(f"Invalid payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid payload: {str(e)}"
        )

    service = WebhookService(billing, webhook_config)
    outcome = await service.handle_event(db, event)

    if not outcome.ok:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {
        "received": True,
        "status": outcome.status,
        "event_id": outcome.event_id,
    }
