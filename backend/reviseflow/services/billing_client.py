"""
Stripe billing client.
Verifies webhook signatures and retrieves subscriptions.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe

from reviseflow.config import settings

logger = logging.getLogger(__name__)


class StripeBillingClient:
    """Thin wrapper over the Stripe SDK calls the webhook processor needs."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        """Initialize Stripe with API key."""
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.tolerance = tolerance if tolerance is not None else settings.stripe_webhook_tolerance

        if self.secret_key:
            stripe.api_key = self.secret_key
        else:
            logger.warning("Stripe secret key not configured")

    def webhook_configured(self) -> bool:
        return bool(self.webhook_secret)

    def construct_event(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        """
        Verify the signature over the raw body and parse the event.

        Args:
            payload: Exact request body bytes
            sig_header: Value of the Stripe-Signature header

        Returns:
            Event as a plain dict

        Raises:
            stripe.SignatureVerificationError: If the signature does not match
            ValueError: If the body is not a valid event envelope
        """
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, sig_header, self.webhook_secret, self.tolerance)

        event = json.loads(body)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValueError("Event is missing id or type")
        data = event.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise ValueError("Event is missing data.object")
        return event

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch a subscription from Stripe.

        Returns:
            Subscription as a plain dict

        Raises:
            ValueError: If Stripe is not configured
            stripe.StripeError: If the API call fails
        """
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")

        subscription = await asyncio.to_thread(
            stripe.Subscription.retrieve, subscription_id, api_key=self.secret_key
        )
        # str() of a StripeObject is its JSON representation
        return json.loads(str(subscription))


_billing_client: Optional[StripeBillingClient] = None


def get_billing_client() -> StripeBillingClient:
    """FastAPI dependency returning the process-wide billing client."""
    global _billing_client
    if _billing_client is None:
        _billing_client = StripeBillingClient()
    return _billing_client
