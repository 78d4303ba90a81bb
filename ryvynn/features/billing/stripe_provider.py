"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing; parsing never
calls the Stripe API, user resolution happens later against our own tables.
"""
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from ryvynn.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    CHECKOUT_COMPLETED,
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    normalize_event_type,
)


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(data: Dict[str, Any]) -> Dict[str, Any]:
    items = (data.get("items") or {}).get("data") or []
    return items[0] if items else {}


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
        """
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create a Stripe customer tagged with our user id."""
        try:
            customer_data: Dict[str, Any] = {
                "metadata": {"user_id": user_id}
            }
            if email:
                customer_data["email"] = email
            if name:
                customer_data["name"] = name

            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
                # Copied onto the subscription so subscription events carry it too
                subscription_data={"metadata": metadata or {}},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        sig_header = lowered.get("stripe-signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            return self._parse_event(event)
        except (KeyError, TypeError, AttributeError) as e:
            raise BillingWebhookError(f"Malformed event: {e}")

    def _parse_event(self, event: Dict[str, Any]) -> BillingEvent:
        """Parse Stripe event into a normalized BillingEvent."""
        event_type = normalize_event_type(event["type"])
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}

        parsed = BillingEvent(
            event_id=event["id"],
            event_type=event_type,
            customer_id=data.get("customer"),
            metadata_user_id=metadata.get("user_id"),
            metadata=dict(metadata),
        )

        if event_type.startswith("customer.subscription."):
            item = _first_item(data)
            parsed.subscription_id = data.get("id")
            parsed.status = data.get("status")
            parsed.price_id = (item.get("price") or {}).get("id")
            # Newer API versions carry the period on the subscription item
            parsed.current_period_start = _ts(data.get("current_period_start") or item.get("current_period_start"))
            parsed.current_period_end = _ts(data.get("current_period_end") or item.get("current_period_end"))
            parsed.cancel_at_period_end = bool(data.get("cancel_at_period_end", False))
            parsed.canceled_at = _ts(data.get("canceled_at"))

        elif event_type == CHECKOUT_COMPLETED:
            parsed.subscription_id = data.get("subscription")
            parsed.metadata_user_id = metadata.get("user_id") or data.get("client_reference_id")

        elif event_type in (INVOICE_PAYMENT_SUCCEEDED, INVOICE_PAYMENT_FAILED):
            parsed.invoice_id = data.get("id")
            parsed.subscription_id = data.get("subscription")
            if event_type == INVOICE_PAYMENT_SUCCEEDED:
                parsed.amount_cents = data.get("amount_paid")
            else:
                parsed.amount_cents = data.get("amount_due")
            parsed.currency = data.get("currency")

        return parsed
