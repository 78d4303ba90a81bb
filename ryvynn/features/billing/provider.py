"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.) and the
normalized event the subscription sync consumes. Signature verification
happens in the provider, before sync ever sees an event.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Short names some senders (and older fixtures) use
EVENT_TYPE_ALIASES = {
    "checkout.completed": CHECKOUT_COMPLETED,
    "subscription.created": SUBSCRIPTION_CREATED,
    "subscription.updated": SUBSCRIPTION_UPDATED,
    "subscription.deleted": SUBSCRIPTION_DELETED,
}


def normalize_event_type(event_type: str) -> str:
    return EVENT_TYPE_ALIASES.get(event_type, event_type)


@dataclass
class BillingEvent:
    """Provider-neutral view of one webhook event."""
    event_id: str
    event_type: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    status: Optional[str] = None  # active, trialing, past_due, canceled, incomplete, unpaid
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata_user_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Portal session creation
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Ensure a billing customer exists for the user.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a checkout session for a subscription.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
