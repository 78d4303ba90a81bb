"""
Billing service orchestrator.

Coordinates:
- Customer management
- Checkout and portal sessions
- Webhook processing (verify -> apply -> HTTP status)
- Billing status for the settings page

All Stripe-specific code is in stripe_provider.py.
"""
from dataclasses import dataclass
from typing import Optional, Dict, Any
import logging

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from ryvynn.core.database import session_scope, subscriptions
from ryvynn.core.errors import BillingDisabledError, NotFoundError, ValidationError
from ryvynn.features.billing.price_map import CADENCES, PriceMap
from ryvynn.features.billing.provider import BillingProvider, BillingProviderError
from ryvynn.features.billing.stripe_provider import StripeProvider
from ryvynn.features.billing.sync import SubscriptionSync, SyncOutcome, SyncResult
from ryvynn.features.entitlements.service import EntitlementStore
from ryvynn.features.users.service import UserService


logger = logging.getLogger("ryvynn")

# Provider retries anything non-2xx; only these outcomes should be retried
RETRY_OUTCOMES = frozenset({SyncOutcome.UNKNOWN_PRICE, SyncOutcome.UNRESOLVABLE_USER})


def build_provider(settings_obj) -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not getattr(settings_obj, "STRIPE_SECRET_KEY", None):
        return None
    try:
        return StripeProvider(
            secret_key=settings_obj.STRIPE_SECRET_KEY,
            webhook_secret=settings_obj.STRIPE_WEBHOOK_SECRET,
        )
    except BillingProviderError:
        return None


@dataclass(frozen=True)
class WebhookResponse:
    http_status: int
    result: SyncResult

    def body(self) -> Dict[str, Any]:
        return {
            "received": True,
            "event_id": self.result.event_id,
            "outcome": self.result.outcome.value,
        }


def http_status_for(result: SyncResult) -> int:
    return 500 if result.outcome in RETRY_OUTCOMES else 200


class BillingService:
    def __init__(
        self,
        session_factory: sessionmaker,
        provider: Optional[BillingProvider],
        sync: SubscriptionSync,
        price_map: PriceMap,
        users: UserService,
        entitlements: EntitlementStore,
        app_base_url: str = "http://localhost:3000",
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.sync = sync
        self.price_map = price_map
        self.users = users
        self.entitlements = entitlements
        self.app_base_url = app_base_url.rstrip("/")

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Billing is not configured")
        return self.provider

    def process_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookResponse:
        """
        Verify, apply and map a webhook delivery to an HTTP status.

        Raises:
            BillingWebhookError: bad signature or payload (HTTP 400)
            BillingDisabledError: billing not configured (HTTP 503)
        """
        provider = self._require_provider()
        event = provider.parse_webhook(headers, body)
        result = self.sync.apply(event)
        return WebhookResponse(http_status=http_status_for(result), result=result)

    def ensure_customer_for_user(self, user_id: str, email: Optional[str] = None) -> str:
        provider = self._require_provider()
        profile = self.users.ensure_profile(user_id)
        if profile.stripe_customer_id:
            return profile.stripe_customer_id

        customer_id = provider.ensure_customer(user_id, email=email)
        with session_scope(self.session_factory) as session:
            self.users.link_customer(session, user_id, customer_id)
        logger.info("[billing] customer created", extra={"user_id": user_id})
        return customer_id

    def start_checkout(
        self,
        user_id: str,
        tier: int,
        cadence: str = "monthly",
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> str:
        """
        Start checkout session for a paid tier.

        Returns:
            Checkout URL

        Raises:
            ValidationError: tier not purchasable or cadence unknown
            BillingProviderError: If checkout creation fails
        """
        provider = self._require_provider()
        if tier not in self.price_map.paid_tiers:
            raise ValidationError(f"Tier {tier} cannot be purchased")
        if cadence not in CADENCES:
            raise ValidationError(f"Unknown billing cadence: {cadence}")

        price_id = self.price_map.price_for_tier(tier, cadence)
        customer_id = self.ensure_customer_for_user(user_id)

        return provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url or f"{self.app_base_url}/app/settings?tab=subscription&checkout=success",
            cancel_url=cancel_url or f"{self.app_base_url}/app/settings?tab=subscription&checkout=canceled",
            metadata={"user_id": user_id, "tier": str(tier), "cadence": cadence},
        )

    def start_portal(self, user_id: str, return_url: Optional[str] = None) -> str:
        provider = self._require_provider()
        profile = self.users.get_profile(user_id)
        if profile is None or not profile.stripe_customer_id:
            raise NotFoundError("No billing customer for this user")

        return provider.create_portal_session(
            customer_id=profile.stripe_customer_id,
            return_url=return_url or f"{self.app_base_url}/app/settings?tab=subscription",
        )

    def get_billing_status(self, user_id: str) -> Dict[str, Any]:
        """
        Get user's billing status.

        Returns:
            {
                "enabled": bool,
                "tier": int,
                "tier_name": str,
                "status": str | None,
                "period_end": datetime | None,
                "cancel_at_period_end": bool
            }
        """
        entitlement = self.entitlements.get(user_id)
        tier_id = entitlement.current_tier if entitlement else 0
        status = {
            "enabled": self.enabled,
            "tier": tier_id,
            "tier_name": self.entitlements.resolver.tier_name(tier_id),
            "status": None,
            "period_end": None,
            "cancel_at_period_end": False,
        }

        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(
                    subscriptions.c.status,
                    subscriptions.c.current_period_end,
                    subscriptions.c.cancel_at_period_end,
                )
                .where(subscriptions.c.user_id == user_id)
                .order_by(subscriptions.c.updated_at.desc(), subscriptions.c.id.desc())
                .limit(1)
            ).first()

        if row:
            status.update(
                status=row.status,
                period_end=row.current_period_end,
                cancel_at_period_end=bool(row.cancel_at_period_end),
            )
        return status
