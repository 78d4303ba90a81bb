"""
Billing service tests (price map, checkout/portal, webhook status mapping).

Stripe is replaced by a Mock provider; signature verification is covered
in test_stripe_provider.py.
"""
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from ryvynn.core.errors import BillingDisabledError, NotFoundError, UnknownPriceError, ValidationError
from ryvynn.features.billing.price_map import PriceMap, placeholder_price_id
from ryvynn.features.billing.provider import BillingEvent, SUBSCRIPTION_CREATED
from ryvynn.features.billing.service import BillingService
from ryvynn.features.billing.sync import SyncOutcome


@pytest.fixture
def price_map(test_settings, tier_matrix):
    return PriceMap.from_settings(test_settings, tier_matrix)


@pytest.fixture
def mock_provider():
    provider = Mock()
    provider.ensure_customer.return_value = "cus_new"
    provider.create_checkout_session.return_value = "https://checkout.stripe.com/c/pay/cs_test"
    provider.create_portal_session.return_value = "https://billing.stripe.com/p/session/test"
    return provider


@pytest.fixture
def billing(services, session_factory, mock_provider, price_map):
    return BillingService(
        session_factory,
        mock_provider,
        services.sync,
        price_map,
        services.users,
        services.entitlements,
        app_base_url="https://app.example.com/",
    )


def test_price_map_round_trips_configured_prices(price_map):
    assert price_map.tier_for_price("price_spark_monthly") == 1
    assert price_map.cadence_for_price("price_spark_annual") == "annual"
    assert price_map.price_for_tier(5, "monthly") == "price_transcendent_monthly"


def test_price_map_unknown_price_raises(price_map):
    with pytest.raises(UnknownPriceError):
        price_map.tier_for_price("price_nope")
    with pytest.raises(UnknownPriceError):
        price_map.tier_for_price(None)


def test_price_map_reports_placeholders(price_map):
    missing = price_map.validate()
    assert "Blaze annual" in missing
    assert "Spark monthly" not in missing
    assert price_map.price_for_tier(2, "annual") == placeholder_price_id("Blaze", "annual")


def test_price_map_rejects_unknown_tier(price_map):
    with pytest.raises(ValidationError):
        price_map.price_for_tier(0, "monthly")


def test_price_map_takes_paid_tiers_from_the_matrix(price_map, tier_matrix, test_settings):
    paid = [t for t in tier_matrix.tiers if t.id != 0]
    assert price_map.paid_tiers == [t.id for t in paid]
    for tier in paid:
        assert price_map.lookup(price_map.price_for_tier(tier.id)).tier_name == tier.name

    small = SimpleNamespace(tiers=[SimpleNamespace(id=0, name="Free"), SimpleNamespace(id=1, name="Spark")])
    trimmed = PriceMap.from_settings(test_settings, small)
    assert trimmed.paid_tiers == [1]
    with pytest.raises(ValidationError):
        trimmed.price_for_tier(2)


def test_checkout_creates_customer_and_session(billing, mock_provider, make_user, users):
    make_user("user_alice")

    url = billing.start_checkout("user_alice", tier=2, cadence="monthly")

    assert url.startswith("https://checkout.stripe.com/")
    kwargs = mock_provider.create_checkout_session.call_args.kwargs
    assert kwargs["customer_id"] == "cus_new"
    assert kwargs["price_id"] == "price_blaze_monthly"
    assert kwargs["metadata"]["user_id"] == "user_alice"
    assert kwargs["success_url"].startswith("https://app.example.com/app/settings")
    assert users.get_profile("user_alice").stripe_customer_id == "cus_new"


def test_checkout_reuses_existing_customer(billing, mock_provider, make_user):
    make_user("user_alice")
    billing.start_checkout("user_alice", tier=1)
    billing.start_checkout("user_alice", tier=1, cadence="annual")
    assert mock_provider.ensure_customer.call_count == 1


@pytest.mark.parametrize("tier, cadence", [(0, "monthly"), (6, "monthly"), (1, "weekly")])
def test_checkout_rejects_unpurchasable(billing, make_user, tier, cadence):
    make_user("user_alice")
    with pytest.raises(ValidationError):
        billing.start_checkout("user_alice", tier=tier, cadence=cadence)


def test_portal_requires_customer(billing, make_user):
    make_user("user_alice")
    with pytest.raises(NotFoundError):
        billing.start_portal("user_alice")


def test_portal_after_checkout(billing, make_user):
    make_user("user_alice")
    billing.start_checkout("user_alice", tier=1)
    assert billing.start_portal("user_alice").startswith("https://billing.stripe.com/")


def test_disabled_billing_raises(services):
    assert services.billing.enabled is False
    with pytest.raises(BillingDisabledError):
        services.billing.process_webhook({}, b"{}")


def test_webhook_status_mapping(billing, mock_provider, make_user, users, session_factory):
    make_user("user_alice")
    billing.start_checkout("user_alice", tier=1)

    mock_provider.parse_webhook.return_value = BillingEvent(
        event_id="evt_ok",
        event_type=SUBSCRIPTION_CREATED,
        customer_id="cus_new",
        subscription_id="sub_1",
        price_id="price_spark_monthly",
        status="active",
    )
    applied = billing.process_webhook({"stripe-signature": "t=1,v1=x"}, b"{}")
    assert applied.http_status == 200
    assert applied.body()["outcome"] == SyncOutcome.APPLIED.value

    duplicate = billing.process_webhook({"stripe-signature": "t=1,v1=x"}, b"{}")
    assert duplicate.http_status == 200
    assert duplicate.result.outcome == SyncOutcome.DUPLICATE

    mock_provider.parse_webhook.return_value = BillingEvent(
        event_id="evt_bad",
        event_type=SUBSCRIPTION_CREATED,
        customer_id="cus_new",
        subscription_id="sub_2",
        price_id="price_unknown",
        status="active",
    )
    failed = billing.process_webhook({"stripe-signature": "t=1,v1=x"}, b"{}")
    assert failed.http_status == 500
    assert failed.body()["outcome"] == "unknown_price"


def test_billing_status(billing, make_user):
    make_user("user_alice")
    status = billing.get_billing_status("user_alice")
    assert status["enabled"] is True
    assert status["tier"] == 0
    assert status["tier_name"] == "Free"
    assert status["status"] is None
