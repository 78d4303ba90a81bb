"""
Service wiring for the HTTP layer.

One Services bundle is built per application and kept on app.state.
Routes pull individual services through the dependencies below, so tests
can swap any of them with app.dependency_overrides.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import random

from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from ryvynn.core.auth import get_current_user_id
from ryvynn.features.billing.price_map import PriceMap
from ryvynn.features.billing.provider import BillingProvider
from ryvynn.features.billing.service import BillingService, build_provider
from ryvynn.features.billing.sync import SubscriptionSync
from ryvynn.features.companion.composer import ResponseComposer
from ryvynn.features.companion.service import CompanionService
from ryvynn.features.entitlements.matrix import TierMatrix, load_tier_matrix
from ryvynn.features.entitlements.service import EntitlementResolver, EntitlementStore
from ryvynn.features.journal.service import JournalService
from ryvynn.features.tokens.ledger import TokenLedger
from ryvynn.features.truth.service import TruthFeedService
from ryvynn.features.usage.service import UsageMeter, utc_now
from ryvynn.features.users.service import UserService


@dataclass
class Services:
    entitlements: EntitlementStore
    meter: UsageMeter
    users: UserService
    companion: CompanionService
    tokens: TokenLedger
    truth: TruthFeedService
    journal: JournalService
    sync: SubscriptionSync
    billing: BillingService


def build_services(
    session_factory: sessionmaker,
    settings_obj,
    matrix: Optional[TierMatrix] = None,
    rng: Optional[random.Random] = None,
    clock: Callable[[], datetime] = utc_now,
    provider: Optional[BillingProvider] = None,
) -> Services:
    """Construct every service around one session factory and tier matrix."""
    matrix = matrix or load_tier_matrix(getattr(settings_obj, "TIER_MATRIX_PATH", None))
    resolver = EntitlementResolver(matrix)
    entitlements = EntitlementStore(session_factory, resolver)
    meter = UsageMeter(session_factory, entitlements, clock=clock)
    users = UserService(session_factory, entitlements)
    tokens = TokenLedger(session_factory)
    price_map = PriceMap.from_settings(settings_obj, matrix)
    sync = SubscriptionSync(session_factory, entitlements, price_map, users, clock=clock)

    return Services(
        entitlements=entitlements,
        meter=meter,
        users=users,
        companion=CompanionService(session_factory, meter, entitlements, ResponseComposer(rng), users),
        tokens=tokens,
        truth=TruthFeedService(session_factory, meter, entitlements, tokens, clock=clock),
        journal=JournalService(session_factory, entitlements, clock=clock),
        sync=sync,
        billing=BillingService(
            session_factory,
            provider if provider is not None else build_provider(settings_obj),
            sync,
            price_map,
            users,
            entitlements,
            app_base_url=getattr(settings_obj, "APP_BASE_URL", "http://localhost:3000"),
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_service(services: Services = Depends(get_services)) -> UserService:
    return services.users


def get_companion_service(services: Services = Depends(get_services)) -> CompanionService:
    return services.companion


def get_truth_service(services: Services = Depends(get_services)) -> TruthFeedService:
    return services.truth


def get_token_ledger(services: Services = Depends(get_services)) -> TokenLedger:
    return services.tokens


def get_journal_service(services: Services = Depends(get_services)) -> JournalService:
    return services.journal


def get_billing_service(services: Services = Depends(get_services)) -> BillingService:
    return services.billing


def current_user(
    user_id: str = Depends(get_current_user_id),
    users: UserService = Depends(get_user_service),
) -> str:
    """Authenticated user id; creates the profile and free entitlement on first sight."""
    users.ensure_profile(user_id)
    return user_id
