# ryvynn/conftest.py
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ryvynn.core.config import Settings
from ryvynn.core.database import build_engine, build_session_factory, create_all_tables, drop_all_tables
from ryvynn.features.entitlements.matrix import load_tier_matrix


class FixedClock:
    """Callable clock frozen at ``now`` until a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def tier_matrix():
    return load_tier_matrix()


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    eng = build_engine("sqlite://")
    create_all_tables(eng)
    yield eng
    drop_all_tables(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        STRIPE_SECRET_KEY=None,
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_PRICE_ID_SPARK_MONTHLY="price_spark_monthly",
        STRIPE_PRICE_ID_SPARK_ANNUAL="price_spark_annual",
        STRIPE_PRICE_ID_BLAZE_MONTHLY="price_blaze_monthly",
        STRIPE_PRICE_ID_RADIANCE_MONTHLY="price_radiance_monthly",
        STRIPE_PRICE_ID_SOVEREIGN_MONTHLY="price_sovereign_monthly",
        STRIPE_PRICE_ID_TRANSCENDENT_MONTHLY="price_transcendent_monthly",
    )


@pytest.fixture
def services(session_factory, test_settings, tier_matrix, rng, clock):
    from ryvynn.api.deps import build_services

    return build_services(session_factory, test_settings, matrix=tier_matrix, rng=rng, clock=clock)


@pytest.fixture
def entitlement_store(services):
    return services.entitlements


@pytest.fixture
def meter(services):
    return services.meter


@pytest.fixture
def users(services):
    return services.users


@pytest.fixture
def make_user(services, session_factory):
    """Create a profile and put it on ``tier``."""
    from ryvynn.core.database import session_scope

    def _make(user_id: str, tier: int = 0) -> str:
        services.users.ensure_profile(user_id)
        if tier:
            with session_scope(session_factory) as session:
                services.entitlements.materialize(session, user_id, tier)
        return user_id

    return _make


@pytest.fixture
def app(services, test_settings):
    from ryvynn.main import create_app

    return create_app(services=services, settings_obj=test_settings)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as c:
        yield c
