"""
Tier matrix, resolver and entitlement store tests.
"""
import copy
import json

import pytest
from sqlalchemy import select, update

from ryvynn.core.database import entitlements, session_scope
from ryvynn.core.errors import UnknownTierError
from ryvynn.features.entitlements.matrix import (
    DEFAULT_MATRIX_PATH,
    UNLIMITED,
    UNLIMITED_STORAGE,
    CounterKind,
    TierMatrixError,
    limit_from_storage,
    limit_to_json,
    limit_to_storage,
    parse_limit,
    parse_tier_matrix,
    remaining,
)
from ryvynn.features.entitlements.service import UPGRADE_URL, EntitlementResolver


@pytest.fixture
def raw_matrix():
    with open(DEFAULT_MATRIX_PATH, encoding="utf-8") as fh:
        return json.load(fh)


@pytest.fixture
def resolver(tier_matrix):
    return EntitlementResolver(tier_matrix)


def test_bundled_matrix_has_six_tiers(tier_matrix):
    assert [t.id for t in tier_matrix.tiers] == [0, 1, 2, 3, 4, 5]
    assert tier_matrix.version == "2026-01-omega"
    assert tier_matrix.get_tier(1).name == "Spark"


def test_spark_allows_five_conversations(resolver):
    assert resolver.limit_for(1, CounterKind.FLAME_CALLS) == 5


def test_unlimited_is_a_sentinel_not_a_number(resolver):
    limit = resolver.limit_for(5, CounterKind.FLAME_CALLS)
    assert limit is UNLIMITED
    assert not isinstance(limit, int)


def test_limit_conversions_live_in_one_place():
    assert limit_to_storage(UNLIMITED) == UNLIMITED_STORAGE
    assert limit_from_storage(UNLIMITED_STORAGE) is UNLIMITED
    assert limit_from_storage(None) is UNLIMITED
    assert limit_from_storage(7) == 7
    assert limit_to_json(UNLIMITED) == "unlimited"
    assert parse_limit("unlimited") is UNLIMITED
    assert parse_limit(None) is UNLIMITED
    assert remaining(UNLIMITED, 100) is UNLIMITED
    assert remaining(5, 7) == 0


@pytest.mark.parametrize("bad", [-1, "lots", 2.5, True])
def test_parse_limit_rejects_garbage(bad):
    with pytest.raises(TierMatrixError):
        parse_limit(bad)


def test_resolve_unknown_tier_is_fatal(resolver):
    with pytest.raises(UnknownTierError):
        resolver.resolve(42)


def test_features_accumulate_by_minimum_tier(resolver):
    assert not resolver.has_feature(0, "age_tier_switching")
    assert resolver.has_feature(1, "age_tier_switching")
    assert resolver.has_feature(5, "human_coaching")
    assert resolver.minimum_tier_for("personality_sliders") == 4
    assert resolver.minimum_tier_for("nope") is None


def test_matrix_rejects_gaps_in_tier_ids(raw_matrix):
    broken = copy.deepcopy(raw_matrix)
    broken["tiers"] = [t for t in broken["tiers"] if t["id"] != 2]
    with pytest.raises(TierMatrixError):
        parse_tier_matrix(broken)


def test_matrix_rejects_feature_outside_tier_range(raw_matrix):
    broken = copy.deepcopy(raw_matrix)
    broken["feature_keys"].append(
        {"feature_key": "time_travel", "display_name": "Time travel", "minimum_tier": 9, "category": "advanced"}
    )
    with pytest.raises(TierMatrixError):
        parse_tier_matrix(broken)


def test_matrix_rejects_bad_limit(raw_matrix):
    broken = copy.deepcopy(raw_matrix)
    broken["tiers"][0]["limits"]["truth_posts_per_day"] = -3
    with pytest.raises(TierMatrixError):
        parse_tier_matrix(broken)


def test_materialize_stores_sentinel_as_storage_value(entitlement_store, make_user, session_factory):
    make_user("u_top", tier=5)
    with session_scope(session_factory) as session:
        row = session.execute(select(entitlements).where(entitlements.c.user_id == "u_top")).first()
    assert row.flame_conversations_per_day == UNLIMITED_STORAGE
    assert row.current_tier == 5

    ent = entitlement_store.get("u_top")
    assert ent.limit(CounterKind.FLAME_CALLS) is UNLIMITED
    assert ent.to_public()["limits"]["flame_conversations_per_day"] == "unlimited"


def test_ensure_creates_free_tier(entitlement_store):
    ent = entitlement_store.ensure("u_new")
    assert ent.current_tier == 0
    assert ent.tier_version == "2026-01-omega"
    assert entitlement_store.ensure("u_new").current_tier == 0


def test_effective_limit_without_row_uses_free_tier(entitlement_store):
    assert entitlement_store.effective_limit("ghost", CounterKind.FLAME_CALLS) == 3


def test_check_feature_gives_upgrade_hint(entitlement_store, make_user):
    make_user("u_free")
    result = entitlement_store.check_feature("u_free", "personality_sliders")
    assert result.entitled is False
    assert result.required_tier == 4
    assert result.reason == "Requires Sovereign tier or higher"
    assert result.upgrade_url == UPGRADE_URL


def test_check_feature_unknown_key_is_not_entitled(entitlement_store, make_user):
    make_user("u_top", tier=5)
    result = entitlement_store.check_feature("u_top", "does_not_exist")
    assert result.entitled is False
    assert result.reason == "unknown_feature"


def test_refresh_stale_grandfathers_old_rows(entitlement_store, make_user, session_factory):
    make_user("u_old", tier=1)
    make_user("u_current", tier=1)
    with session_scope(session_factory) as session:
        session.execute(
            update(entitlements)
            .where(entitlements.c.user_id == "u_old")
            .values(tier_version="2025-06-legacy", flame_conversations_per_day=2)
        )

    assert entitlement_store.refresh_stale(grandfather=True) == 1
    old = entitlement_store.get("u_old")
    assert old.grandfathered is True
    assert old.limit(CounterKind.FLAME_CALLS) == 2
    assert entitlement_store.refresh_stale(grandfather=True) == 0


def test_refresh_stale_rematerializes_when_not_grandfathering(entitlement_store, make_user, session_factory):
    make_user("u_old", tier=1)
    with session_scope(session_factory) as session:
        session.execute(
            update(entitlements)
            .where(entitlements.c.user_id == "u_old")
            .values(tier_version="2025-06-legacy", flame_conversations_per_day=2)
        )

    assert entitlement_store.refresh_stale(grandfather=False) == 1
    old = entitlement_store.get("u_old")
    assert old.tier_version == "2026-01-omega"
    assert old.limit(CounterKind.FLAME_CALLS) == 5
