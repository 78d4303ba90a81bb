"""
Usage meter tests: atomic check-and-increment per (user, day, kind).
"""
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import func, insert, select

from ryvynn.core.database import session_scope, usage_counters
from ryvynn.features.entitlements.matrix import UNLIMITED, CounterKind
from ryvynn.features.usage.service import UsageMeter


def _stored(session_factory, user_id, kind):
    with session_scope(session_factory) as session:
        return session.execute(
            select(func.coalesce(func.sum(usage_counters.c.value), 0))
            .where(usage_counters.c.user_id == user_id)
            .where(usage_counters.c.kind == kind.value)
        ).scalar()


def test_spark_user_sixth_call_is_denied(meter, make_user):
    make_user("u_spark", tier=1)

    for i in range(5):
        decision = meter.check_and_increment("u_spark", CounterKind.FLAME_CALLS)
        assert decision.allowed is True
        assert decision.current == i + 1

    sixth = meter.check_and_increment("u_spark", CounterKind.FLAME_CALLS)
    assert sixth.allowed is False
    assert sixth.current == 5
    assert sixth.limit == 5
    assert sixth.remaining == 0


def test_concurrent_increments_never_pass_the_limit(meter, make_user, session_factory):
    make_user("u_race", tier=1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        decisions = list(
            pool.map(lambda _: meter.check_and_increment("u_race", CounterKind.FLAME_CALLS), range(25))
        )

    assert sum(1 for d in decisions if d.allowed) == 5
    assert all(d.current <= 5 for d in decisions)
    assert _stored(session_factory, "u_race", CounterKind.FLAME_CALLS) == 5


def test_database_ceiling_holds_without_the_process_lock(meter, make_user, session_factory):
    make_user("u_ceiling", tier=1)
    day = meter.today()
    with session_scope(session_factory) as session:
        session.execute(
            insert(usage_counters).values(user_id="u_ceiling", day=day, kind=CounterKind.FLAME_CALLS.value, value=5)
        )

    with session_scope(session_factory) as session:
        assert meter._increment(session, "u_ceiling", day, CounterKind.FLAME_CALLS, 5) is False

    assert _stored(session_factory, "u_ceiling", CounterKind.FLAME_CALLS) == 5


def test_meters_with_separate_locks_share_one_ceiling(meter, entitlement_store, make_user, session_factory, clock):
    other_process = UsageMeter(session_factory, entitlement_store, clock=clock)
    make_user("u_two_meters", tier=1)

    decisions = [
        (meter if i % 2 else other_process).check_and_increment("u_two_meters", CounterKind.FLAME_CALLS)
        for i in range(8)
    ]

    assert [d.allowed for d in decisions] == [True] * 5 + [False] * 3
    assert _stored(session_factory, "u_two_meters", CounterKind.FLAME_CALLS) == 5


def test_new_utc_day_starts_from_zero(meter, make_user, clock):
    make_user("u_daily", tier=0)
    for _ in range(3):
        assert meter.check_and_increment("u_daily", CounterKind.FLAME_CALLS).allowed
    assert not meter.check_and_increment("u_daily", CounterKind.FLAME_CALLS).allowed

    clock.advance(days=1)
    decision = meter.check_and_increment("u_daily", CounterKind.FLAME_CALLS)
    assert decision.allowed is True
    assert decision.current == 1
    assert decision.day == clock().date()


def test_zero_limit_denies_without_creating_a_row(meter, make_user, session_factory):
    make_user("u_free")
    decision = meter.check_and_increment("u_free", CounterKind.API_CALLS)
    assert decision.allowed is False
    assert decision.limit == 0

    with session_scope(session_factory) as session:
        rows = session.execute(
            select(usage_counters).where(usage_counters.c.user_id == "u_free")
        ).all()
    assert rows == []


def test_unlimited_counts_without_ceiling(meter, make_user):
    make_user("u_top", tier=5)
    for _ in range(40):
        decision = meter.check_and_increment("u_top", CounterKind.FLAME_CALLS)
    assert decision.allowed is True
    assert decision.current == 40
    assert decision.limit is UNLIMITED
    assert decision.remaining is UNLIMITED


def test_counters_are_per_kind(meter, make_user):
    make_user("u_kinds", tier=0)
    meter.check_and_increment("u_kinds", CounterKind.FLAME_CALLS)
    meter.check_and_increment("u_kinds", CounterKind.TRUTH_READS)

    assert meter.peek("u_kinds", CounterKind.FLAME_CALLS).current == 1
    assert meter.peek("u_kinds", CounterKind.TRUTH_READS).current == 1
    assert meter.peek("u_kinds", CounterKind.TRUTH_POSTS).current == 0


def test_peek_never_writes(meter, make_user, session_factory):
    make_user("u_peek", tier=1)
    snapshot = meter.peek("u_peek", CounterKind.FLAME_CALLS)
    assert snapshot.current == 0
    assert snapshot.remaining == 5
    assert _stored(session_factory, "u_peek", CounterKind.FLAME_CALLS) == 0

    with session_scope(session_factory) as session:
        count = session.execute(select(func.count()).select_from(usage_counters)).scalar()
    assert count == 0


def test_increment_in_callers_session_rolls_back_with_it(meter, make_user, session_factory):
    make_user("u_tx", tier=1)
    session = session_factory()
    try:
        decision = meter.check_and_increment("u_tx", CounterKind.FLAME_CALLS, session=session)
        assert decision.allowed is True
        session.rollback()
    finally:
        session.close()

    assert meter.peek("u_tx", CounterKind.FLAME_CALLS).current == 0


def test_accepts_kind_as_string(meter, make_user):
    make_user("u_str", tier=1)
    decision = meter.check_and_increment("u_str", "truth_posts")
    assert decision.kind is CounterKind.TRUTH_POSTS
    assert decision.allowed is True
