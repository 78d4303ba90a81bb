"""
ryvynn/features/usage/service.py

Daily usage metering.

Handles:
- Atomic check-and-increment per (user, UTC day, counter kind)
- Read-only usage snapshots

The ceiling is enforced by the database: a conditional UPDATE only bumps
the counter while value < limit, so two writers can never both pass the
last slot. Within one process a striped lock also serialises writers on
the same key.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional, Union
import logging
import threading

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from ryvynn.core.database import insert_if_absent, session_or_scope, usage_counters
from ryvynn.features.entitlements.matrix import (
    UNLIMITED,
    CounterKind,
    Limit,
    remaining,
)
from ryvynn.features.entitlements.service import EntitlementStore


logger = logging.getLogger("ryvynn")

LOCK_STRIPES = 64


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    current: int
    limit: Limit
    kind: CounterKind
    day: date

    @property
    def remaining(self) -> Limit:
        return remaining(self.limit, self.current)


@dataclass(frozen=True)
class UsageSnapshot:
    kind: CounterKind
    current: int
    limit: Limit
    remaining: Limit
    day: date


class UsageMeter:
    def __init__(
        self,
        session_factory: sessionmaker,
        entitlements: EntitlementStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.entitlements = entitlements
        self.clock = clock
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def today(self) -> date:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc).date()

    def _lock_for(self, user_id: str, day: date, kind: CounterKind) -> threading.Lock:
        return self._locks[hash((user_id, day, kind.value)) % LOCK_STRIPES]

    def check_and_increment(
        self,
        user_id: str,
        kind: Union[CounterKind, str],
        *,
        session: Optional[Session] = None,
    ) -> UsageDecision:
        """
        Consume one unit of today's allowance for ``kind``.

        Returns a UsageDecision; a denied call never raises and never writes.
        When ``session`` is given the increment joins the caller's transaction.
        """
        kind = CounterKind(kind)
        day = self.today()

        with self._lock_for(user_id, day, kind):
            with session_or_scope(self.session_factory, session) as s:
                limit = self.entitlements.effective_limit(user_id, kind, session=s)

                if limit is not UNLIMITED and limit <= 0:
                    decision = UsageDecision(False, self._current(s, user_id, day, kind), limit, kind, day)
                else:
                    self._ensure_row(s, user_id, day, kind)
                    bumped = self._increment(s, user_id, day, kind, limit)
                    current = self._current(s, user_id, day, kind)
                    decision = UsageDecision(bumped, current, limit, kind, day)

        if not decision.allowed:
            logger.warning(
                "[usage] BLOCK",
                extra={
                    "user_id": user_id,
                    "counter_kind": kind.value,
                    "current_usage": decision.current,
                    "limit": limit,
                },
            )
        return decision

    def peek(self, user_id: str, kind: Union[CounterKind, str], session: Optional[Session] = None) -> UsageSnapshot:
        kind = CounterKind(kind)
        day = self.today()
        with session_or_scope(self.session_factory, session) as s:
            limit = self.entitlements.effective_limit(user_id, kind, session=s)
            current = self._current(s, user_id, day, kind)
        return UsageSnapshot(kind=kind, current=current, limit=limit, remaining=remaining(limit, current), day=day)

    def _current(self, session: Session, user_id: str, day: date, kind: CounterKind) -> int:
        value = session.execute(
            select(usage_counters.c.value)
            .where(usage_counters.c.user_id == user_id)
            .where(usage_counters.c.day == day)
            .where(usage_counters.c.kind == kind.value)
        ).scalar()
        return int(value or 0)

    def _ensure_row(self, session: Session, user_id: str, day: date, kind: CounterKind) -> None:
        """Insert the zero row for (user, day, kind) unless it already exists."""
        insert_if_absent(session, usage_counters, dict(user_id=user_id, day=day, kind=kind.value, value=0))

    def _increment(self, session: Session, user_id: str, day: date, kind: CounterKind, limit: Limit) -> bool:
        stmt = (
            update(usage_counters)
            .where(usage_counters.c.user_id == user_id)
            .where(usage_counters.c.day == day)
            .where(usage_counters.c.kind == kind.value)
        )
        if limit is not UNLIMITED:
            stmt = stmt.where(usage_counters.c.value < limit)
        result = session.execute(stmt.values(value=usage_counters.c.value + 1))
        return result.rowcount == 1
