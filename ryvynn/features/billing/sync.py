"""
Subscription sync: applies verified billing events to local state.

Each event runs in one transaction:
1. Ledger lookup (already processed -> duplicate, no-op)
2. Side effects (subscription upsert, entitlement materialization, ...)
3. Ledger insert, last; a unique violation here means a concurrent
   delivery won, so everything rolls back and the result is duplicate

Unknown prices and unresolvable users are not written to the ledger, so
the provider's retry applies the event once the mapping or profile is
fixed. Both are also dead-lettered to reconciliation_queue for operators.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ryvynn.core.database import (
    payment_events,
    processed_events,
    reconciliation_queue,
    session_scope,
    subscriptions,
)
from ryvynn.core.errors import AppError, DuplicateEventError, UnknownPriceError, UnresolvableUserError
from ryvynn.features.billing.price_map import PriceMap
from ryvynn.features.billing.provider import (
    BillingEvent,
    CHECKOUT_COMPLETED,
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
)
from ryvynn.features.entitlements.service import FREE_TIER, EntitlementStore
from ryvynn.features.usage.service import utc_now
from ryvynn.features.users.service import UserService


logger = logging.getLogger("ryvynn")

ACTIVE_STATUSES = frozenset({"active", "trialing"})
DOWNGRADE_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})


class SyncOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    STALE = "stale"
    DUPLICATE = "duplicate"
    UNKNOWN_PRICE = "unknown_price"
    UNRESOLVABLE_USER = "unresolvable_user"


# Outcomes that mark the event id as processed
RECORDED_OUTCOMES = frozenset({SyncOutcome.APPLIED, SyncOutcome.IGNORED, SyncOutcome.STALE})


@dataclass(frozen=True)
class SyncResult:
    outcome: SyncOutcome
    event_id: str
    user_id: Optional[str] = None
    tier_id: Optional[int] = None
    status: Optional[str] = None
    error: Optional[AppError] = None

    @property
    def recorded(self) -> bool:
        return self.outcome in RECORDED_OUTCOMES


def transition_allowed(previous: Optional[str], new: Optional[str]) -> bool:
    """Terminal subscriptions never come back; every other move is provider-driven."""
    if previous is None or previous == new:
        return True
    return previous not in TERMINAL_STATUSES


class SubscriptionSync:
    def __init__(
        self,
        session_factory: sessionmaker,
        entitlements: EntitlementStore,
        price_map: PriceMap,
        users: UserService,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.entitlements = entitlements
        self.price_map = price_map
        self.users = users
        self.clock = clock
        self._handlers: Dict[str, Callable[[Session, BillingEvent], SyncResult]] = {
            CHECKOUT_COMPLETED: self._checkout_completed,
            SUBSCRIPTION_CREATED: self._subscription_changed,
            SUBSCRIPTION_UPDATED: self._subscription_changed,
            SUBSCRIPTION_DELETED: self._subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self._invoice,
            INVOICE_PAYMENT_FAILED: self._invoice,
        }

    def is_processed(self, event_id: str, session: Optional[Session] = None) -> bool:
        if session is not None:
            return self._ledger_has(session, event_id)
        with session_scope(self.session_factory) as s:
            return self._ledger_has(s, event_id)

    def apply(self, event: BillingEvent) -> SyncResult:
        """
        Apply one verified billing event.

        Never raises for expected outcomes; storage failures propagate so
        the webhook answers non-2xx and the provider retries.
        """
        if self.is_processed(event.event_id):
            return self._duplicate(event)

        handler = self._handlers.get(event.event_type, self._ignore)
        session = self.session_factory()
        try:
            result = handler(session, event)
            if result.recorded:
                session.execute(
                    insert(processed_events).values(
                        provider_event_id=event.event_id,
                        event_type=event.event_type,
                        outcome=result.outcome.value,
                        processed_at=self.clock(),
                    )
                )
                session.commit()
            else:
                session.rollback()
        except IntegrityError:
            session.rollback()
            if self.is_processed(event.event_id):
                return self._duplicate(event)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if result.outcome in (SyncOutcome.UNKNOWN_PRICE, SyncOutcome.UNRESOLVABLE_USER):
            self._dead_letter(event, result)
            logger.error(
                "[billing] event not applied",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "outcome": result.outcome.value,
                    "error_code": result.error.code if result.error else None,
                },
            )
        else:
            logger.info(
                "[billing] event processed",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "outcome": result.outcome.value,
                    "user_id": result.user_id,
                    "tier_id": result.tier_id,
                    "status": result.status,
                },
            )
        return result

    # Handlers: run inside the event transaction, never commit

    def _ignore(self, session: Session, event: BillingEvent) -> SyncResult:
        return SyncResult(SyncOutcome.IGNORED, event.event_id)

    def _checkout_completed(self, session: Session, event: BillingEvent) -> SyncResult:
        user_id = event.metadata_user_id
        if not self.users.profile_exists(session, user_id):
            return self._unresolvable(event, f"checkout session has no known user (metadata user_id={user_id!r})")

        if event.customer_id:
            self.users.link_customer(session, user_id, event.customer_id)
        # Tier changes arrive with the subscription events
        return SyncResult(SyncOutcome.APPLIED, event.event_id, user_id=user_id)

    def _subscription_changed(self, session: Session, event: BillingEvent) -> SyncResult:
        try:
            tier_id = self.price_map.tier_for_price(event.price_id)
        except UnknownPriceError as e:
            return SyncResult(SyncOutcome.UNKNOWN_PRICE, event.event_id, status=event.status, error=e)

        existing = self._subscription_row(session, event.subscription_id)
        user_id = self._resolve_user(session, event, existing)
        if not user_id:
            return self._unresolvable(event, f"no user for customer {event.customer_id!r}")

        previous = existing.status if existing else None
        if not transition_allowed(previous, event.status):
            logger.warning(
                "[billing] stale subscription transition",
                extra={"event_id": event.event_id, "status": event.status, "previous_status": previous},
            )
            return SyncResult(SyncOutcome.STALE, event.event_id, user_id=user_id, status=previous)

        self._upsert_subscription(session, event, user_id, tier_id, existing)

        if event.status in ACTIVE_STATUSES:
            # A lower-tier renewal must not mask a higher live subscription
            tier_id = self._materialize_best_live_tier(session, user_id)
        elif event.status in DOWNGRADE_STATUSES:
            tier_id = self._materialize_best_live_tier(session, user_id, exclude=event.subscription_id)
        else:
            # past_due / incomplete: keep access until the provider decides
            tier_id = None

        return SyncResult(SyncOutcome.APPLIED, event.event_id, user_id=user_id, tier_id=tier_id, status=event.status)

    def _subscription_deleted(self, session: Session, event: BillingEvent) -> SyncResult:
        existing = self._subscription_row(session, event.subscription_id)
        user_id = self._resolve_user(session, event, existing)
        if not user_id:
            return self._unresolvable(event, f"no user for deleted subscription {event.subscription_id!r}")

        canceled_at = event.canceled_at or self.clock()
        if existing:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.provider_subscription_id == event.subscription_id)
                .values(status="canceled", canceled_at=canceled_at, updated_at=self.clock())
            )
        else:
            tier_id = None
            if event.price_id:
                try:
                    tier_id = self.price_map.tier_for_price(event.price_id)
                except UnknownPriceError:
                    tier_id = None
            self._insert_subscription(session, event, user_id, tier_id, status="canceled", canceled_at=canceled_at)

        tier_id = self._materialize_best_live_tier(session, user_id, exclude=event.subscription_id)
        return SyncResult(SyncOutcome.APPLIED, event.event_id, user_id=user_id, tier_id=tier_id, status="canceled")

    def _invoice(self, session: Session, event: BillingEvent) -> SyncResult:
        status = "succeeded" if event.event_type == INVOICE_PAYMENT_SUCCEEDED else "failed"
        session.execute(
            insert(payment_events).values(
                provider_invoice_id=event.invoice_id,
                provider_subscription_id=event.subscription_id,
                provider_customer_id=event.customer_id,
                amount_cents=event.amount_cents,
                currency=event.currency,
                status=status,
                created_at=self.clock(),
            )
        )
        if status == "failed":
            logger.warning(
                "[billing] payment failed",
                extra={"event_id": event.event_id, "subscription_id": event.subscription_id},
            )
        return SyncResult(SyncOutcome.APPLIED, event.event_id, status=status)

    # Helpers

    def _duplicate(self, event: BillingEvent) -> SyncResult:
        logger.info(
            "[billing] duplicate event skipped",
            extra={"event_id": event.event_id, "event_type": event.event_type, "outcome": SyncOutcome.DUPLICATE.value},
        )
        return SyncResult(SyncOutcome.DUPLICATE, event.event_id, error=DuplicateEventError(event.event_id))

    def _unresolvable(self, event: BillingEvent, detail: str) -> SyncResult:
        return SyncResult(
            SyncOutcome.UNRESOLVABLE_USER,
            event.event_id,
            status=event.status,
            error=UnresolvableUserError(detail),
        )

    def _ledger_has(self, session: Session, event_id: str) -> bool:
        return session.execute(
            select(processed_events.c.id).where(processed_events.c.provider_event_id == event_id)
        ).first() is not None

    def _subscription_row(self, session: Session, subscription_id: Optional[str]):
        if not subscription_id:
            return None
        return session.execute(
            select(subscriptions).where(subscriptions.c.provider_subscription_id == subscription_id)
        ).first()

    def _resolve_user(self, session: Session, event: BillingEvent, existing) -> Optional[str]:
        """Existing subscription owner, then profile by customer id, then metadata."""
        if existing is not None:
            return existing.user_id

        user_id = self.users.find_user_by_customer(session, event.customer_id)
        if user_id:
            return user_id

        if self.users.profile_exists(session, event.metadata_user_id):
            if event.customer_id:
                self.users.link_customer(session, event.metadata_user_id, event.customer_id)
            return event.metadata_user_id
        return None

    def _insert_subscription(self, session: Session, event: BillingEvent, user_id: str, tier_id: Optional[int], *, status: Optional[str], canceled_at: Optional[datetime] = None) -> None:
        session.execute(
            insert(subscriptions).values(
                user_id=user_id,
                provider_subscription_id=event.subscription_id,
                provider_customer_id=event.customer_id,
                status=status,
                price_id=event.price_id,
                tier_id=tier_id,
                current_period_start=event.current_period_start,
                current_period_end=event.current_period_end,
                cancel_at_period_end=event.cancel_at_period_end,
                canceled_at=canceled_at,
            )
        )

    def _upsert_subscription(self, session: Session, event: BillingEvent, user_id: str, tier_id: int, existing) -> None:
        if existing is None:
            self._insert_subscription(session, event, user_id, tier_id, status=event.status, canceled_at=event.canceled_at)
            return
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.provider_subscription_id == event.subscription_id)
            .values(
                provider_customer_id=event.customer_id or existing.provider_customer_id,
                status=event.status,
                price_id=event.price_id,
                tier_id=tier_id,
                current_period_start=event.current_period_start,
                current_period_end=event.current_period_end,
                cancel_at_period_end=event.cancel_at_period_end,
                canceled_at=event.canceled_at,
                updated_at=self.clock(),
            )
        )

    def _materialize_best_live_tier(self, session: Session, user_id: str, exclude: Optional[str] = None) -> int:
        """Put the user on their highest active or trialing subscription, else the free tier."""
        query = (
            select(subscriptions.c.provider_subscription_id, subscriptions.c.tier_id)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status.in_(sorted(ACTIVE_STATUSES)))
            .where(subscriptions.c.tier_id.is_not(None))
            .order_by(subscriptions.c.tier_id.desc())
        )
        if exclude:
            query = query.where(subscriptions.c.provider_subscription_id != exclude)
        best = session.execute(query).first()

        if best is not None:
            self.entitlements.materialize(session, user_id, best.tier_id, subscription_id=best.provider_subscription_id)
            return best.tier_id

        self.entitlements.materialize(session, user_id, FREE_TIER)
        return FREE_TIER

    def _dead_letter(self, event: BillingEvent, result: SyncResult) -> None:
        detail = result.error.message if result.error else None
        payload = {
            "customer_id": event.customer_id,
            "subscription_id": event.subscription_id,
            "price_id": event.price_id,
            "status": event.status,
            "metadata_user_id": event.metadata_user_id,
        }
        with session_scope(self.session_factory) as session:
            existing = session.execute(
                select(reconciliation_queue.c.id, reconciliation_queue.c.attempts)
                .where(reconciliation_queue.c.provider_event_id == event.event_id)
            ).first()
            if existing:
                session.execute(
                    update(reconciliation_queue)
                    .where(reconciliation_queue.c.id == existing.id)
                    .values(
                        attempts=existing.attempts + 1,
                        reason=result.outcome.value,
                        detail=detail,
                        status="open",
                        updated_at=self.clock(),
                    )
                )
            else:
                session.execute(
                    insert(reconciliation_queue).values(
                        provider_event_id=event.event_id,
                        event_type=event.event_type,
                        reason=result.outcome.value,
                        detail=detail,
                        payload=payload,
                        status="open",
                        attempts=1,
                    )
                )

    def resolve_dead_letters(self) -> int:
        """Mark open dead letters whose event has since been processed."""
        with session_scope(self.session_factory) as session:
            open_rows = session.execute(
                select(reconciliation_queue.c.id, reconciliation_queue.c.provider_event_id)
                .where(reconciliation_queue.c.status == "open")
            ).all()
            resolved = 0
            for row in open_rows:
                if self._ledger_has(session, row.provider_event_id):
                    session.execute(
                        update(reconciliation_queue)
                        .where(reconciliation_queue.c.id == row.id)
                        .values(status="resolved", updated_at=self.clock())
                    )
                    resolved += 1
        return resolved
