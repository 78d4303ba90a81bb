"""
ryvynn/features/entitlements/service.py

Entitlement resolution and materialization.

Handles:
- Tier lookups against the tier matrix (resolve never defaults)
- Writing a tier's limits/features onto a user's entitlement row
- Feature checks with upgrade hints
- Grandfathering rows materialized from an older tier_version
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session, sessionmaker

from ryvynn.core.database import entitlements, session_or_scope
from ryvynn.core.errors import UnknownTierError
from ryvynn.features.entitlements.matrix import (
    CounterKind,
    Limit,
    TierDefinition,
    TierLimits,
    TierMatrix,
)
from ryvynn.models.entitlement import Entitlement


logger = logging.getLogger("ryvynn")

FREE_TIER = 0
UPGRADE_URL = "/app/settings?tab=subscription"


class EntitlementResolver:
    """Pure lookups over a loaded TierMatrix."""

    def __init__(self, matrix: TierMatrix):
        self.matrix = matrix

    @property
    def version(self) -> str:
        return self.matrix.version

    def resolve(self, tier_id: int) -> TierDefinition:
        tier = self.matrix.get_tier(tier_id)
        if tier is None:
            logger.error("[entitlements] unknown tier", extra={"tier_id": tier_id})
            raise UnknownTierError(tier_id)
        return tier

    def limit_for(self, tier_id: int, kind: CounterKind) -> Limit:
        return self.resolve(tier_id).limit(kind)

    def has_feature(self, tier_id: int, feature_key: str) -> bool:
        return feature_key in self.resolve(tier_id).features

    def minimum_tier_for(self, feature_key: str) -> Optional[int]:
        feature = self.matrix.get_feature(feature_key)
        return feature.minimum_tier if feature else None

    def tier_name(self, tier_id: int) -> str:
        return self.resolve(tier_id).name

    def tiers(self) -> List[TierDefinition]:
        return self.matrix.tiers


@dataclass(frozen=True)
class FeatureCheckResult:
    entitled: bool
    reason: Optional[str]
    current_tier: int
    required_tier: Optional[int]
    upgrade_url: Optional[str]


def _to_entitlement(row) -> Entitlement:
    return Entitlement(
        user_id=row.user_id,
        current_tier=row.current_tier,
        tier_version=row.tier_version,
        grandfathered=bool(row.grandfathered),
        limits=TierLimits.from_storage(row),
        features=frozenset(row.features or []),
        subscription_id=row.subscription_id,
        updated_at=row.updated_at,
    )


class EntitlementStore:
    """Persisted, per-user copy of tier limits and features."""

    def __init__(self, session_factory: sessionmaker, resolver: EntitlementResolver):
        self.session_factory = session_factory
        self.resolver = resolver

    def materialize(
        self,
        session: Session,
        user_id: str,
        tier_id: int,
        *,
        grandfathered: bool = False,
        subscription_id: Optional[str] = None,
    ) -> Entitlement:
        """Overwrite the user's entitlement with the resolved tier (caller commits)."""
        tier = self.resolver.resolve(tier_id)
        values = dict(
            current_tier=tier.id,
            tier_version=tier.version,
            grandfathered=grandfathered,
            features=sorted(tier.features),
            subscription_id=subscription_id,
            updated_at=datetime.now(timezone.utc),
            **tier.limits.to_storage(),
        )

        existing = session.execute(
            select(entitlements.c.user_id).where(entitlements.c.user_id == user_id)
        ).first()
        if existing:
            session.execute(
                update(entitlements).where(entitlements.c.user_id == user_id).values(**values)
            )
        else:
            session.execute(insert(entitlements).values(user_id=user_id, **values))

        logger.info(
            "[entitlements] materialized",
            extra={"user_id": user_id, "tier_id": tier.id, "tier_version": tier.version},
        )
        return Entitlement(
            user_id=user_id,
            current_tier=tier.id,
            tier_version=tier.version,
            grandfathered=grandfathered,
            limits=tier.limits,
            features=tier.features,
            subscription_id=subscription_id,
        )

    def get(self, user_id: str, session: Optional[Session] = None) -> Optional[Entitlement]:
        with session_or_scope(self.session_factory, session) as s:
            row = s.execute(
                select(entitlements).where(entitlements.c.user_id == user_id)
            ).first()
            return _to_entitlement(row) if row else None

    def ensure(self, user_id: str, session: Optional[Session] = None) -> Entitlement:
        """Return the user's entitlement, creating the free tier row if missing."""
        with session_or_scope(self.session_factory, session) as s:
            current = self.get(user_id, session=s)
            if current is not None:
                return current
            return self.materialize(s, user_id, FREE_TIER)

    def current_tier(self, user_id: str, session: Optional[Session] = None) -> int:
        entitlement = self.get(user_id, session=session)
        return entitlement.current_tier if entitlement else FREE_TIER

    def effective_limit(self, user_id: str, kind: CounterKind, session: Optional[Session] = None) -> Limit:
        """Materialized limit for the user; free-tier limit when no row exists."""
        entitlement = self.get(user_id, session=session)
        if entitlement is None:
            return self.resolver.limit_for(FREE_TIER, kind)
        return entitlement.limit(kind)

    def earn_rate(self, user_id: str, session: Optional[Session] = None) -> int:
        tier_id = self.current_tier(user_id, session=session)
        return self.resolver.resolve(tier_id).soul_token_earn_rate

    def has_feature(self, user_id: str, feature_key: str, session: Optional[Session] = None) -> bool:
        return self.check_feature(user_id, feature_key, session=session).entitled

    def check_feature(self, user_id: str, feature_key: str, session: Optional[Session] = None) -> FeatureCheckResult:
        entitlement = self.get(user_id, session=session)
        current_tier = entitlement.current_tier if entitlement else FREE_TIER
        required_tier = self.resolver.minimum_tier_for(feature_key)

        if required_tier is None:
            logger.warning(
                "[entitlements] unknown feature key",
                extra={"user_id": user_id, "feature_key": feature_key},
            )
            return FeatureCheckResult(
                entitled=False,
                reason="unknown_feature",
                current_tier=current_tier,
                required_tier=None,
                upgrade_url=None,
            )

        if entitlement is not None:
            entitled = entitlement.has_feature(feature_key)
        else:
            entitled = self.resolver.has_feature(FREE_TIER, feature_key)

        if entitled:
            return FeatureCheckResult(
                entitled=True,
                reason=None,
                current_tier=current_tier,
                required_tier=required_tier,
                upgrade_url=None,
            )

        return FeatureCheckResult(
            entitled=False,
            reason=f"Requires {self.resolver.tier_name(required_tier)} tier or higher",
            current_tier=current_tier,
            required_tier=required_tier,
            upgrade_url=UPGRADE_URL,
        )

    def refresh_stale(self, grandfather: bool = True) -> int:
        """
        Reconcile rows materialized from an older tier_version.

        grandfather=True marks them grandfathered and keeps their limits;
        otherwise they are rematerialized from the current matrix.

        Returns:
            Number of rows touched
        """
        version = self.resolver.version
        with session_or_scope(self.session_factory) as session:
            stale = session.execute(
                select(entitlements.c.user_id, entitlements.c.current_tier, entitlements.c.subscription_id)
                .where(entitlements.c.tier_version != version)
                .where(entitlements.c.grandfathered.is_(False))
            ).all()

            for row in stale:
                if grandfather:
                    session.execute(
                        update(entitlements)
                        .where(entitlements.c.user_id == row.user_id)
                        .values(grandfathered=True, updated_at=datetime.now(timezone.utc))
                    )
                else:
                    self.materialize(
                        session, row.user_id, row.current_tier, subscription_id=row.subscription_id
                    )

        if stale:
            logger.info(
                "[entitlements] refreshed stale rows",
                extra={"count": len(stale), "tier_version": version, "grandfather": grandfather},
            )
        return len(stale)
