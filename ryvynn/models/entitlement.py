"""
ryvynn/models/entitlement.py

Materialized entitlement for one user.

An Entitlement is the stored copy of a tier's limits and features at the
time it was last synced. Grandfathered rows keep limits from an older
tier_version until the next billing-driven sync.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict

from ryvynn.features.entitlements.matrix import CounterKind, Limit, TierLimits


class Entitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    current_tier: int
    tier_version: str
    grandfathered: bool = False
    limits: TierLimits
    features: FrozenSet[str]
    subscription_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    def limit(self, kind: CounterKind) -> Limit:
        return self.limits.for_kind(kind)

    def has_feature(self, feature_key: str) -> bool:
        return feature_key in self.features

    def to_public(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "current_tier": self.current_tier,
            "tier_version": self.tier_version,
            "grandfathered": self.grandfathered,
            "limits": self.limits.to_json(),
            "features": sorted(self.features),
            "subscription_id": self.subscription_id,
        }
