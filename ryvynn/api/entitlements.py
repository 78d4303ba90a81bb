"""
Entitlement API routes.

- GET /v1/entitlements/me: Current tier, limits, features, today's usage
- GET /v1/entitlements/features/{feature_key}: Feature gate check
- GET /v1/entitlements/tiers: Public tier catalogue
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from ryvynn.api.deps import current_user, get_services, Services
from ryvynn.features.entitlements.matrix import CounterKind, limit_to_json


router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


@router.get("/me")
def get_my_entitlements(
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    entitlement = services.entitlements.ensure(user_id)
    usage = {}
    for kind in CounterKind:
        snapshot = services.meter.peek(user_id, kind)
        usage[kind.value] = {
            "used": snapshot.current,
            "limit": limit_to_json(snapshot.limit),
            "remaining": limit_to_json(snapshot.remaining),
        }

    body = entitlement.to_public()
    body["tier_name"] = services.entitlements.resolver.tier_name(entitlement.current_tier)
    body["usage"] = usage
    return body


@router.get("/features/{feature_key}")
def check_feature(
    feature_key: str,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = services.entitlements.check_feature(user_id, feature_key)
    return {
        "feature_key": feature_key,
        "entitled": result.entitled,
        "reason": result.reason,
        "current_tier": result.current_tier,
        "required_tier": result.required_tier,
        "upgrade_url": result.upgrade_url,
    }


@router.get("/tiers")
def list_tiers(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """No auth: the pricing page renders from this."""
    resolver = services.entitlements.resolver
    tiers: List[Dict[str, Any]] = [
        {
            "id": tier.id,
            "name": tier.name,
            "description": tier.description,
            "limits": tier.limits.to_json(),
            "features": sorted(tier.features),
            "soul_token_earn_rate": tier.soul_token_earn_rate,
            "pricing": tier.pricing,
        }
        for tier in resolver.tiers()
    ]
    return {"tier_version": resolver.version, "tiers": tiers}
