"""
Stripe price id <-> (tier, cadence) mapping.

OMEGA pricing (tiers 1-5, monthly and annual) is the only supported
scheme. Paid tiers and their names come from the tier matrix; each name
picks its STRIPE_PRICE_ID_<NAME>_<CADENCE> settings. Unset price ids fall back to placeholders so lookups stay total;
validate() reports which ones are still placeholders.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ryvynn.core.errors import UnknownPriceError, ValidationError
from ryvynn.features.entitlements.matrix import TierMatrix
from ryvynn.features.entitlements.service import FREE_TIER


CADENCES = ("monthly", "annual")

PLACEHOLDER_MARKER = "PLACEHOLDER"


def placeholder_price_id(tier_name: str, cadence: str) -> str:
    return f"price_{PLACEHOLDER_MARKER}_{tier_name.lower()}_{cadence}"


def settings_key(tier_name: str, cadence: str) -> str:
    return f"STRIPE_PRICE_ID_{tier_name.upper()}_{cadence.upper()}"


@dataclass(frozen=True)
class TierPrice:
    tier: int
    tier_name: str
    cadence: str
    price_id: str

    @property
    def is_placeholder(self) -> bool:
        return PLACEHOLDER_MARKER in self.price_id


class PriceMap:
    def __init__(self, prices: List[TierPrice]):
        self._by_price: Dict[str, TierPrice] = {}
        self._by_tier: Dict[Tuple[int, str], TierPrice] = {}
        for price in prices:
            if price.price_id in self._by_price:
                raise ValueError(f"Price id {price.price_id} mapped to more than one tier")
            self._by_price[price.price_id] = price
            self._by_tier[(price.tier, price.cadence)] = price

    @classmethod
    def from_settings(cls, settings_obj, matrix: TierMatrix) -> "PriceMap":
        """One entry per paid tier in the matrix and cadence; tier names pick the settings keys."""
        prices = []
        for definition in matrix.tiers:
            if definition.id == FREE_TIER:
                continue
            tier, name = definition.id, definition.name
            for cadence in CADENCES:
                configured = getattr(settings_obj, settings_key(name, cadence), None)
                prices.append(
                    TierPrice(
                        tier=tier,
                        tier_name=name,
                        cadence=cadence,
                        price_id=configured or placeholder_price_id(name, cadence),
                    )
                )
        return cls(prices)

    def lookup(self, price_id: Optional[str]) -> TierPrice:
        price = self._by_price.get(price_id) if price_id else None
        if price is None:
            raise UnknownPriceError(price_id)
        return price

    def tier_for_price(self, price_id: Optional[str]) -> int:
        return self.lookup(price_id).tier

    def cadence_for_price(self, price_id: Optional[str]) -> str:
        return self.lookup(price_id).cadence

    def price_for_tier(self, tier: int, cadence: str = "monthly") -> str:
        price = self._by_tier.get((tier, cadence))
        if price is None:
            raise ValidationError(f"No price for tier {tier} ({cadence})")
        return price.price_id

    def validate(self) -> List[str]:
        """Human-readable names of entries still using placeholder ids."""
        return [
            f"{price.tier_name} {price.cadence}"
            for price in self._by_tier.values()
            if price.is_placeholder
        ]

    @property
    def paid_tiers(self) -> List[int]:
        return sorted({tier for tier, _ in self._by_tier})
