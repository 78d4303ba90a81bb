"""
ryvynn/features/entitlements/matrix.py

Tier matrix loading and the UNLIMITED sentinel.

The matrix JSON is the only source of tier limits and features. Limits are
either a non-negative int or UNLIMITED; storage encodes UNLIMITED as -1 and
every conversion goes through limit_to_storage / limit_from_storage.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, field_validator


class _Unlimited:
    """Singleton marker for "no ceiling"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNLIMITED"

    def __reduce__(self):
        return (_Unlimited, ())


UNLIMITED = _Unlimited()

Limit = Union[int, _Unlimited]

UNLIMITED_STORAGE = -1
UNLIMITED_JSON = "unlimited"

DEFAULT_MATRIX_PATH = Path(__file__).resolve().parents[2] / "data" / "tier_matrix.json"


class TierMatrixError(ValueError):
    """The tier matrix file is malformed or inconsistent."""


class CounterKind(str, Enum):
    FLAME_CALLS = "flame_calls"
    TRUTH_POSTS = "truth_posts"
    TRUTH_READS = "truth_reads"
    API_CALLS = "api_calls"


# The one mapping from metered action to the tier limit that caps it
COUNTER_LIMIT_FIELDS: Dict[CounterKind, str] = {
    CounterKind.FLAME_CALLS: "flame_conversations_per_day",
    CounterKind.TRUTH_POSTS: "truth_posts_per_day",
    CounterKind.TRUTH_READS: "truth_reads_per_day",
    CounterKind.API_CALLS: "api_calls_per_day",
}

LIMIT_FIELDS: Tuple[str, ...] = (
    "flame_conversations_per_day",
    "truth_posts_per_day",
    "truth_reads_per_day",
    "api_calls_per_day",
    "journal_retention_days",
)


def parse_limit(raw: Any) -> Limit:
    """Parse a matrix value: int >= 0, "unlimited" or null."""
    if raw is UNLIMITED or raw is None:
        return UNLIMITED
    if isinstance(raw, str):
        if raw.strip().lower() == UNLIMITED_JSON:
            return UNLIMITED
        raise TierMatrixError(f"Invalid limit value: {raw!r}")
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise TierMatrixError(f"Invalid limit value: {raw!r}")
    if raw < 0:
        raise TierMatrixError(f"Limit must be non-negative, got {raw}")
    return raw


def limit_to_storage(limit: Limit) -> int:
    if limit is UNLIMITED:
        return UNLIMITED_STORAGE
    return int(limit)


def limit_from_storage(value: Optional[int]) -> Limit:
    if value is None or value < 0:
        return UNLIMITED
    return int(value)


def limit_to_json(limit: Limit) -> Union[int, str]:
    if limit is UNLIMITED:
        return UNLIMITED_JSON
    return int(limit)


def remaining(limit: Limit, used: int) -> Limit:
    if limit is UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


class TierLimits(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    flame_conversations_per_day: Limit
    truth_posts_per_day: Limit
    truth_reads_per_day: Limit
    api_calls_per_day: Limit
    journal_retention_days: Limit = UNLIMITED

    @field_validator(*LIMIT_FIELDS, mode="before")
    @classmethod
    def _parse(cls, value: Any) -> Limit:
        return parse_limit(value)

    def for_kind(self, kind: Union[CounterKind, str]) -> Limit:
        return getattr(self, COUNTER_LIMIT_FIELDS[CounterKind(kind)])

    def to_storage(self) -> Dict[str, int]:
        return {field: limit_to_storage(getattr(self, field)) for field in LIMIT_FIELDS}

    def to_json(self) -> Dict[str, Union[int, str]]:
        return {field: limit_to_json(getattr(self, field)) for field in LIMIT_FIELDS}

    @classmethod
    def from_storage(cls, row: Any) -> "TierLimits":
        return cls(**{field: limit_from_storage(getattr(row, field)) for field in LIMIT_FIELDS})


class FeatureKeyDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    feature_key: str
    display_name: str
    minimum_tier: int
    category: str
    description: str = ""


class TierDefinition(BaseModel):
    """A fully resolved tier: limits, feature set and reward rate."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str = ""
    limits: TierLimits
    features: FrozenSet[str]
    soul_token_earn_rate: int = 1
    pricing: Dict[str, float] = {}
    version: str

    def limit(self, kind: Union[CounterKind, str]) -> Limit:
        return self.limits.for_kind(kind)


class TierMatrix:
    """Validated, immutable view of tier_matrix.json."""

    def __init__(self, version: str, tiers: List[TierDefinition], feature_keys: List[FeatureKeyDefinition]):
        self.version = version
        self._tiers = {tier.id: tier for tier in tiers}
        self._feature_keys = {feature.feature_key: feature for feature in feature_keys}

    @property
    def tiers(self) -> List[TierDefinition]:
        return [self._tiers[tier_id] for tier_id in sorted(self._tiers)]

    @property
    def feature_keys(self) -> List[FeatureKeyDefinition]:
        return sorted(self._feature_keys.values(), key=lambda f: (f.minimum_tier, f.feature_key))

    @property
    def max_tier(self) -> int:
        return max(self._tiers)

    def get_tier(self, tier_id: int) -> Optional[TierDefinition]:
        return self._tiers.get(tier_id)

    def get_feature(self, feature_key: str) -> Optional[FeatureKeyDefinition]:
        return self._feature_keys.get(feature_key)


def parse_tier_matrix(raw: Dict[str, Any]) -> TierMatrix:
    version = raw.get("tier_version")
    if not version:
        raise TierMatrixError("tier_version is required")

    raw_tiers = raw.get("tiers") or []
    ids = [t.get("id") for t in raw_tiers]
    if not ids:
        raise TierMatrixError("tier matrix defines no tiers")
    if len(set(ids)) != len(ids):
        raise TierMatrixError(f"Duplicate tier ids: {ids}")
    if sorted(ids) != list(range(len(ids))):
        raise TierMatrixError(f"Tier ids must be contiguous from 0, got {sorted(ids)}")
    max_tier = len(ids) - 1

    feature_keys = [FeatureKeyDefinition(**f) for f in raw.get("feature_keys") or []]
    seen = set()
    for feature in feature_keys:
        if feature.feature_key in seen:
            raise TierMatrixError(f"Duplicate feature key: {feature.feature_key}")
        seen.add(feature.feature_key)
        if not 0 <= feature.minimum_tier <= max_tier:
            raise TierMatrixError(
                f"Feature {feature.feature_key} has minimum_tier {feature.minimum_tier} outside 0..{max_tier}"
            )

    tiers = []
    for t in raw_tiers:
        try:
            limits = TierLimits(**t["limits"])
        except (KeyError, TypeError, ValueError) as e:
            raise TierMatrixError(f"Invalid limits for tier {t.get('id')}: {e}") from e
        tiers.append(
            TierDefinition(
                id=t["id"],
                name=t["name"],
                description=t.get("description", ""),
                limits=limits,
                features=frozenset(f.feature_key for f in feature_keys if f.minimum_tier <= t["id"]),
                soul_token_earn_rate=t.get("soul_token_earn_rate", 1),
                pricing=t.get("pricing") or {},
                version=version,
            )
        )

    return TierMatrix(version, tiers, feature_keys)


def load_tier_matrix(path: Optional[Union[str, Path]] = None) -> TierMatrix:
    """Load and validate the tier matrix (bundled file by default)."""
    matrix_path = Path(path) if path else DEFAULT_MATRIX_PATH
    with open(matrix_path, encoding="utf-8") as fh:
        raw = json.load(fh)
    return parse_tier_matrix(raw)
