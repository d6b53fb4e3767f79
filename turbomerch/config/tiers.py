"""
Tier Configuration
Design allowances, batch limits and overage pricing for each subscription tier
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional

from turbomerch.models.user import SubscriptionTier
from turbomerch.services.exceptions import UnknownTierError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class TierConfig:
    """Immutable limits and overage pricing for one tier"""
    name: str
    display_name: str
    monthly_price: Decimal
    design_allowance: int
    max_per_run: int
    overage_enabled: bool
    overage_price_per_design: Decimal
    overage_hard_cap: int

    def __post_init__(self):
        if self.design_allowance < 0 or self.max_per_run < 1:
            raise ValueError(f"Invalid limits for tier {self.name}")
        if not self.overage_enabled and self.overage_hard_cap != 0:
            raise ValueError(f"Tier {self.name} has a hard cap but overage is disabled")


# Default tier table (mirrors the public pricing page)
DEFAULT_TIERS: Dict[str, TierConfig] = {
    SubscriptionTier.FREE.value: TierConfig(
        name="free",
        display_name="Free",
        monthly_price=Decimal("0.00"),
        design_allowance=3,
        max_per_run=1,
        overage_enabled=False,
        overage_price_per_design=Decimal("0.00"),
        overage_hard_cap=0,
    ),
    SubscriptionTier.STARTER.value: TierConfig(
        name="starter",
        display_name="Starter",
        monthly_price=Decimal("19.99"),
        design_allowance=15,
        max_per_run=1,
        overage_enabled=True,
        overage_price_per_design=Decimal("2.00"),
        overage_hard_cap=10,
    ),
    SubscriptionTier.PRO.value: TierConfig(
        name="pro",
        display_name="Pro",
        monthly_price=Decimal("59.99"),
        design_allowance=60,
        max_per_run=5,
        overage_enabled=True,
        overage_price_per_design=Decimal("1.50"),
        overage_hard_cap=20,
    ),
    SubscriptionTier.BUSINESS.value: TierConfig(
        name="business",
        display_name="Business",
        monthly_price=Decimal("99.99"),
        design_allowance=110,
        max_per_run=10,
        overage_enabled=True,
        overage_price_per_design=Decimal("1.25"),
        overage_hard_cap=30,
    ),
    SubscriptionTier.ENTERPRISE.value: TierConfig(
        name="enterprise",
        display_name="Enterprise",
        monthly_price=Decimal("199.99"),
        design_allowance=250,
        max_per_run=10,
        overage_enabled=True,
        overage_price_per_design=Decimal("1.00"),
        overage_hard_cap=100,
    ),
}

FALLBACK_TIER = SubscriptionTier.FREE.value


class TierTable(Mapping):
    """
    Read-only tier lookup, built once at startup and passed to the usage meter.

    Strict lookups (`get_tier_config`) raise UnknownTierError; `resolve` is the
    legacy-data path and falls back to the free tier.
    """

    def __init__(self, tiers: Mapping[str, TierConfig]):
        missing = {t.value for t in SubscriptionTier} - set(tiers)
        if missing:
            raise ValueError(f"Tier table is missing tiers: {sorted(missing)}")
        self._tiers = MappingProxyType(dict(tiers))

    def __getitem__(self, tier_name: str) -> TierConfig:
        return self._tiers[tier_name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)

    def get_tier_config(self, tier_name: str) -> TierConfig:
        """Get configuration for a tier, raising UnknownTierError for unrecognized names"""
        tier = self._tiers.get((tier_name or "").lower())
        if tier is None:
            raise UnknownTierError(tier_name)
        return tier

    def resolve(self, tier_name: Optional[str]) -> TierConfig:
        """Get configuration for a tier, treating unknown tiers as free"""
        try:
            return self.get_tier_config(tier_name)
        except UnknownTierError:
            logger.error(f"Unknown tier '{tier_name}' in user data, resolving as '{FALLBACK_TIER}'")
            return self._tiers[FALLBACK_TIER]

    def with_overrides(self, **tiers: TierConfig) -> "TierTable":
        """Return a new table with some tiers replaced"""
        merged = dict(self._tiers)
        merged.update(tiers)
        return TierTable(merged)


def _tier_from_dict(name: str, data: Dict[str, Any], base: TierConfig) -> TierConfig:
    """Overlay JSON values on a default tier"""
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key in ("monthly_price", "overage_price_per_design"):
            values[key] = Decimal(str(value)).quantize(CENTS)
        elif key in ("design_allowance", "max_per_run", "overage_hard_cap"):
            values[key] = int(value)
        elif key == "overage_enabled":
            values[key] = bool(value)
        elif key == "display_name":
            values[key] = str(value)
        else:
            raise ValueError(f"Unknown field '{key}' for tier {name}")
    return replace(base, **values)


def load_tier_table(path: Optional[str] = None) -> TierTable:
    """
    Build the tier table for this process.

    Starts from DEFAULT_TIERS; when TIER_CONFIG_PATH (or `path`) points at a JSON
    file of {"tier": {field: value}}, those values override the defaults.
    """
    path = path or os.getenv("TIER_CONFIG_PATH")
    tiers = dict(DEFAULT_TIERS)

    if path:
        with open(path, "r", encoding="utf-8") as fh:
            overrides = json.load(fh)
        for name, data in overrides.items():
            if name not in tiers:
                raise UnknownTierError(name)
            tiers[name] = _tier_from_dict(name, data, tiers[name])
        logger.info(f"Loaded tier overrides from {path}: {sorted(overrides)}")

    return TierTable(tiers)
