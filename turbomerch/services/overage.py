"""
Overage arithmetic and the quota decision policy.

Everything here is pure: no database access, no clock. The usage meter feeds
in the numbers from the active usage record and the user's tier.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from pydantic import BaseModel

from turbomerch.config.tiers import CENTS, TierConfig
from turbomerch.models.usage import UsageRecord

logger = logging.getLogger(__name__)

# Reported allowance for admin accounts
UNLIMITED = 999_999


def to_money(amount) -> Decimal:
    """Round a currency amount to cents"""
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OverageCalculation:
    allowance: int
    used: int
    gross_overage: int     # designs beyond the allowance
    overage: int           # gross overage not yet settled
    overage_charge: Decimal
    price_per_design: Decimal
    within_allowance: bool
    soft_cap_reached: bool
    hard_cap_reached: bool


def calculate_overage(
    tier: TierConfig,
    used: int,
    allowance: Optional[int] = None,
    settled: int = 0,
) -> OverageCalculation:
    """
    Quote overage for a period total at the tier's current price.

    Used for decisions and previews. Stored records keep the charge priced
    at accrual time (see accrue_on_record).

    Args:
        tier: Tier whose price and caps apply
        used: Designs used in the period
        allowance: Period allowance snapshot, defaults to the tier allowance
        settled: Overage designs already settled by a reconciliation
    """
    allowance = tier.design_allowance if allowance is None else allowance
    gross = max(0, used - allowance)
    overage = max(0, gross - settled)
    price = to_money(tier.overage_price_per_design)

    if tier.overage_enabled:
        hard_cap_reached = gross >= tier.overage_hard_cap
    else:
        hard_cap_reached = used >= allowance

    return OverageCalculation(
        allowance=allowance,
        used=used,
        gross_overage=gross,
        overage=overage,
        overage_charge=to_money(price * overage),
        price_per_design=price,
        within_allowance=used <= allowance,
        soft_cap_reached=used >= allowance,
        hard_cap_reached=hard_cap_reached,
    )


def billable_overage(record: UsageRecord) -> int:
    """Overage designs on the record not yet settled by a reconciliation"""
    return max(
        0,
        record.designs_used_in_period - record.designs_allowance - (record.overage_settled_designs or 0),
    )


def refresh_caps(record: UsageRecord, tier: TierConfig) -> None:
    """Recompute the soft and hard cap flags from the period totals"""
    calc = calculate_overage(
        tier,
        record.designs_used_in_period,
        allowance=record.designs_allowance,
        settled=record.overage_settled_designs or 0,
    )
    record.soft_cap_reached = calc.soft_cap_reached
    record.hard_cap_reached = calc.hard_cap_reached


def accrue_on_record(record: UsageRecord, tier: TierConfig, count: int) -> Decimal:
    """
    Add `count` designs to the record's period total.

    Only the newly billable overage is priced, at `tier`'s current price.
    Overage accrued earlier in the period keeps the price it was accrued at,
    and the record's tier and price snapshot are left alone.

    Returns:
        The charge added by this accrual
    """
    before = billable_overage(record)
    record.designs_used_in_period += count
    after = billable_overage(record)

    added = to_money(to_money(tier.overage_price_per_design) * (after - before))
    record.overage_designs = after
    record.overage_charge = to_money(to_money(record.overage_charge or 0) + added)
    refresh_caps(record, tier)
    return added


def repair_record(record: UsageRecord, tier: TierConfig) -> None:
    """
    Bring drifted overage columns back in line with the period totals.

    Designs added or removed by the repair are priced at the record's own
    price snapshot; the rest of the accrued charge is kept.
    """
    expected = billable_overage(record)
    stored = record.overage_designs or 0
    charge = to_money(record.overage_charge or 0)

    if expected == 0:
        charge = Decimal("0.00")
    elif expected != stored:
        price = to_money(record.overage_price_per_design or 0)
        charge = max(Decimal("0.00"), to_money(charge + price * (expected - stored)))

    record.overage_designs = expected
    record.overage_charge = charge
    refresh_caps(record, tier)


def settle_overage(record: UsageRecord, designs: int, charge: Decimal) -> None:
    """Mark `designs` overage designs worth `charge` as settled"""
    record.overage_settled_designs = (record.overage_settled_designs or 0) + designs
    record.overage_designs = billable_overage(record)
    if record.overage_designs == 0:
        record.overage_charge = Decimal("0.00")
    else:
        remaining = to_money(record.overage_charge or 0) - to_money(charge)
        record.overage_charge = max(Decimal("0.00"), to_money(remaining))


def record_is_consistent(record: UsageRecord) -> bool:
    """True when the stored overage columns agree with the period totals"""
    expected = billable_overage(record)
    if record.overage_designs != expected:
        return False
    charge = to_money(record.overage_charge or 0)
    if charge < 0:
        return False
    return expected > 0 or charge == 0


class OverageDecision(BaseModel):
    """Outcome of a quota check. Never persisted."""
    allowed: bool
    reason: Optional[str] = None
    tier: str
    allowance: int
    used: int
    remaining: int
    requested: int
    overage_count: int = 0
    overage_charge: Decimal = Decimal("0.00")
    in_overage: bool = False
    hard_cap_reached: bool = False
    warning: Optional[str] = None

    def usage_snapshot(self) -> Dict[str, Any]:
        """Usage block returned to the frontend"""
        return {
            "tier": self.tier,
            "allowance": self.allowance,
            "used": self.used,
            "remaining": self.remaining,
            "overage": self.overage_count,
            "overageCharge": float(self.overage_charge),
            "inOverage": self.in_overage,
        }


def evaluate_request(
    tier: TierConfig,
    used: int,
    allowance: int,
    requested: int,
    settled: int = 0,
    enforce_batch_limit: bool = True,
    accrued: Optional[Decimal] = None,
) -> OverageDecision:
    """
    Decide whether `requested` more designs may be generated.

    Checks, in order: batch size, fits in allowance, overage disabled,
    hard cap, allowed with overage. Recording skips the batch-size check
    since the batch has already been generated.

    `accrued` is the charge already stored on the period's record; new
    overage is quoted at the tier's current price on top of it.
    """
    remaining = max(0, allowance - used)
    projected = used + requested
    projected_gross = max(0, projected - allowance)
    current = calculate_overage(tier, used, allowance=allowance, settled=settled)
    current_charge = to_money(accrued) if accrued is not None else current.overage_charge

    base = dict(
        tier=tier.name,
        allowance=allowance,
        used=used,
        remaining=remaining,
        requested=requested,
    )

    if enforce_batch_limit and requested > tier.max_per_run:
        return OverageDecision(
            allowed=False,
            reason=(
                f"Your {tier.display_name} plan allows maximum {tier.max_per_run} "
                f"designs per run. You requested {requested}."
            ),
            overage_count=current.overage,
            overage_charge=current_charge,
            in_overage=current.gross_overage > 0,
            **base,
        )

    if projected <= allowance:
        return OverageDecision(allowed=True, **base)

    if not tier.overage_enabled:
        return OverageDecision(
            allowed=False,
            reason=(
                f"Design quota exceeded, no overage available: you've used {used} of "
                f"{allowance} designs on the {tier.display_name} plan. Upgrade to continue creating designs."
            ),
            overage_count=current.overage,
            overage_charge=current_charge,
            in_overage=current.gross_overage > 0,
            hard_cap_reached=True,
            **base,
        )

    if projected_gross > tier.overage_hard_cap:
        left = max(0, tier.overage_hard_cap - current.gross_overage)
        return OverageDecision(
            allowed=False,
            reason=(
                f"Hard cap reached: this would exceed the {tier.overage_hard_cap} overage designs "
                f"allowed on the {tier.display_name} plan. You can generate {left} more designs this period."
            ),
            overage_count=current.overage,
            overage_charge=current_charge,
            in_overage=current.gross_overage > 0,
            hard_cap_reached=True,
            **base,
        )

    projected_calc = calculate_overage(tier, projected, allowance=allowance, settled=settled)
    additional = to_money(projected_calc.overage_charge - current.overage_charge)
    warning = None
    if used <= allowance:
        warning = (
            f"This request goes past your {allowance} included designs and will incur "
            f"an overage charge of ${additional} ({projected_calc.overage} x ${projected_calc.price_per_design})."
        )

    return OverageDecision(
        allowed=True,
        overage_count=projected_calc.overage,
        overage_charge=to_money(current_charge + additional),
        in_overage=True,
        warning=warning,
        **base,
    )


def admin_decision(tier: TierConfig, requested: int) -> OverageDecision:
    """Admins generate without metering"""
    return OverageDecision(
        allowed=True,
        tier=tier.name,
        allowance=UNLIMITED,
        used=0,
        remaining=UNLIMITED,
        requested=requested,
    )


def usage_snapshot_from_record(record: UsageRecord) -> Dict[str, Any]:
    """Usage block for a persisted record"""
    return {
        "tier": record.tier,
        "allowance": record.designs_allowance,
        "used": record.designs_used_in_period,
        "remaining": max(0, record.designs_allowance - record.designs_used_in_period),
        "overage": record.overage_designs,
        "overageCharge": float(record.overage_charge or 0),
        "inOverage": record.designs_used_in_period > record.designs_allowance,
        "periodEnd": record.billing_period_end.isoformat() if record.billing_period_end else None,
    }
