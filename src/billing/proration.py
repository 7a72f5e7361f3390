"""Proration calculator — mid-period plan change adjustments.

Pure functions only. Amounts are integer minor units; the signed total is
rounded once, half away from zero, so per-component rounding never drifts.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import Protocol


class PricedPlan(Protocol):
    price: int
    currency: str


def elapsed_fraction(period_start: datetime, period_end: datetime, at: datetime) -> Fraction:
    """Fraction of ``[period_start, period_end]`` elapsed at ``at``, clamped to [0, 1]."""
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        return Fraction(1)
    elapsed = Fraction((at - period_start).total_seconds()) / Fraction(total)
    return min(max(elapsed, Fraction(0)), Fraction(1))


def _as_fraction(value: Fraction | Decimal | float | int) -> Fraction:
    if isinstance(value, float):
        return Fraction(Decimal(str(value)))
    return Fraction(value)


def prorate(old_plan: PricedPlan, new_plan: PricedPlan, elapsed: Fraction | Decimal | float | int) -> int:
    """Signed adjustment for switching plans after ``elapsed`` of the period.

    Negative results are a credit (downgrade), positive results a charge
    (upgrade). Switching to the same price always yields zero.
    """
    if old_plan.currency.lower() != new_plan.currency.lower():
        raise ValueError(f"Cannot prorate between {old_plan.currency} and {new_plan.currency}")

    fraction = _as_fraction(elapsed)
    if not 0 <= fraction <= 1:
        raise ValueError(f"Elapsed fraction must be between 0 and 1, got {elapsed}")

    remaining = 1 - fraction
    credit = -Fraction(old_plan.price) * remaining
    charge = Fraction(new_plan.price) * remaining
    total = credit + charge

    exact = Decimal(total.numerator) / Decimal(total.denominator)
    return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))
