"""Day-weighted charges for mid-month user-count changes.

The day of the change is billed. Each event carries everything needed to
replay it: the counts on both sides, both monthly prices and the day counts.
"""

from __future__ import annotations

import calendar
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from typing import Literal, get_args

from portal_billing.billing.errors import BillingInputError
from portal_billing.billing.pricing import PricingTier, calculate_monthly_price
from portal_billing.billing.tax import calculate_total_with_tax, remove_tax

ProrationAction = Literal["added", "activated", "deactivated", "deleted"]
PRORATION_ACTIONS: frozenset[str] = frozenset(get_args(ProrationAction))


@dataclass(frozen=True, slots=True)
class ProrationEvent:
    date: date
    action: ProrationAction
    user_count_before: int
    user_count_after: int
    days_in_month: int
    remaining_days: int
    monthly_price_before: int
    monthly_price_after: int
    daily_charge: int

    @property
    def user_delta(self) -> int:
        return self.user_count_after - self.user_count_before

    @property
    def pretax_charge(self) -> int:
        return remove_tax(self.daily_charge)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def remaining_days(on: date) -> int:
    return days_in_month(on.year, on.month) - on.day + 1


def calculate_daily_proration(
    on: date,
    action: str,
    user_count_before: int,
    user_count_after: int,
    tiers: Sequence[PricingTier] | None = None,
) -> ProrationEvent:
    if action not in PRORATION_ACTIONS:
        raise BillingInputError(f"unknown proration action '{action}'")

    price_before = calculate_monthly_price(user_count_before, tiers).total_price
    price_after = calculate_monthly_price(user_count_after, tiers).total_price

    total_days = days_in_month(on.year, on.month)
    days_left = remaining_days(on)
    # Floor division keeps credits (negative deltas) rounding away from zero.
    pretax = ((price_after - price_before) * days_left) // total_days

    return ProrationEvent(
        date=on,
        action=action,  # type: ignore[arg-type]
        user_count_before=user_count_before,
        user_count_after=user_count_after,
        days_in_month=total_days,
        remaining_days=days_left,
        monthly_price_before=price_before,
        monthly_price_after=price_after,
        daily_charge=calculate_total_with_tax(pretax),
    )
