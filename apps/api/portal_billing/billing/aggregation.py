from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from portal_billing.billing.pricing import PricingTier, calculate_monthly_price
from portal_billing.billing.tax import calculate_tax


@dataclass(frozen=True, slots=True)
class MonthlyBillingSummary:
    base_fee: int
    base_fee_tax: int
    proration_total: int
    subtotal: int
    tax: int
    total: int


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    subtotal: int
    tax: int
    total: int


def calculate_monthly_billing(
    daily_charges: Iterable[int],
    base_user_count: int,
    tiers: Sequence[PricingTier] | None = None,
) -> MonthlyBillingSummary:
    """Month-to-date view: base fee taxed once for the period, prorations already tax-inclusive.

    ``base_user_count`` is the head count in force on the first of the month.
    """
    base_fee = calculate_monthly_price(base_user_count, tiers).total_price
    base_fee_tax = calculate_tax(base_fee)
    proration_total = sum(daily_charges)
    subtotal = base_fee + proration_total
    return MonthlyBillingSummary(
        base_fee=base_fee,
        base_fee_tax=base_fee_tax,
        proration_total=proration_total,
        subtotal=subtotal,
        tax=base_fee_tax,
        total=subtotal + base_fee_tax,
    )


def calculate_invoice_totals(amounts: Iterable[int]) -> InvoiceTotals:
    """Invoice rule: tax once on the summed pre-tax item amounts."""
    subtotal = sum(amounts)
    tax = calculate_tax(subtotal)
    return InvoiceTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)
