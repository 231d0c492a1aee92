"""Consumption tax at a fixed rate on integer yen amounts.

Tax is truncated toward zero. Every total in the engine goes through
:func:`calculate_tax`, so invoices reconcile to the yen.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from portal_billing.billing.errors import BillingInputError

TAX_RATE = Decimal("0.10")


def calculate_tax(subtotal: int) -> int:
    return int((Decimal(subtotal) * TAX_RATE).to_integral_value(rounding=ROUND_DOWN))


def calculate_total_with_tax(subtotal: int) -> int:
    return subtotal + calculate_tax(subtotal)


def remove_tax(total_with_tax: int) -> int:
    """Return the pre-tax amount ``x`` with ``calculate_total_with_tax(x) == total_with_tax``.

    Truncation makes ``calculate_total_with_tax`` odd and strictly increasing,
    so the inverse is unique when it exists. Amounts that no integer maps to
    (for example 10 at a 10% rate) raise :class:`BillingInputError`.
    """
    if total_with_tax < 0:
        return -remove_tax(-total_with_tax)

    candidate = int((Decimal(total_with_tax) / (1 + TAX_RATE)).to_integral_value(rounding=ROUND_DOWN))
    for pretax in (candidate - 1, candidate, candidate + 1, candidate + 2):
        if pretax >= 0 and calculate_total_with_tax(pretax) == total_with_tax:
            return pretax
    raise BillingInputError(f"{total_with_tax} is not a tax-inclusive amount at rate {TAX_RATE}")
