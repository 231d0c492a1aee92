from __future__ import annotations

from portal_billing.billing.aggregation import calculate_invoice_totals, calculate_monthly_billing
from portal_billing.billing.pricing import PricingTier


def test_month_without_changes_is_base_fee_plus_tax() -> None:
    summary = calculate_monthly_billing([], 49)

    assert summary.base_fee == 41_200
    assert summary.base_fee_tax == 4_120
    assert summary.proration_total == 0
    assert summary.subtotal == 41_200
    assert summary.tax == 4_120
    assert summary.total == 45_320


def test_proration_charges_keep_their_sign() -> None:
    summary = calculate_monthly_billing([1_612, -1_613], 49)

    assert summary.proration_total == -1
    assert summary.subtotal == 41_199
    assert summary.tax == 4_120
    assert summary.total == 41_200 + 4_120 - 1


def test_summary_uses_given_tiers() -> None:
    tiers = [PricingTier(name="Flat", min_users=1, max_users=None, price_per_user=500, order=1)]

    summary = calculate_monthly_billing([110], 4, tiers)

    assert summary.base_fee == 2_000
    assert summary.total == 2_000 + 200 + 110


def test_invoice_totals_tax_the_summed_subtotal() -> None:
    totals = calculate_invoice_totals([41_200, 1_466])

    assert totals.subtotal == 42_666
    assert totals.tax == 4_266
    assert totals.total == 46_932


def test_month_to_date_view_and_invoice_rule_can_differ_by_rounding() -> None:
    # Two small prorations each lose their tax to truncation when taxed one at a time.
    summary = calculate_monthly_billing([5, 5], 49)
    totals = calculate_invoice_totals([41_200, 5, 5])

    assert summary.total == 45_330
    assert totals.total == 45_331
