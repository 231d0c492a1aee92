from __future__ import annotations

import pytest

from portal_billing.billing.errors import BillingInputError, PricingConfigurationError
from portal_billing.billing.pricing import (
    DEFAULT_PRICING_TIERS,
    PricingTier,
    calculate_monthly_price,
    ensure_valid_pricing_tiers,
    validate_pricing_tiers,
)


def _tier(name: str, min_users: int, max_users: int | None, price: int, order: int) -> PricingTier:
    return PricingTier(name=name, min_users=min_users, max_users=max_users, price_per_user=price, order=order)


def test_default_schedule_prices_49_users_across_two_tiers() -> None:
    result = calculate_monthly_price(49)

    assert result.total_price == 41_200
    assert result.user_count == 49
    assert [(item.tier_name, item.users_in_tier, item.subtotal) for item in result.breakdown] == [
        ("Starter", 10, 10_000),
        ("Standard", 39, 31_200),
    ]


def test_default_schedule_reaches_unbounded_tier() -> None:
    result = calculate_monthly_price(54)

    assert result.total_price == 45_200
    assert [item.users_in_tier for item in result.breakdown] == [10, 40, 4]
    assert sum(item.subtotal for item in result.breakdown) == result.total_price


def test_zero_users_costs_nothing() -> None:
    result = calculate_monthly_price(0)

    assert result.total_price == 0
    assert result.breakdown == ()


def test_negative_user_count_is_rejected() -> None:
    with pytest.raises(BillingInputError):
        calculate_monthly_price(-1)


def test_tiers_are_applied_in_order_not_list_position() -> None:
    tiers = [
        _tier("Bulk", 6, None, 50, 2),
        _tier("First", 1, 5, 100, 1),
    ]

    result = calculate_monthly_price(8, tiers)

    assert result.total_price == 5 * 100 + 3 * 50
    assert [item.tier_name for item in result.breakdown] == ["First", "Bulk"]


def test_breakdown_accounts_for_every_user() -> None:
    for user_count in (1, 10, 11, 50, 51, 500):
        result = calculate_monthly_price(user_count)
        assert sum(item.users_in_tier for item in result.breakdown) == user_count
        assert sum(item.subtotal for item in result.breakdown) == result.total_price


def test_breakdown_accounts_for_every_user_on_tenant_schedules() -> None:
    schedules = [
        [_tier("Team", 1, 20, 500, 1), _tier("Scale", 21, None, 300, 2)],
        [_tier("Seed", 1, 5, 1_200, 1), _tier("Grow", 6, 25, 900, 2), _tier("Scale", 26, None, 700, 3)],
    ]
    for tiers in schedules:
        assert validate_pricing_tiers(tiers) == []
        for user_count in (1, 5, 6, 20, 21, 25, 26, 300):
            result = calculate_monthly_price(user_count, tiers)
            assert sum(item.users_in_tier for item in result.breakdown) == user_count
            assert sum(item.subtotal for item in result.breakdown) == result.total_price

    assert calculate_monthly_price(25, schedules[0]).total_price == 20 * 500 + 5 * 300
    assert calculate_monthly_price(30, schedules[1]).total_price == 5 * 1_200 + 20 * 900 + 5 * 700


def test_default_schedule_is_valid() -> None:
    assert validate_pricing_tiers(list(DEFAULT_PRICING_TIERS)) == []


def test_empty_schedule_is_invalid() -> None:
    assert validate_pricing_tiers([]) == ["at least one pricing tier is required"]


def test_first_tier_must_start_at_one() -> None:
    errors = validate_pricing_tiers([_tier("A", 2, 10, 100, 1), _tier("B", 11, None, 90, 2)])

    assert any("must start at 1 user" in error for error in errors)


def test_gap_between_tiers_is_reported() -> None:
    errors = validate_pricing_tiers([_tier("A", 1, 10, 100, 1), _tier("B", 12, None, 90, 2)])

    assert any("not contiguous" in error and "expected min_users 11" in error for error in errors)


def test_overlapping_tiers_are_reported() -> None:
    errors = validate_pricing_tiers([_tier("A", 1, 10, 100, 1), _tier("B", 10, None, 90, 2)])

    assert any("not contiguous" in error for error in errors)


def test_multiple_unbounded_tiers_are_reported() -> None:
    errors = validate_pricing_tiers([_tier("A", 1, None, 100, 1), _tier("B", 11, None, 90, 2)])

    assert "unbounded tier 'A' must be the last tier" in errors
    assert "exactly one tier may be unbounded, found 2" in errors


def test_missing_unbounded_tier_is_reported() -> None:
    errors = validate_pricing_tiers([_tier("A", 1, 10, 100, 1), _tier("B", 11, 50, 90, 2)])

    assert "the last tier must be unbounded (max_users = null)" in errors


def test_inverted_bounds_and_negative_prices_are_reported() -> None:
    errors = validate_pricing_tiers(
        [
            _tier("A", 1, 10, -5, 1),
            _tier("B", 11, 5, 90, 2),
            _tier("C", 6, None, 80, 3),
        ]
    )

    assert "tier 'A' has a negative price_per_user" in errors
    assert any("tier 'B' has max_users 5 below min_users 11" == error for error in errors)


def test_duplicate_orders_are_reported() -> None:
    errors = validate_pricing_tiers([_tier("A", 1, 10, 100, 1), _tier("B", 11, None, 90, 1)])

    assert "tier order values must be unique" in errors


def test_ensure_valid_raises_with_error_list() -> None:
    with pytest.raises(PricingConfigurationError) as exc_info:
        ensure_valid_pricing_tiers([_tier("A", 2, None, 100, 1)])

    assert exc_info.value.errors == ["first tier 'A' must start at 1 user (starts at 2)"]
