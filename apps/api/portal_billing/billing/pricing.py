"""Tiered per-user pricing.

A schedule is a list of contiguous user-count bands. The monthly price for a
head count is cumulative: each band charges its own per-user price for the
users that fall inside it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from portal_billing.billing.errors import BillingInputError, PricingConfigurationError


@dataclass(frozen=True, slots=True)
class PricingTier:
    name: str
    min_users: int
    max_users: int | None
    price_per_user: int
    order: int
    id: str | None = None
    tenant_id: str | None = None


@dataclass(frozen=True, slots=True)
class TierBreakdown:
    tier_name: str
    min_users: int
    max_users: int | None
    price_per_user: int
    users_in_tier: int
    subtotal: int


@dataclass(frozen=True, slots=True)
class PricingCalculationResult:
    total_price: int
    breakdown: tuple[TierBreakdown, ...]
    user_count: int


DEFAULT_PRICING_TIERS: tuple[PricingTier, ...] = (
    PricingTier(id="default-starter", name="Starter", min_users=1, max_users=10, price_per_user=1000, order=1),
    PricingTier(id="default-standard", name="Standard", min_users=11, max_users=50, price_per_user=800, order=2),
    PricingTier(id="default-volume", name="Volume", min_users=51, max_users=None, price_per_user=800, order=3),
)


def sort_tiers(tiers: Sequence[PricingTier]) -> list[PricingTier]:
    return sorted(tiers, key=lambda tier: tier.order)


def calculate_monthly_price(user_count: int, tiers: Sequence[PricingTier] | None = None) -> PricingCalculationResult:
    """Price ``user_count`` users against ``tiers`` (the default schedule when omitted).

    The schedule is not validated here; callers holding tenant-configured tiers
    run :func:`validate_pricing_tiers` before the schedule is stored.
    """
    if user_count < 0:
        raise BillingInputError(f"user_count must be >= 0, got {user_count}")
    if user_count == 0:
        return PricingCalculationResult(total_price=0, breakdown=(), user_count=0)

    schedule = sort_tiers(DEFAULT_PRICING_TIERS if tiers is None else tiers)
    remaining = user_count
    total_price = 0
    breakdown: list[TierBreakdown] = []

    for tier in schedule:
        if remaining <= 0:
            break
        if tier.max_users is not None:
            users_in_tier = min(remaining, tier.max_users - tier.min_users + 1)
        else:
            users_in_tier = remaining
        subtotal = users_in_tier * tier.price_per_user
        breakdown.append(
            TierBreakdown(
                tier_name=tier.name,
                min_users=tier.min_users,
                max_users=tier.max_users,
                price_per_user=tier.price_per_user,
                users_in_tier=users_in_tier,
                subtotal=subtotal,
            )
        )
        total_price += subtotal
        remaining -= users_in_tier

    return PricingCalculationResult(total_price=total_price, breakdown=tuple(breakdown), user_count=user_count)


def validate_pricing_tiers(tiers: Sequence[PricingTier]) -> list[str]:
    """Return human-readable problems with a tier schedule; empty when valid."""
    if not tiers:
        return ["at least one pricing tier is required"]

    errors: list[str] = []
    schedule = sort_tiers(tiers)

    orders = [tier.order for tier in schedule]
    if len(set(orders)) != len(orders):
        errors.append("tier order values must be unique")

    first = schedule[0]
    if first.min_users != 1:
        errors.append(f"first tier '{first.name}' must start at 1 user (starts at {first.min_users})")

    for tier in schedule:
        if tier.price_per_user < 0:
            errors.append(f"tier '{tier.name}' has a negative price_per_user")
        if tier.max_users is not None and tier.max_users < tier.min_users:
            errors.append(f"tier '{tier.name}' has max_users {tier.max_users} below min_users {tier.min_users}")

    for previous, current in zip(schedule, schedule[1:]):
        if previous.max_users is None:
            errors.append(f"unbounded tier '{previous.name}' must be the last tier")
            continue
        if current.min_users != previous.max_users + 1:
            errors.append(
                f"tiers '{previous.name}' and '{current.name}' are not contiguous: "
                f"expected min_users {previous.max_users + 1}, got {current.min_users}"
            )

    unbounded = [tier for tier in schedule if tier.max_users is None]
    if not unbounded:
        errors.append("the last tier must be unbounded (max_users = null)")
    elif len(unbounded) > 1:
        errors.append(f"exactly one tier may be unbounded, found {len(unbounded)}")

    return errors


def ensure_valid_pricing_tiers(tiers: Sequence[PricingTier]) -> None:
    errors = validate_pricing_tiers(tiers)
    if errors:
        raise PricingConfigurationError(errors)
