"""Monthly invoice assembly and the document projection handed to renderers."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Literal

from portal_billing.billing.aggregation import calculate_invoice_totals
from portal_billing.billing.errors import BillingInputError
from portal_billing.billing.numbering import get_next_invoice_number
from portal_billing.billing.pricing import PricingTier, calculate_monthly_price
from portal_billing.billing.proration import ProrationEvent, days_in_month

InvoiceItemSource = Literal["base", "proration", "adjustment"]

DEFAULT_PAYMENT_TERM_DAYS = 30


@dataclass(frozen=True, slots=True)
class InvoiceItem:
    description: str
    quantity: int
    unit_price: int
    amount: int
    source_type: InvoiceItemSource
    period: str | None = None
    source_id: str | None = None
    id: str | None = None


@dataclass(frozen=True, slots=True)
class Invoice:
    invoice_number: str
    tenant_id: str
    tenant_name: str
    billing_month: date
    subtotal: int
    tax: int
    total: int
    due_date: date
    billing_email: str
    status: str = "draft"
    items: tuple[InvoiceItem, ...] = field(default_factory=tuple)
    memo: str | None = None
    sent_date: datetime | None = None
    paid_date: datetime | None = None
    id: str | None = None


def last_day_of_month(billing_month: date) -> date:
    return billing_month.replace(day=days_in_month(billing_month.year, billing_month.month))


def billing_period(billing_month: date) -> str:
    return f"{billing_month.isoformat()} - {last_day_of_month(billing_month).isoformat()}"


def calculate_due_date(billing_month: date, due_days: int = DEFAULT_PAYMENT_TERM_DAYS) -> date:
    return last_day_of_month(billing_month) + timedelta(days=due_days)


def _require_text(name: str, value: str | None) -> str:
    if value is None or not value.strip():
        raise BillingInputError(f"{name} is required")
    return value.strip()


def _base_item(billing_month: date, user_count: int, tiers: Sequence[PricingTier] | None) -> InvoiceItem:
    price = calculate_monthly_price(user_count, tiers).total_price
    month = billing_month.month
    last_day = last_day_of_month(billing_month).day
    return InvoiceItem(
        description=f"Active users {user_count} ({month}/1-{month}/{last_day})",
        quantity=user_count,
        unit_price=price // user_count if user_count else 0,
        amount=price,
        period=billing_period(billing_month),
        source_type="base",
    )


def _proration_item(event: ProrationEvent) -> InvoiceItem:
    users = abs(event.user_delta)
    amount = event.pretax_charge
    day = f"{event.date.month:02d}/{event.date.day:02d}"
    return InvoiceItem(
        description=f"{day} user {event.action} ({users} users, {event.remaining_days} days)",
        quantity=users,
        unit_price=amount // users if users else 0,
        amount=amount,
        period=event.date.isoformat(),
        source_type="proration",
    )


def generate_invoice(
    *,
    tenant_id: str,
    tenant_name: str,
    billing_month: date,
    user_count: int,
    billing_email: str,
    daily_prorations: Sequence[ProrationEvent] | None = None,
    existing_invoices: Iterable[Any] = (),
    pricing_tiers: Sequence[PricingTier] | None = None,
    memo: str | None = None,
    invoice_number: str | None = None,
    due_days: int = DEFAULT_PAYMENT_TERM_DAYS,
) -> Invoice:
    """Build a draft invoice for one tenant and month.

    ``user_count`` is the head count in force on the first of the month; each
    proration event adds a line carrying its pre-tax amount. Tax is computed
    once on the summed subtotal.

    Without an explicit ``invoice_number`` the number comes from a scan of
    ``existing_invoices``, which is only safe under the month's numbering lock.
    """
    tenant_id = _require_text("tenant_id", tenant_id)
    tenant_name = _require_text("tenant_name", tenant_name)
    billing_email = _require_text("billing_email", billing_email)
    if billing_month.day != 1:
        raise BillingInputError(f"billing_month must be the first day of a month, got {billing_month.isoformat()}")

    prorations = list(daily_prorations or ())
    for event in prorations:
        if (event.date.year, event.date.month) != (billing_month.year, billing_month.month):
            raise BillingInputError(
                f"proration dated {event.date.isoformat()} is outside billing month {billing_month:%Y-%m}"
            )

    items = [_base_item(billing_month, user_count, pricing_tiers)]
    items.extend(_proration_item(event) for event in prorations)
    totals = calculate_invoice_totals(item.amount for item in items)

    number = invoice_number or get_next_invoice_number(existing_invoices, billing_month.year, billing_month.month)

    return Invoice(
        invoice_number=number,
        tenant_id=tenant_id,
        tenant_name=tenant_name,
        billing_month=billing_month,
        subtotal=totals.subtotal,
        tax=totals.tax,
        total=totals.total,
        due_date=calculate_due_date(billing_month, due_days),
        billing_email=billing_email,
        items=tuple(items),
        memo=memo,
    )


def format_money(amount: int, currency_symbol: str = "¥") -> str:
    if amount < 0:
        return f"-{currency_symbol}{-amount:,}"
    return f"{currency_symbol}{amount:,}"


def format_invoice_for_document(invoice: Any, issue_date: date, currency_symbol: str = "¥") -> dict[str, Any]:
    """Projection for the PDF/email renderer; the only place money becomes text.

    Accepts an :class:`Invoice` or an ORM row with the same attributes.
    """
    return {
        "invoice_number": invoice.invoice_number,
        "issue_date": issue_date.isoformat(),
        "due_date": invoice.due_date.isoformat(),
        "billing_month": f"{invoice.billing_month:%Y-%m}",
        "tenant_name": invoice.tenant_name,
        "billing_email": invoice.billing_email,
        "items": [
            {
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": format_money(item.unit_price, currency_symbol),
                "amount": format_money(item.amount, currency_symbol),
            }
            for item in invoice.items
        ],
        "subtotal": format_money(invoice.subtotal, currency_symbol),
        "tax": format_money(invoice.tax, currency_symbol),
        "total": format_money(invoice.total, currency_symbol),
        "memo": invoice.memo,
    }
