from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Literal

from portal_billing.billing.errors import ImmutableInvoiceError, InvoiceStateError, UnbilledProrationError
from portal_billing.billing.invoices import Invoice

InvoiceStatus = Literal["draft", "sent", "paid"]
OverduePriority = Literal["low", "normal", "high", "urgent"]

VALID_INVOICE_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"sent", "paid"}),
    "sent": frozenset({"paid"}),
    "paid": frozenset(),
}

FINANCIAL_FIELDS: frozenset[str] = frozenset({"items", "subtotal", "tax", "total"})

# (minimum days overdue, priority), highest first
OVERDUE_PRIORITIES: tuple[tuple[int, OverduePriority], ...] = ((30, "urgent"), (14, "high"), (7, "normal"))


def assert_transition_allowed(current: str, target: str) -> None:
    if current not in VALID_INVOICE_TRANSITIONS:
        raise InvoiceStateError(f"unknown invoice status '{current}'")
    if target not in VALID_INVOICE_TRANSITIONS:
        raise InvoiceStateError(f"unknown invoice status '{target}'")
    if target not in VALID_INVOICE_TRANSITIONS[current]:
        raise InvoiceStateError(f"invoice cannot move from {current} to {target}")


def transition_invoice(
    invoice: Invoice,
    target: InvoiceStatus,
    *,
    sent_date: datetime | None = None,
    paid_date: datetime | None = None,
) -> Invoice:
    """Return a copy of ``invoice`` in ``target`` status; the input is not modified."""
    assert_transition_allowed(invoice.status, target)
    if target == "sent":
        if sent_date is None:
            raise InvoiceStateError("sent_date is required to send an invoice")
        return replace(invoice, status="sent", sent_date=sent_date)
    if paid_date is None:
        raise InvoiceStateError("paid_date is required to mark an invoice paid")
    return replace(invoice, status="paid", paid_date=paid_date)


def ensure_financials_mutable(status: str, fields: Iterable[str], invoice_number: str | None = None) -> None:
    touched = FINANCIAL_FIELDS.intersection(fields)
    if status == "paid" and touched:
        raise ImmutableInvoiceError(invoice_number, list(touched))


def ensure_ledger_billed(status: str, billed_sequence: int, latest_sequence: int, invoice_number: str | None = None) -> None:
    """A draft only covers ledger rows up to ``billed_sequence``; sending or paying it must not drop later rows."""
    if status == "draft" and latest_sequence > billed_sequence:
        raise UnbilledProrationError(invoice_number, latest_sequence - billed_sequence)


def overdue_priority(days_overdue: int) -> OverduePriority:
    for threshold, priority in OVERDUE_PRIORITIES:
        if days_overdue >= threshold:
            return priority
    return "low"
