"""Invoice numbers of the form ``INV-YYYY-MM-NNN``.

Numbers are gap-free within a calendar month and shared by all tenants.
:func:`get_next_invoice_number` is the plain scan over a snapshot; it is only
safe when the caller already holds the month's counter lock (see
``repository.InvoiceNumberAllocator``).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

INVOICE_NUMBER_PREFIX = "INV"


def invoice_number_prefix(year: int, month: int) -> str:
    return f"{INVOICE_NUMBER_PREFIX}-{year}-{month:02d}-"


def format_invoice_number(year: int, month: int, sequence: int) -> str:
    return f"{invoice_number_prefix(year, month)}{sequence:03d}"


def parse_invoice_sequence(invoice_number: str, year: int, month: int) -> int | None:
    prefix = invoice_number_prefix(year, month)
    if not invoice_number.startswith(prefix):
        return None
    tail = invoice_number[len(prefix):]
    if not tail.isdigit():
        return None
    return int(tail)


def _number_of(invoice: Any) -> str | None:
    if isinstance(invoice, str):
        return invoice
    if isinstance(invoice, Mapping):
        value = invoice.get("invoice_number")
    else:
        value = getattr(invoice, "invoice_number", None)
    return value if isinstance(value, str) else None


def get_next_invoice_number(existing_invoices: Iterable[Any], year: int, month: int) -> str:
    max_sequence = 0
    for invoice in existing_invoices:
        number = _number_of(invoice)
        if number is None:
            continue
        sequence = parse_invoice_sequence(number, year, month)
        if sequence is not None and sequence > max_sequence:
            max_sequence = sequence
    return format_invoice_number(year, month, max_sequence + 1)
