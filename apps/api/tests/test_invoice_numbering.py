from __future__ import annotations

import ast
import inspect
from collections.abc import Generator
from dataclasses import dataclass
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_billing.billing import numbering
from portal_billing.billing.models import BillingInvoice, BillingInvoiceSequence
from portal_billing.billing.numbering import (
    format_invoice_number,
    get_next_invoice_number,
    parse_invoice_sequence,
)
from portal_billing.billing.repository import InvoiceNumberAllocator
from portal_billing.core.database import Base


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@dataclass
class _Stored:
    invoice_number: str


def test_next_number_follows_highest_sequence_in_month() -> None:
    assert get_next_invoice_number(["INV-2025-11-001", "INV-2025-11-002"], 2025, 11) == "INV-2025-11-003"
    assert get_next_invoice_number([], 2025, 11) == "INV-2025-11-001"


def test_next_number_ignores_other_months_and_malformed_numbers() -> None:
    existing = ["INV-2025-10-009", "INV-2024-11-004", "INV-2025-11-00x", "legacy-17", "INV-2025-11-002"]

    assert get_next_invoice_number(existing, 2025, 11) == "INV-2025-11-003"


def test_next_number_accepts_records_and_mappings() -> None:
    existing = [_Stored("INV-2025-11-004"), {"invoice_number": "INV-2025-11-007"}, {"other": 1}]

    assert get_next_invoice_number(existing, 2025, 11) == "INV-2025-11-008"


def test_sequence_widens_past_three_digits() -> None:
    assert get_next_invoice_number(["INV-2025-11-999"], 2025, 11) == "INV-2025-11-1000"
    assert parse_invoice_sequence("INV-2025-11-1000", 2025, 11) == 1000


def test_format_and_parse() -> None:
    assert format_invoice_number(2026, 1, 12) == "INV-2026-01-012"
    assert parse_invoice_sequence("INV-2026-01-012", 2026, 1) == 12
    assert parse_invoice_sequence("INV-2026-01-012", 2026, 2) is None


def _stored_invoice(number: str, tenant_id: str) -> BillingInvoice:
    return BillingInvoice(
        invoice_number=number,
        tenant_id=tenant_id,
        tenant_name=tenant_id.title(),
        billing_month=date(2025, 11, 1),
        subtotal=0,
        tax=0,
        total=0,
        due_date=date(2025, 12, 30),
        billing_email=f"billing@{tenant_id}.example",
    )


def test_allocator_bootstraps_counter_from_stored_invoices(db_session: Session) -> None:
    db_session.add(_stored_invoice("INV-2025-11-004", "tenant-legacy"))
    db_session.commit()

    allocator = InvoiceNumberAllocator()
    first = allocator.allocate(db_session, 2025, 11)
    second = allocator.allocate(db_session, 2025, 11)
    db_session.commit()

    assert (first, second) == ("INV-2025-11-005", "INV-2025-11-006")
    counter = db_session.scalar(
        select(BillingInvoiceSequence).where(BillingInvoiceSequence.year == 2025, BillingInvoiceSequence.month == 11)
    )
    assert counter is not None
    assert counter.last_value == 6


def test_allocator_counts_each_month_separately(db_session: Session) -> None:
    allocator = InvoiceNumberAllocator()

    assert allocator.allocate(db_session, 2025, 11) == "INV-2025-11-001"
    assert allocator.allocate(db_session, 2025, 12) == "INV-2025-12-001"
    assert allocator.allocate(db_session, 2025, 11) == "INV-2025-11-002"


def test_rolled_back_allocation_leaves_no_gap(db_session: Session) -> None:
    allocator = InvoiceNumberAllocator()
    assert allocator.allocate(db_session, 2025, 11) == "INV-2025-11-001"
    db_session.commit()

    assert allocator.allocate(db_session, 2025, 11) == "INV-2025-11-002"
    db_session.rollback()

    assert allocator.allocate(db_session, 2025, 11) == "INV-2025-11-002"


def test_number_helpers_do_not_import_persistence() -> None:
    tree = ast.parse(inspect.getsource(numbering))
    imported: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            imported.update(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module:
            imported.add(node.module)

    assert not any(name.startswith(("sqlalchemy", "portal_billing")) for name in imported)
