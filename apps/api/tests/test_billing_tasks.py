from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_billing import events
from portal_billing.billing import tasks
from portal_billing.billing.models import BillingInvoice
from portal_billing.context import get_correlation_id
from portal_billing.core.config import get_settings
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


@pytest.fixture(autouse=True)
def patch_session(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


PAYLOAD = {
    "billing_month": "2025-11-01",
    "tenants": [
        {"tenant_id": "tenant-a", "tenant_name": "Tenant A", "billing_email": "a@tenant.example", "user_count": 49},
        {"tenant_id": "tenant-b", "tenant_name": "Tenant B", "billing_email": "b@tenant.example", "user_count": 54},
    ],
}


def test_month_end_task_generates_every_tenant(db_session: Session) -> None:
    result = tasks.generate_monthly_invoices_task(PAYLOAD)

    assert (result["created"], result["skipped"], result["errors"]) == (2, 0, 0)
    assert [item["invoice_number"] for item in result["results"]] == ["INV-2025-11-001", "INV-2025-11-002"]
    assert [item["total"] for item in result["results"]] == [45_320, 49_720]

    stored = db_session.scalars(select(BillingInvoice).order_by(BillingInvoice.invoice_number)).all()
    assert [invoice.tenant_id for invoice in stored] == ["tenant-a", "tenant-b"]


def test_rerunning_the_batch_skips_existing_invoices() -> None:
    tasks.generate_monthly_invoices_task(PAYLOAD)

    rerun = tasks.run_monthly_invoice_batch(PAYLOAD)

    assert (rerun["created"], rerun["skipped"]) == (0, 2)
    assert [item["outcome"] for item in rerun["results"]] == ["skipped", "skipped"]


def test_batch_events_use_batch_correlation_id() -> None:
    tasks.run_monthly_invoice_batch(PAYLOAD)

    generated = [item for item in events.published_events if item["event_type"] == "invoice.generated"]
    assert [item["correlation_id"] for item in generated] == ["batch-2025-11", "batch-2025-11"]
    assert get_correlation_id() is None


def test_dry_run_previews_without_numbers(db_session: Session) -> None:
    result = tasks.run_monthly_invoice_batch({**PAYLOAD, "dry_run": True, "correlation_id": "ops-preview"})

    assert [item["outcome"] for item in result["results"]] == ["preview", "preview"]
    assert all(item["invoice_number"] is None for item in result["results"])
    assert db_session.scalars(select(BillingInvoice)).all() == []


def test_overdue_task_reports_unpaid_invoices() -> None:
    tasks.generate_monthly_invoices_task(PAYLOAD)

    report = tasks.check_overdue_invoices_task({"as_of": "2026-01-15"})

    assert report["checked_on"] == "2026-01-15"
    assert [(item["invoice_number"], item["days_overdue"], item["priority"]) for item in report["overdue"]] == [
        ("INV-2025-11-001", 16, "high"),
        ("INV-2025-11-002", 16, "high"),
    ]
    assert report["overdue_amount"] == 45_320 + 49_720
    overdue_events = [item for item in events.published_events if item["event_type"] == "invoice.overdue"]
    assert {item["correlation_id"] for item in overdue_events} == {"overdue-2026-01-15"}
    assert get_correlation_id() is None


def test_overdue_task_lists_invoices_falling_due() -> None:
    tasks.generate_monthly_invoices_task(PAYLOAD)

    report = tasks.run_overdue_check({"as_of": "2025-12-27", "upcoming_days": 3})

    assert report["overdue"] == []
    assert [item["days_until_due"] for item in report["upcoming"]] == [3, 3]
