from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_billing import events
from portal_billing.context import tenant_id_from_request
from portal_billing.core.config import get_settings
from portal_billing.core.database import Base, get_db
from portal_billing.main import app


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header(client: TestClient) -> None:
    response = client.get(f"/billing/invoices/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.headers.get("x-correlation-id")


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/billing/invoices/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})

    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"


def test_invoice_events_carry_request_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/billing/invoices/generate",
        json={
            "tenant_id": "tenant-a",
            "tenant_name": "Tenant A",
            "billing_email": "billing@tenant-a.example",
            "billing_month": "2025-11-01",
            "user_count": 49,
        },
        headers={"X-Correlation-Id": "corr-invoice-1"},
    )
    assert response.status_code == 201

    generated = [item for item in events.published_events if item.get("event_type") == "invoice.generated"]
    assert generated
    assert generated[-1]["correlation_id"] == "corr-invoice-1"
    assert generated[-1]["invoice_number"] == "INV-2025-11-001"


def test_tenant_resolved_from_header_before_path() -> None:
    assert tenant_id_from_request({"x-tenant-id": "tenant-h"}, "/billing/tenants/tenant-p/quote") == "tenant-h"
    assert tenant_id_from_request({}, "/billing/tenants/tenant-p/quote") == "tenant-p"
    assert tenant_id_from_request({}, "/billing/tenants/tenant-p") == "tenant-p"
    assert tenant_id_from_request({}, "/billing/invoices") is None
