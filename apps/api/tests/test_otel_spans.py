from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_billing.core.config import get_settings
from portal_billing.core.database import Base, get_db
from portal_billing.main import app
from portal_billing.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("billing-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _generate(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/billing/invoices/generate",
        json={
            "tenant_id": "tenant-otel",
            "tenant_name": "Tenant OTel",
            "billing_email": "billing@tenant-otel.example",
            "billing_month": "2025-11-01",
            "user_count": 30,
        },
        headers={"X-Correlation-Id": correlation_id, "X-Tenant-Id": "tenant-otel"},
    )
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_and_tenant(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    _generate(client, "otel-corr-1")

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("billing.tenant_id") == "tenant-otel" for span in spans)


def test_invoice_generation_span_records_number(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    invoice = _generate(client, "otel-corr-2")

    generate_spans = [span for span in span_exporter.get_finished_spans() if span.name == "billing.invoice.generate"]
    assert generate_spans
    assert any(
        span.attributes.get("billing.tenant_id") == "tenant-otel"
        and span.attributes.get("billing.month") == "2025-11"
        and span.attributes.get("billing.invoice_number") == invoice["invoice_number"]
        and span.attributes.get("billing.attempts") == 1
        for span in generate_spans
    )
