from __future__ import annotations

import logging
from datetime import date
from typing import Any

from portal_billing.billing.schemas import BatchInvoiceRequest
from portal_billing.billing.service import billing_service
from portal_billing.context import reset_correlation_id, set_correlation_id
from portal_billing.core.celery_app import celery_app
from portal_billing.core.database import SessionLocal

logger = logging.getLogger("portal_billing.billing.tasks")


def run_monthly_invoice_batch(payload: dict[str, Any], session_factory=None) -> dict[str, Any]:
    """Month-end batch entry point shared by the celery task and operators' scripts."""
    request = BatchInvoiceRequest.model_validate(payload)
    factory = session_factory or SessionLocal
    token = set_correlation_id(payload.get("correlation_id") or f"batch-{request.billing_month:%Y-%m}")
    session = factory()
    try:
        summary = billing_service.generate_invoices_for_month(session, request)
    finally:
        session.close()
        reset_correlation_id(token)
    return summary.model_dump(mode="json")


@celery_app.task(name="portal_billing.billing.generate_monthly_invoices")
def generate_monthly_invoices_task(payload: dict[str, Any]) -> dict[str, Any]:
    logger.info("billing.batch.started", extra={"billing_month": payload.get("billing_month")})
    return run_monthly_invoice_batch(payload)


def run_overdue_check(payload: dict[str, Any] | None = None, session_factory=None) -> dict[str, Any]:
    payload = payload or {}
    as_of = date.fromisoformat(payload["as_of"]) if payload.get("as_of") else date.today()
    factory = session_factory or SessionLocal
    token = set_correlation_id(payload.get("correlation_id") or f"overdue-{as_of.isoformat()}")
    session = factory()
    try:
        report = billing_service.check_overdue_invoices(session, as_of, payload.get("upcoming_days"))
    finally:
        session.close()
        reset_correlation_id(token)
    return report.model_dump(mode="json")


@celery_app.task(name="portal_billing.billing.check_overdue_invoices")
def check_overdue_invoices_task(payload: dict[str, Any] | None = None) -> dict[str, Any]:
    """Daily sweep of unpaid invoices past or near their due date."""
    return run_overdue_check(payload)
