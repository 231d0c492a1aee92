from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from portal_billing.billing.schemas import (
    BatchInvoiceRequest,
    BatchInvoiceSummary,
    GenerateInvoiceRequest,
    InvoiceDocumentRead,
    InvoiceRead,
    InvoiceStatus,
    InvoiceStatusSummaryRead,
    InvoiceUpdateRequest,
    MarkInvoicePaidRequest,
    MonthlySummaryRead,
    OverdueReportRead,
    PriceQuoteRead,
    PricingTierRead,
    PricingTierSetRequest,
    PricingTierValidationRead,
    ProrationEventRead,
    SendInvoiceRequest,
    UserCountChangeRequest,
)
from portal_billing.billing.service import billing_service
from portal_billing.core.database import get_db


router = APIRouter(prefix="/billing", tags=["billing"])


def _month_start(year: int, month: int) -> date:
    return date(year, month, 1)


@router.get("/tenants/{tenant_id}/pricing-tiers", response_model=list[PricingTierRead])
def list_pricing_tiers(tenant_id: str, db: Session = Depends(get_db)) -> list[PricingTierRead]:
    return billing_service.list_pricing_tiers(db, tenant_id)


@router.put("/tenants/{tenant_id}/pricing-tiers", response_model=list[PricingTierRead])
def replace_pricing_tiers(
    tenant_id: str,
    payload: PricingTierSetRequest,
    db: Session = Depends(get_db),
) -> list[PricingTierRead]:
    return billing_service.replace_pricing_tiers(db, tenant_id, payload)


@router.post("/pricing-tiers/validate", response_model=PricingTierValidationRead)
def validate_pricing_tiers(payload: PricingTierSetRequest) -> PricingTierValidationRead:
    return billing_service.validate_pricing_tiers(payload)


@router.get("/tenants/{tenant_id}/quote", response_model=PriceQuoteRead)
def quote_price(
    tenant_id: str,
    user_count: int = Query(ge=0),
    db: Session = Depends(get_db),
) -> PriceQuoteRead:
    return billing_service.quote_price(db, tenant_id, user_count)


@router.post(
    "/tenants/{tenant_id}/proration-events",
    response_model=ProrationEventRead,
    status_code=status.HTTP_201_CREATED,
)
def record_user_count_change(
    tenant_id: str,
    payload: UserCountChangeRequest,
    db: Session = Depends(get_db),
) -> ProrationEventRead:
    return billing_service.record_user_count_change(db, tenant_id, payload)


@router.get("/tenants/{tenant_id}/proration-events", response_model=list[ProrationEventRead])
def list_proration_events(
    tenant_id: str,
    year: int = Query(ge=2000, le=9999),
    month: int = Query(ge=1, le=12),
    db: Session = Depends(get_db),
) -> list[ProrationEventRead]:
    return billing_service.list_proration_events(db, tenant_id, _month_start(year, month))


@router.get("/tenants/{tenant_id}/monthly-summary", response_model=MonthlySummaryRead)
def get_monthly_summary(
    tenant_id: str,
    year: int = Query(ge=2000, le=9999),
    month: int = Query(ge=1, le=12),
    base_user_count: int = Query(ge=0),
    db: Session = Depends(get_db),
) -> MonthlySummaryRead:
    return billing_service.get_monthly_summary(db, tenant_id, _month_start(year, month), base_user_count)


@router.post("/invoices/generate", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def generate_monthly_invoice(payload: GenerateInvoiceRequest, db: Session = Depends(get_db)) -> InvoiceRead:
    return billing_service.generate_monthly_invoice(db, payload)


@router.post("/invoices/batch", response_model=BatchInvoiceSummary)
def generate_invoices_for_month(payload: BatchInvoiceRequest, db: Session = Depends(get_db)) -> BatchInvoiceSummary:
    return billing_service.generate_invoices_for_month(db, payload)


@router.get("/invoices", response_model=list[InvoiceRead])
def list_invoices(
    tenant_id: str | None = Query(default=None, min_length=1),
    invoice_status: InvoiceStatus | None = Query(default=None, alias="status"),
    year: int | None = Query(default=None, ge=2000, le=9999),
    month: int | None = Query(default=None, ge=1, le=12),
    db: Session = Depends(get_db),
) -> list[InvoiceRead]:
    return billing_service.list_invoices(
        db,
        tenant_id=tenant_id,
        invoice_status=invoice_status,
        year=year,
        month=month,
    )


@router.get("/invoices/summary", response_model=InvoiceStatusSummaryRead)
def summarize_invoices(
    tenant_id: str | None = Query(default=None, min_length=1),
    year: int | None = Query(default=None, ge=2000, le=9999),
    month: int | None = Query(default=None, ge=1, le=12),
    db: Session = Depends(get_db),
) -> InvoiceStatusSummaryRead:
    return billing_service.summarize_invoices(db, tenant_id=tenant_id, year=year, month=month)


@router.get("/invoices/overdue", response_model=OverdueReportRead)
def check_overdue_invoices(
    as_of: date | None = Query(default=None),
    upcoming_days: int | None = Query(default=None, ge=0, le=90),
    db: Session = Depends(get_db),
) -> OverdueReportRead:
    return billing_service.check_overdue_invoices(db, as_of, upcoming_days)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: uuid.UUID, db: Session = Depends(get_db)) -> InvoiceRead:
    return billing_service.get_invoice(db, invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceRead)
def update_invoice(
    invoice_id: uuid.UUID,
    payload: InvoiceUpdateRequest,
    db: Session = Depends(get_db),
) -> InvoiceRead:
    return billing_service.update_invoice(db, invoice_id, payload)


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceRead)
def send_invoice(
    invoice_id: uuid.UUID,
    payload: SendInvoiceRequest | None = None,
    db: Session = Depends(get_db),
) -> InvoiceRead:
    return billing_service.send_invoice(db, invoice_id, payload or SendInvoiceRequest())


@router.post("/invoices/{invoice_id}/mark-paid", response_model=InvoiceRead)
def mark_invoice_paid(
    invoice_id: uuid.UUID,
    payload: MarkInvoicePaidRequest | None = None,
    db: Session = Depends(get_db),
) -> InvoiceRead:
    return billing_service.mark_invoice_paid(db, invoice_id, payload or MarkInvoicePaidRequest())


@router.get("/invoices/{invoice_id}/document", response_model=InvoiceDocumentRead)
def get_invoice_document(
    invoice_id: uuid.UUID,
    issue_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> InvoiceDocumentRead:
    return billing_service.get_invoice_document(db, invoice_id, issue_date)
