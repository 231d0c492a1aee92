from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from portal_billing.billing.lifecycle import InvoiceStatus, OverduePriority


ProrationActionName = Literal["added", "activated", "deactivated", "deleted"]
BatchOutcome = Literal["created", "superseded", "skipped", "error", "preview"]


def _first_of_month(value: date) -> date:
    if value.day != 1:
        raise ValueError("billing_month must be the first day of a month")
    return value


class PricingTierInput(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    min_users: int = Field(ge=0)
    max_users: int | None = None
    price_per_user: int
    order: int


class PricingTierRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID | str | None
    tenant_id: str | None
    name: str
    min_users: int
    max_users: int | None
    price_per_user: int
    order: int


class PricingTierSetRequest(BaseModel):
    tiers: list[PricingTierInput]


class PricingTierValidationRead(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class TierBreakdownRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tier_name: str
    min_users: int
    max_users: int | None
    price_per_user: int
    users_in_tier: int
    subtotal: int


class PriceQuoteRead(BaseModel):
    tenant_id: str
    user_count: int
    total_price: int
    tax: int
    total_with_tax: int
    breakdown: list[TierBreakdownRead] = Field(default_factory=list)


class UserCountChangeRequest(BaseModel):
    date: date
    action: ProrationActionName
    user_count_before: int = Field(ge=0)
    user_count_after: int = Field(ge=0)


class ProrationEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    billing_month: date
    sequence: int
    event_date: date
    action: str
    user_count_before: int
    user_count_after: int
    days_in_month: int
    remaining_days: int
    monthly_price_before: int
    monthly_price_after: int
    daily_charge: int
    created_at: datetime


class MonthlySummaryRead(BaseModel):
    tenant_id: str
    billing_month: date
    base_user_count: int
    proration_count: int
    base_fee: int
    base_fee_tax: int
    proration_total: int
    subtotal: int
    tax: int
    total: int


class InvoiceItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    description: str
    quantity: int
    unit_price: int
    amount: int
    period: str | None
    source_type: str
    source_id: UUID | None


class InvoiceItemInput(BaseModel):
    description: str = Field(min_length=1)
    quantity: int = Field(ge=0)
    unit_price: int
    amount: int
    period: str | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str
    tenant_id: str
    tenant_name: str
    billing_month: date
    subtotal: int
    tax: int
    total: int
    status: InvoiceStatus | str
    due_date: date
    sent_date: datetime | None
    paid_date: datetime | None
    billing_email: str
    memo: str | None
    ledger_sequence: int
    created_at: datetime
    updated_at: datetime
    items: list[InvoiceItemRead] = Field(default_factory=list)


class GenerateInvoiceRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    tenant_name: str = Field(min_length=1)
    billing_email: str = Field(min_length=3)
    billing_month: date
    user_count: int = Field(ge=0)
    memo: str | None = None

    @field_validator("billing_month")
    @classmethod
    def check_billing_month(cls, value: date) -> date:
        return _first_of_month(value)


class TenantBillingInput(BaseModel):
    tenant_id: str = Field(min_length=1)
    tenant_name: str = Field(min_length=1)
    billing_email: str = Field(min_length=3)
    user_count: int = Field(ge=0)
    memo: str | None = None


class BatchInvoiceRequest(BaseModel):
    billing_month: date
    tenants: list[TenantBillingInput] = Field(min_length=1)
    dry_run: bool = False

    @field_validator("billing_month")
    @classmethod
    def check_billing_month(cls, value: date) -> date:
        return _first_of_month(value)


class BatchInvoiceResult(BaseModel):
    tenant_id: str
    outcome: BatchOutcome
    invoice_id: UUID | None = None
    invoice_number: str | None = None
    subtotal: int | None = None
    tax: int | None = None
    total: int | None = None
    detail: str | None = None


class BatchInvoiceSummary(BaseModel):
    billing_month: date
    dry_run: bool
    created: int = 0
    superseded: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[BatchInvoiceResult] = Field(default_factory=list)


class InvoiceUpdateRequest(BaseModel):
    memo: str | None = None
    billing_email: str | None = Field(default=None, min_length=3)
    due_date: date | None = None
    items: list[InvoiceItemInput] | None = Field(default=None, min_length=1)


class SendInvoiceRequest(BaseModel):
    sent_date: datetime | None = None


class MarkInvoicePaidRequest(BaseModel):
    paid_date: datetime | None = None


class InvoiceDocumentItemRead(BaseModel):
    description: str
    quantity: int
    unit_price: str
    amount: str


class InvoiceDocumentRead(BaseModel):
    invoice_number: str
    issue_date: str
    due_date: str
    billing_month: str
    tenant_name: str
    billing_email: str
    items: list[InvoiceDocumentItemRead]
    subtotal: str
    tax: str
    total: str
    memo: str | None


class InvoiceStatusTotalsRead(BaseModel):
    status: InvoiceStatus
    count: int
    amount: int


class InvoiceStatusSummaryRead(BaseModel):
    statuses: list[InvoiceStatusTotalsRead]
    total_count: int
    total_amount: int


class OverdueInvoiceRead(BaseModel):
    invoice_id: UUID
    invoice_number: str
    tenant_id: str
    tenant_name: str
    status: InvoiceStatus | str
    due_date: date
    amount: int
    days_overdue: int
    priority: OverduePriority


class UpcomingInvoiceRead(BaseModel):
    invoice_id: UUID
    invoice_number: str
    tenant_id: str
    tenant_name: str
    status: InvoiceStatus | str
    due_date: date
    amount: int
    days_until_due: int


class OverdueReportRead(BaseModel):
    checked_on: date
    overdue_count: int = 0
    overdue_amount: int = 0
    upcoming_count: int = 0
    upcoming_amount: int = 0
    overdue: list[OverdueInvoiceRead] = Field(default_factory=list)
    upcoming: list[UpcomingInvoiceRead] = Field(default_factory=list)
