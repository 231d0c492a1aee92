from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from portal_billing.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingPricingTier(Base):
    __tablename__ = "billing_pricing_tier"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    min_users: Mapped[int] = mapped_column(Integer, nullable=False)
    max_users: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_per_user: Mapped[int] = mapped_column(BigInteger, nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "order", name="uq_billing_pricing_tier_tenant_order"),
        Index("ix_billing_pricing_tier_tenant", "tenant_id"),
    )


class BillingProrationEvent(Base):
    __tablename__ = "billing_proration_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    billing_month: Mapped[date] = mapped_column(Date(), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_date: Mapped[date] = mapped_column(Date(), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    user_count_before: Mapped[int] = mapped_column(Integer, nullable=False)
    user_count_after: Mapped[int] = mapped_column(Integer, nullable=False)
    days_in_month: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_days: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_price_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    monthly_price_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    daily_charge: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "billing_month", "sequence", name="uq_billing_proration_event_sequence"),
        Index("ix_billing_proration_event_scope", "tenant_id", "billing_month"),
    )


class BillingInvoice(Base):
    __tablename__ = "billing_invoice"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_month: Mapped[date] = mapped_column(Date(), nullable=False)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    tax: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft", server_default="draft")
    due_date: Mapped[date] = mapped_column(Date(), nullable=False)
    sent_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    billing_email: Mapped[str] = mapped_column(String(320), nullable=False)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    ledger_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items: Mapped[list[BillingInvoiceItem]] = relationship(
        "portal_billing.billing.models.BillingInvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BillingInvoiceItem.position",
    )

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_billing_invoice_number"),
        UniqueConstraint("tenant_id", "billing_month", name="uq_billing_invoice_tenant_month"),
        Index("ix_billing_invoice_status_due", "status", "due_date"),
    )


class BillingInvoiceItem(Base):
    __tablename__ = "billing_invoice_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("billing_invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    period: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    invoice: Mapped[BillingInvoice] = relationship("portal_billing.billing.models.BillingInvoice", back_populates="items")

    __table_args__ = (
        Index("ix_billing_invoice_item_invoice", "invoice_id"),
    )


class BillingInvoiceSequence(Base):
    __tablename__ = "billing_invoice_sequence"

    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
