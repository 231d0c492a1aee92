from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date

from sqlalchemy import Select, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from portal_billing.billing.errors import InvoiceNumberConflictError
from portal_billing.billing.models import (
    BillingInvoice,
    BillingInvoiceSequence,
    BillingPricingTier,
    BillingProrationEvent,
)
from portal_billing.billing.numbering import (
    format_invoice_number,
    get_next_invoice_number,
    invoice_number_prefix,
    parse_invoice_sequence,
)

OPEN_INVOICE_STATUSES = ("draft", "sent")


class PricingTierRepository:
    def list_for_tenant(self, session: Session, tenant_id: str | None) -> list[BillingPricingTier]:
        stmt = select(BillingPricingTier).order_by(BillingPricingTier.order)
        if tenant_id is None:
            stmt = stmt.where(BillingPricingTier.tenant_id.is_(None))
        else:
            stmt = stmt.where(BillingPricingTier.tenant_id == tenant_id)
        return list(session.scalars(stmt).all())

    def delete_for_tenant(self, session: Session, tenant_id: str) -> None:
        session.execute(delete(BillingPricingTier).where(BillingPricingTier.tenant_id == tenant_id))


class ProrationEventRepository:
    def list_for_month(self, session: Session, tenant_id: str, billing_month: date) -> list[BillingProrationEvent]:
        stmt = (
            select(BillingProrationEvent)
            .where(
                BillingProrationEvent.tenant_id == tenant_id,
                BillingProrationEvent.billing_month == billing_month,
            )
            .order_by(BillingProrationEvent.sequence)
        )
        return list(session.scalars(stmt).all())

    def latest_sequence(self, session: Session, tenant_id: str, billing_month: date) -> int:
        current = session.scalar(
            select(func.max(BillingProrationEvent.sequence)).where(
                BillingProrationEvent.tenant_id == tenant_id,
                BillingProrationEvent.billing_month == billing_month,
            )
        )
        return current or 0

    def next_sequence(self, session: Session, tenant_id: str, billing_month: date) -> int:
        return self.latest_sequence(session, tenant_id, billing_month) + 1


class InvoiceRepository:
    def get(self, session: Session, invoice_id: uuid.UUID, *, for_update: bool = False) -> BillingInvoice | None:
        stmt = (
            select(BillingInvoice)
            .where(BillingInvoice.id == invoice_id)
            .options(selectinload(BillingInvoice.items))
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    def get_for_month(
        self,
        session: Session,
        tenant_id: str,
        billing_month: date,
        *,
        for_update: bool = False,
    ) -> BillingInvoice | None:
        stmt = (
            select(BillingInvoice)
            .where(BillingInvoice.tenant_id == tenant_id, BillingInvoice.billing_month == billing_month)
            .options(selectinload(BillingInvoice.items))
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    def _filtered(
        self,
        stmt: Select,
        *,
        tenant_id: str | None,
        status: str | None,
        billing_month: date | None,
        year: int | None,
    ) -> Select:
        if tenant_id is not None:
            stmt = stmt.where(BillingInvoice.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(BillingInvoice.status == status)
        if billing_month is not None:
            stmt = stmt.where(BillingInvoice.billing_month == billing_month)
        elif year is not None:
            stmt = stmt.where(
                BillingInvoice.billing_month >= date(year, 1, 1),
                BillingInvoice.billing_month < date(year + 1, 1, 1),
            )
        return stmt

    def list_filtered(
        self,
        session: Session,
        *,
        tenant_id: str | None = None,
        status: str | None = None,
        billing_month: date | None = None,
        year: int | None = None,
    ) -> list[BillingInvoice]:
        stmt = self._filtered(
            select(BillingInvoice).options(selectinload(BillingInvoice.items)),
            tenant_id=tenant_id,
            status=status,
            billing_month=billing_month,
            year=year,
        )
        return list(session.scalars(stmt.order_by(BillingInvoice.invoice_number)).all())

    def totals_by_status(
        self,
        session: Session,
        *,
        tenant_id: str | None = None,
        billing_month: date | None = None,
        year: int | None = None,
    ) -> dict[str, tuple[int, int]]:
        """``{status: (count, sum of total)}`` for the invoices matching the filters."""
        stmt = self._filtered(
            select(BillingInvoice.status, func.count(BillingInvoice.id), func.coalesce(func.sum(BillingInvoice.total), 0)),
            tenant_id=tenant_id,
            status=None,
            billing_month=billing_month,
            year=year,
        ).group_by(BillingInvoice.status)
        return {row[0]: (int(row[1]), int(row[2])) for row in session.execute(stmt).all()}

    def list_open_due_by(self, session: Session, due_until: date) -> list[BillingInvoice]:
        stmt = (
            select(BillingInvoice)
            .where(BillingInvoice.status.in_(OPEN_INVOICE_STATUSES), BillingInvoice.due_date <= due_until)
            .order_by(BillingInvoice.due_date, BillingInvoice.invoice_number)
        )
        return list(session.scalars(stmt).all())


@dataclass(slots=True)
class InvoiceNumberAllocator:
    """Allocates from the ``billing_invoice_sequence`` counter row for the month.

    The counter row is read ``FOR UPDATE`` so concurrent allocations for the
    same month queue behind the first transaction. A missing row is seeded from
    a scan of stored invoice numbers; two transactions seeding the same month
    collide on the primary key and the loser gets
    :class:`InvoiceNumberConflictError`. The caller owns the transaction and
    must roll back before retrying.
    """

    def allocate(self, session: Session, year: int, month: int) -> str:
        counter = session.scalar(
            select(BillingInvoiceSequence)
            .where(BillingInvoiceSequence.year == year, BillingInvoiceSequence.month == month)
            .with_for_update()
        )
        if counter is None:
            existing = session.scalars(
                select(BillingInvoice.invoice_number).where(
                    BillingInvoice.invoice_number.startswith(invoice_number_prefix(year, month))
                )
            ).all()
            seeded = get_next_invoice_number(existing, year, month)
            counter = BillingInvoiceSequence(
                year=year,
                month=month,
                last_value=parse_invoice_sequence(seeded, year, month) or 1,
            )
            session.add(counter)
        else:
            counter.last_value += 1

        try:
            session.flush()
        except IntegrityError as exc:
            raise InvoiceNumberConflictError(year, month, "counter row created concurrently") from exc
        return format_invoice_number(year, month, counter.last_value)
