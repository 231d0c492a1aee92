from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal_billing import events
from portal_billing.billing.aggregation import calculate_invoice_totals, calculate_monthly_billing
from portal_billing.billing.errors import (
    BillingError,
    BillingInputError,
    InvoiceNumberConflictError,
    InvoiceStateError,
    PricingConfigurationError,
)
from portal_billing.billing.invoices import (
    Invoice,
    InvoiceItem,
    format_invoice_for_document,
    generate_invoice,
)
from portal_billing.billing.lifecycle import (
    VALID_INVOICE_TRANSITIONS,
    ensure_financials_mutable,
    ensure_ledger_billed,
    overdue_priority,
    transition_invoice,
)
from portal_billing.billing.models import (
    BillingInvoice,
    BillingInvoiceItem,
    BillingPricingTier,
    BillingProrationEvent,
    utcnow,
)
from portal_billing.billing.pricing import (
    DEFAULT_PRICING_TIERS,
    PricingTier,
    calculate_monthly_price,
    ensure_valid_pricing_tiers,
    validate_pricing_tiers,
)
from portal_billing.billing.proration import PRORATION_ACTIONS, ProrationEvent, calculate_daily_proration
from portal_billing.billing.repository import (
    InvoiceNumberAllocator,
    InvoiceRepository,
    PricingTierRepository,
    ProrationEventRepository,
)
from portal_billing.billing.schemas import (
    BatchInvoiceRequest,
    BatchInvoiceResult,
    BatchInvoiceSummary,
    GenerateInvoiceRequest,
    InvoiceDocumentRead,
    InvoiceRead,
    InvoiceStatusSummaryRead,
    InvoiceStatusTotalsRead,
    InvoiceUpdateRequest,
    MarkInvoicePaidRequest,
    MonthlySummaryRead,
    OverdueInvoiceRead,
    OverdueReportRead,
    PriceQuoteRead,
    PricingTierRead,
    PricingTierSetRequest,
    PricingTierValidationRead,
    ProrationEventRead,
    SendInvoiceRequest,
    TierBreakdownRead,
    UpcomingInvoiceRead,
    UserCountChangeRequest,
)
from portal_billing.billing.tax import calculate_tax
from portal_billing.core.config import get_settings
from portal_billing.metrics import (
    observe_invoice_generated,
    observe_invoice_number_conflict,
    observe_invoice_transition,
    observe_overdue_invoice,
    observe_proration_event,
    observe_proration_ledger_conflict,
    observe_tier_validation_failure,
)

logger = logging.getLogger("portal_billing.billing")
tracer = trace.get_tracer("portal_billing.billing")


@dataclass(slots=True)
class BillingService:
    pricing_tier_repository: PricingTierRepository = field(default_factory=PricingTierRepository)
    proration_repository: ProrationEventRepository = field(default_factory=ProrationEventRepository)
    invoice_repository: InvoiceRepository = field(default_factory=InvoiceRepository)
    number_allocator: InvoiceNumberAllocator = field(default_factory=InvoiceNumberAllocator)

    # Pricing tiers

    def list_pricing_tiers(self, session: Session, tenant_id: str) -> list[PricingTierRead]:
        rows = self.pricing_tier_repository.list_for_tenant(session, tenant_id)
        if not rows:
            rows = self.pricing_tier_repository.list_for_tenant(session, None)
        if rows:
            return [PricingTierRead.model_validate(row) for row in rows]
        return [PricingTierRead.model_validate(tier) for tier in DEFAULT_PRICING_TIERS]

    def replace_pricing_tiers(
        self,
        session: Session,
        tenant_id: str,
        payload: PricingTierSetRequest,
    ) -> list[PricingTierRead]:
        tiers = [PricingTier(**item.model_dump()) for item in payload.tiers]
        try:
            ensure_valid_pricing_tiers(tiers)
        except PricingConfigurationError as exc:
            observe_tier_validation_failure()
            logger.warning("billing.pricing_tiers.rejected", extra={"tenant_id": tenant_id, "error": "; ".join(exc.errors)})
            raise self._http_error(exc) from exc

        self.pricing_tier_repository.delete_for_tenant(session, tenant_id)
        for tier in tiers:
            session.add(
                BillingPricingTier(
                    tenant_id=tenant_id,
                    name=tier.name,
                    min_users=tier.min_users,
                    max_users=tier.max_users,
                    price_per_user=tier.price_per_user,
                    order=tier.order,
                )
            )
        session.commit()

        events.publish(
            {
                "event_type": "billing.pricing_tiers.replaced",
                "tenant_id": tenant_id,
                "tier_count": len(tiers),
            }
        )
        logger.info("billing.pricing_tiers.replaced", extra={"tenant_id": tenant_id})
        return self.list_pricing_tiers(session, tenant_id)

    def validate_pricing_tiers(self, payload: PricingTierSetRequest) -> PricingTierValidationRead:
        errors = validate_pricing_tiers([PricingTier(**item.model_dump()) for item in payload.tiers])
        return PricingTierValidationRead(valid=not errors, errors=errors)

    def quote_price(self, session: Session, tenant_id: str, user_count: int) -> PriceQuoteRead:
        try:
            result = calculate_monthly_price(user_count, self._resolve_tiers(session, tenant_id))
        except BillingError as exc:
            raise self._http_error(exc)
        tax = calculate_tax(result.total_price)
        return PriceQuoteRead(
            tenant_id=tenant_id,
            user_count=result.user_count,
            total_price=result.total_price,
            tax=tax,
            total_with_tax=result.total_price + tax,
            breakdown=[TierBreakdownRead.model_validate(item) for item in result.breakdown],
        )

    # Proration ledger

    def record_user_count_change(
        self,
        session: Session,
        tenant_id: str,
        payload: UserCountChangeRequest,
    ) -> ProrationEventRead:
        billing_month = payload.date.replace(day=1)
        settings = get_settings()

        existing = self.invoice_repository.get_for_month(session, tenant_id, billing_month)
        if existing is not None and existing.status != "draft":
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"invoice {existing.invoice_number} for {billing_month:%Y-%m} is already {existing.status}",
            )

        try:
            event = calculate_daily_proration(
                payload.date,
                payload.action,
                payload.user_count_before,
                payload.user_count_after,
                self._resolve_tiers(session, tenant_id),
            )
        except BillingError as exc:
            raise self._http_error(exc)

        row: BillingProrationEvent | None = None
        for attempt in range(1, settings.billing_ledger_max_attempts + 1):
            row = BillingProrationEvent(
                tenant_id=tenant_id,
                billing_month=billing_month,
                sequence=self.proration_repository.next_sequence(session, tenant_id, billing_month),
                event_date=event.date,
                action=event.action,
                user_count_before=event.user_count_before,
                user_count_after=event.user_count_after,
                days_in_month=event.days_in_month,
                remaining_days=event.remaining_days,
                monthly_price_before=event.monthly_price_before,
                monthly_price_after=event.monthly_price_after,
                daily_charge=event.daily_charge,
            )
            session.add(row)
            try:
                session.commit()
                break
            except IntegrityError as exc:
                session.rollback()
                observe_proration_ledger_conflict()
                logger.warning(
                    "billing.proration.sequence_conflict",
                    extra={
                        "tenant_id": tenant_id,
                        "billing_month": billing_month.isoformat(),
                        "attempt": attempt,
                        "error": str(exc.orig),
                    },
                )
                row = None
        if row is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="proration ledger is busy for this tenant and month; retry the request",
            )

        session.refresh(row)
        observe_proration_event(row.action)
        events.publish(
            {
                "event_type": "billing.proration.recorded",
                "tenant_id": tenant_id,
                "billing_month": billing_month.isoformat(),
                "proration_event_id": str(row.id),
                "sequence": row.sequence,
                "daily_charge": row.daily_charge,
            }
        )
        logger.info(
            "billing.proration.recorded",
            extra={"tenant_id": tenant_id, "billing_month": billing_month.isoformat(), "action": row.action},
        )
        return ProrationEventRead.model_validate(row)

    def record_user_count_event(self, session: Session, envelope: Mapping[str, Any]) -> ProrationEventRead:
        """Ledger entry for a ``tenant.user.*`` event from user management."""
        event_type = str(envelope.get("event_type", ""))
        action = envelope.get("action") or event_type.rsplit(".", 1)[-1]
        tenant_id = envelope.get("tenant_id")
        if not tenant_id or action not in PRORATION_ACTIONS:
            raise BillingInputError(f"cannot bill event '{event_type}' for tenant {tenant_id!r}")
        try:
            payload = UserCountChangeRequest.model_validate(
                {
                    "date": envelope.get("date"),
                    "action": action,
                    "user_count_before": envelope.get("user_count_before"),
                    "user_count_after": envelope.get("user_count_after"),
                }
            )
        except ValidationError as exc:
            raise BillingInputError(f"malformed {event_type} event: {exc.error_count()} invalid field(s)") from exc
        return self.record_user_count_change(session, str(tenant_id), payload)

    def list_proration_events(self, session: Session, tenant_id: str, billing_month: date) -> list[ProrationEventRead]:
        rows = self.proration_repository.list_for_month(session, tenant_id, billing_month)
        return [ProrationEventRead.model_validate(row) for row in rows]

    def get_monthly_summary(
        self,
        session: Session,
        tenant_id: str,
        billing_month: date,
        base_user_count: int,
    ) -> MonthlySummaryRead:
        rows = self.proration_repository.list_for_month(session, tenant_id, billing_month)
        try:
            summary = calculate_monthly_billing(
                [row.daily_charge for row in rows],
                base_user_count,
                self._resolve_tiers(session, tenant_id),
            )
        except BillingError as exc:
            raise self._http_error(exc)
        return MonthlySummaryRead(
            tenant_id=tenant_id,
            billing_month=billing_month,
            base_user_count=base_user_count,
            proration_count=len(rows),
            base_fee=summary.base_fee,
            base_fee_tax=summary.base_fee_tax,
            proration_total=summary.proration_total,
            subtotal=summary.subtotal,
            tax=summary.tax,
            total=summary.total,
        )

    # Invoices

    def generate_monthly_invoice(self, session: Session, payload: GenerateInvoiceRequest) -> InvoiceRead:
        settings = get_settings()
        billing_month = payload.billing_month

        with tracer.start_as_current_span("billing.invoice.generate") as span:
            span.set_attribute("billing.tenant_id", payload.tenant_id)
            span.set_attribute("billing.month", f"{billing_month:%Y-%m}")

            for attempt in range(1, settings.billing_number_max_attempts + 1):
                try:
                    invoice, outcome = self._write_invoice(session, payload, settings.billing_payment_term_days)
                    session.commit()
                except HTTPException:
                    session.rollback()
                    raise
                except (IntegrityError, InvoiceNumberConflictError) as exc:
                    session.rollback()
                    observe_invoice_number_conflict()
                    logger.warning(
                        "billing.invoice.number_conflict",
                        extra={
                            "tenant_id": payload.tenant_id,
                            "billing_month": billing_month.isoformat(),
                            "attempt": attempt,
                            "error": str(exc),
                        },
                    )
                    continue

                session.refresh(invoice)
                span.set_attribute("billing.invoice_number", invoice.invoice_number)
                span.set_attribute("billing.attempts", attempt)
                observe_invoice_generated(outcome)
                events.publish(
                    {
                        "event_type": "invoice.generated",
                        "invoice_id": str(invoice.id),
                        "invoice_number": invoice.invoice_number,
                        "tenant_id": invoice.tenant_id,
                        "billing_month": billing_month.isoformat(),
                        "total": invoice.total,
                        "outcome": outcome,
                    }
                )
                logger.info(
                    "billing.invoice.generated",
                    extra={
                        "tenant_id": invoice.tenant_id,
                        "invoice_id": str(invoice.id),
                        "invoice_number": invoice.invoice_number,
                        "billing_month": billing_month.isoformat(),
                        "attempt": attempt,
                        "status": outcome,
                    },
                )
                return InvoiceRead.model_validate(invoice)

            observe_invoice_generated("conflict")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"could not allocate an invoice number for {billing_month:%Y-%m} after "
                f"{settings.billing_number_max_attempts} attempts",
            )

    def generate_invoices_for_month(self, session: Session, payload: BatchInvoiceRequest) -> BatchInvoiceSummary:
        summary = BatchInvoiceSummary(billing_month=payload.billing_month, dry_run=payload.dry_run)
        settings = get_settings()

        for tenant in payload.tenants:
            existing = self.invoice_repository.get_for_month(session, tenant.tenant_id, payload.billing_month)
            if existing is not None and not self._is_stale_draft(session, existing):
                summary.skipped += 1
                summary.results.append(
                    BatchInvoiceResult(
                        tenant_id=tenant.tenant_id,
                        outcome="skipped",
                        invoice_id=existing.id,
                        invoice_number=existing.invoice_number,
                        detail=f"invoice already exists ({existing.status})",
                    )
                )
                continue

            if payload.dry_run:
                try:
                    preview = self._build_invoice(
                        session,
                        tenant_id=tenant.tenant_id,
                        tenant_name=tenant.tenant_name,
                        billing_email=tenant.billing_email,
                        billing_month=payload.billing_month,
                        user_count=tenant.user_count,
                        memo=tenant.memo,
                        invoice_number="preview",
                        due_days=settings.billing_payment_term_days,
                    )[0]
                except BillingError as exc:
                    summary.errors += 1
                    summary.results.append(BatchInvoiceResult(tenant_id=tenant.tenant_id, outcome="error", detail=str(exc)))
                    continue
                summary.results.append(
                    BatchInvoiceResult(
                        tenant_id=tenant.tenant_id,
                        outcome="preview",
                        subtotal=preview.subtotal,
                        tax=preview.tax,
                        total=preview.total,
                    )
                )
                continue

            request = GenerateInvoiceRequest(billing_month=payload.billing_month, **tenant.model_dump())
            try:
                invoice = self.generate_monthly_invoice(session, request)
            except HTTPException as exc:
                session.rollback()
                summary.errors += 1
                logger.warning(
                    "billing.batch.tenant_failed",
                    extra={
                        "tenant_id": tenant.tenant_id,
                        "billing_month": payload.billing_month.isoformat(),
                        "status_code": exc.status_code,
                        "error": str(exc.detail),
                    },
                )
                summary.results.append(
                    BatchInvoiceResult(tenant_id=tenant.tenant_id, outcome="error", detail=str(exc.detail))
                )
                continue

            if existing is None:
                summary.created += 1
            else:
                summary.superseded += 1
            summary.results.append(
                BatchInvoiceResult(
                    tenant_id=tenant.tenant_id,
                    outcome="created" if existing is None else "superseded",
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    subtotal=invoice.subtotal,
                    tax=invoice.tax,
                    total=invoice.total,
                )
            )

        logger.info(
            "billing.batch.finished",
            extra={
                "billing_month": payload.billing_month.isoformat(),
                "status": (
                    f"created={summary.created} superseded={summary.superseded} "
                    f"skipped={summary.skipped} errors={summary.errors}"
                ),
            },
        )
        return summary

    def update_invoice(self, session: Session, invoice_id: uuid.UUID, payload: InvoiceUpdateRequest) -> InvoiceRead:
        invoice = self._get_invoice(session, invoice_id, for_update=True)
        changes = payload.model_fields_set

        if "items" in changes:
            if payload.items is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="items cannot be cleared")
            try:
                ensure_financials_mutable(invoice.status, ["items", "subtotal", "tax", "total"], invoice.invoice_number)
            except InvoiceStateError as exc:
                raise self._http_error(exc)
            totals = calculate_invoice_totals(item.amount for item in payload.items)
            invoice.items.clear()
            for position, item in enumerate(payload.items, start=1):
                invoice.items.append(
                    BillingInvoiceItem(
                        position=position,
                        description=item.description,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        amount=item.amount,
                        period=item.period,
                        source_type="adjustment",
                        source_id=None,
                    )
                )
            invoice.subtotal = totals.subtotal
            invoice.tax = totals.tax
            invoice.total = totals.total
            # hand-entered items stand in for the whole ledger as it is now
            invoice.ledger_sequence = self.proration_repository.latest_sequence(
                session, invoice.tenant_id, invoice.billing_month
            )

        if "billing_email" in changes:
            if payload.billing_email is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="billing_email cannot be cleared")
            invoice.billing_email = payload.billing_email
        if "due_date" in changes:
            if payload.due_date is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="due_date cannot be cleared")
            invoice.due_date = payload.due_date
        if "memo" in changes:
            invoice.memo = payload.memo

        session.add(invoice)
        session.commit()
        session.refresh(invoice)

        events.publish(
            {
                "event_type": "invoice.updated",
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "fields": sorted(changes),
            }
        )
        return InvoiceRead.model_validate(invoice)

    def send_invoice(self, session: Session, invoice_id: uuid.UUID, payload: SendInvoiceRequest) -> InvoiceRead:
        invoice = self._get_invoice(session, invoice_id, for_update=True)
        try:
            self._ensure_ledger_billed(session, invoice)
            moved = transition_invoice(self._to_engine_invoice(invoice), "sent", sent_date=payload.sent_date or utcnow())
        except InvoiceStateError as exc:
            raise self._http_error(exc)

        invoice.status = moved.status
        invoice.sent_date = moved.sent_date
        session.add(invoice)
        session.commit()
        session.refresh(invoice)

        observe_invoice_transition("sent")
        events.publish(
            {
                "event_type": "invoice.sent",
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "tenant_id": invoice.tenant_id,
                "billing_email": invoice.billing_email,
                "total": invoice.total,
            }
        )
        logger.info(
            "billing.invoice.sent",
            extra={"invoice_id": str(invoice.id), "invoice_number": invoice.invoice_number, "status": "sent"},
        )
        return InvoiceRead.model_validate(invoice)

    def mark_invoice_paid(self, session: Session, invoice_id: uuid.UUID, payload: MarkInvoicePaidRequest) -> InvoiceRead:
        invoice = self._get_invoice(session, invoice_id, for_update=True)
        try:
            self._ensure_ledger_billed(session, invoice)
            moved = transition_invoice(self._to_engine_invoice(invoice), "paid", paid_date=payload.paid_date or utcnow())
        except InvoiceStateError as exc:
            raise self._http_error(exc)

        invoice.status = moved.status
        invoice.paid_date = moved.paid_date
        session.add(invoice)
        session.commit()
        session.refresh(invoice)

        observe_invoice_transition("paid")
        events.publish(
            {
                "event_type": "invoice.paid",
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "tenant_id": invoice.tenant_id,
                "total": invoice.total,
            }
        )
        logger.info(
            "billing.invoice.paid",
            extra={"invoice_id": str(invoice.id), "invoice_number": invoice.invoice_number, "status": "paid"},
        )
        return InvoiceRead.model_validate(invoice)

    def get_invoice(self, session: Session, invoice_id: uuid.UUID) -> InvoiceRead:
        return InvoiceRead.model_validate(self._get_invoice(session, invoice_id))

    def list_invoices(
        self,
        session: Session,
        *,
        tenant_id: str | None = None,
        invoice_status: str | None = None,
        year: int | None = None,
        month: int | None = None,
    ) -> list[InvoiceRead]:
        rows = self.invoice_repository.list_filtered(
            session,
            tenant_id=tenant_id,
            status=invoice_status,
            billing_month=self._month_filter(year, month),
            year=year,
        )
        return [InvoiceRead.model_validate(row) for row in rows]

    def summarize_invoices(
        self,
        session: Session,
        *,
        tenant_id: str | None = None,
        year: int | None = None,
        month: int | None = None,
    ) -> InvoiceStatusSummaryRead:
        """Count and summed total per status; every status is listed, empty ones with zeros."""
        totals = self.invoice_repository.totals_by_status(
            session,
            tenant_id=tenant_id,
            billing_month=self._month_filter(year, month),
            year=year,
        )
        statuses = [
            InvoiceStatusTotalsRead(status=name, count=totals.get(name, (0, 0))[0], amount=totals.get(name, (0, 0))[1])
            for name in VALID_INVOICE_TRANSITIONS
        ]
        return InvoiceStatusSummaryRead(
            statuses=statuses,
            total_count=sum(item.count for item in statuses),
            total_amount=sum(item.amount for item in statuses),
        )

    def check_overdue_invoices(
        self,
        session: Session,
        as_of: date | None = None,
        upcoming_days: int | None = None,
    ) -> OverdueReportRead:
        """Unpaid invoices past their due date, plus those falling due within ``upcoming_days``.

        Read-only: overdue is reported, never stored as a status.
        """
        checked_on = as_of or date.today()
        window = get_settings().billing_overdue_upcoming_days if upcoming_days is None else upcoming_days
        report = OverdueReportRead(checked_on=checked_on)

        for row in self.invoice_repository.list_open_due_by(session, checked_on + timedelta(days=window)):
            if row.due_date < checked_on:
                days_overdue = (checked_on - row.due_date).days
                item = OverdueInvoiceRead(
                    invoice_id=row.id,
                    invoice_number=row.invoice_number,
                    tenant_id=row.tenant_id,
                    tenant_name=row.tenant_name,
                    status=row.status,
                    due_date=row.due_date,
                    amount=row.total,
                    days_overdue=days_overdue,
                    priority=overdue_priority(days_overdue),
                )
                report.overdue.append(item)
                observe_overdue_invoice(item.priority)
                events.publish(
                    {
                        "event_type": "invoice.overdue",
                        "invoice_id": str(row.id),
                        "invoice_number": row.invoice_number,
                        "tenant_id": row.tenant_id,
                        "days_overdue": days_overdue,
                        "priority": item.priority,
                        "total": row.total,
                    }
                )
            else:
                report.upcoming.append(
                    UpcomingInvoiceRead(
                        invoice_id=row.id,
                        invoice_number=row.invoice_number,
                        tenant_id=row.tenant_id,
                        tenant_name=row.tenant_name,
                        status=row.status,
                        due_date=row.due_date,
                        amount=row.total,
                        days_until_due=(row.due_date - checked_on).days,
                    )
                )

        report.overdue_count = len(report.overdue)
        report.overdue_amount = sum(item.amount for item in report.overdue)
        report.upcoming_count = len(report.upcoming)
        report.upcoming_amount = sum(item.amount for item in report.upcoming)
        logger.info(
            "billing.overdue.checked",
            extra={
                "checked_on": checked_on.isoformat(),
                "status": f"overdue={report.overdue_count} upcoming={report.upcoming_count}",
            },
        )
        return report

    def get_invoice_document(
        self,
        session: Session,
        invoice_id: uuid.UUID,
        issue_date: date | None = None,
    ) -> InvoiceDocumentRead:
        invoice = self._get_invoice(session, invoice_id)
        if issue_date is None:
            issue_date = invoice.sent_date.date() if invoice.sent_date is not None else date.today()
        document = format_invoice_for_document(invoice, issue_date, get_settings().billing_currency_symbol)
        return InvoiceDocumentRead.model_validate(document)

    # Internals

    def _write_invoice(
        self,
        session: Session,
        payload: GenerateInvoiceRequest,
        due_days: int,
    ) -> tuple[BillingInvoice, str]:
        billing_month = payload.billing_month
        existing = self.invoice_repository.get_for_month(session, payload.tenant_id, billing_month, for_update=True)
        if existing is not None and existing.status != "draft":
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"invoice {existing.invoice_number} for {billing_month:%Y-%m} is already {existing.status}",
            )

        if existing is not None:
            number = existing.invoice_number
        else:
            number = self.number_allocator.allocate(session, billing_month.year, billing_month.month)

        try:
            draft, ledger = self._build_invoice(
                session,
                tenant_id=payload.tenant_id,
                tenant_name=payload.tenant_name,
                billing_email=payload.billing_email,
                billing_month=billing_month,
                user_count=payload.user_count,
                memo=payload.memo,
                invoice_number=number,
                due_days=due_days,
            )
        except BillingError as exc:
            raise self._http_error(exc)

        if existing is None:
            invoice = BillingInvoice(invoice_number=draft.invoice_number, tenant_id=draft.tenant_id, billing_month=billing_month)
            session.add(invoice)
            outcome = "created"
        else:
            invoice = existing
            invoice.items.clear()
            outcome = "superseded"

        invoice.tenant_name = draft.tenant_name
        invoice.billing_email = draft.billing_email
        invoice.subtotal = draft.subtotal
        invoice.tax = draft.tax
        invoice.total = draft.total
        invoice.status = draft.status
        invoice.due_date = draft.due_date
        invoice.memo = draft.memo
        invoice.ledger_sequence = ledger[-1].sequence if ledger else 0

        # items[0] is the base fee; the rest follow the ledger order
        sources = [None, *(row.id for row in ledger)]
        for position, (item, source_id) in enumerate(zip(draft.items, sources), start=1):
            invoice.items.append(
                BillingInvoiceItem(
                    position=position,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    amount=item.amount,
                    period=item.period,
                    source_type=item.source_type,
                    source_id=source_id,
                )
            )

        session.flush()
        return invoice, outcome

    def _build_invoice(
        self,
        session: Session,
        *,
        tenant_id: str,
        tenant_name: str,
        billing_email: str,
        billing_month: date,
        user_count: int,
        memo: str | None,
        invoice_number: str,
        due_days: int,
    ) -> tuple[Invoice, list[BillingProrationEvent]]:
        ledger = self.proration_repository.list_for_month(session, tenant_id, billing_month)
        draft = generate_invoice(
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            billing_month=billing_month,
            user_count=user_count,
            billing_email=billing_email,
            daily_prorations=[self._to_engine_event(row) for row in ledger],
            pricing_tiers=self._resolve_tiers(session, tenant_id),
            memo=memo,
            invoice_number=invoice_number,
            due_days=due_days,
        )
        return draft, ledger

    def _resolve_tiers(self, session: Session, tenant_id: str) -> list[PricingTier] | None:
        rows = self.pricing_tier_repository.list_for_tenant(session, tenant_id)
        if not rows:
            rows = self.pricing_tier_repository.list_for_tenant(session, None)
        if not rows:
            return None
        return [
            PricingTier(
                name=row.name,
                min_users=row.min_users,
                max_users=row.max_users,
                price_per_user=row.price_per_user,
                order=row.order,
                id=str(row.id),
                tenant_id=row.tenant_id,
            )
            for row in rows
        ]

    @staticmethod
    def _month_filter(year: int | None, month: int | None) -> date | None:
        if month is None:
            return None
        if year is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="month filter requires year")
        return date(year, month, 1)

    def _is_stale_draft(self, session: Session, invoice: BillingInvoice) -> bool:
        if invoice.status != "draft":
            return False
        latest = self.proration_repository.latest_sequence(session, invoice.tenant_id, invoice.billing_month)
        return latest > invoice.ledger_sequence

    def _ensure_ledger_billed(self, session: Session, invoice: BillingInvoice) -> None:
        latest = self.proration_repository.latest_sequence(session, invoice.tenant_id, invoice.billing_month)
        try:
            ensure_ledger_billed(invoice.status, invoice.ledger_sequence, latest, invoice.invoice_number)
        except InvoiceStateError as exc:
            logger.warning(
                "billing.invoice.unbilled_prorations",
                extra={
                    "tenant_id": invoice.tenant_id,
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "billing_month": invoice.billing_month.isoformat(),
                    "error": str(exc),
                },
            )
            raise

    def _get_invoice(self, session: Session, invoice_id: uuid.UUID, *, for_update: bool = False) -> BillingInvoice:
        invoice = self.invoice_repository.get(session, invoice_id, for_update=for_update)
        if invoice is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invoice not found")
        return invoice

    @staticmethod
    def _to_engine_event(row: BillingProrationEvent) -> ProrationEvent:
        return ProrationEvent(
            date=row.event_date,
            action=row.action,  # type: ignore[arg-type]
            user_count_before=row.user_count_before,
            user_count_after=row.user_count_after,
            days_in_month=row.days_in_month,
            remaining_days=row.remaining_days,
            monthly_price_before=row.monthly_price_before,
            monthly_price_after=row.monthly_price_after,
            daily_charge=row.daily_charge,
        )

    @staticmethod
    def _to_engine_invoice(row: BillingInvoice) -> Invoice:
        return Invoice(
            id=str(row.id),
            invoice_number=row.invoice_number,
            tenant_id=row.tenant_id,
            tenant_name=row.tenant_name,
            billing_month=row.billing_month,
            subtotal=row.subtotal,
            tax=row.tax,
            total=row.total,
            due_date=row.due_date,
            billing_email=row.billing_email,
            status=row.status,
            memo=row.memo,
            sent_date=row.sent_date,
            paid_date=row.paid_date,
            items=tuple(
                InvoiceItem(
                    id=str(item.id),
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    amount=item.amount,
                    period=item.period,
                    source_type=item.source_type,  # type: ignore[arg-type]
                    source_id=str(item.source_id) if item.source_id else None,
                )
                for item in row.items
            ),
        )

    @staticmethod
    def _http_error(exc: BillingError) -> HTTPException:
        if isinstance(exc, PricingConfigurationError):
            return HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": "invalid pricing tiers", "errors": exc.errors},
            )
        if isinstance(exc, (InvoiceStateError, InvoiceNumberConflictError)):
            return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


billing_service = BillingService()
