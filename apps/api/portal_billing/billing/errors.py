from __future__ import annotations


class BillingError(Exception):
    """Base error for the billing engine."""


class BillingInputError(BillingError, ValueError):
    """Raised when a caller passes values the engine cannot bill (negative counts, blank tenant fields)."""


class PricingConfigurationError(BillingError):
    """Raised when a pricing tier schedule fails validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("invalid pricing tiers: " + "; ".join(self.errors))


class InvoiceStateError(BillingError):
    """Raised for lifecycle transitions the invoice state machine does not allow."""


class ImmutableInvoiceError(InvoiceStateError):
    """Raised when financial fields of a paid invoice would change."""

    def __init__(self, invoice_number: str | None, fields: list[str]) -> None:
        self.invoice_number = invoice_number
        self.fields = sorted(set(fields))
        super().__init__(f"invoice {invoice_number or '<unsaved>'} is paid; cannot change {', '.join(self.fields)}")


class InvoiceNumberConflictError(BillingError):
    """Raised when a numbering allocation lost a race; callers re-read and retry."""

    retryable = True

    def __init__(self, year: int, month: int, detail: str | None = None) -> None:
        self.year = year
        self.month = month
        message = f"invoice number allocation conflict for {year}-{month:02d}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnbilledProrationError(InvoiceStateError):
    """Raised when a draft would leave the draft state without ledger rows recorded after it was generated."""

    def __init__(self, invoice_number: str | None, missing: int) -> None:
        self.invoice_number = invoice_number
        self.missing = missing
        super().__init__(
            f"invoice {invoice_number or '<unsaved>'} is missing {missing} proration event(s) "
            "recorded after it was generated; regenerate it first"
        )
