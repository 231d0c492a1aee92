from portal_billing.billing.api import router
from portal_billing.billing.models import (
    BillingInvoice,
    BillingInvoiceItem,
    BillingInvoiceSequence,
    BillingPricingTier,
    BillingProrationEvent,
)
from portal_billing.billing.schemas import (
    BatchInvoiceRequest,
    BatchInvoiceSummary,
    GenerateInvoiceRequest,
    InvoiceRead,
    ProrationEventRead,
)
from portal_billing.billing.service import BillingService, billing_service

__all__ = [
    "router",
    "BillingPricingTier",
    "BillingProrationEvent",
    "BillingInvoice",
    "BillingInvoiceItem",
    "BillingInvoiceSequence",
    "GenerateInvoiceRequest",
    "BatchInvoiceRequest",
    "BatchInvoiceSummary",
    "InvoiceRead",
    "ProrationEventRead",
    "BillingService",
    "billing_service",
]
