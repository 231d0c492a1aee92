from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

billing_invoices_generated_total = Counter(
    "billing_invoices_generated_total",
    "Invoices generated by outcome",
    ["outcome"],
)

billing_invoice_number_conflicts_total = Counter(
    "billing_invoice_number_conflicts_total",
    "Invoice number or billing month conflicts that triggered a retry",
)

billing_proration_events_total = Counter(
    "billing_proration_events_total",
    "Proration ledger entries recorded by action",
    ["action"],
)

billing_proration_ledger_conflicts_total = Counter(
    "billing_proration_ledger_conflicts_total",
    "Proration ledger sequence conflicts that triggered a retry",
)

billing_tier_validation_failures_total = Counter(
    "billing_tier_validation_failures_total",
    "Rejected pricing tier schedules",
)

billing_overdue_invoices_total = Counter(
    "billing_overdue_invoices_total",
    "Overdue invoices found by the overdue check, by priority",
    ["priority"],
)

billing_invoice_transitions_total = Counter(
    "billing_invoice_transitions_total",
    "Invoice lifecycle transitions by target status",
    ["status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_invoice_generated(outcome: str) -> None:
    billing_invoices_generated_total.labels(outcome=outcome).inc()


def observe_invoice_number_conflict() -> None:
    billing_invoice_number_conflicts_total.inc()


def observe_proration_event(action: str) -> None:
    billing_proration_events_total.labels(action=action).inc()


def observe_proration_ledger_conflict() -> None:
    billing_proration_ledger_conflicts_total.inc()


def observe_tier_validation_failure() -> None:
    billing_tier_validation_failures_total.inc()


def observe_invoice_transition(status: str) -> None:
    billing_invoice_transitions_total.labels(status=status).inc()


def observe_overdue_invoice(priority: str) -> None:
    billing_overdue_invoices_total.labels(priority=priority).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
