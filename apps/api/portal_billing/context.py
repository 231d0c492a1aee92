"""Request-scoped identifiers read by logging, tracing and the event envelope."""

from __future__ import annotations

import re
from collections.abc import Mapping
from contextvars import ContextVar, Token

CORRELATION_ID_HEADER = "x-correlation-id"
TENANT_ID_HEADER = "x-tenant-id"

_TENANT_PATH_RE = re.compile(r"^/billing/tenants/([^/]+)(?:/|$)")

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("billing_tenant_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_tenant_id(value: str | None) -> Token[str | None]:
    return tenant_id_var.set(value)


def reset_tenant_id(token: Token[str | None]) -> None:
    tenant_id_var.reset(token)


def get_tenant_id() -> str | None:
    return tenant_id_var.get()


def tenant_id_from_request(headers: Mapping[str, str], path: str) -> str | None:
    """Tenant named by the ``X-Tenant-Id`` header, else by a ``/billing/tenants/{id}`` path."""
    header_value = headers.get(TENANT_ID_HEADER)
    if header_value:
        return header_value
    match = _TENANT_PATH_RE.match(path)
    return match.group(1) if match else None
