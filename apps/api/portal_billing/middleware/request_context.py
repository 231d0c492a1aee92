from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from portal_billing.context import (
    CORRELATION_ID_HEADER,
    reset_correlation_id,
    reset_tenant_id,
    set_correlation_id,
    set_tenant_id,
    tenant_id_from_request,
)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and billed tenant for the rest of the request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        tenant_id = tenant_id_from_request(request.headers, request.url.path)
        request.state.correlation_id = correlation_id
        request.state.tenant_id = tenant_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if tenant_id:
                span.set_attribute("billing.tenant_id", tenant_id)

        correlation_token = set_correlation_id(correlation_id)
        tenant_token = set_tenant_id(tenant_id)
        try:
            response = await call_next(request)
        finally:
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
