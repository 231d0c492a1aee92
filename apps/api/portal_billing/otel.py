from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from portal_billing.context import CORRELATION_ID_HEADER, tenant_id_from_request
from portal_billing.core.config import get_settings


_provider: TracerProvider | None = None
_exporters_attached = False


def _tracer_provider(service_name: str | None = None) -> TracerProvider:
    """The process-wide provider; the global one can only be installed once."""
    global _provider

    if _provider is None:
        settings = get_settings()
        resource = Resource.create(
            {
                "service.name": service_name or settings.otel_service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str | None = None) -> TracerProvider:
    """Install the provider and the exporters named in settings (OTLP over HTTP, console)."""
    global _exporters_attached

    provider = _tracer_provider(service_name)
    if _exporters_attached:
        return provider

    settings = get_settings()
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str | None = None) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    """Tag the FastAPI server span before the middleware stack runs."""
    if span is None or not span.is_recording():
        return
    headers = {key.decode("latin-1").lower(): value.decode("latin-1") for key, value in scope.get("headers", [])}
    correlation_id = headers.get(CORRELATION_ID_HEADER)
    if correlation_id:
        span.set_attribute("correlation_id", correlation_id)
    tenant_id = tenant_id_from_request(headers, scope.get("path", ""))
    if tenant_id:
        span.set_attribute("billing.tenant_id", tenant_id)
