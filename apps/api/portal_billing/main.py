from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from portal_billing.api.routes import router as api_router
from portal_billing.billing.service import billing_service
from portal_billing.context import reset_tenant_id, set_tenant_id
from portal_billing.core.config import get_settings
from portal_billing.core.database import get_db
from portal_billing.events import InternalEvent, event_bus
from portal_billing.logging import configure_logging
from portal_billing.middleware.request_context import RequestContextMiddleware
from portal_billing.middleware.request_logging import RequestLoggingMiddleware
from portal_billing.otel import server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("portal_billing.lifecycle")
_subscriptions_registered = False

USER_COUNT_EVENT_TYPES = [
    "tenant.user.added",
    "tenant.user.activated",
    "tenant.user.deactivated",
    "tenant.user.deleted",
]


@contextmanager
def _session_scope():
    # Event handlers run outside a request; honour test overrides of get_db.
    provider = app.dependency_overrides.get(get_db, get_db)
    sessions = provider()
    try:
        yield next(sessions)
    finally:
        sessions.close()


def _on_user_count_event(event: InternalEvent) -> None:
    envelope: dict[str, Any] = event.payload
    tenant_token = set_tenant_id(envelope.get("tenant_id"))
    try:
        with _session_scope() as session:
            billing_service.record_user_count_event(session, envelope)
    except Exception as exc:
        logger.exception(
            "billing.proration.event_failed",
            extra={"event_name": event.name, "error": str(exc)},
        )
        raise
    finally:
        reset_tenant_id(tenant_token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_name in USER_COUNT_EVENT_TYPES:
            event_bus.subscribe(event_name, _on_user_count_event)
        _subscriptions_registered = True
    logger.info("billing.started", extra={"event_name": "system.started"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
