"""JSON log lines carrying the request's correlation id and billed tenant."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from portal_billing.context import get_correlation_id, get_tenant_id
from portal_billing.core.config import get_settings


# Only these ``extra`` keys reach the payload.
LOGGED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "tenant_id",
        "invoice_id",
        "invoice_number",
        "billing_month",
        "checked_on",
        "action",
        "attempt",
        "status",
        "event_name",
        "error",
    }
)
MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class RequestContextFilter(logging.Filter):
    """Fills ``tenant_id`` from the request context when the call site did not pass one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "tenant_id", None) is None:
            tenant_id = get_tenant_id()
            if tenant_id is not None:
                record.tenant_id = tenant_id
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in LOGGED_FIELDS}
        error = fields.get("error")
        if isinstance(error, str) and len(error) > MAX_ERROR_LENGTH:
            fields["error"] = error[:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_portal_billing_configured", False):
        return

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel((level or get_settings().log_level).upper())
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    root_logger._portal_billing_configured = True  # type: ignore[attr-defined]
