from __future__ import annotations

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from kb_ingest.core.config import settings

EVENTS_LOGGER = "kb_ingest.events"

_request_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
_tenant_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("tenant_id", default=None)


class JsonLineFormatter(jsonlogger.JsonFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = super().format(record)
        return json.dumps(json.loads(payload), separators=(",", ":"), ensure_ascii=False)


class _EnvelopeFilter(logging.Filter):
    """Stamps every record, ours or a library's, with the service envelope."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.ts = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        record.service = settings.APP_NAME
        record.env = settings.APP_ENV
        record.version = settings.APP_VERSION
        record.event_type = getattr(record, "event_type", None)
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id_ctx.get()
        if getattr(record, "tenant_id", None) is None:
            record.tenant_id = _tenant_id_ctx.get()
        return True


def set_request_context(*, request_id: str | None = None, tenant_id: str | None = None) -> None:
    _request_id_ctx.set(request_id)
    _tenant_id_ctx.set(tenant_id)


def clear_request_context() -> None:
    set_request_context(request_id=None, tenant_id=None)


def get_tenant_id() -> str | None:
    return _tenant_id_ctx.get()


def log_event(
    event_type: str,
    *,
    level: int = logging.INFO,
    payload: dict[str, Any] | None = None,
    tenant_id: str | None = None,
) -> None:
    extra: dict[str, Any] = dict(payload or {})
    extra["event_type"] = event_type
    if tenant_id is not None:
        extra["tenant_id"] = tenant_id
    logging.getLogger(EVENTS_LOGGER).log(level, event_type, extra=extra)


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(_EnvelopeFilter())
    handler.setFormatter(
        JsonLineFormatter("%(ts)s %(levelname)s %(service)s %(env)s %(event_type)s %(request_id)s %(tenant_id)s %(version)s %(message)s")
    )
    root = logging.getLogger()
    root.setLevel(level or settings.LOG_LEVEL)
    root.handlers = [handler]
