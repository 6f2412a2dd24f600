from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

# Never emitted even if a caller passes them as extras.
_REDACTED_KEYS = {"access_token", "secret", "api_key", "email", "signature"}

_EVENT_FIELDS = ("shop", "user_id", "code", "order_id", "topic", "reason")


class RequestIdFilter(logging.Filter):
    """Attach request_id from contextvars to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        record.request_id = request_id_ctx_var.get() or "-"
        return True


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        return value[:2000]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in list(value.items())[:50]}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in list(value)[:50]]
    return str(value)[:2000]


def _base_payload(record: logging.LogRecord) -> dict[str, Any]:
    return {
        "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "event": record.getMessage(),
        "request_id": getattr(record, "request_id", "-"),
    }


def _append_extras(payload: dict[str, Any], record: logging.LogRecord) -> None:
    for key, value in record.__dict__.items():
        if key in _RESERVED_RECORD_KEYS or key in payload or key.startswith("_"):
            continue
        if key in _REDACTED_KEYS:
            continue
        payload[key] = _json_safe(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying every structured extra."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple serialization
        payload = _base_payload(record)
        _append_extras(payload, record)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class EventFormatter(logging.Formatter):
    """Human readable lines with the discount identifiers appended as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [f"{field}={getattr(record, field)}" for field in _EVENT_FIELDS if getattr(record, field, None) is not None]
        if pairs:
            line = f"{line} {' '.join(pairs)}"
        return line


def configure_logging(json_logs: bool = False) -> None:
    """Configure root logger with request-id aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(EventFormatter("%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s"))

    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)
