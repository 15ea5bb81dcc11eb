"""JSON logging for the study-room API.

Every record is rendered as one JSON object per line so the output can be
shipped to a log collector as-is. A correlation ID stored in a context
variable ties together the request log line and anything the attendance or
penalty code logs while serving that request.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

_request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
_request_context_ctx: contextvars.ContextVar[Optional[Dict[str, Any]]] = (
    contextvars.ContextVar("request_context", default=None)
)

_REDACTED = "[REDACTED]"
_SENSITIVE_FIELDS = {
    field.strip().lower()
    for field in os.environ.get("SENSITIVE_FIELDS", "password,token,api_key,phone").split(",")
    if field.strip()
}

_JSON_LOG_FIELDS = (
    "ts",
    "level",
    "logger",
    "msg",
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "student_id",
    "error_type",
    "error",
    "stack",
    "extra_context",
)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def set_request_id(request_id: str) -> None:
    _request_id_ctx.set(request_id)
    merge_request_context(request_id=request_id)


def clear_request_id() -> None:
    _request_id_ctx.set(None)


def get_request_context() -> Dict[str, Any]:
    ctx = _request_context_ctx.get()
    if ctx is None:
        ctx = {}
        _request_context_ctx.set(ctx)
    return ctx


def merge_request_context(**kwargs: Any) -> None:
    """Merge key/value pairs into the current request context."""

    ctx = dict(get_request_context())
    for key, value in kwargs.items():
        if value is not None:
            ctx[key] = value
    _request_context_ctx.set(ctx)


def clear_request_context() -> None:
    _request_context_ctx.set({})


def redact_sensitive_data(data: Any, fields: Optional[Iterable[str]] = None) -> Any:
    """Redact sensitive values from mappings or sequences.

    Works recursively for nested dictionaries and lists; keys are compared
    case-insensitively.
    """

    fields_set = {field.lower() for field in (fields or _SENSITIVE_FIELDS)}

    if isinstance(data, Mapping):
        redacted: Dict[Any, Any] = {}
        for key, value in data.items():
            if str(key).lower() in fields_set:
                redacted[key] = _REDACTED
            else:
                redacted[key] = redact_sensitive_data(value, fields_set)
        return redacted
    if isinstance(data, (list, tuple, set)):
        return [redact_sensitive_data(item, fields_set) for item in data]
    return data


class JSONFormatter(logging.Formatter):
    """Formatter that renders log records as single-line JSON objects."""

    # LogRecord attributes that are not surfaced as extra context
    _RESERVED = {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "ts": timestamp.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": get_request_id(),
            "stack": None,
            "extra_context": None,
        }

        for key, value in get_request_context().items():
            if key not in payload or payload[key] is None:
                payload[key] = value

        for field in ("method", "path", "status", "duration_ms", "student_id", "error_type", "error"):
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__
            payload["error"] = str(record.exc_info[1])
            payload["stack"] = self.formatException(record.exc_info)
        elif getattr(record, "stack_info", None):
            payload["stack"] = record.stack_info

        extra: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in payload or key.startswith("_"):
                continue
            extra[key] = value

        if extra:
            payload["extra_context"] = redact_sensitive_data(extra)

        for field in _JSON_LOG_FIELDS:
            payload.setdefault(field, None)

        return json.dumps(payload, default=_json_default, ensure_ascii=False, separators=(",", ":"))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


_configured = False


def configure_logging() -> None:
    """Install the JSON formatter on the root logger (once)."""

    global _configured
    if _configured:
        return

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
    logging.captureWarnings(True)

    # the request middleware logs access lines itself
    for noisy_logger in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        log = logging.getLogger(noisy_logger)
        log.handlers = []
        log.propagate = True
        log.setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


__all__ = [
    "JSONFormatter",
    "clear_request_context",
    "clear_request_id",
    "configure_logging",
    "get_logger",
    "get_request_context",
    "get_request_id",
    "merge_request_context",
    "redact_sensitive_data",
    "set_request_id",
]
