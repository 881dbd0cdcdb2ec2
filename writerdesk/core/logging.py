"""
Structured logging for the subscription service.

- JSON lines in production, one-line pretty output elsewhere.
- request_id is bound per request through a ContextVar and stamped on every
  record by RequestIdFilter.
- log_event() attaches billing identifiers (user, event id/type) so webhook
  processing can be traced end to end.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "writerdesk"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes set through `extra=` that formatters render alongside the message
_STRUCTURED_FIELDS = (
    "user_id",
    "event_id",
    "event_type",
    "error_code",
    "outcome",
    "status",
    "path",
    "method",
    "latency_bucket",
)

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, keeps log cardinality low."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _structured(record: logging.LogRecord) -> Dict[str, object]:
    fields = {}
    for name in _STRUCTURED_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            fields[name] = value
    return fields


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_structured(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        fields = _structured(record)
        if fields:
            parts.append(" ".join(f"{k}={v}" for k, v in fields.items()))
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Install a single stdout handler on the service logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.getLevelName(level.upper()) if isinstance(level, str) else level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn has its own handlers
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _safe_truncate(value, limit: int = 500) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Emit one structured record; `extra` values are stringified and truncated."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {"request_id": request_id or get_request_id(), "user_id": user_id}
    for key, value in (("event_id", event_id), ("event_type", event_type), ("error_code", error_code)):
        if value:
            payload[key] = value
    for key, value in (extra or {}).items():
        payload[key] = _safe_truncate(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
