"""
Structured logging for the billing service.

Everything logs under the "melodia" logger tree. Production emits one JSON
object per line; other environments get a readable single line with the
same fields. The request id set by RequestIdMiddleware rides along on every
record emitted while that request is being handled.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

ROOT_LOGGER = "melodia"

# LogRecord's own attributes; anything else on a record came in via `extra=`
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, so request logs stay groupable."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


class RequestIdFilter(logging.Filter):
    """Stamp records with the current request id unless the caller passed one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class StructuredFormatter(logging.Formatter):
    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    @staticmethod
    def _fields(record: logging.LogRecord) -> Dict[str, object]:
        return {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and key != "request_id" and value is not None
        }

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        rid = getattr(record, "request_id", None)
        fields = self._fields(record)

        if self.as_json:
            doc = {"timestamp": ts, "level": record.levelname, "logger": record.name, "message": record.getMessage()}
            if rid:
                doc["request_id"] = rid
            doc.update(fields)
            if record.exc_info:
                doc["exc_info"] = self.formatException(record.exc_info)
            return json.dumps(doc, default=str)

        parts = [ts, record.levelname, record.name]
        if rid:
            parts.append(f"rid={rid}")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in fields.items())
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(env: str = "development") -> None:
    """Install a single stdout handler on the melodia logger (idempotent)."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(as_json=(env or "").lower() == "production"))
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    logger.handlers = [handler]


def _truncate(value, limit: int = 500) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unrepresentable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    order_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Emit one structured billing event; free-form `extra` values are truncated."""
    logger = logging.getLogger(ROOT_LOGGER)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "order_id": order_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _truncate(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
