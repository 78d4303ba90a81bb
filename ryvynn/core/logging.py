"""
Logging for the ``ryvynn`` logger namespace.

Every record gets the id of the request that produced it. Production writes
one JSON object per line; anything else gets a readable single line.

Callers pass ids, tiers, counters and outcomes through ``extra=``. What a
user wrote (companion messages, truth posts, journal entries) never goes
into a log record.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# extra= attributes that JsonFormatter copies out of a record
_STRUCTURED_FIELDS = (
    "user_id",
    "event_type",
    "error_code",
    "event_id",
    "tier_id",
    "counter_kind",
    "crisis_level",
    "status",
    "outcome",
)

# (upper bound in ms, label); anything slower is ">=1000ms"
_LATENCY_BUCKETS = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)


def current_request_id() -> Optional[str]:
    return request_id_ctx_var.get()


def _utc_iso(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


class RequestIdFilter(logging.Filter):
    """Stamp records with the current request id unless the caller set one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = current_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _utc_iso(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(
            (field, getattr(record, field))
            for field in _STRUCTURED_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        line = f"{_utc_iso(record)} {record.levelname:<7} {record.name}"
        if rid:
            line += f" [rid={rid}]"
        line += f" {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development") -> None:
    """Install a single stdout handler on the ``ryvynn`` logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger("ryvynn")
    logger.setLevel(logging.INFO)
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; don't print its lines twice
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"
