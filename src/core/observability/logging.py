"""
Structured Logging

One JSON object per line, carrying the active trace_id/span_id and whatever
the delivery components pass through `extra=` (correlation_id, retry_count,
message_id, error, ...). The plain-text format is for local runs.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .tracing import current_trace_ids

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s"

QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncpg", "opentelemetry")


class StructuredFormatter(logging.Formatter):
    """Formats a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        trace_id, span_id = current_trace_ids()

        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if trace_id:
            entry["trace_id"] = trace_id
            entry["span_id"] = span_id

        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class CorrelationDefaultFilter(logging.Filter):
    """Gives records without a correlation_id a placeholder for TEXT_FORMAT."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


def configure_logging(level: str = "INFO", structured: bool = True):
    """
    Route all logging to stdout.

    Args:
        level: Root log level name
        structured: JSON lines when True, TEXT_FORMAT otherwise
    """
    handler = logging.StreamHandler(sys.stdout)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
        handler.addFilter(CorrelationDefaultFilter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured: level={level.upper()} structured={structured}")
