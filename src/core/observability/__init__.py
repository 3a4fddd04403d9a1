"""
Observability: JSON logging, OpenTelemetry tracing and metrics for the
delivery path.
"""

from .logging import configure_logging, StructuredFormatter
from .metrics import init_metrics, record_counter, record_histogram
from .tracing import init_tracing, create_span, message_span, current_trace_ids

__all__ = [
    "configure_logging",
    "StructuredFormatter",
    "init_metrics",
    "record_counter",
    "record_histogram",
    "init_tracing",
    "create_span",
    "message_span",
    "current_trace_ids",
]
