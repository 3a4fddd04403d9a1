"""
OpenTelemetry Tracing

Spans for each sweep pass and for each message handled in it. Message spans
carry the correlation id and retry count, so one lab result can be followed
through the outbox, the processing channel and every poison retry.
"""

import logging
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, Iterator, Optional, Tuple

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span

logger = logging.getLogger(__name__)

SERVICE = "lab-results-gateway"
CORRELATION_ATTRIBUTE = "gateway.correlation_id"
RETRY_COUNT_ATTRIBUTE = "gateway.retry_count"


def _service_version() -> str:
    try:
        return version(SERVICE)
    except PackageNotFoundError:
        return "dev"


def init_tracing(otlp_endpoint: Optional[str] = None, console_export: bool = False) -> TracerProvider:
    """
    Install the gateway's tracer provider.

    Without an exporter spans are still created (and show up in log lines as
    trace_id/span_id) but go nowhere.
    """
    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: SERVICE,
        SERVICE_VERSION: _service_version(),
    }))

    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
        logger.info(f"Exporting traces to {otlp_endpoint}")
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    return provider


def current_trace_ids() -> Tuple[Optional[str], Optional[str]]:
    """(trace_id, span_id) of the active span as hex, or (None, None)."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


@contextmanager
def create_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
    """
    Span around a sweep pass or a store call.

    An exception escaping the block is recorded on the span and re-raised.
    """
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name, attributes=attributes or {}) as span:
        yield span


@contextmanager
def message_span(
    name: str,
    correlation_id: str,
    retry_count: Optional[int] = None,
    attributes: Optional[Dict[str, Any]] = None
) -> Iterator[Span]:
    """Span for handling one message, tagged with its correlation id."""
    tags = dict(attributes or {})
    tags[CORRELATION_ATTRIBUTE] = correlation_id
    if retry_count is not None:
        tags[RETRY_COUNT_ATTRIBUTE] = retry_count

    with create_span(name, tags) as span:
        yield span
