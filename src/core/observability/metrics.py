"""
OpenTelemetry Metrics

Counters and histograms for the delivery path. Instruments exist only after
init_metrics(); until then record_counter()/record_histogram() do nothing,
which is what the unit tests run with.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

SERVICE = "lab-results-gateway"

COUNTERS: Dict[str, str] = {
    "idempotency_hits_total": "Ingestions skipped as already processed",
    "idempotency_misses_total": "Ingestions with no live processing record",
    "idempotency_store_errors_total": "Idempotency store failures (guard failed open)",
    "outbox_messages_added_total": "Outbox entries persisted",
    "outbox_dispatched_total": "Outbox entries dispatched",
    "outbox_failed_total": "Outbox dispatch failures",
    "outbox_abandoned_total": "Outbox entries abandoned after max retries",
    "processing_messages_total": "Processing channel messages handled, by outcome",
    "poison_messages_processed_total": "Poison channel envelopes handled, by outcome",
    "dlq_entries_total": "Dead-letter records written, by source",
}

HISTOGRAMS: Dict[str, Tuple[str, str]] = {
    "sweep_duration_seconds": ("Duration of one sweep pass, by sweep", "s"),
    "delivery_duration_seconds": ("External endpoint request duration", "s"),
}

Instrument = Union[metrics.Counter, metrics.Histogram]

_instruments: Dict[str, Instrument] = {}


def init_metrics(
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000,
    extra_readers: Optional[List[MetricReader]] = None
) -> MeterProvider:
    """
    Install the gateway's meter provider and create every instrument.

    Args:
        otlp_endpoint: OTLP gRPC collector, e.g. "http://localhost:4317"
        console_export: Also print metrics to stdout
        export_interval_ms: Export period for the periodic readers
        extra_readers: Additional readers (an in-memory reader, for example)
    """
    readers: List[MetricReader] = list(extra_readers or [])

    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"Exporting metrics to {otlp_endpoint}")
    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))

    provider = MeterProvider(resource=Resource.create({SERVICE_NAME: SERVICE}), metric_readers=readers)
    metrics.set_meter_provider(provider)

    meter = provider.get_meter(__name__)
    _instruments.clear()
    for name, description in COUNTERS.items():
        _instruments[name] = meter.create_counter(name, unit="1", description=description)
    for name, (description, unit) in HISTOGRAMS.items():
        _instruments[name] = meter.create_histogram(name, unit=unit, description=description)

    return provider


def record_counter(name: str, value: int = 1, attributes: Dict[str, Any] = None):
    counter = _instruments.get(name)
    if counter is not None:
        counter.add(value, attributes or {})


def record_histogram(name: str, value: float, attributes: Dict[str, Any] = None):
    histogram = _instruments.get(name)
    if histogram is not None:
        histogram.record(value, attributes or {})
