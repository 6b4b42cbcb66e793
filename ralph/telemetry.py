"""Telemetry setup for OpenTelemetry traces and metrics.

Exports traces and metrics over OTLP when ``OTLP_ENABLED=true``; otherwise
SDK providers without exporters are installed, so spans and instruments work
but nothing leaves the process.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from ralph.config import LoopConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
stories_counter: metrics.Counter
attempts_counter: metrics.Counter
reverts_counter: metrics.Counter
tokens_counter: metrics.Counter
cost_counter: metrics.Counter
attempt_duration: metrics.Histogram


def otlp_enabled() -> bool:
    return os.getenv("OTLP_ENABLED", "false").lower() == "true"


def setup_telemetry(config: LoopConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry, exporting over OTLP when enabled.

    Args:
        config: Loop configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    if otlp_enabled() and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for loop tracking.

    Counters:
    - Stories finished (by status: complete, failed)
    - Agent attempts (by outcome: complete, failed, none, error)
    - Workspace reverts
    - Tokens used and cost in USD

    Histogram:
    - Attempt duration

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global stories_counter, attempts_counter, reverts_counter
    global tokens_counter, cost_counter, attempt_duration

    stories_counter = meter.create_counter(
        "ralph_stories_total",
        description="Total stories finished",
    )

    attempts_counter = meter.create_counter(
        "ralph_attempts_total",
        description="Total agent attempts",
    )

    reverts_counter = meter.create_counter(
        "ralph_reverts_total",
        description="Total workspace reverts after failed attempts",
    )

    tokens_counter = meter.create_counter(
        "ralph_tokens_total",
        description="Total tokens used",
    )

    cost_counter = meter.create_counter(
        "ralph_cost_usd_total",
        description="Total cost in USD",
    )

    attempt_duration = meter.create_histogram(
        "ralph_attempt_duration_seconds",
        description="Agent attempt duration",
        unit="s",
    )
