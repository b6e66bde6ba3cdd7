"""Telemetry setup for OpenTelemetry traces and metrics.

Exports dialogue run traces and metrics over OTLP when OTLP_ENABLED=true;
otherwise SDK providers are installed without exporters.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from taskloop.config import OrchestratorConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
runs_counter: metrics.Counter
iterations_counter: metrics.Counter
anomalies_counter: metrics.Counter
run_duration: metrics.Histogram


def setup_telemetry(config: OrchestratorConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    Args:
        config: Configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
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
    """Create metric instruments for dialogue run tracking.

    Counters: runs (by outcome), iterations, anomalies (by type).
    Histogram: run duration.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global runs_counter, iterations_counter, anomalies_counter, run_duration

    runs_counter = meter.create_counter(
        "taskloop_runs_total",
        description="Total dialogue runs by outcome",
    )

    iterations_counter = meter.create_counter(
        "taskloop_iterations_total",
        description="Total dialogue iterations started",
    )

    anomalies_counter = meter.create_counter(
        "taskloop_anomalies_total",
        description="Recoverable anomalies seen during runs",
    )

    run_duration = meter.create_histogram(
        "taskloop_run_duration_seconds",
        description="Dialogue run duration",
        unit="s",
    )
