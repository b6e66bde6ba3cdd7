"""Tests for telemetry module.

These tests verify OpenTelemetry setup for traces and metrics.
"""

import os
from unittest.mock import MagicMock, patch

import pytest

from taskloop.config import OrchestratorConfig


class TestSetupTelemetry:
    """Test setup_telemetry function."""

    def test_setup_returns_tracer_and_meter(self):
        """setup_telemetry should return a tracer and meter."""
        from taskloop.telemetry import setup_telemetry

        with patch.dict(os.environ, {"OTLP_ENABLED": "false"}):
            tracer, meter = setup_telemetry(OrchestratorConfig())

        assert tracer is not None
        assert meter is not None

    def test_tracer_can_start_spans(self):
        from taskloop.telemetry import setup_telemetry

        tracer, _ = setup_telemetry(OrchestratorConfig(service_name="taskloop-test"))

        span = tracer.start_span("dialogue.run")
        span.set_attribute("task.id", "t-1")
        span.end()

    def test_uses_otlp_endpoint_from_config(self):
        """Should use OTLP endpoint from config when enabled."""
        pytest.importorskip("opentelemetry.exporter.otlp.proto.grpc")
        from taskloop.telemetry import setup_telemetry

        config = OrchestratorConfig(otlp_endpoint="http://custom:4317")

        with patch.dict(os.environ, {"OTLP_ENABLED": "true"}):
            with patch(
                "opentelemetry.exporter.otlp.proto.grpc.trace_exporter.OTLPSpanExporter"
            ) as mock_span_exporter:
                with patch(
                    "opentelemetry.exporter.otlp.proto.grpc.metric_exporter.OTLPMetricExporter"
                ) as mock_metric_exporter:
                    setup_telemetry(config)

        mock_span_exporter.assert_called_with(endpoint="http://custom:4317")
        mock_metric_exporter.assert_called_with(endpoint="http://custom:4317")


class TestCreateMetrics:
    """Test create_metrics function."""

    def test_creates_named_instruments(self):
        from taskloop.telemetry import create_metrics

        meter = MagicMock()

        create_metrics(meter)

        counter_names = [call[0][0] for call in meter.create_counter.call_args_list]
        assert counter_names == [
            "taskloop_runs_total",
            "taskloop_iterations_total",
            "taskloop_anomalies_total",
        ]
        meter.create_histogram.assert_called_once()
        assert meter.create_histogram.call_args[0][0] == "taskloop_run_duration_seconds"

    def test_instruments_are_module_globals(self):
        """Counters should be accessible as module-level variables after creation."""
        from taskloop import telemetry

        meter = MagicMock()
        counter_mock = MagicMock()
        meter.create_counter.return_value = counter_mock

        telemetry.create_metrics(meter)
        telemetry.runs_counter.add(1, {"outcome": "completed"})

        assert telemetry.iterations_counter is counter_mock
        counter_mock.add.assert_called_once_with(1, {"outcome": "completed"})
