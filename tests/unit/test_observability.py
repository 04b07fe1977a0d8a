"""Unit tests for observability module."""

import json
import logging
import sys
from unittest.mock import Mock

from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
import pytest

from index_sync.config import ObservabilityCollectorConfig, Settings
from index_sync.observability import (
    PENDING_OPERATIONS,
    SEARCH_LATENCY,
    JsonFormatter,
    bind_sync_context,
    configure_logging,
    configure_metrics_exporter,
    configure_observability,
    configure_trace_exporter,
    create_span,
    get_metrics,
    get_metrics_content_type,
    get_sync_context,
    get_trace_context,
    init_metrics,
    init_tracing,
    metrics as metrics_module,
    set_trace_context,
    setup as observability_setup,
    tracing as tracing_module,
    track_latency,
)


def _record(msg="test message", *, name="test", level=logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    for name in ("httpx", "httpcore", "index_sync.service_layer"):
        logging.getLogger(name).setLevel(logging.NOTSET)


@pytest.fixture
def span_exporter(monkeypatch):
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setitem(tracing_module._tracer_holder, "tracer", provider.get_tracer("test"))
    return exporter


@pytest.mark.unit
class TestJsonFormatter:
    """Tests for structured JSON logging."""

    def test_format_includes_trace_context(self):
        set_trace_context("ab" * 16, "cd" * 8)

        data = json.loads(JsonFormatter().format(_record()))

        assert data["message"] == "test message"
        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert "timestamp" in data
        assert (data["trace_id"], data["span_id"]) == ("ab" * 16, "cd" * 8)

    def test_component_from_logger_name(self):
        data = json.loads(JsonFormatter().format(_record(name="index_sync.service_layer.sync_engine")))

        assert data["component"] == "sync_engine"

    def test_format_includes_sync_context(self):
        with bind_sync_context(operation_id="op-1", index="bonds", document_id="b1"):
            data = json.loads(JsonFormatter().format(_record()))

        assert (data["operation_id"], data["index"], data["document_id"]) == ("op-1", "bonds", "b1")

    def test_format_includes_extra_fields(self):
        record = _record(level=logging.ERROR)
        record.attempt = 3
        record.document_ids = {"b2", "b1"}

        data = json.loads(JsonFormatter().format(record))

        assert data["attempt"] == 3
        assert data["document_ids"] == ["b1", "b2"]

    def test_format_truncates_and_redacts(self):
        record = _record("x" * 5000)
        record.api_key = "secret"
        record.Authorization = "Basic abc"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"].endswith("...")
        assert len(data["message"]) == JsonFormatter.MAX_MESSAGE_LEN + 3
        assert data["api_key"] == "[REDACTED]"
        assert data["Authorization"] == "[REDACTED]"

    def test_format_includes_exception(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = _record(level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad payload" in data["exception"]

    def test_json_default_handles_set_and_bytes(self):
        formatter = JsonFormatter()
        assert formatter._json_default({3, 1, 2}) == [1, 2, 3]
        assert formatter._json_default(b"ok") == "ok"
        assert formatter._json_default(RuntimeError("boom")) == "boom"


@pytest.mark.unit
class TestSyncContext:
    def test_bind_nests_and_resets(self):
        assert get_sync_context() == {}

        with bind_sync_context(index="bonds"):
            with bind_sync_context(document_id="b1", operation_id=None):
                assert get_sync_context() == {"index": "bonds", "document_id": "b1"}
            assert get_sync_context() == {"index": "bonds"}

        assert get_sync_context() == {}

    def test_get_trace_context_generates_ids(self):
        set_trace_context("", "")

        ctx = get_trace_context()

        assert len(ctx["trace_id"]) == 32
        assert len(ctx["span_id"]) == 16


@pytest.mark.unit
class TestConfigureLogging:
    def test_json_handler_on_root(self, restore_root_logger):
        configure_logging("debug", json_output=True)

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_plain_output_and_logger_levels(self, restore_root_logger):
        configure_logging("bogus", json_output=False, logger_levels={"index_sync.service_layer": "error"})

        assert restore_root_logger.level == logging.INFO
        assert not isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("index_sync.service_layer").level == logging.ERROR


@pytest.mark.unit
class TestMetrics:
    def test_track_latency_observes_on_error(self):
        with pytest.raises(RuntimeError):
            with track_latency(SEARCH_LATENCY, index="observability-test"):
                raise RuntimeError("boom")

        assert b'index_search_latency_seconds_count{index="observability-test"} 1.0' in get_metrics()

    def test_gauge_reports_latest_value(self):
        PENDING_OPERATIONS.labels(engine="observability-test").set(3)
        PENDING_OPERATIONS.labels(engine="observability-test").set(1)

        assert b'index_sync_pending_operations{engine="observability-test"} 1.0' in get_metrics()

    def test_metric_names_exported(self):
        output = get_metrics()

        for name in (b"index_sync_operations_total", b"index_sync_retries_total", b"index_client_errors_total"):
            assert name in output
        assert get_metrics_content_type() == metrics_module.CONTENT_TYPE_LATEST

    def test_init_metrics_is_idempotent(self, monkeypatch):
        monkeypatch.setattr(metrics_module, "_meter_holder", {"meter": None, "provider": None, "reader": None})
        monkeypatch.setattr(metrics_module.otel_metrics, "set_meter_provider", lambda provider: None)

        provider = init_metrics("test-service", {"service.version": "1.0.0"})

        assert isinstance(provider, MeterProvider)
        assert init_metrics("test-service") is provider

    def test_metric_bridge_unknown_kind_raises(self):
        bad_metric = metrics_module.MetricBridge(
            metrics_module._SYNC_RETRIES_PROM,
            otel_name="bad_metric",
            otel_description="bad",
            otel_kind="unknown",
        )
        with pytest.raises(ValueError, match="Unknown metric kind"):
            bad_metric.inc({"kind": "update"}, 1.0)

    def test_disabled_exporter_config_is_noop(self, monkeypatch):
        exporter = Mock()
        monkeypatch.setattr(metrics_module, "HttpOTLPMetricExporter", exporter)
        monkeypatch.setattr(metrics_module, "GrpcOTLPMetricExporter", exporter)

        configure_metrics_exporter(ObservabilityCollectorConfig(enabled=False))
        configure_metrics_exporter(None)

        exporter.assert_not_called()


@pytest.mark.unit
class TestTracing:
    def test_create_span_sets_attributes_and_span_id(self, span_exporter):
        set_trace_context("ab" * 16, "cd" * 8)

        with create_span("sync.update", attributes={"index.name": "bonds", "index.document_id": None}) as span:
            span_id = format(span.get_span_context().span_id, "016x")
            assert get_trace_context()["span_id"] == span_id

        (finished,) = span_exporter.get_finished_spans()
        assert finished.name == "sync.update"
        assert dict(finished.attributes) == {"index.name": "bonds"}

    def test_create_span_records_errors(self, span_exporter):
        with pytest.raises(ValueError):
            with create_span("sync.delete"):
                raise ValueError("boom")

        (finished,) = span_exporter.get_finished_spans()
        assert finished.status.status_code is StatusCode.ERROR
        assert finished.events[0].name == "exception"

    def test_init_tracing_applies_resource_attributes(self, monkeypatch):
        monkeypatch.setitem(tracing_module._tracer_holder, "tracer", None)
        monkeypatch.setattr(tracing_module.trace, "set_tracer_provider", lambda provider: None)

        provider = init_tracing("test-service", resource_attributes={"service.version": "2.0.0"})

        assert provider.resource.attributes["service.version"] == "2.0.0"
        assert provider.resource.attributes["service.name"] == "test-service"

    def test_configure_trace_exporter_adds_span_processor(self, monkeypatch):
        provider = TracerProvider()
        monkeypatch.setattr(tracing_module, "HttpOTLPSpanExporter", Mock(return_value=InMemorySpanExporter()))
        add_processor = Mock()
        provider.add_span_processor = add_processor  # type: ignore[method-assign]
        config = ObservabilityCollectorConfig(
            enabled=True,
            otlp_protocol="http",
            collector_endpoint="http://collector/v1/traces",
        )

        configure_trace_exporter(config, provider=provider)

        add_processor.assert_called_once()


@pytest.mark.unit
class TestConfigureObservability:
    @pytest.fixture
    def exporters(self, monkeypatch):
        mocks = {}
        for name in (
            "configure_metrics_exporter",
            "init_metrics",
            "init_tracing",
            "configure_trace_exporter",
            "init_log_exporter",
            "configure_log_exporter",
        ):
            mocks[name] = Mock()
            monkeypatch.setattr(observability_setup, name, mocks[name])
        return mocks

    def test_logging_follows_settings(self, restore_root_logger, exporters):
        configure_observability(Settings(log_level="warning", log_json=False))

        assert restore_root_logger.level == logging.WARNING
        assert not isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)
        for exporter in exporters.values():
            exporter.assert_not_called()

    def test_enabled_collector_configures_exporters(self, restore_root_logger, exporters):
        collector = ObservabilityCollectorConfig(
            enabled=True,
            otlp_protocol="http",
            collector_endpoint="http://collector/v1/traces",
            resource_attributes={"deployment.environment": "test"},
        )

        configure_observability(Settings(observability=collector), service_name="bonds-sync")

        assert isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)
        exporters["configure_metrics_exporter"].assert_called_once_with(collector, service_name="bonds-sync")
        exporters["init_tracing"].assert_called_once_with(
            service_name="bonds-sync", resource_attributes={"deployment.environment": "test"}
        )
        exporters["configure_trace_exporter"].assert_called_once_with(collector)
        exporters["configure_log_exporter"].assert_called_once_with(collector)
