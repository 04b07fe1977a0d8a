"""Observability module for OpenTelemetry-aligned tracing, metrics, and logging."""

from index_sync.observability.context import (
    bind_sync_context,
    get_sync_context,
    get_trace_context,
    set_trace_context,
    trace_context,
)
from index_sync.observability.logging import (
    JsonFormatter,
    configure_log_exporter,
    configure_logging,
    init_log_exporter,
)
from index_sync.observability.metrics import (
    CLIENT_ERRORS,
    CLIENT_LATENCY,
    PENDING_OPERATIONS,
    SEARCH_LATENCY,
    SYNC_OPERATIONS,
    SYNC_RETRIES,
    configure_metrics_exporter,
    get_metrics,
    get_metrics_content_type,
    init_metrics,
    track_latency,
)
from index_sync.observability.setup import configure_observability
from index_sync.observability.tracing import (
    configure_trace_exporter,
    create_span,
    get_tracer,
    init_tracing,
)


__all__ = [
    "CLIENT_ERRORS",
    "CLIENT_LATENCY",
    "PENDING_OPERATIONS",
    "SEARCH_LATENCY",
    "SYNC_OPERATIONS",
    "SYNC_RETRIES",
    "JsonFormatter",
    "bind_sync_context",
    "configure_log_exporter",
    "configure_logging",
    "configure_metrics_exporter",
    "configure_observability",
    "configure_trace_exporter",
    "create_span",
    "get_metrics",
    "get_metrics_content_type",
    "get_sync_context",
    "get_trace_context",
    "get_tracer",
    "init_log_exporter",
    "init_metrics",
    "init_tracing",
    "set_trace_context",
    "trace_context",
    "track_latency",
]
