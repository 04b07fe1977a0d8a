"""Process-wide observability setup driven by ``Settings``."""

from __future__ import annotations

import logging

from index_sync.config import Settings
from index_sync.observability.logging import configure_log_exporter, configure_logging, init_log_exporter
from index_sync.observability.metrics import configure_metrics_exporter, init_metrics
from index_sync.observability.tracing import configure_trace_exporter, init_tracing


logger = logging.getLogger(__name__)


def configure_observability(
    settings: Settings,
    *,
    service_name: str = "index-sync",
    logger_levels: dict[str, str] | None = None,
) -> None:
    """Configure logging and, when the collector is enabled, OTLP export.

    Call once at process start, before building the ``SyncEngine``.
    """
    configure_logging(settings.log_level, json_output=settings.log_json, logger_levels=logger_levels)

    collector_config = settings.observability
    if not collector_config.enabled:
        logger.debug("OTLP export disabled; metrics stay on the Prometheus registry")
        return

    resource_attributes = dict(collector_config.resource_attributes)
    configure_metrics_exporter(collector_config, service_name=service_name)
    init_metrics(service_name=service_name, resource_attributes=resource_attributes)
    init_tracing(service_name=service_name, resource_attributes=resource_attributes)
    configure_trace_exporter(collector_config)
    init_log_exporter(service_name=service_name, resource_attributes=resource_attributes)
    configure_log_exporter(collector_config)
    logger.info(
        "Observability configured for %s (%s export to %s)",
        service_name,
        collector_config.otlp_protocol,
        collector_config.collector_endpoint,
    )
