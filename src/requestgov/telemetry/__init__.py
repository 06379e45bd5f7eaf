"""Prometheus export of governor, pool and capacity state."""

from requestgov.telemetry.exporter import (
    FORBIDDEN_LABELS,
    REQUIRED_METRIC_NAMES,
    MetricsExporter,
)
from requestgov.telemetry.metrics_server import (
    METRICS_CONTENT_TYPE,
    create_metrics_app,
    start_metrics_server,
    stop_metrics_server,
)

__all__ = [
    "FORBIDDEN_LABELS",
    "METRICS_CONTENT_TYPE",
    "REQUIRED_METRIC_NAMES",
    "MetricsExporter",
    "create_metrics_app",
    "start_metrics_server",
    "stop_metrics_server",
]
