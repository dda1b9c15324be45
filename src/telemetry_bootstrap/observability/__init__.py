"""Logging and Prometheus primitives shared by every bootstrap component.

The OpenTelemetry materializer and HTTP endpoints live in
``telemetry_bootstrap.observability.otel`` and ``.endpoints``; import them
from there.
"""

from telemetry_bootstrap.observability.logging import (
    JsonFormatter,
    LoggerHandle,
    SamplingFilter,
    TextFormatter,
    attach_handler,
    detach_handler,
    get_logger_handle,
    init_logging,
    shutdown_logging,
)
from telemetry_bootstrap.observability.metrics import (
    MetricsRecorder,
    NoopMetricsRecorder,
    PrometheusHttpServer,
    PrometheusMetricsRecorder,
    configure_prometheus_metrics,
    create_prometheus_asgi_app,
    get_metrics_recorder,
    prometheus_content_type,
    render_prometheus_metrics,
    set_metrics_recorder,
    start_prometheus_http_server,
)

__all__ = [
    "JsonFormatter",
    "LoggerHandle",
    "MetricsRecorder",
    "NoopMetricsRecorder",
    "PrometheusHttpServer",
    "PrometheusMetricsRecorder",
    "SamplingFilter",
    "TextFormatter",
    "attach_handler",
    "configure_prometheus_metrics",
    "create_prometheus_asgi_app",
    "detach_handler",
    "get_logger_handle",
    "get_metrics_recorder",
    "init_logging",
    "prometheus_content_type",
    "render_prometheus_metrics",
    "set_metrics_recorder",
    "shutdown_logging",
    "start_prometheus_http_server",
]
