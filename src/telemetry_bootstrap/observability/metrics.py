"""Prometheus primitives for the bootstrap layer's own health and drain metrics."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

from telemetry_bootstrap.errors import MissingDependencyError

_LABEL_NORMALIZER = re.compile(r"[^a-zA-Z0-9_]+")

# Gauge encoding for probe status, ordered by severity.
_STATUS_VALUES = {"Healthy": 0.0, "Degraded": 1.0, "Unhealthy": 2.0}


def _import_prometheus_client() -> Any:
    try:
        import prometheus_client
    except ImportError as exc:  # pragma: no cover - depends on installed extras
        raise MissingDependencyError(
            "Prometheus metrics require dependency 'prometheus-client'. "
            "Install with: pip install telemetry-bootstrap"
        ) from exc
    return prometheus_client


def _sanitize_label(value: str, *, default: str = "unknown") -> str:
    normalized = _LABEL_NORMALIZER.sub("_", value.strip().lower()).strip("_")
    return normalized or default


def _collector_or_create(registry: Any, name: str, factory: Any) -> Any:
    names_to_collectors = getattr(registry, "_names_to_collectors", None)
    if isinstance(names_to_collectors, dict):
        collector = names_to_collectors.get(name)
        if collector is not None:
            return collector
    return factory()


class MetricsRecorder(Protocol):
    """Observer contract for bootstrap-layer metrics."""

    def observe_probe(self, *, probe: str, status: str, duration_seconds: float) -> None:
        """Record the outcome and latency of one health probe evaluation."""
        ...

    def observe_exporter_flush(
        self,
        *,
        signal: str,
        exporter: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record how an exporter fared during shutdown drain."""
        ...

    def observe_duplicate_registration(self, *, component: str) -> None:
        """Count a registration that was deduplicated or rejected."""
        ...


class NoopMetricsRecorder:
    """No-op recorder used when metrics are not configured."""

    def observe_probe(self, *, probe: str, status: str, duration_seconds: float) -> None:
        del probe, status, duration_seconds

    def observe_exporter_flush(
        self,
        *,
        signal: str,
        exporter: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        del signal, exporter, outcome, duration_seconds

    def observe_duplicate_registration(self, *, component: str) -> None:
        del component


class PrometheusMetricsRecorder:
    """Prometheus-backed recorder with ``<prefix>_*`` naming."""

    def __init__(
        self,
        *,
        registry: Any | None = None,
        prefix: str = "telemetry",
    ) -> None:
        prometheus_client = _import_prometheus_client()
        self._registry = prometheus_client.REGISTRY if registry is None else registry
        self._prefix = _sanitize_label(prefix, default="telemetry")
        self._probe_status = _collector_or_create(
            self._registry,
            f"{self._prefix}_health_probe_status",
            lambda: prometheus_client.Gauge(
                f"{self._prefix}_health_probe_status",
                "Last health probe status (0=healthy, 1=degraded, 2=unhealthy).",
                labelnames=("probe",),
                registry=self._registry,
            ),
        )
        self._probe_latency = _collector_or_create(
            self._registry,
            f"{self._prefix}_health_probe_duration_seconds",
            lambda: prometheus_client.Histogram(
                f"{self._prefix}_health_probe_duration_seconds",
                "Health probe evaluation latency in seconds.",
                labelnames=("probe", "status"),
                registry=self._registry,
                buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            ),
        )
        self._flushes = _collector_or_create(
            self._registry,
            f"{self._prefix}_exporter_flush_total",
            lambda: prometheus_client.Counter(
                f"{self._prefix}_exporter_flush_total",
                "Exporter drain outcomes at shutdown.",
                labelnames=("signal", "exporter", "outcome"),
                registry=self._registry,
            ),
        )
        self._duplicates = _collector_or_create(
            self._registry,
            f"{self._prefix}_duplicate_registrations_total",
            lambda: prometheus_client.Counter(
                f"{self._prefix}_duplicate_registrations_total",
                "Registrations collapsed or rejected as duplicates.",
                labelnames=("component",),
                registry=self._registry,
            ),
        )

    @property
    def registry(self) -> Any:
        return self._registry

    def observe_probe(self, *, probe: str, status: str, duration_seconds: float) -> None:
        probe_label = _sanitize_label(probe)
        self._probe_status.labels(probe=probe_label).set(_STATUS_VALUES.get(status, 2.0))
        self._probe_latency.labels(
            probe=probe_label,
            status=_sanitize_label(status),
        ).observe(max(0.0, duration_seconds))

    def observe_exporter_flush(
        self,
        *,
        signal: str,
        exporter: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        del duration_seconds
        self._flushes.labels(
            signal=_sanitize_label(signal),
            exporter=_sanitize_label(exporter),
            outcome=_sanitize_label(outcome),
        ).inc()

    def observe_duplicate_registration(self, *, component: str) -> None:
        self._duplicates.labels(component=_sanitize_label(component)).inc()


_NOOP_RECORDER = NoopMetricsRecorder()
_DEFAULT_RECORDER: MetricsRecorder = _NOOP_RECORDER


def get_metrics_recorder() -> MetricsRecorder:
    """Return the process-level metrics recorder."""
    return _DEFAULT_RECORDER


def set_metrics_recorder(recorder: MetricsRecorder | None) -> MetricsRecorder:
    """Set process-level recorder. `None` switches back to no-op."""
    global _DEFAULT_RECORDER
    _DEFAULT_RECORDER = _NOOP_RECORDER if recorder is None else recorder
    return _DEFAULT_RECORDER


def configure_prometheus_metrics(
    *,
    registry: Any | None = None,
    prefix: str = "telemetry",
    set_default: bool = True,
) -> PrometheusMetricsRecorder:
    """Build a Prometheus recorder and optionally set it as default."""
    recorder = PrometheusMetricsRecorder(registry=registry, prefix=prefix)
    if set_default:
        set_metrics_recorder(recorder)
    return recorder


def prometheus_content_type() -> str:
    """Return Prometheus exposition media type."""
    prometheus_client = _import_prometheus_client()
    return str(prometheus_client.CONTENT_TYPE_LATEST)


def render_prometheus_metrics(*, registry: Any | None = None) -> bytes:
    """Render current Prometheus metrics in exposition text format."""
    prometheus_client = _import_prometheus_client()
    resolved_registry = prometheus_client.REGISTRY if registry is None else registry
    return bytes(prometheus_client.generate_latest(resolved_registry))


@dataclass(frozen=True, slots=True)
class PrometheusHttpServer:
    """Handle for the background Prometheus HTTP exporter."""

    server: Any
    thread: Any

    def close(self) -> None:
        self.server.shutdown()
        self.server.server_close()


def start_prometheus_http_server(
    *,
    port: int = 9464,
    host: str = "0.0.0.0",
    registry: Any | None = None,
) -> PrometheusHttpServer:
    """Serve the scrape endpoint from a background thread, for non-ASGI hosts."""
    if not (1 <= port <= 65535):
        raise ValueError("port must be between 1 and 65535")

    prometheus_client = _import_prometheus_client()
    resolved_registry = prometheus_client.REGISTRY if registry is None else registry
    server, thread = prometheus_client.start_http_server(
        port=port,
        addr=host,
        registry=resolved_registry,
    )
    return PrometheusHttpServer(server=server, thread=thread)


async def _asgi_send_response(
    send: Any,
    *,
    status: int,
    body: bytes,
    content_type: str,
    content_length: int | None = None,
) -> None:
    response_length = len(body) if content_length is None else max(0, content_length)
    headers = [
        (b"content-type", content_type.encode("latin-1")),
        (b"content-length", str(response_length).encode("ascii")),
    ]
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


def create_prometheus_asgi_app(*, registry: Any | None = None) -> Any:
    """Create a tiny ASGI app exposing Prometheus metrics at `/metrics` or `/`."""

    async def app(scope: dict[str, Any], receive: Any, send: Any) -> None:
        del receive
        if scope.get("type") != "http":
            return

        method = str(scope.get("method", "GET")).upper()
        path = str(scope.get("path", "/"))

        if method not in {"GET", "HEAD"}:
            await _asgi_send_response(
                send,
                status=405,
                body=b"method not allowed",
                content_type="text/plain; charset=utf-8",
            )
            return

        if path not in {"/", "", "/metrics"}:
            await _asgi_send_response(
                send,
                status=404,
                body=b"not found",
                content_type="text/plain; charset=utf-8",
            )
            return

        payload = render_prometheus_metrics(registry=registry)
        await _asgi_send_response(
            send,
            status=200,
            body=b"" if method == "HEAD" else payload,
            content_type=prometheus_content_type(),
            content_length=len(payload),
        )

    return app
