"""OpenTelemetry SDK materialization of composed pipelines."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from telemetry_bootstrap.composition.exporters import ExporterKind, ExporterProtocol, ExporterSpec
from telemetry_bootstrap.composition.instrumentation import (
    KNOWN_INSTRUMENTORS,
    LOGGING_BRIDGE_KEY,
    activate_instrumentation,
)
from telemetry_bootstrap.composition.pipeline import ExporterBinding, PipelineHandle, SignalType
from telemetry_bootstrap.config.models import ObservabilitySettings
from telemetry_bootstrap.errors import MissingDependencyError
from telemetry_bootstrap.observability.logging import attach_handler, detach_handler

if TYPE_CHECKING:
    from telemetry_bootstrap.config.models import AppSettings
    from telemetry_bootstrap.resource import ResourceDescriptor

logger = logging.getLogger(__name__)

_INSTALLED_GLOBALS: set[SignalType] = set()
_OTEL_LOCK = threading.Lock()


@dataclass(slots=True, frozen=True)
class OtlpRetrySettings:
    """Retry configuration for exporter wrappers."""

    enabled: bool
    max_attempts: int
    initial_backoff_seconds: float
    max_backoff_seconds: float

    @classmethod
    def from_settings(cls, settings: ObservabilitySettings) -> OtlpRetrySettings:
        return cls(
            enabled=settings.retry_enabled,
            max_attempts=settings.retry_max_attempts,
            initial_backoff_seconds=settings.retry_initial_backoff_seconds,
            max_backoff_seconds=settings.retry_max_backoff_seconds,
        )


class _RetryingExporter:
    """Synchronous exporter wrapper with exponential-backoff retries."""

    def __init__(
        self,
        exporter: Any,
        *,
        success_value: Any,
        retry: OtlpRetrySettings,
    ) -> None:
        self._exporter = exporter
        self._success_value = success_value
        self._retry = retry

    def export(self, *args: Any, **kwargs: Any) -> Any:
        attempt = 1
        while True:
            result = self._exporter.export(*args, **kwargs)
            if not self._retry.enabled or result == self._success_value:
                return result
            if attempt >= self._retry.max_attempts:
                return result

            delay_seconds = min(
                self._retry.max_backoff_seconds,
                self._retry.initial_backoff_seconds * (2 ** (attempt - 1)),
            )
            # Runs on the SDK's export thread, never on an event loop.
            time.sleep(delay_seconds)
            attempt += 1

    def shutdown(self, *args: Any, **kwargs: Any) -> Any:
        return self._exporter.shutdown(*args, **kwargs)

    def force_flush(self, *args: Any, **kwargs: Any) -> Any:
        force_flush = getattr(self._exporter, "force_flush", None)
        if callable(force_flush):
            return force_flush(*args, **kwargs)
        return True

    def __getattr__(self, name: str) -> Any:
        return getattr(self._exporter, name)


class _SdkComponentSink:
    """Adapts a span/log processor or metric reader to the drain contract."""

    def __init__(self, component: Any) -> None:
        self.component = component

    def flush(self, timeout_seconds: float) -> bool:
        result = self.component.force_flush(timeout_millis=int(timeout_seconds * 1000))
        return result is not False

    def close(self) -> None:
        self.component.shutdown()


class OpenTelemetryMaterializer:
    """Builds SDK providers for each frozen pipeline handle.

    Pass an instance to :meth:`PipelineComposer.activate`. Push exporters use
    OTLP over gRPC for the binary protocol and OTLP over HTTP/protobuf for the
    text protocol. Global providers can only be installed once per process:
    later materializers keep their providers local and log a warning.
    """

    def __init__(
        self,
        settings: AppSettings | ObservabilitySettings | None = None,
        *,
        set_global: bool = True,
    ) -> None:
        resolved = getattr(settings, "observability", settings)
        self.settings: ObservabilitySettings = (
            ObservabilitySettings() if resolved is None else resolved
        )
        self.set_global = set_global
        self.tracer_provider: Any | None = None
        self.meter_provider: Any | None = None
        self.logger_provider: Any | None = None
        self._retry = OtlpRetrySettings.from_settings(self.settings)
        self._resource: Any | None = None
        self._instrumentation: dict[str, None] = {}
        self._bridge_handler: logging.Handler | None = None

    def __call__(self, handle: PipelineHandle) -> list[ExporterBinding]:
        modules = _import_otel_sdk_modules()
        resource = self._otel_resource(modules, handle.resource)

        if handle.signal is SignalType.TRACES:
            bindings = self._materialize_traces(modules, resource, handle)
        elif handle.signal is SignalType.METRICS:
            bindings = self._materialize_metrics(modules, resource, handle)
        else:
            bindings = self._materialize_logs(modules, resource, handle)

        for key in handle.enabled_instrumentation():
            if key in KNOWN_INSTRUMENTORS:
                self._instrumentation.setdefault(key)
        return bindings

    def instrument(self) -> list[str]:
        """Activate library instrumentors collected from every materialized pipeline.

        Returns the keys this call activated.
        """
        activated = [
            key
            for key in self._instrumentation
            if activate_instrumentation(
                key,
                tracer_provider=self.tracer_provider,
                meter_provider=self.meter_provider,
            )
        ]
        self._instrumentation.clear()
        return activated

    def close(self) -> None:
        """Detach the stdlib logging bridge, if one was attached."""
        handler, self._bridge_handler = self._bridge_handler, None
        if handler is not None:
            detach_handler(handler)

    def _materialize_traces(
        self,
        modules: dict[str, Any],
        resource: Any,
        handle: PipelineHandle,
    ) -> list[ExporterBinding]:
        provider = modules["TracerProvider"](
            resource=resource,
            sampler=modules["TraceIdRatioBased"](self.settings.sample_rate),
            shutdown_on_exit=False,
        )
        bindings: list[ExporterBinding] = []
        for spec in handle.exporter_specs():
            if spec.kind is ExporterKind.PUSH:
                exporter = _RetryingExporter(
                    self._otlp_exporter(modules, SignalType.TRACES, spec),
                    success_value=modules["SpanExportResult"].SUCCESS,
                    retry=self._retry,
                )
                processor = modules["BatchSpanProcessor"](exporter)
            else:
                processor = modules["SimpleSpanProcessor"](modules["ConsoleSpanExporter"]())
            provider.add_span_processor(processor)
            bindings.append(ExporterBinding(handle.signal, spec, _SdkComponentSink(processor)))

        self.tracer_provider = provider
        if self._claim_global(SignalType.TRACES):
            modules["trace"].set_tracer_provider(provider)
        return bindings

    def _materialize_metrics(
        self,
        modules: dict[str, Any],
        resource: Any,
        handle: PipelineHandle,
    ) -> list[ExporterBinding]:
        interval_millis = int(self.settings.metrics_export_interval_seconds * 1000)
        timeout_millis = int(self.settings.otlp_timeout_seconds * 1000)
        readers: list[tuple[ExporterSpec, Any]] = []
        for spec in handle.exporter_specs():
            if spec.kind is ExporterKind.PUSH:
                exporter = _RetryingExporter(
                    self._otlp_exporter(modules, SignalType.METRICS, spec),
                    success_value=modules["MetricExportResult"].SUCCESS,
                    retry=self._retry,
                )
                reader = modules["PeriodicExportingMetricReader"](
                    exporter,
                    export_interval_millis=interval_millis,
                    export_timeout_millis=timeout_millis,
                )
            elif spec.kind is ExporterKind.PULL:
                reader = _import_prometheus_reader()()
            else:
                reader = modules["PeriodicExportingMetricReader"](
                    modules["ConsoleMetricExporter"](),
                    export_interval_millis=interval_millis,
                )
            readers.append((spec, reader))

        provider = modules["MeterProvider"](
            resource=resource,
            metric_readers=[reader for _, reader in readers],
            shutdown_on_exit=False,
        )
        self.meter_provider = provider
        if self._claim_global(SignalType.METRICS):
            modules["metrics"].set_meter_provider(provider)
        return [
            ExporterBinding(handle.signal, spec, _SdkComponentSink(reader))
            for spec, reader in readers
        ]

    def _materialize_logs(
        self,
        modules: dict[str, Any],
        resource: Any,
        handle: PipelineHandle,
    ) -> list[ExporterBinding]:
        provider = modules["LoggerProvider"](resource=resource, shutdown_on_exit=False)
        bindings: list[ExporterBinding] = []
        for spec in handle.exporter_specs():
            if spec.kind is ExporterKind.PUSH:
                exporter = _RetryingExporter(
                    self._otlp_exporter(modules, SignalType.LOGS, spec),
                    success_value=modules["LogExportResult"].SUCCESS,
                    retry=self._retry,
                )
                processor = modules["BatchLogRecordProcessor"](exporter)
            else:
                processor = modules["SimpleLogRecordProcessor"](modules["ConsoleLogExporter"]())
            provider.add_log_record_processor(processor)
            bindings.append(ExporterBinding(handle.signal, spec, _SdkComponentSink(processor)))

        self.logger_provider = provider
        if self._claim_global(SignalType.LOGS):
            modules["logs"].set_logger_provider(provider)

        if LOGGING_BRIDGE_KEY in handle.enabled_instrumentation() and self._bridge_handler is None:
            self._bridge_handler = modules["LoggingHandler"](
                level=logging.NOTSET,
                logger_provider=provider,
            )
            attach_handler(self._bridge_handler)
        return bindings

    def _otlp_exporter(self, modules: dict[str, Any], signal: SignalType, spec: ExporterSpec) -> Any:
        endpoint = spec.endpoint or ""
        if spec.protocol is ExporterProtocol.TEXT:
            factory = _import_otlp_http_exporters()[signal]
            return factory(
                endpoint=_http_signal_endpoint(endpoint, signal),
                timeout=self.settings.otlp_timeout_seconds,
            )
        factory = modules[_GRPC_EXPORTERS[signal]]
        return factory(
            endpoint=endpoint,
            insecure=self.settings.otlp_insecure,
            timeout=self.settings.otlp_timeout_seconds,
        )

    def _otel_resource(self, modules: dict[str, Any], descriptor: ResourceDescriptor) -> Any:
        if self._resource is None:
            self._resource = modules["Resource"].create(descriptor.to_attributes())
        return self._resource

    def _claim_global(self, signal: SignalType) -> bool:
        if not self.set_global:
            return False
        with _OTEL_LOCK:
            if signal in _INSTALLED_GLOBALS:
                logger.warning(
                    "Global OpenTelemetry %s provider already installed in this process; "
                    "keeping the new provider local",
                    signal,
                )
                return False
            _INSTALLED_GLOBALS.add(signal)
            return True


_GRPC_EXPORTERS = {
    SignalType.TRACES: "OTLPSpanExporter",
    SignalType.METRICS: "OTLPMetricExporter",
    SignalType.LOGS: "OTLPLogExporter",
}


def _http_signal_endpoint(endpoint: str, signal: SignalType) -> str:
    path = f"/v1/{signal}"
    trimmed = endpoint.rstrip("/")
    return trimmed if trimmed.endswith(path) else f"{trimmed}{path}"


def _import_otel_sdk_modules() -> dict[str, Any]:
    try:
        from opentelemetry import _logs as logs
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import (
            BatchLogRecordProcessor,
            ConsoleLogExporter,
            LogExportResult,
            SimpleLogRecordProcessor,
        )
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import (
            ConsoleMetricExporter,
            MetricExportResult,
            PeriodicExportingMetricReader,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
            SpanExportResult,
        )
        from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
    except ImportError as exc:  # pragma: no cover - depends on installed extras
        raise MissingDependencyError(
            "OpenTelemetry pipelines require the OpenTelemetry SDK and OTLP gRPC exporter. "
            "Install with: uv sync"
        ) from exc

    return {
        "logs": logs,
        "metrics": metrics,
        "trace": trace,
        "OTLPLogExporter": OTLPLogExporter,
        "OTLPMetricExporter": OTLPMetricExporter,
        "OTLPSpanExporter": OTLPSpanExporter,
        "LoggerProvider": LoggerProvider,
        "LoggingHandler": LoggingHandler,
        "BatchLogRecordProcessor": BatchLogRecordProcessor,
        "ConsoleLogExporter": ConsoleLogExporter,
        "LogExportResult": LogExportResult,
        "SimpleLogRecordProcessor": SimpleLogRecordProcessor,
        "MeterProvider": MeterProvider,
        "ConsoleMetricExporter": ConsoleMetricExporter,
        "MetricExportResult": MetricExportResult,
        "PeriodicExportingMetricReader": PeriodicExportingMetricReader,
        "Resource": Resource,
        "TracerProvider": TracerProvider,
        "BatchSpanProcessor": BatchSpanProcessor,
        "ConsoleSpanExporter": ConsoleSpanExporter,
        "SimpleSpanProcessor": SimpleSpanProcessor,
        "SpanExportResult": SpanExportResult,
        "TraceIdRatioBased": TraceIdRatioBased,
    }


def _import_otlp_http_exporters() -> dict[SignalType, Any]:
    try:
        from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    except ImportError as exc:  # pragma: no cover - depends on installed extras
        raise MissingDependencyError(
            "Text-protocol OTLP export requires 'opentelemetry-exporter-otlp-proto-http'. "
            "Install with: uv sync"
        ) from exc
    return {
        SignalType.TRACES: OTLPSpanExporter,
        SignalType.METRICS: OTLPMetricExporter,
        SignalType.LOGS: OTLPLogExporter,
    }


def _import_prometheus_reader() -> Any:
    try:
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
    except ImportError as exc:  # pragma: no cover - depends on installed extras
        raise MissingDependencyError(
            "Pull metrics export requires 'opentelemetry-exporter-prometheus'. "
            "Install with: uv sync"
        ) from exc
    return PrometheusMetricReader
