"""One-call telemetry bootstrap built on a composable capability builder."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Any

from telemetry_bootstrap.composition.exporters import ExporterSpec
from telemetry_bootstrap.composition.instrumentation import LOGGING_BRIDGE_KEY, source_key
from telemetry_bootstrap.composition.pipeline import (
    Materializer,
    PipelineComposer,
    PipelineHandle,
    ShutdownReport,
    SignalType,
)
from telemetry_bootstrap.config.loader import settings_from_mapping
from telemetry_bootstrap.config.models import AppSettings
from telemetry_bootstrap.errors import ConfigurationIssue, DuplicateProbeNameError, IssueKind
from telemetry_bootstrap.health.dashboard import HealthDashboard
from telemetry_bootstrap.health.probes import DatastoreConnectivity, datastore_probe
from telemetry_bootstrap.health.registry import HealthProbe, HealthRegistry, HealthReport
from telemetry_bootstrap.observability.endpoints import create_telemetry_asgi_app
from telemetry_bootstrap.observability.logging import (
    LoggerHandle,
    get_logger_handle,
    init_logging,
    shutdown_logging,
)
from telemetry_bootstrap.observability.metrics import (
    MetricsRecorder,
    PrometheusMetricsRecorder,
    configure_prometheus_metrics,
    get_metrics_recorder,
    set_metrics_recorder,
)
from telemetry_bootstrap.observability.otel import OpenTelemetryMaterializer
from telemetry_bootstrap.resource import ResourceDescriptor, build_resource_descriptor

logger = logging.getLogger(__name__)


class Capability(StrEnum):
    TRACING = "tracing"
    METRICS = "metrics"
    LOGGING = "logging"
    HEALTH = "health"
    HEALTH_UI = "health-ui"
    SCRAPE_ENDPOINT = "scrape-endpoint"

    @classmethod
    def lookup(cls, value: object) -> Capability | None:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


DEFAULT_CAPABILITIES: frozenset[Capability] = frozenset(
    {Capability.TRACING, Capability.METRICS, Capability.LOGGING, Capability.HEALTH}
)

# Library instrumentation composed by default per signal.
_DEFAULT_TRACE_INSTRUMENTATION = ("fastapi", "httpx", "sqlalchemy", "asyncpg")
_DEFAULT_METRIC_INSTRUMENTATION = ("fastapi", "httpx")


class BootstrapHandle:
    """Owns the composed pipelines, health registry and logging of one bootstrap.

    Example usage::

        handle = bootstrap({"Observability": {"ServiceName": "orders-api"}})
        handle.add_exporter("traces", "push:https://collector:4317")
        handle.start()
        ...
        handle.shutdown()

    Or let a ``with`` block drive :meth:`start` and :meth:`shutdown`.
    """

    def __init__(
        self,
        *,
        settings: AppSettings,
        resource: ResourceDescriptor,
        composer: PipelineComposer,
        health: HealthRegistry,
        capabilities: frozenset[Capability],
        dashboard: HealthDashboard | None = None,
        materializer: Materializer | None = None,
        metrics_recorder: MetricsRecorder | None = None,
        issues: Iterable[ConfigurationIssue] = (),
    ) -> None:
        self.settings = settings
        self.resource = resource
        self.composer = composer
        self.health = health
        self.capabilities = capabilities
        self.dashboard = dashboard
        self.materializer = materializer
        self.metrics_recorder = metrics_recorder
        self.logger_handle: LoggerHandle | None = None
        self._bootstrap_issues = list(issues)
        self._owns_logging = False
        self._previous_recorder: MetricsRecorder | None = None
        self._started = False
        self._report: ShutdownReport | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._started and self._report is None

    @property
    def issues(self) -> tuple[ConfigurationIssue, ...]:
        """Every non-fatal issue recorded by configuration, composition and drain."""
        return (*self._bootstrap_issues, *self.composer.issues)

    @property
    def metrics_registry(self) -> Any | None:
        if isinstance(self.metrics_recorder, PrometheusMetricsRecorder):
            return self.metrics_recorder.registry
        return None

    def pipeline(self, signal: SignalType | str) -> PipelineHandle | None:
        return self.composer.get(signal)

    def add_instrumentation(
        self,
        signal: SignalType | str,
        key: str,
        *,
        enabled: bool = True,
    ) -> bool:
        return self.composer.add_instrumentation(signal, key, enabled=enabled)

    def add_exporter(self, signal: SignalType | str, spec: ExporterSpec | str) -> bool:
        """Add an exporter; ``spec`` may use the ``kind[:endpoint]`` shorthand."""
        resolved = _resolve_exporter(spec, self.settings)
        if resolved is None:
            self._bootstrap_issues.append(
                ConfigurationIssue(
                    IssueKind.INVALID_EXPORTER, f"pipeline.{signal}", f"unparseable spec {spec!r}"
                )
            )
            logger.warning("Ignoring unparseable exporter spec %r", spec)
            return False
        return self.composer.add_exporter(signal, resolved)

    def register_probe(self, probe: HealthProbe) -> None:
        """Register ``probe``.

        Raises:
            DuplicateProbeNameError: A probe with the same name is registered.
        """
        self.health.register(probe)

    def evaluate_health(self, *, timeout_seconds: float | None = None) -> HealthReport:
        return self.health.evaluate(timeout_seconds=timeout_seconds)

    async def evaluate_health_async(self, *, timeout_seconds: float | None = None) -> HealthReport:
        return await self.health.evaluate_async(timeout_seconds=timeout_seconds)

    def asgi_app(self) -> Any:
        """ASGI app serving the health, health UI and metrics routes."""
        return create_telemetry_asgi_app(self)

    def start(self) -> BootstrapHandle:
        """Activate every composed pipeline. Calling it again is a no-op."""
        with self._lock:
            if self._started:
                return self
            self._started = True

        if Capability.LOGGING in self.capabilities:
            self._owns_logging = get_logger_handle() is None
            self.logger_handle = init_logging(
                self.settings,
                service=self.resource.name,
                version=self.resource.version,
                env=self.settings.observability.environment,
            )

        if self.metrics_recorder is not None:
            self._previous_recorder = get_metrics_recorder()
            set_metrics_recorder(self.metrics_recorder)

        self.composer.activate(self.materializer)
        if isinstance(self.materializer, OpenTelemetryMaterializer):
            self.materializer.instrument()

        logger.info(
            "Telemetry started for %s %s",
            self.resource.name,
            self.resource.version,
            extra={"capabilities": sorted(str(capability) for capability in self.capabilities)},
        )
        return self

    def shutdown(self) -> ShutdownReport:
        """Drain and close every pipeline within the configured deadline.

        Safe to call more than once; later calls return the first report.
        """
        with self._lock:
            if self._report is not None:
                return self._report
            self._started = True

            if self.dashboard is not None:
                self.dashboard.cancel()
            if isinstance(self.materializer, OpenTelemetryMaterializer):
                self.materializer.close()

            observability = self.settings.observability
            report = self.composer.shutdown(
                deadline_seconds=observability.shutdown_deadline_seconds,
                exporter_timeout_seconds=observability.exporter_flush_timeout_seconds,
            )
            self._report = report

        if self.metrics_recorder is not None and get_metrics_recorder() is self.metrics_recorder:
            set_metrics_recorder(self._previous_recorder)

        logger.info(
            "Telemetry shut down for %s in %.3fs (%d exporter(s) abandoned)",
            self.resource.name,
            report.duration_seconds,
            len(report.abandoned),
        )
        if self._owns_logging and self.logger_handle is not None:
            shutdown_logging(self.logger_handle)
        return report

    def __enter__(self) -> BootstrapHandle:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    async def __aenter__(self) -> BootstrapHandle:
        self.start()
        if self.dashboard is not None:
            self.dashboard.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self.dashboard is not None:
            await self.dashboard.stop()
        self.shutdown()


class TelemetryBuilder:
    """Composes exactly the requested capabilities into a :class:`BootstrapHandle`.

    Builder methods return the builder so calls can be chained. Nothing
    process-wide changes until :meth:`BootstrapHandle.start`.
    """

    def __init__(self, config: AppSettings | Mapping[str, Any] | None = None) -> None:
        self._issues: list[ConfigurationIssue] = []
        if isinstance(config, AppSettings):
            self.settings = config
        else:
            self.settings = settings_from_mapping(config, issues=self._issues)
        self._capabilities: frozenset[Capability] = DEFAULT_CAPABILITIES
        self._instrumentation: list[tuple[SignalType | str, str, bool]] = []
        self._exporters: list[tuple[SignalType | str, ExporterSpec | str]] = []
        self._probes: list[HealthProbe] = []
        self._datastore: DatastoreConnectivity | None = None
        self._materializer: Materializer | None = None

    def with_capabilities(self, *capabilities: Capability | str) -> TelemetryBuilder:
        """Compose exactly ``capabilities``; unknown names are recorded and skipped."""
        resolved: set[Capability] = set()
        for capability in capabilities:
            known = Capability.lookup(capability)
            if known is None:
                logger.warning("Ignoring unknown capability %r", capability)
                self._issues.append(
                    ConfigurationIssue(
                        IssueKind.UNKNOWN_CAPABILITY,
                        "capabilities",
                        f"unknown capability {capability!r}",
                    )
                )
                continue
            resolved.add(known)
        self._capabilities = frozenset(resolved)
        return self

    def add_instrumentation(
        self,
        signal: SignalType | str,
        key: str,
        *,
        enabled: bool = True,
    ) -> TelemetryBuilder:
        self._instrumentation.append((signal, key, enabled))
        return self

    def add_exporter(self, signal: SignalType | str, spec: ExporterSpec | str) -> TelemetryBuilder:
        self._exporters.append((signal, spec))
        return self

    def add_probe(self, probe: HealthProbe) -> TelemetryBuilder:
        self._probes.append(probe)
        return self

    def with_datastore(self, connectivity: DatastoreConnectivity | None) -> TelemetryBuilder:
        self._datastore = connectivity
        return self

    def with_materializer(self, materializer: Materializer | None) -> TelemetryBuilder:
        """Override how frozen pipelines become live exporters.

        Defaults to an :class:`OpenTelemetryMaterializer` for these settings.
        """
        self._materializer = materializer
        return self

    def build(self) -> BootstrapHandle:
        settings = self.settings
        capabilities = self._capabilities
        issues = list(self._issues)

        recorder: MetricsRecorder | None = None
        if Capability.SCRAPE_ENDPOINT in capabilities:
            recorder = configure_prometheus_metrics(set_default=False)

        resource = build_resource_descriptor(settings)
        composer = PipelineComposer(resource, _metrics=recorder)
        self._compose_defaults(composer, resource)
        for signal, key, enabled in self._instrumentation:
            composer.add_instrumentation(signal, key, enabled=enabled)
        for signal, spec in self._exporters:
            resolved = _resolve_exporter(spec, settings)
            if resolved is None:
                issues.append(
                    ConfigurationIssue(
                        IssueKind.INVALID_EXPORTER,
                        f"pipeline.{signal}",
                        f"unparseable spec {spec!r}",
                    )
                )
                logger.warning("Ignoring unparseable exporter spec %r", spec)
                continue
            composer.add_exporter(signal, resolved)

        health = HealthRegistry(
            timeout_seconds=settings.health.probe_timeout_seconds,
            _metrics=recorder,
        )
        issues.extend(self._register_probes(health))

        dashboard: HealthDashboard | None = None
        if Capability.HEALTH_UI in capabilities:
            dashboard = HealthDashboard(
                health,
                name=resource.name,
                evaluation_interval_seconds=settings.health.evaluation_interval_seconds,
                max_history_entries=settings.health.max_history_entries,
                timeout_seconds=settings.health.probe_timeout_seconds,
            )

        materializer = self._materializer
        if materializer is None:
            materializer = OpenTelemetryMaterializer(settings)

        return BootstrapHandle(
            settings=settings,
            resource=resource,
            composer=composer,
            health=health,
            capabilities=capabilities,
            dashboard=dashboard,
            materializer=materializer,
            metrics_recorder=recorder,
            issues=issues,
        )

    def _compose_defaults(self, composer: PipelineComposer, resource: ResourceDescriptor) -> None:
        observability = self.settings.observability
        capabilities = self._capabilities
        push = (
            ExporterSpec.push(observability.otlp_endpoint, observability.otlp_protocol)
            if observability.otlp_endpoint
            else None
        )

        if Capability.TRACING in capabilities:
            composer.add_instrumentation(SignalType.TRACES, source_key(resource.name))
            for key in _DEFAULT_TRACE_INSTRUMENTATION:
                composer.add_instrumentation(SignalType.TRACES, key)
            if push is not None:
                composer.add_exporter(SignalType.TRACES, push)

        if Capability.METRICS in capabilities:
            for key in _DEFAULT_METRIC_INSTRUMENTATION:
                composer.add_instrumentation(SignalType.METRICS, key)
            if push is not None:
                composer.add_exporter(SignalType.METRICS, push)

        if Capability.SCRAPE_ENDPOINT in capabilities:
            composer.add_exporter(SignalType.METRICS, ExporterSpec.pull())

        if Capability.LOGGING in capabilities:
            composer.add_instrumentation(SignalType.LOGS, LOGGING_BRIDGE_KEY)
            if push is not None:
                composer.add_exporter(SignalType.LOGS, push)

        if observability.console_exporter:
            for handle in composer.pipelines():
                handle.add_exporter(ExporterSpec.debug())

    def _register_probes(self, health: HealthRegistry) -> list[ConfigurationIssue]:
        probes: list[HealthProbe] = []
        if self._datastore is not None:
            probes.append(
                datastore_probe(self._datastore, name=self.settings.health.datastore_probe_name)
            )
        probes.extend(self._probes)

        if not probes:
            return []
        if not {Capability.HEALTH, Capability.HEALTH_UI} & self._capabilities:
            logger.warning("Ignoring %d health probe(s): health is not enabled", len(probes))
            return [
                ConfigurationIssue(
                    IssueKind.CONFIGURATION_DEFAULT,
                    "health",
                    f"{len(probes)} probe(s) ignored: health capability not requested",
                )
            ]

        issues: list[ConfigurationIssue] = []
        for probe in probes:
            try:
                health.register(probe)
            except DuplicateProbeNameError as exc:
                issues.append(
                    ConfigurationIssue(
                        IssueKind.DUPLICATE_PROBE_NAME,
                        "health",
                        f"{exc}; keeping the first registration",
                    )
                )
        return issues


def bootstrap(
    config: AppSettings | Mapping[str, Any] | None = None,
    *,
    capabilities: Iterable[Capability | str] = DEFAULT_CAPABILITIES,
    probes: Iterable[HealthProbe] = (),
    datastore: DatastoreConnectivity | None = None,
    materializer: Materializer | None = None,
) -> BootstrapHandle:
    """Compose telemetry for one service and return its handle, not yet started.

    Never raises for configuration problems: invalid values fall back to
    defaults and are listed in :attr:`BootstrapHandle.issues`.
    """
    builder = (
        TelemetryBuilder(config)
        .with_capabilities(*capabilities)
        .with_datastore(datastore)
        .with_materializer(materializer)
    )
    for probe in probes:
        builder.add_probe(probe)
    return builder.build()


def _resolve_exporter(spec: ExporterSpec | str, settings: AppSettings) -> ExporterSpec | None:
    if isinstance(spec, ExporterSpec):
        return spec
    try:
        return ExporterSpec.parse(spec, protocol=settings.observability.otlp_protocol)
    except ValueError:
        return None
