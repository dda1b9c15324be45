"""Tests for the capability builder, bootstrap handle and end-to-end flow."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from typing import Any

import pytest

from telemetry_bootstrap import (
    BootstrapHandle,
    Capability,
    DuplicateProbeNameError,
    ExporterSpec,
    HealthCheckResult,
    HealthProbe,
    HealthState,
    IssueKind,
    PipelineState,
    SignalType,
    TelemetryBuilder,
    bootstrap,
)
from telemetry_bootstrap.composition import ExporterBinding, PipelineHandle
from telemetry_bootstrap.observability.logging import get_logger_handle, shutdown_logging
from telemetry_bootstrap.observability.metrics import get_metrics_recorder, set_metrics_recorder

ORDERS_CONFIG = {"Observability": {"ServiceName": "orders-api", "ServiceVersion": "1.4.0"}}


class FakeSink:
    def __init__(self) -> None:
        self.flushed = 0
        self.closed = False

    def flush(self, timeout_seconds: float) -> bool:
        del timeout_seconds
        self.flushed += 1
        return True

    def close(self) -> None:
        self.closed = True


class FakeMaterializer:
    def __init__(self) -> None:
        self.calls: list[PipelineHandle] = []
        self.sinks: list[FakeSink] = []

    def __call__(self, handle: PipelineHandle) -> list[ExporterBinding]:
        self.calls.append(handle)
        bindings = []
        for spec in handle.exporter_specs():
            sink = FakeSink()
            self.sinks.append(sink)
            bindings.append(ExporterBinding(handle.signal, spec, sink))
        return bindings


@pytest.fixture(autouse=True)
def restore_process_state() -> Iterator[None]:
    recorder = get_metrics_recorder()
    yield
    handle = get_logger_handle()
    if handle is not None:
        shutdown_logging(handle)
    set_metrics_recorder(recorder)


def _builder(config: Any = ORDERS_CONFIG) -> TelemetryBuilder:
    return TelemetryBuilder(config).with_materializer(FakeMaterializer())


async def _get(app: Any, path: str) -> tuple[int, dict[str, Any]]:
    sent_messages: list[dict[str, Any]] = []

    async def send(message: dict[str, Any]) -> None:
        sent_messages.append(message)

    async def receive() -> dict[str, object]:
        return {"type": "http.request", "body": b"", "more_body": False}

    await app({"type": "http", "method": "GET", "path": path, "headers": []}, receive, send)
    return sent_messages[0]["status"], json.loads(sent_messages[1]["body"])


def test_default_capabilities_compose_three_pipelines() -> None:
    handle = _builder().build()

    traces = handle.pipeline("traces")
    metrics = handle.pipeline("metrics")
    logs = handle.pipeline("logs")
    assert traces is not None and metrics is not None and logs is not None
    assert "source:orders-api" in traces.instrumentation_keys()
    assert {"fastapi", "httpx"} <= metrics.instrumentation_keys()
    assert "logging" in logs.instrumentation_keys()
    assert traces.exporter_specs() == (ExporterSpec.push("http://localhost:4317"),)
    assert traces.resource is metrics.resource is handle.resource
    assert handle.resource.name == "orders-api"
    assert handle.dashboard is None


def test_only_requested_capabilities_are_composed() -> None:
    handle = _builder().with_capabilities(Capability.TRACING).build()

    assert handle.pipeline("traces") is not None
    assert handle.pipeline("metrics") is None
    assert handle.pipeline("logs") is None
    assert handle.composer.state("metrics") is PipelineState.UNINITIALIZED


def test_blank_endpoint_composes_no_push_exporter() -> None:
    handle = _builder({"Observability": {"OtlpEndpoint": ""}}).build()

    assert handle.pipeline("traces").exporter_specs() == ()  # type: ignore[union-attr]


def test_console_exporter_adds_debug_sink_everywhere() -> None:
    handle = _builder({"Observability": {"ConsoleExporter": True, "OtlpEndpoint": ""}}).build()

    for handle_pipeline in handle.composer.pipelines():
        assert handle_pipeline.exporter_specs() == (ExporterSpec.debug(),)


def test_scrape_endpoint_adds_pull_exporter_and_registry() -> None:
    prometheus_client = pytest.importorskip("prometheus_client")

    handle = (
        _builder()
        .with_capabilities(Capability.METRICS, Capability.SCRAPE_ENDPOINT)
        .build()
    )

    assert ExporterSpec.pull() in handle.pipeline("metrics").exporter_specs()  # type: ignore[union-attr]
    assert handle.metrics_registry is prometheus_client.REGISTRY


def test_invalid_configuration_falls_back_with_issue() -> None:
    handle = _builder({"Observability": {"ServiceName": "orders-api", "SampleRate": 4.0}}).build()

    assert handle.settings.observability.sample_rate == 1.0
    assert handle.settings.observability.service_name == "orders-api"
    assert [issue.kind for issue in handle.issues] == [IssueKind.CONFIGURATION_DEFAULT]


def test_missing_service_name_uses_default_resource() -> None:
    handle = _builder(None).build()

    assert handle.resource.name == "unknown_service"


def test_unknown_capability_is_recorded_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING"):
        handle = bootstrap(
            ORDERS_CONFIG,
            capabilities=["tracing", "profiling"],
            materializer=FakeMaterializer(),
        )

    assert handle.capabilities == frozenset({Capability.TRACING})
    assert handle.pipeline("traces") is not None
    assert handle.pipeline("metrics") is None
    assert [issue.kind for issue in handle.issues] == [IssueKind.UNKNOWN_CAPABILITY]
    assert "profiling" in handle.issues[0].detail
    assert "profiling" in caplog.text


def test_unknown_signal_is_recorded_and_skipped() -> None:
    handle = (
        _builder()
        .with_capabilities(Capability.TRACING)
        .add_instrumentation("spans", "fastapi")
        .add_exporter("spans", "debug")
        .build()
    )

    assert handle.add_exporter("spans", "push:https://collector:4317") is False
    assert handle.add_instrumentation("profiles", "httpx") is False
    assert handle.pipeline("spans") is None
    assert [pipeline.signal for pipeline in handle.composer.pipelines()] == [SignalType.TRACES]
    assert [issue.kind for issue in handle.issues] == [IssueKind.UNKNOWN_SIGNAL] * 4


def test_repeated_bootstrap_returns_independent_handles() -> None:
    first = bootstrap(ORDERS_CONFIG, materializer=FakeMaterializer())
    second = bootstrap(ORDERS_CONFIG, materializer=FakeMaterializer())

    assert first.composer is not second.composer
    assert first.health is not second.health
    for signal in ("traces", "metrics", "logs"):
        first_pipeline = first.pipeline(signal)
        second_pipeline = second.pipeline(signal)
        assert first_pipeline is not None and second_pipeline is not None
        assert first_pipeline is not second_pipeline
        assert first_pipeline.exporter_specs() == second_pipeline.exporter_specs()
        assert first_pipeline.instrumentation_keys() == second_pipeline.instrumentation_keys()
        assert len(first_pipeline.exporter_specs()) == len(set(first_pipeline.exporter_specs()))

    assert first.add_exporter("traces", "debug") is True
    assert second.pipeline("traces").exporter_specs() == (  # type: ignore[union-attr]
        ExporterSpec.push("http://localhost:4317"),
    )
    assert first.issues == ()


def test_concurrent_bootstraps_compose_deduplicated_handles() -> None:
    workers = 8
    barrier = threading.Barrier(workers)
    handles: list[BootstrapHandle] = []
    lock = threading.Lock()

    def run() -> None:
        barrier.wait()
        handle = bootstrap(ORDERS_CONFIG, materializer=FakeMaterializer())
        handle.add_exporter("traces", "debug")
        handle.add_exporter("traces", "debug")
        with lock:
            handles.append(handle)

    threads = [threading.Thread(target=run) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({id(handle.composer) for handle in handles}) == workers
    for handle in handles:
        assert handle.pipeline("traces").exporter_specs() == (  # type: ignore[union-attr]
            ExporterSpec.push("http://localhost:4317"),
            ExporterSpec.debug(),
        )
        assert [issue.kind for issue in handle.issues] == [IssueKind.DUPLICATE_REGISTRATION]


def test_builder_duplicate_probe_keeps_first() -> None:
    first = HealthProbe("database-context", lambda: HealthState.HEALTHY)
    second = HealthProbe("database-context", lambda: HealthState.UNHEALTHY)

    handle = _builder().add_probe(first).add_probe(second).build()

    assert handle.health.probes() == (first,)
    assert [issue.kind for issue in handle.issues] == [IssueKind.DUPLICATE_PROBE_NAME]


def test_datastore_probe_uses_configured_name() -> None:
    class Connectivity:
        def check_connectivity(self) -> HealthState:
            return HealthState.HEALTHY

    handle = (
        _builder({"Health": {"DatastoreProbeName": "orders-db"}})
        .with_datastore(Connectivity())
        .build()
    )

    assert handle.health.names() == ("orders-db",)
    assert handle.evaluate_health().status is HealthState.HEALTHY


def test_probes_are_ignored_without_health_capability() -> None:
    handle = (
        _builder()
        .with_capabilities(Capability.TRACING)
        .add_probe(HealthProbe("cache", lambda: HealthState.HEALTHY))
        .build()
    )

    assert len(handle.health) == 0
    assert [issue.kind for issue in handle.issues] == [IssueKind.CONFIGURATION_DEFAULT]


def test_start_activates_once_and_shutdown_drains_once() -> None:
    materializer = FakeMaterializer()
    handle = bootstrap(
        ORDERS_CONFIG,
        capabilities=(Capability.TRACING, Capability.METRICS),
        materializer=materializer,
    )

    handle.start()
    handle.start()

    assert handle.running is True
    assert [pipeline.signal for pipeline in materializer.calls] == ["traces", "metrics"]

    report = handle.shutdown()

    assert handle.shutdown() is report
    assert report.clean is True
    assert [sink.flushed for sink in materializer.sinks] == [1, 1]
    assert all(sink.closed for sink in materializer.sinks)
    assert handle.running is False
    assert handle.composer.state("traces") is PipelineState.CLOSED


def test_shutdown_without_start_closes_composing_pipelines() -> None:
    handle = _builder().build()

    report = handle.shutdown()

    assert report.results == ()
    assert handle.composer.state("traces") is PipelineState.CLOSED


def test_additions_after_start_are_reported_not_applied() -> None:
    handle = _builder().with_capabilities(Capability.TRACING).build().start()

    assert handle.add_instrumentation("traces", "redis") is False
    assert handle.add_exporter("traces", "debug") is False
    assert handle.add_exporter("logs", "debug") is False
    assert handle.add_exporter("traces", "carrier-pigeon") is False

    kinds = [issue.kind for issue in handle.issues]
    assert kinds.count(IssueKind.FROZEN_PIPELINE) == 3
    assert kinds.count(IssueKind.INVALID_EXPORTER) == 1
    assert "redis" not in handle.pipeline("traces").instrumentation_keys()  # type: ignore[union-attr]
    handle.shutdown()


def test_logging_capability_owns_and_releases_logging() -> None:
    with _builder().with_capabilities(Capability.LOGGING).build() as handle:
        active = get_logger_handle()
        assert active is handle.logger_handle
        assert active is not None and active.service == "orders-api"

    assert get_logger_handle() is None


def test_scrape_recorder_is_installed_only_while_running() -> None:
    pytest.importorskip("prometheus_client")
    previous = get_metrics_recorder()
    handle = _builder().with_capabilities(Capability.SCRAPE_ENDPOINT).build()

    with handle:
        assert get_metrics_recorder() is handle.metrics_recorder

    assert get_metrics_recorder() is previous


async def test_blocking_health_evaluation_works_inside_the_loop() -> None:
    handle = _builder().add_probe(HealthProbe("cache", lambda: HealthState.DEGRADED)).build()

    report = handle.evaluate_health()

    assert report.status is HealthState.DEGRADED
    assert report.get("cache") is not None


async def test_async_context_drives_dashboard() -> None:
    handle = (
        _builder(
            {
                "Observability": {"ServiceName": "orders-api"},
                "Health": {"EvaluationIntervalSeconds": 0.01},
            }
        )
        .with_capabilities(Capability.HEALTH_UI)
        .add_probe(HealthProbe("cache", lambda: HealthState.HEALTHY))
        .build()
    )

    async with handle:
        assert handle.dashboard is not None and handle.dashboard.running
        status, payload = await _get(handle.asgi_app(), "/health-ui-api")

    assert status == 200
    assert payload["name"] == "orders-api"
    assert handle.dashboard.running is False


async def test_orders_api_end_to_end() -> None:
    materializer = FakeMaterializer()
    handle = bootstrap(
        {"Observability": {"ServiceName": "orders-api", "OtlpEndpoint": ""}},
        capabilities=(Capability.TRACING, Capability.HEALTH),
        materializer=materializer,
    )

    assert handle.add_exporter("traces", "push:https://collector:4317") is True
    assert handle.add_exporter("traces", "push:https://collector:4317") is False
    assert len(handle.pipeline("traces").exporter_specs()) == 1  # type: ignore[union-attr]

    handle.register_probe(
        HealthProbe("database-context", lambda: HealthCheckResult.healthy("SELECT 1 ok"))
    )
    with pytest.raises(DuplicateProbeNameError):
        handle.register_probe(HealthProbe("database-context", lambda: HealthState.HEALTHY))
    handle.register_probe(
        HealthProbe("payments", lambda: HealthCheckResult.unhealthy("connection refused"))
    )

    handle.start()
    status, payload = await _get(handle.asgi_app(), "/health")
    report = handle.shutdown()

    assert status == 503
    assert payload["status"] == "Unhealthy"
    assert payload["checks"]["database-context"]["status"] == "Healthy"
    assert payload["checks"]["payments"]["message"] == "connection refused"
    assert len(materializer.sinks) == 1
    assert report.clean is True
    assert isinstance(handle, BootstrapHandle)
