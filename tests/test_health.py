"""Tests for health probe registration, evaluation and aggregation."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from telemetry_bootstrap.errors import DuplicateProbeNameError
from telemetry_bootstrap.health import (
    HealthCheckResult,
    HealthProbe,
    HealthRegistry,
    HealthState,
    ProbeKind,
    worst_status,
)


def _static(status: HealthState, message: str | None = None) -> HealthProbe:
    return HealthProbe(name=f"static-{status}", check=lambda: HealthCheckResult(status, message))


async def _healthy_async_check() -> HealthCheckResult:
    return HealthCheckResult.healthy("sql ok")


async def _failing_check() -> HealthCheckResult:
    raise RuntimeError("dependency unavailable")


def _registry(*probes: HealthProbe, timeout_seconds: float | None = None) -> HealthRegistry:
    registry = HealthRegistry(timeout_seconds=timeout_seconds)
    for probe in probes:
        registry.register(probe)
    return registry


def test_duplicate_probe_name_is_rejected(caplog: pytest.LogCaptureFixture) -> None:
    registry = _registry(HealthProbe("database-context", _healthy_async_check))

    with caplog.at_level("WARNING"), pytest.raises(DuplicateProbeNameError) as exc_info:
        registry.register(HealthProbe("database-context", lambda: HealthState.HEALTHY))

    assert exc_info.value.name == "database-context"
    assert registry.names() == ("database-context",)
    assert "database-context" in caplog.text


def test_unregister_frees_the_name() -> None:
    registry = _registry(HealthProbe("cache", lambda: HealthState.HEALTHY))

    assert registry.unregister("cache") is True
    assert registry.unregister("cache") is False
    registry.register(HealthProbe("cache", lambda: HealthState.DEGRADED))
    assert "cache" in registry


def test_probe_requires_a_name() -> None:
    with pytest.raises(ValueError):
        HealthProbe(" ", lambda: HealthState.HEALTHY)


def test_empty_registry_is_healthy() -> None:
    report = HealthRegistry().evaluate()

    assert report.status is HealthState.HEALTHY
    assert report.results == ()
    assert report.duration_ms == 0.0


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ((HealthState.HEALTHY, HealthState.DEGRADED), HealthState.DEGRADED),
        ((HealthState.HEALTHY, HealthState.UNHEALTHY), HealthState.UNHEALTHY),
        ((HealthState.HEALTHY, HealthState.HEALTHY), HealthState.HEALTHY),
        ((HealthState.DEGRADED, HealthState.UNHEALTHY), HealthState.UNHEALTHY),
    ],
)
def test_overall_status_is_the_worst(
    statuses: tuple[HealthState, ...],
    expected: HealthState,
) -> None:
    probes = [
        HealthProbe(f"probe-{index}", lambda status=status: status)
        for index, status in enumerate(statuses)
    ]

    report = _registry(*probes).evaluate()

    assert report.status is expected
    assert worst_status(statuses) is expected


async def test_results_keep_registration_order_and_messages() -> None:
    registry = _registry(
        HealthProbe("sql", _healthy_async_check, kind=ProbeKind.DATASTORE),
        HealthProbe("broker", lambda: HealthCheckResult.degraded("lagging")),
    )

    report = await registry.evaluate_async()

    assert [result.name for result in report.results] == ["sql", "broker"]
    assert report.get("sql").message == "sql ok"  # type: ignore[union-attr]
    assert report.get("broker").status is HealthState.DEGRADED  # type: ignore[union-attr]
    assert report.to_dict()["checks"]["sql"]["kind"] == "datastore"


async def test_raising_probe_is_unhealthy_with_message() -> None:
    registry = _registry(HealthProbe("flaky", _failing_check))

    report = await registry.evaluate_async()

    result = report.results[0]
    assert result.status is HealthState.UNHEALTHY
    assert result.message == "dependency unavailable"


def test_sync_probe_exception_is_captured() -> None:
    def boom() -> HealthState:
        raise ValueError("bad state")

    report = _registry(HealthProbe("sync", boom)).evaluate()

    assert report.status is HealthState.UNHEALTHY
    assert report.results[0].message == "bad state"


def test_unexpected_return_type_is_unhealthy() -> None:
    report = _registry(HealthProbe("odd", lambda: "fine")).evaluate()  # type: ignore[arg-type,return-value]

    assert report.results[0].status is HealthState.UNHEALTHY
    assert "expected HealthCheckResult" in (report.results[0].message or "")


async def test_hung_async_probe_times_out_without_delaying_others() -> None:
    async def never_returns() -> HealthState:
        await asyncio.Event().wait()
        return HealthState.HEALTHY

    registry = _registry(
        HealthProbe("stuck", never_returns),
        HealthProbe("fast", lambda: HealthState.HEALTHY),
    )

    started = time.perf_counter()
    report = await registry.evaluate_async(timeout_seconds=0.2)
    elapsed = time.perf_counter() - started

    assert elapsed < 1.0
    stuck, fast = report.results
    assert stuck.status is HealthState.UNHEALTHY
    assert "timed out after 0.2s" in (stuck.message or "")
    assert fast.status is HealthState.HEALTHY
    assert report.status is HealthState.UNHEALTHY


def test_hung_sync_probe_times_out_and_is_abandoned() -> None:
    release = threading.Event()

    def blocks() -> HealthState:
        release.wait(30)
        return HealthState.HEALTHY

    registry = _registry(HealthProbe("blocking", blocks), timeout_seconds=0.2)

    started = time.perf_counter()
    report = registry.evaluate()
    elapsed = time.perf_counter() - started
    release.set()

    assert elapsed < 1.0
    assert report.results[0].status is HealthState.UNHEALTHY
    assert "timed out" in (report.results[0].message or "")


async def test_per_probe_timeout_overrides_registry_default() -> None:
    async def slow() -> HealthState:
        await asyncio.sleep(0.3)
        return HealthState.HEALTHY

    registry = _registry(HealthProbe("slow", slow, timeout_seconds=1.0), timeout_seconds=0.05)

    report = await registry.evaluate_async()

    assert report.status is HealthState.HEALTHY


async def test_overall_duration_is_the_slowest_probe() -> None:
    async def slow() -> HealthState:
        await asyncio.sleep(0.1)
        return HealthState.HEALTHY

    report = await _registry(
        HealthProbe("slow", slow),
        HealthProbe("fast", lambda: HealthState.HEALTHY),
    ).evaluate_async()

    assert report.duration_ms == max(result.duration_ms for result in report.results)
    assert report.duration_ms >= 100


async def test_blocking_evaluate_inside_a_running_loop_returns_a_report() -> None:
    registry = _registry(
        HealthProbe("database-context", _healthy_async_check),
        _static(HealthState.DEGRADED, "slow replica"),
    )
    caller_loop = asyncio.get_running_loop()

    report = registry.evaluate()

    assert report.status is HealthState.DEGRADED
    assert [result.name for result in report.results] == [
        "database-context",
        "static-Degraded",
    ]
    assert asyncio.get_running_loop() is caller_loop


def test_concurrent_registration_keeps_one_probe_per_name() -> None:
    registry = HealthRegistry()
    workers = 16
    barrier = threading.Barrier(workers)
    accepted: list[int] = []
    rejected: list[int] = []
    lock = threading.Lock()

    def register(index: int) -> None:
        probe = HealthProbe("database-context", lambda: HealthState.HEALTHY)
        barrier.wait()
        try:
            registry.register(probe)
        except DuplicateProbeNameError:
            with lock:
                rejected.append(index)
        else:
            with lock:
                accepted.append(index)

    threads = [threading.Thread(target=register, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(accepted) == 1
    assert len(rejected) == workers - 1
    assert registry.names() == ("database-context",)


def test_report_payload_is_serializable() -> None:
    report = _registry(_static(HealthState.DEGRADED, "slow replica")).evaluate()

    payload = report.to_dict()

    assert payload["status"] == "Degraded"
    assert payload["checks"]["static-Degraded"] == {
        "status": "Degraded",
        "kind": "custom",
        "duration_ms": payload["checks"]["static-Degraded"]["duration_ms"],
        "message": "slow replica",
    }
