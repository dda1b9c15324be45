"""Deduplicating registry of named health probes and concurrent evaluation."""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from time import perf_counter
from typing import Any

from telemetry_bootstrap.errors import DuplicateProbeNameError
from telemetry_bootstrap.observability.metrics import MetricsRecorder, get_metrics_recorder

logger = logging.getLogger(__name__)


class HealthState(StrEnum):
    """Probe status, ordered by severity."""

    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {HealthState.HEALTHY: 0, HealthState.DEGRADED: 1, HealthState.UNHEALTHY: 2}


class ProbeKind(StrEnum):
    DATASTORE = "datastore"
    CUSTOM = "custom"


@dataclass(slots=True, frozen=True)
class HealthCheckResult:
    """What a probe's check returns."""

    status: HealthState
    message: str | None = None

    @classmethod
    def healthy(cls, message: str | None = None) -> HealthCheckResult:
        return cls(HealthState.HEALTHY, message)

    @classmethod
    def degraded(cls, message: str | None = None) -> HealthCheckResult:
        return cls(HealthState.DEGRADED, message)

    @classmethod
    def unhealthy(cls, message: str | None = None) -> HealthCheckResult:
        return cls(HealthState.UNHEALTHY, message)


CheckOutcome = HealthCheckResult | HealthState
HealthCheck = Callable[[], CheckOutcome | Awaitable[CheckOutcome]]


@dataclass(slots=True, frozen=True)
class HealthProbe:
    """A named, side-effect-free check. Names are unique within a registry."""

    name: str
    check: HealthCheck
    kind: ProbeKind = ProbeKind.CUSTOM
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.name.strip() == "":
            raise ValueError("probe name must not be empty")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(slots=True, frozen=True)
class ProbeResult:
    name: str
    status: HealthState
    duration_ms: float
    message: str | None = None
    kind: ProbeKind = ProbeKind.CUSTOM

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": str(self.status),
            "kind": str(self.kind),
            "duration_ms": max(0.0, float(self.duration_ms)),
        }
        if self.message is not None:
            payload["message"] = self.message
        return payload


@dataclass(slots=True, frozen=True)
class HealthReport:
    """Per-probe results in registration order plus the worst-case status.

    ``duration_ms`` is the slowest probe's duration: probes run concurrently.
    """

    status: HealthState
    duration_ms: float
    results: tuple[ProbeResult, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.status is not HealthState.UNHEALTHY

    def get(self, name: str) -> ProbeResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable payload suitable for `/health` endpoints."""
        return {
            "status": str(self.status),
            "duration_ms": max(0.0, float(self.duration_ms)),
            "checks": {result.name: result.to_dict() for result in self.results},
        }


def worst_status(statuses: Iterable[HealthState]) -> HealthState:
    """Unhealthy beats Degraded beats Healthy; no statuses is Healthy."""
    return max(statuses, key=lambda status: status.severity, default=HealthState.HEALTHY)


@dataclass(slots=True)
class HealthRegistry:
    """Named probes evaluated together into a :class:`HealthReport`."""

    timeout_seconds: float | None = None
    _metrics: MetricsRecorder | None = None
    _probes: dict[str, HealthProbe] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self) -> None:
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

    def register(self, probe: HealthProbe) -> None:
        """Add ``probe``.

        Raises:
            DuplicateProbeNameError: A probe with the same name is registered.
        """
        with self._lock:
            duplicate = probe.name in self._probes
            if not duplicate:
                self._probes[probe.name] = probe

        if duplicate:
            self._metrics_recorder().observe_duplicate_registration(component="health")
            logger.warning(
                "Rejected duplicate health probe %r",
                probe.name,
                extra={"issue_kind": "DuplicateProbeNameError", "probe": probe.name},
            )
            raise DuplicateProbeNameError(probe.name)

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._probes.pop(name, None) is not None

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._probes)

    def probes(self) -> tuple[HealthProbe, ...]:
        with self._lock:
            return tuple(self._probes.values())

    def __contains__(self, name: object) -> bool:
        return name in self._probes

    def __len__(self) -> int:
        return len(self._probes)

    async def evaluate_async(self, *, timeout_seconds: float | None = None) -> HealthReport:
        """Run every probe concurrently, each bounded by its timeout."""
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        probes = self.probes()
        default_timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        results: tuple[ProbeResult, ...] = tuple(
            await asyncio.gather(
                *(
                    _run_probe(
                        probe,
                        timeout_seconds=(
                            probe.timeout_seconds
                            if probe.timeout_seconds is not None
                            else default_timeout
                        ),
                    )
                    for probe in probes
                )
            )
        )

        recorder = self._metrics_recorder()
        for result in results:
            recorder.observe_probe(
                probe=result.name,
                status=str(result.status),
                duration_seconds=result.duration_ms / 1000,
            )

        return HealthReport(
            status=worst_status(result.status for result in results),
            duration_ms=max((result.duration_ms for result in results), default=0.0),
            results=results,
        )

    def evaluate(self, *, timeout_seconds: float | None = None) -> HealthReport:
        """Blocking variant of :meth:`evaluate_async` for synchronous callers.

        Inside a running event loop the evaluation runs on its own loop in a
        worker thread, so the caller blocks but the current loop is not re-entered.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.evaluate_async(timeout_seconds=timeout_seconds))
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="telemetry-health-evaluate"
        ) as executor:
            return executor.submit(
                asyncio.run, self.evaluate_async(timeout_seconds=timeout_seconds)
            ).result()

    def _metrics_recorder(self) -> MetricsRecorder:
        return get_metrics_recorder() if self._metrics is None else self._metrics


async def _run_probe(probe: HealthProbe, *, timeout_seconds: float | None) -> ProbeResult:
    started = perf_counter()

    try:
        awaitable = _invoke(probe.check)
        outcome = (
            await awaitable
            if timeout_seconds is None
            else await asyncio.wait_for(awaitable, timeout=timeout_seconds)
        )
        result = _coerce_outcome(probe.name, outcome)
    except TimeoutError:
        result = HealthCheckResult.unhealthy(
            f"health probe '{probe.name}' timed out after {timeout_seconds:g}s"
        )
        _log_failure(probe, result.message)
    except Exception as exc:
        result = HealthCheckResult.unhealthy(str(exc) or type(exc).__name__)
        _log_failure(probe, result.message)

    return ProbeResult(
        name=probe.name,
        status=result.status,
        duration_ms=(perf_counter() - started) * 1000,
        message=result.message,
        kind=probe.kind,
    )


def _invoke(check: HealthCheck) -> Awaitable[Any]:
    if inspect.iscoroutinefunction(check) or inspect.iscoroutinefunction(
        getattr(check, "__call__", None)
    ):
        return check()  # type: ignore[return-value]
    return _call_in_daemon_thread(check)


async def _call_in_daemon_thread(check: HealthCheck) -> Any:
    """Run a blocking check off-loop in a daemon thread.

    A check that never returns is abandoned by the caller's timeout and cannot
    hold up interpreter exit.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Any] = loop.create_future()

    def settle(value: Any, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(value)

    def runner() -> None:
        value: Any = None
        error: BaseException | None = None
        try:
            value = check()
        except Exception as exc:
            error = exc
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(settle, value, error)

    threading.Thread(target=runner, name="telemetry-health-probe", daemon=True).start()
    outcome = await future
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def _coerce_outcome(name: str, outcome: object) -> HealthCheckResult:
    if isinstance(outcome, HealthCheckResult):
        return outcome
    if isinstance(outcome, HealthState):
        return HealthCheckResult(outcome)
    raise TypeError(
        f"health probe '{name}' returned {type(outcome).__name__}, "
        "expected HealthCheckResult or HealthState"
    )


def _log_failure(probe: HealthProbe, message: str | None) -> None:
    logger.warning(
        "Health probe %r failed: %s",
        probe.name,
        message,
        extra={"issue_kind": "ProbeEvaluationFailure", "probe": probe.name},
    )
