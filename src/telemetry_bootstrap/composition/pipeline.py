"""Per-signal pipeline composition, activation and bounded shutdown drain.

Each signal type (traces, metrics, logs) moves through::

    UNINITIALIZED -> COMPOSING -> ACTIVE -> DRAINING -> CLOSED

While composing, every addition passes the instrumentation registry and
exporter chain dedup gates, so repeating or reordering configuration calls
yields the same pipeline. Once active, a pipeline is frozen: further additions
are reported as configuration issues and ignored, never raised.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from time import perf_counter
from typing import TYPE_CHECKING, Any, Protocol

from telemetry_bootstrap.composition.exporters import ExporterChain, ExporterKind, ExporterSpec
from telemetry_bootstrap.composition.instrumentation import (
    InstrumentationRegistry,
    InstrumentationSource,
)
from telemetry_bootstrap.errors import ConfigurationIssue, IssueKind, MissingDependencyError
from telemetry_bootstrap.observability.metrics import MetricsRecorder, get_metrics_recorder

if TYPE_CHECKING:
    from telemetry_bootstrap.resource import ResourceDescriptor

logger = logging.getLogger(__name__)


class SignalType(StrEnum):
    TRACES = "traces"
    METRICS = "metrics"
    LOGS = "logs"

    @classmethod
    def lookup(cls, value: object) -> SignalType | None:
        """Return the member named by ``value``, or None when there is none."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


_SIGNAL_NAMES = ", ".join(SignalType)


class PipelineState(StrEnum):
    UNINITIALIZED = "uninitialized"
    COMPOSING = "composing"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class ExporterSink(Protocol):
    """Live exporter endpoint produced by a materializer."""

    def flush(self, timeout_seconds: float) -> Any: ...

    def close(self) -> Any: ...


@dataclass(slots=True, frozen=True)
class ExporterBinding:
    """A composed exporter spec bound to its live sink."""

    signal: SignalType
    spec: ExporterSpec
    sink: ExporterSink


Materializer = Callable[["PipelineHandle"], Sequence[ExporterBinding]]


class DrainOutcome(StrEnum):
    FLUSHED = "flushed"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass(slots=True, frozen=True)
class ExporterDrainResult:
    signal: SignalType
    spec: ExporterSpec
    outcome: DrainOutcome
    duration_seconds: float
    error: str | None = None


@dataclass(slots=True, frozen=True)
class ShutdownReport:
    """Outcome of draining every exporter at shutdown."""

    results: tuple[ExporterDrainResult, ...] = ()
    duration_seconds: float = 0.0

    @property
    def abandoned(self) -> tuple[ExporterDrainResult, ...]:
        return tuple(r for r in self.results if r.outcome is DrainOutcome.ABANDONED)

    @property
    def clean(self) -> bool:
        return all(r.outcome is DrainOutcome.FLUSHED for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_seconds": self.duration_seconds,
            "exporters": [
                {
                    "signal": str(r.signal),
                    "exporter": r.spec.label,
                    "outcome": str(r.outcome),
                    "duration_seconds": r.duration_seconds,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


IssueReporter = Callable[[IssueKind, str, str], None]


class PipelineHandle:
    """Instrumentation sources and exporter chain for one signal type."""

    def __init__(
        self,
        signal: SignalType,
        resource: ResourceDescriptor,
        *,
        report: IssueReporter,
    ) -> None:
        self.signal = signal
        self.resource = resource
        self._report = report
        self._instrumentation = InstrumentationRegistry()
        self._exporters = ExporterChain()
        self._bindings: tuple[ExporterBinding, ...] = ()
        self._state = PipelineState.COMPOSING
        self._lock = threading.RLock()

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def bindings(self) -> tuple[ExporterBinding, ...]:
        return self._bindings

    def add_instrumentation(self, key: str, *, enabled: bool = True) -> bool:
        """Register an instrumentation source; False for duplicates or frozen pipelines."""
        if key.strip() == "":
            self._report(
                IssueKind.INVALID_INSTRUMENTATION, self._component, "empty instrumentation key"
            )
            return False
        with self._lock:
            if not self._accepting(f"instrumentation {key!r}"):
                return False
            added = self._instrumentation.register(key, enabled=enabled)
        if not added:
            self._report(
                IssueKind.DUPLICATE_REGISTRATION,
                self._component,
                f"instrumentation {key!r} already registered",
            )
        return added

    def set_instrumentation_enabled(self, key: str, enabled: bool) -> bool:
        with self._lock:
            if not self._accepting(f"instrumentation toggle {key!r}"):
                return False
            return self._instrumentation.set_enabled(key, enabled)

    def add_exporter(self, spec: ExporterSpec) -> bool:
        """Append an exporter unless an identical spec exists or the pipeline is frozen."""
        problem = self._validate(spec)
        if problem is not None:
            self._report(IssueKind.INVALID_EXPORTER, self._component, problem)
            return False
        with self._lock:
            if not self._accepting(f"exporter {spec.label}"):
                return False
            added = self._exporters.add(spec)
        if not added:
            self._report(
                IssueKind.DUPLICATE_REGISTRATION,
                self._component,
                f"exporter {spec.label} already registered",
            )
        return added

    def instrumentation_keys(self) -> frozenset[str]:
        return self._instrumentation.keys()

    def enabled_instrumentation(self) -> tuple[str, ...]:
        return self._instrumentation.enabled_keys()

    def instrumentation_sources(self) -> tuple[InstrumentationSource, ...]:
        return self._instrumentation.sources()

    def exporter_specs(self) -> tuple[ExporterSpec, ...]:
        return self._exporters.specs()

    def _activate(self, bindings: Sequence[ExporterBinding]) -> None:
        with self._lock:
            self._bindings = tuple(bindings)
            self._state = PipelineState.ACTIVE

    def _freeze(self) -> bool:
        with self._lock:
            if self._state is not PipelineState.COMPOSING:
                return False
            # Freeze before materializing so late additions are rejected.
            self._state = PipelineState.ACTIVE
            return True

    def _transition(self, state: PipelineState) -> None:
        with self._lock:
            self._state = state

    def _accepting(self, what: str) -> bool:
        if self._state is PipelineState.COMPOSING:
            return True
        self._report(
            IssueKind.FROZEN_PIPELINE,
            self._component,
            f"{what} ignored: pipeline is {self._state}",
        )
        return False

    def _validate(self, spec: ExporterSpec) -> str | None:
        if spec.kind is ExporterKind.PULL and self.signal is not SignalType.METRICS:
            return f"pull exporters only apply to metrics, not {self.signal}"
        if spec.kind is ExporterKind.PUSH and not spec.endpoint:
            return "push exporter requires an endpoint"
        return None

    @property
    def _component(self) -> str:
        return f"pipeline.{self.signal}"

    def __repr__(self) -> str:
        return (
            f"PipelineHandle(signal={self.signal!s}, state={self._state!s}, "
            f"instrumentation={sorted(self.instrumentation_keys())}, "
            f"exporters={[spec.label for spec in self.exporter_specs()]})"
        )


@dataclass(slots=True)
class PipelineComposer:
    """Owns one :class:`PipelineHandle` per signal type, sharing one resource."""

    resource: ResourceDescriptor
    _metrics: MetricsRecorder | None = None
    _pipelines: dict[SignalType, PipelineHandle] = field(default_factory=dict)
    _issues: list[ConfigurationIssue] = field(default_factory=list)
    _frozen: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def compose(self, signal: SignalType | str) -> PipelineHandle | None:
        """Return the pipeline for ``signal``, allocating it while still composing."""
        resolved = SignalType.lookup(signal)
        if resolved is None:
            self._report(
                IssueKind.UNKNOWN_SIGNAL,
                f"pipeline.{signal}",
                f"unknown signal type {signal!r}; expected one of {_SIGNAL_NAMES}",
            )
            return None
        with self._lock:
            handle = self._pipelines.get(resolved)
            if handle is not None:
                return handle
            if self._frozen:
                self._report(
                    IssueKind.FROZEN_PIPELINE,
                    f"pipeline.{resolved}",
                    "pipeline not created: composition already activated",
                )
                return None
            handle = PipelineHandle(resolved, self.resource, report=self._report)
            self._pipelines[resolved] = handle
            return handle

    def get(self, signal: SignalType | str) -> PipelineHandle | None:
        resolved = SignalType.lookup(signal)
        return None if resolved is None else self._pipelines.get(resolved)

    def state(self, signal: SignalType | str) -> PipelineState:
        handle = self.get(signal)
        return PipelineState.UNINITIALIZED if handle is None else handle.state

    def pipelines(self) -> tuple[PipelineHandle, ...]:
        with self._lock:
            return tuple(self._pipelines.values())

    @property
    def issues(self) -> tuple[ConfigurationIssue, ...]:
        with self._lock:
            return tuple(self._issues)

    def add_instrumentation(
        self,
        signal: SignalType | str,
        key: str,
        *,
        enabled: bool = True,
    ) -> bool:
        handle = self.compose(signal)
        return False if handle is None else handle.add_instrumentation(key, enabled=enabled)

    def add_exporter(self, signal: SignalType | str, spec: ExporterSpec) -> bool:
        handle = self.compose(signal)
        return False if handle is None else handle.add_exporter(spec)

    def activate(self, materializer: Materializer | None = None) -> None:
        """Freeze every composing pipeline and bind live exporters to it."""
        with self._lock:
            if self._frozen:
                self._report(IssueKind.FROZEN_PIPELINE, "composer", "already activated")
                return
            self._frozen = True
            handles = [handle for handle in self._pipelines.values() if handle._freeze()]

        for handle in handles:
            bindings: Sequence[ExporterBinding] = ()
            if materializer is not None:
                try:
                    bindings = materializer(handle)
                except MissingDependencyError as exc:
                    self._report(IssueKind.MISSING_DEPENDENCY, f"pipeline.{handle.signal}", str(exc))
                except Exception as exc:
                    logger.exception("Failed to materialize %s pipeline", handle.signal)
                    self._report(
                        IssueKind.MATERIALIZATION_FAILURE,
                        f"pipeline.{handle.signal}",
                        f"{type(exc).__name__}: {exc}",
                    )
            handle._activate(bindings)
            logger.debug(
                "Pipeline %s active with %d exporter(s)", handle.signal, len(handle.bindings)
            )

    def shutdown(
        self,
        *,
        deadline_seconds: float = 5.0,
        exporter_timeout_seconds: float = 2.0,
    ) -> ShutdownReport:
        """Drain then close every pipeline within ``deadline_seconds``.

        Exporters flush concurrently; each gets at most
        ``exporter_timeout_seconds`` and none outlives the overall deadline.
        Exporters still running at the cutoff are abandoned, not awaited.
        """
        if deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be > 0")
        if exporter_timeout_seconds <= 0:
            raise ValueError("exporter_timeout_seconds must be > 0")

        started = perf_counter()
        with self._lock:
            self._frozen = True
            handles = list(self._pipelines.values())

        draining: list[PipelineHandle] = []
        for handle in handles:
            if handle.state is PipelineState.ACTIVE:
                handle._transition(PipelineState.DRAINING)
                draining.append(handle)
            elif handle.state is PipelineState.COMPOSING:
                handle._transition(PipelineState.CLOSED)

        bindings = [binding for handle in draining for binding in handle.bindings]
        results = _drain(
            bindings,
            budget_seconds=min(deadline_seconds, exporter_timeout_seconds),
        )

        for result in results:
            self._metrics_recorder().observe_exporter_flush(
                signal=str(result.signal),
                exporter=str(result.spec.kind),
                outcome=str(result.outcome),
                duration_seconds=result.duration_seconds,
            )
            if result.outcome is DrainOutcome.ABANDONED:
                self._report(
                    IssueKind.EXPORTER_FLUSH_TIMEOUT,
                    f"pipeline.{result.signal}",
                    f"exporter {result.spec.label} abandoned after {result.duration_seconds:.2f}s",
                )
            elif result.outcome is DrainOutcome.FAILED:
                logger.warning(
                    "Exporter %s on %s pipeline failed to drain: %s",
                    result.spec.label,
                    result.signal,
                    result.error,
                )

        for handle in draining:
            handle._transition(PipelineState.CLOSED)

        return ShutdownReport(results=tuple(results), duration_seconds=perf_counter() - started)

    def _report(self, kind: IssueKind, component: str, detail: str) -> None:
        issue = ConfigurationIssue(kind, component, detail)
        with self._lock:
            self._issues.append(issue)
        if kind is IssueKind.DUPLICATE_REGISTRATION:
            self._metrics_recorder().observe_duplicate_registration(component=component)
            logger.debug("%s: %s", component, detail, extra={"issue_kind": str(kind)})
            return
        logger.warning("%s: %s", component, detail, extra={"issue_kind": str(kind)})

    def _metrics_recorder(self) -> MetricsRecorder:
        return get_metrics_recorder() if self._metrics is None else self._metrics


class _DrainWorker:
    def __init__(self, binding: ExporterBinding, *, budget_seconds: float) -> None:
        self.binding = binding
        self.outcome = DrainOutcome.ABANDONED
        self.error: str | None = None
        self.finished_after: float | None = None
        self._budget_seconds = budget_seconds
        self._started = 0.0
        self._thread = threading.Thread(
            target=self._run,
            name=f"telemetry-drain-{binding.signal}-{binding.spec.kind}",
            daemon=True,
        )

    def start(self) -> None:
        self._started = perf_counter()
        self._thread.start()

    def join(self, timeout: float) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def result(self, *, now: float) -> ExporterDrainResult:
        finished = self.finished_after is not None and not self._thread.is_alive()
        return ExporterDrainResult(
            signal=self.binding.signal,
            spec=self.binding.spec,
            outcome=self.outcome if finished else DrainOutcome.ABANDONED,
            duration_seconds=self.finished_after if finished else now - self._started,
            error=self.error if finished else "drain budget exceeded",
        )

    def _run(self) -> None:
        sink = self.binding.sink
        try:
            flushed = sink.flush(self._budget_seconds)
            sink.close()
        except Exception as exc:
            self.error = f"{type(exc).__name__}: {exc}"
            self.outcome = DrainOutcome.FAILED
        else:
            if flushed is False:
                self.error = "flush did not complete"
                self.outcome = DrainOutcome.FAILED
            else:
                self.outcome = DrainOutcome.FLUSHED
        self.finished_after = perf_counter() - self._started


def _drain(
    bindings: Sequence[ExporterBinding],
    *,
    budget_seconds: float,
) -> list[ExporterDrainResult]:
    if not bindings:
        return []

    workers = [_DrainWorker(binding, budget_seconds=budget_seconds) for binding in bindings]
    cutoff = perf_counter() + budget_seconds
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(max(0.0, cutoff - perf_counter()))

    now = perf_counter()
    return [worker.result(now=now) for worker in workers]
