"""Deduplicating composition of per-signal telemetry pipelines."""

from telemetry_bootstrap.composition.exporters import (
    ExporterChain,
    ExporterKind,
    ExporterProtocol,
    ExporterSpec,
)
from telemetry_bootstrap.composition.instrumentation import (
    KNOWN_INSTRUMENTORS,
    LOGGING_BRIDGE_KEY,
    InstrumentationRegistry,
    InstrumentationSource,
    activate_instrumentation,
    activated_instrumentations,
    source_key,
)
from telemetry_bootstrap.composition.pipeline import (
    DrainOutcome,
    ExporterBinding,
    ExporterDrainResult,
    ExporterSink,
    Materializer,
    PipelineComposer,
    PipelineHandle,
    PipelineState,
    ShutdownReport,
    SignalType,
)

__all__ = [
    "KNOWN_INSTRUMENTORS",
    "LOGGING_BRIDGE_KEY",
    "DrainOutcome",
    "ExporterBinding",
    "ExporterChain",
    "ExporterDrainResult",
    "ExporterKind",
    "ExporterProtocol",
    "ExporterSink",
    "ExporterSpec",
    "InstrumentationRegistry",
    "InstrumentationSource",
    "Materializer",
    "PipelineComposer",
    "PipelineHandle",
    "PipelineState",
    "ShutdownReport",
    "SignalType",
    "activate_instrumentation",
    "activated_instrumentations",
    "source_key",
]
