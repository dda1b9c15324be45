"""Exceptions and non-fatal issue records for telemetry bootstrap."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TelemetryBootstrapError(Exception):
    """Base exception for this package."""


class MissingDependencyError(TelemetryBootstrapError):
    """Raised when an optional dependency is required but not installed."""


class DuplicateProbeNameError(TelemetryBootstrapError):
    """Raised when a health probe name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Health probe already registered: {name}")


class IssueKind(StrEnum):
    """Non-fatal failure modes surfaced while composing or draining pipelines."""

    CONFIGURATION_DEFAULT = "ConfigurationDefault"
    DUPLICATE_REGISTRATION = "DuplicateRegistrationWarning"
    DUPLICATE_PROBE_NAME = "DuplicateProbeNameError"
    FROZEN_PIPELINE = "FrozenPipelineWarning"
    INVALID_EXPORTER = "InvalidExporterWarning"
    INVALID_INSTRUMENTATION = "InvalidInstrumentationWarning"
    MATERIALIZATION_FAILURE = "MaterializationFailure"
    MISSING_DEPENDENCY = "MissingDependencyWarning"
    PROBE_EVALUATION_FAILURE = "ProbeEvaluationFailure"
    EXPORTER_FLUSH_TIMEOUT = "ExporterFlushTimeout"
    UNKNOWN_SIGNAL = "UnknownSignalWarning"
    UNKNOWN_CAPABILITY = "UnknownCapabilityWarning"


@dataclass(slots=True, frozen=True)
class ConfigurationIssue:
    """A degraded-but-handled condition, kept for inspection after bootstrap."""

    kind: IssueKind
    component: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": str(self.kind), "component": self.component, "detail": self.detail}
