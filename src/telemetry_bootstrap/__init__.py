"""Idempotent telemetry and health bootstrap for Python services."""

from telemetry_bootstrap.bootstrap import (
    DEFAULT_CAPABILITIES,
    BootstrapHandle,
    Capability,
    TelemetryBuilder,
    bootstrap,
)
from telemetry_bootstrap.composition import (
    ExporterKind,
    ExporterProtocol,
    ExporterSpec,
    PipelineComposer,
    PipelineHandle,
    PipelineState,
    ShutdownReport,
    SignalType,
)
from telemetry_bootstrap.config import AppSettings, load_config, settings_from_mapping
from telemetry_bootstrap.errors import (
    ConfigurationIssue,
    DuplicateProbeNameError,
    IssueKind,
    MissingDependencyError,
    TelemetryBootstrapError,
)
from telemetry_bootstrap.health import (
    HealthCheckResult,
    HealthProbe,
    HealthRegistry,
    HealthReport,
    HealthState,
    ProbeKind,
    datastore_probe,
)
from telemetry_bootstrap.observability.logging import LoggerHandle, init_logging, shutdown_logging
from telemetry_bootstrap.resource import ResourceDescriptor, build_resource_descriptor

__all__ = [
    "DEFAULT_CAPABILITIES",
    "AppSettings",
    "BootstrapHandle",
    "Capability",
    "ConfigurationIssue",
    "DuplicateProbeNameError",
    "ExporterKind",
    "ExporterProtocol",
    "ExporterSpec",
    "HealthCheckResult",
    "HealthProbe",
    "HealthRegistry",
    "HealthReport",
    "HealthState",
    "IssueKind",
    "LoggerHandle",
    "MissingDependencyError",
    "PipelineComposer",
    "PipelineHandle",
    "PipelineState",
    "ProbeKind",
    "ResourceDescriptor",
    "ShutdownReport",
    "SignalType",
    "TelemetryBootstrapError",
    "TelemetryBuilder",
    "bootstrap",
    "build_resource_descriptor",
    "datastore_probe",
    "init_logging",
    "load_config",
    "settings_from_mapping",
    "shutdown_logging",
]
