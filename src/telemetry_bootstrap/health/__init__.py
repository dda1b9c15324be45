"""Health probes, aggregation and history."""

from telemetry_bootstrap.health.dashboard import HealthDashboard, HealthHistoryEntry
from telemetry_bootstrap.health.probes import (
    DatastoreConnectivity,
    MongoConnectivity,
    PostgresConnectivity,
    SqliteConnectivity,
    datastore_probe,
)
from telemetry_bootstrap.health.registry import (
    HealthCheck,
    HealthCheckResult,
    HealthProbe,
    HealthRegistry,
    HealthReport,
    HealthState,
    ProbeKind,
    ProbeResult,
    worst_status,
)

__all__ = [
    "DatastoreConnectivity",
    "HealthCheck",
    "HealthCheckResult",
    "HealthDashboard",
    "HealthHistoryEntry",
    "HealthProbe",
    "HealthRegistry",
    "HealthReport",
    "HealthState",
    "MongoConnectivity",
    "PostgresConnectivity",
    "ProbeKind",
    "ProbeResult",
    "SqliteConnectivity",
    "datastore_probe",
    "worst_status",
]
