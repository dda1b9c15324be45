"""Typed configuration models with Pydantic validation."""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_pascal

DEFAULT_SERVICE_NAME = "unknown_service"
DEFAULT_SERVICE_VERSION = "1.0.0"
DEFAULT_OTLP_ENDPOINT = "http://localhost:4317"
DEFAULT_DATASTORE_PROBE_NAME = "database-context"

# Keys follow the PascalCase convention of `appsettings.json` files; snake_case
# field names are accepted as well.
_SETTINGS_CONFIG = ConfigDict(frozen=True, alias_generator=to_pascal, populate_by_name=True)


class OtlpProtocol(StrEnum):
    """Wire encoding used by push exporters."""

    BINARY = "binary"
    TEXT = "text"


class ObservabilitySettings(BaseModel):
    """Service identity and exporter settings (the ``Observability`` section)."""

    model_config = _SETTINGS_CONFIG

    service_name: str = Field(
        default=DEFAULT_SERVICE_NAME, min_length=1, description="Service name"
    )
    service_version: str = Field(
        default=DEFAULT_SERVICE_VERSION, min_length=1, description="Service version"
    )
    environment: str | None = Field(
        default=None, min_length=1, description="Deployment environment attribute"
    )
    resource_attributes: dict[str, str] = Field(
        default_factory=dict,
        description="Free-form resource attributes attached to every signal",
    )
    otlp_endpoint: str | None = Field(
        default=DEFAULT_OTLP_ENDPOINT,
        description="OpenTelemetry collector endpoint. Empty disables push exporters.",
    )
    otlp_protocol: OtlpProtocol = Field(
        default=OtlpProtocol.BINARY,
        description="binary = OTLP/gRPC, text = OTLP/HTTP",
    )
    otlp_insecure: bool = Field(
        default=False,
        description=(
            "Use insecure (plaintext) gRPC OTLP transport. "
            "Set to True explicitly for local development collectors."
        ),
    )
    otlp_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for OTLP exports in seconds",
    )
    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0, description="Trace sample rate")
    console_exporter: bool = Field(
        default=False,
        description="Add a console debug exporter to every composed pipeline",
    )
    retry_enabled: bool = Field(default=True, description="Retry failed OTLP exports")
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum OTLP export attempts (including the first attempt)",
    )
    retry_initial_backoff_seconds: float = Field(
        default=0.2,
        ge=0.0,
        description="Initial exponential backoff between OTLP retries in seconds",
    )
    retry_max_backoff_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Maximum exponential backoff between OTLP retries in seconds",
    )
    metrics_export_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Periodic metric export interval in seconds",
    )
    shutdown_deadline_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Overall budget for flushing every exporter at shutdown",
    )
    exporter_flush_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Budget for a single exporter to flush and close",
    )

    @field_validator("otlp_endpoint", mode="before")
    @classmethod
    def blank_endpoint_disables_push(cls, value: object) -> object:
        if isinstance(value, str) and value.strip() == "":
            return None
        return value


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    model_config = _SETTINGS_CONFIG

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    format: Literal["json", "text"] = Field(default="json", description="Log output format")
    sampling: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Optional sampling ratio for low-severity logs",
    )

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class HealthSettings(BaseModel):
    """Health probe evaluation and history settings."""

    model_config = _SETTINGS_CONFIG

    probe_timeout_seconds: float = Field(
        default=5.0, gt=0.0, description="Per-probe evaluation budget in seconds"
    )
    datastore_probe_name: str = Field(
        default=DEFAULT_DATASTORE_PROBE_NAME,
        min_length=1,
        description="Name of the datastore connectivity probe",
    )
    evaluation_interval_seconds: float = Field(
        default=15.0, gt=0.0, description="Health UI refresh interval in seconds"
    )
    max_history_entries: int = Field(
        default=60, ge=1, description="History entries kept per health endpoint"
    )


class EndpointSettings(BaseModel):
    """Paths and toggles for the HTTP surface."""

    model_config = _SETTINGS_CONFIG

    health_enabled: bool = Field(default=True, description="Expose the health report")
    health_path: str = Field(default="/health", min_length=1)
    health_ui_enabled: bool = Field(
        default=True, description="Expose the health dashboard when one is composed"
    )
    health_ui_path: str = Field(default="/health-ui", min_length=1)
    health_ui_api_path: str = Field(default="/health-ui-api", min_length=1)
    metrics_enabled: bool = Field(default=True, description="Expose the Prometheus scrape path")
    metrics_path: str = Field(default="/metrics", min_length=1)

    @model_validator(mode="after")
    def validate_paths(self) -> EndpointSettings:
        paths = [self.health_path, self.health_ui_path, self.health_ui_api_path, self.metrics_path]
        for path in paths:
            if not path.startswith("/"):
                raise ValueError(f"Endpoint path must start with '/': {path!r}")
        if len(set(paths)) != len(paths):
            raise ValueError("Endpoint paths must be distinct")
        return self


class AppSettings(BaseModel):
    """Root settings consumed once at bootstrap."""

    model_config = _SETTINGS_CONFIG

    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    endpoints: EndpointSettings = Field(default_factory=EndpointSettings)
