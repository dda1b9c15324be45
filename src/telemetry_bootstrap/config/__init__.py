"""Configuration loading and validation module."""

from telemetry_bootstrap.config.errors import (
    ConfigError,
    ConfigFileNotFoundError,
    ConfigValidationError,
    PlaceholderResolutionError,
)
from telemetry_bootstrap.config.loader import deep_merge, load_config, settings_from_mapping
from telemetry_bootstrap.config.models import (
    DEFAULT_OTLP_ENDPOINT,
    DEFAULT_SERVICE_NAME,
    DEFAULT_SERVICE_VERSION,
    AppSettings,
    EndpointSettings,
    HealthSettings,
    LoggingSettings,
    ObservabilitySettings,
    OtlpProtocol,
)

__all__ = [
    "DEFAULT_OTLP_ENDPOINT",
    "DEFAULT_SERVICE_NAME",
    "DEFAULT_SERVICE_VERSION",
    "AppSettings",
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    "EndpointSettings",
    "HealthSettings",
    "LoggingSettings",
    "ObservabilitySettings",
    "OtlpProtocol",
    "PlaceholderResolutionError",
    "deep_merge",
    "load_config",
    "settings_from_mapping",
]
