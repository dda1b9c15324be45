"""Immutable service identity attached to every emitted signal."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from telemetry_bootstrap.config.models import DEFAULT_SERVICE_NAME, DEFAULT_SERVICE_VERSION

if TYPE_CHECKING:
    from telemetry_bootstrap.config.models import AppSettings, ObservabilitySettings

@dataclass(slots=True, frozen=True)
class ResourceDescriptor:
    """Service name, version and ordered free-form attributes.

    Shared by reference across pipelines and the health registry; the
    attribute mapping is a read-only view over a private copy.
    """

    name: str = DEFAULT_SERVICE_NAME
    version: str = DEFAULT_SERVICE_VERSION
    attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "attributes",
            MappingProxyType({str(key): str(value) for key, value in self.attributes.items()}),
        )

    def to_attributes(self) -> dict[str, str]:
        """Render OpenTelemetry resource attributes, service identity first."""
        rendered = {"service.name": self.name, "service.version": self.version}
        for key, value in self.attributes.items():
            rendered.setdefault(key, value)
        return rendered


def build_resource_descriptor(
    settings: AppSettings | ObservabilitySettings | None = None,
) -> ResourceDescriptor:
    """Build the descriptor from settings; absent values take their defaults."""
    if settings is None:
        return ResourceDescriptor()

    observability = getattr(settings, "observability", settings)
    attributes: dict[str, str] = {}
    if observability.environment is not None:
        attributes["deployment.environment"] = observability.environment
    attributes.update(observability.resource_attributes)

    return ResourceDescriptor(
        name=observability.service_name or DEFAULT_SERVICE_NAME,
        version=observability.service_version or DEFAULT_SERVICE_VERSION,
        attributes=attributes,
    )
