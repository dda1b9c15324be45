"""Exporter specifications and the per-signal deduplicating chain."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum

from telemetry_bootstrap.config.models import OtlpProtocol

ExporterProtocol = OtlpProtocol


class ExporterKind(StrEnum):
    """How a sink reaches the telemetry backend."""

    PUSH = "push"
    PULL = "pull"
    DEBUG = "debug"


@dataclass(slots=True, frozen=True)
class ExporterSpec:
    """Structural description of an exporter; equal specs collapse to one."""

    kind: ExporterKind
    endpoint: str | None = None
    protocol: ExporterProtocol = ExporterProtocol.BINARY

    @classmethod
    def push(
        cls,
        endpoint: str,
        protocol: ExporterProtocol | str = ExporterProtocol.BINARY,
    ) -> ExporterSpec:
        return cls(ExporterKind.PUSH, endpoint, ExporterProtocol(protocol))

    @classmethod
    def pull(cls) -> ExporterSpec:
        return cls(ExporterKind.PULL, None, ExporterProtocol.TEXT)

    @classmethod
    def debug(cls) -> ExporterSpec:
        return cls(ExporterKind.DEBUG, None, ExporterProtocol.TEXT)

    @classmethod
    def parse(cls, value: str, *, protocol: ExporterProtocol | str | None = None) -> ExporterSpec:
        """Parse ``kind[:endpoint]`` shorthand such as ``push:https://collector:4317``."""
        kind_text, _, endpoint = value.strip().partition(":")
        kind = ExporterKind(kind_text.strip().lower())
        if kind is ExporterKind.PUSH:
            return cls.push(endpoint.strip(), protocol or ExporterProtocol.BINARY)
        if endpoint.strip():
            raise ValueError(f"{kind} exporters do not take an endpoint: {value!r}")
        return cls.pull() if kind is ExporterKind.PULL else cls.debug()

    @property
    def label(self) -> str:
        if self.endpoint:
            return f"{self.kind}:{self.endpoint}"
        return str(self.kind)


class ExporterChain:
    """Ordered exporters for one signal type, deduplicated by structure."""

    def __init__(self) -> None:
        self._specs: list[ExporterSpec] = []
        self._lock = threading.Lock()

    def add(self, spec: ExporterSpec) -> bool:
        """Append ``spec`` unless an identical one exists. Returns True when appended."""
        with self._lock:
            if spec in self._specs:
                return False
            self._specs.append(spec)
            return True

    def specs(self) -> tuple[ExporterSpec, ...]:
        with self._lock:
            return tuple(self._specs)

    def __iter__(self) -> Iterator[ExporterSpec]:
        return iter(self.specs())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, spec: object) -> bool:
        return spec in self._specs
