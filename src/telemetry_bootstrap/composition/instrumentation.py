"""Named instrumentation sources with idempotent registration."""

from __future__ import annotations

import importlib
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SOURCE_PREFIX = "source:"
LOGGING_BRIDGE_KEY = "logging"

# Well-known keys and the OpenTelemetry contrib instrumentor each one activates.
KNOWN_INSTRUMENTORS: Mapping[str, tuple[str, str]] = {
    # request handling
    "fastapi": ("opentelemetry.instrumentation.fastapi", "FastAPIInstrumentor"),
    "aiohttp-server": ("opentelemetry.instrumentation.aiohttp_server", "AioHttpServerInstrumentor"),
    # outbound calls
    "httpx": ("opentelemetry.instrumentation.httpx", "HTTPXClientInstrumentor"),
    "requests": ("opentelemetry.instrumentation.requests", "RequestsInstrumentor"),
    "aiohttp-client": ("opentelemetry.instrumentation.aiohttp_client", "AioHttpClientInstrumentor"),
    # data access
    "sqlalchemy": ("opentelemetry.instrumentation.sqlalchemy", "SQLAlchemyInstrumentor"),
    "asyncpg": ("opentelemetry.instrumentation.asyncpg", "AsyncPGInstrumentor"),
    "pymongo": ("opentelemetry.instrumentation.pymongo", "PymongoInstrumentor"),
}

_ACTIVATED: set[str] = set()
_ACTIVATION_LOCK = threading.Lock()


@dataclass(slots=True, frozen=True)
class InstrumentationSource:
    """A named producer of signals. Identity is the key."""

    key: str
    enabled: bool = True

    @property
    def is_named_source(self) -> bool:
        return self.key.startswith(SOURCE_PREFIX)


def source_key(name: str) -> str:
    """Key for a named tracer source, e.g. the service's own spans."""
    return f"{SOURCE_PREFIX}{name}"


class InstrumentationRegistry:
    """Ordered, deduplicating set of instrumentation sources for one pipeline."""

    def __init__(self) -> None:
        self._sources: dict[str, InstrumentationSource] = {}
        self._lock = threading.Lock()

    def register(self, key: str, *, enabled: bool = True) -> bool:
        """Register ``key``; return False without side effects when already present."""
        normalized = _normalize_key(key)
        with self._lock:
            if normalized in self._sources:
                return False
            self._sources[normalized] = InstrumentationSource(key=normalized, enabled=enabled)
            return True

    def set_enabled(self, key: str, enabled: bool) -> bool:
        """Toggle a registered source. Returns False for unknown keys."""
        normalized = _normalize_key(key)
        with self._lock:
            if normalized not in self._sources:
                return False
            self._sources[normalized] = InstrumentationSource(key=normalized, enabled=enabled)
            return True

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _normalize_key(key) in self._sources

    def __len__(self) -> int:
        return len(self._sources)

    def sources(self) -> tuple[InstrumentationSource, ...]:
        with self._lock:
            return tuple(self._sources.values())

    def keys(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._sources)

    def enabled_keys(self) -> tuple[str, ...]:
        return tuple(source.key for source in self.sources() if source.enabled)


def activate_instrumentation(
    key: str,
    *,
    tracer_provider: Any | None = None,
    meter_provider: Any | None = None,
) -> bool:
    """Instrument the library behind ``key`` once per process.

    Returns True when this call performed the activation. Unknown keys, named
    sources and missing instrumentor packages are skipped.
    """
    target = KNOWN_INSTRUMENTORS.get(key)
    if target is None:
        return False

    with _ACTIVATION_LOCK:
        if key in _ACTIVATED:
            return False

        module_name, class_name = target
        try:
            module = importlib.import_module(module_name)
        except ImportError:
            logger.warning(
                "Instrumentation %r skipped: package %s is not installed",
                key,
                module_name,
                extra={"instrumentation": key},
            )
            return False

        kwargs: dict[str, Any] = {}
        if tracer_provider is not None:
            kwargs["tracer_provider"] = tracer_provider
        if meter_provider is not None:
            kwargs["meter_provider"] = meter_provider
        try:
            getattr(module, class_name)().instrument(**kwargs)
        except Exception:
            logger.warning(
                "Instrumentation %r failed to activate",
                key,
                exc_info=True,
                extra={"instrumentation": key},
            )
            return False
        _ACTIVATED.add(key)
        logger.debug("Instrumentation %r activated", key)
        return True


def activated_instrumentations() -> frozenset[str]:
    with _ACTIVATION_LOCK:
        return frozenset(_ACTIVATED)


def _normalize_key(key: str) -> str:
    normalized = key.strip()
    if normalized == "":
        raise ValueError("instrumentation key must not be empty")
    return normalized
