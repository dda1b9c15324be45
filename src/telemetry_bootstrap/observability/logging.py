"""Process-wide structured logging with trace correlation."""

from __future__ import annotations

import json
import logging
import os
import random
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from telemetry_bootstrap.config.models import AppSettings, LoggingSettings

logger = logging.getLogger(__name__)

_STANDARD_RECORD_KEYS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)
_RESERVED_FIELDS = frozenset({"service", "version", "env", "trace_id", "span_id"})

_ACTIVE_HANDLE: LoggerHandle | None = None
_LOGGING_LOCK = threading.Lock()


class SamplingFilter(logging.Filter):
    """Sampling filter for low-severity logs."""

    def __init__(self, sampling: float) -> None:
        super().__init__()
        self._sampling = sampling

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return random.random() < self._sampling


class JsonFormatter(logging.Formatter):
    """One JSON object per record, stamped with service identity and trace ids."""

    def __init__(self, *, service: str, version: str, env: str) -> None:
        super().__init__()
        self._service = service
        self._version = version
        self._env = env

    def format(self, record: logging.LogRecord) -> str:
        trace_id, span_id = _current_otel_trace_context()
        payload: dict[str, Any] = {
            "timestamp": _format_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
            "version": self._version,
            "env": self._env,
            "trace_id": trace_id,
            "span_id": span_id,
        }

        payload.update(_extract_extra_fields(record))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=True)


class TextFormatter(logging.Formatter):
    def __init__(self, *, service: str, version: str, env: str) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")
        self._service = service
        self._version = version
        self._env = env

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        trace_id, span_id = _current_otel_trace_context()
        return (
            f"{base} "
            f"service={self._service} version={self._version} env={self._env} "
            f"trace_id={trace_id or '-'} span_id={span_id or '-'}"
        )


@dataclass(slots=True)
class LoggerHandle:
    """The active logging configuration and what it replaced on the root logger."""

    service: str
    version: str
    env: str
    handler: logging.Handler
    target: logging.Logger
    previous_handlers: tuple[logging.Handler, ...] = ()
    previous_level: int = logging.WARNING
    bridged: list[logging.Handler] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return _ACTIVE_HANDLE is self


def init_logging(
    settings: AppSettings | LoggingSettings | None = None,
    *,
    service: str,
    version: str,
    env: str | None = None,
    stream: TextIO | None = None,
) -> LoggerHandle:
    """Install structured logging on the root logger, once per process.

    A second call while a handle is active leaves the configuration untouched,
    logs a warning and returns the active handle.
    """
    global _ACTIVE_HANDLE

    with _LOGGING_LOCK:
        existing = _ACTIVE_HANDLE
        if existing is None:
            _ACTIVE_HANDLE = _install(
                _resolve_logging_settings(settings),
                service=service,
                version=version,
                env=env if env is not None else os.getenv("TELEMETRY_ENV", "development"),
                stream=stream,
            )
            return _ACTIVE_HANDLE

    logger.warning(
        "Logging already initialized for %s; keeping the active configuration",
        existing.service,
    )
    return existing


def shutdown_logging(handle: LoggerHandle) -> bool:
    """Remove ``handle``'s handler and restore the previous root configuration.

    Returns False when ``handle`` is not the active one.
    """
    global _ACTIVE_HANDLE

    with _LOGGING_LOCK:
        if _ACTIVE_HANDLE is not handle:
            return False
        _ACTIVE_HANDLE = None

    target = handle.target
    for bridge in list(handle.bridged):
        target.removeHandler(bridge)
    handle.bridged.clear()
    handle.handler.flush()
    target.removeHandler(handle.handler)
    handle.handler.close()
    for previous in handle.previous_handlers:
        target.addHandler(previous)
    target.setLevel(handle.previous_level)
    return True


def get_logger_handle() -> LoggerHandle | None:
    with _LOGGING_LOCK:
        return _ACTIVE_HANDLE


def attach_handler(handler: logging.Handler) -> None:
    """Add ``handler`` to the root logger alongside the structured handler."""
    root = logging.getLogger()
    if handler not in root.handlers:
        root.addHandler(handler)
    with _LOGGING_LOCK:
        if _ACTIVE_HANDLE is not None and handler not in _ACTIVE_HANDLE.bridged:
            _ACTIVE_HANDLE.bridged.append(handler)


def detach_handler(handler: logging.Handler) -> None:
    logging.getLogger().removeHandler(handler)
    with _LOGGING_LOCK:
        if _ACTIVE_HANDLE is not None and handler in _ACTIVE_HANDLE.bridged:
            _ACTIVE_HANDLE.bridged.remove(handler)


def _install(
    settings: LoggingSettings,
    *,
    service: str,
    version: str,
    env: str,
    stream: TextIO | None,
) -> LoggerHandle:
    target = logging.getLogger()
    previous_handlers = tuple(target.handlers)
    previous_level = target.level
    for existing in previous_handlers:
        target.removeHandler(existing)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        _build_formatter(settings.format, service=service, version=version, env=env)
    )
    if settings.sampling is not None and settings.sampling < 1.0:
        handler.addFilter(SamplingFilter(settings.sampling))

    target.addHandler(handler)
    target.setLevel(settings.level)
    return LoggerHandle(
        service=service,
        version=version,
        env=env,
        handler=handler,
        target=target,
        previous_handlers=previous_handlers,
        previous_level=previous_level,
    )


def _resolve_logging_settings(settings: AppSettings | LoggingSettings | None) -> LoggingSettings:
    from telemetry_bootstrap.config.models import LoggingSettings

    if settings is None:
        return LoggingSettings()
    return getattr(settings, "logging", settings)


def _build_formatter(log_format: str, *, service: str, version: str, env: str) -> logging.Formatter:
    if log_format == "text":
        return TextFormatter(service=service, version=version, env=env)
    return JsonFormatter(service=service, version=version, env=env)


def _current_otel_trace_context() -> tuple[str | None, str | None]:
    try:
        from opentelemetry import trace as otel_trace
    except ImportError:
        return None, None

    span = otel_trace.get_current_span()
    if span is None:
        return None, None

    span_context = span.get_span_context()
    if span_context is None or not getattr(span_context, "is_valid", False):
        return None, None

    return f"{span_context.trace_id:032x}", f"{span_context.span_id:016x}"


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    extras: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_RECORD_KEYS or key.startswith("_") or key in _RESERVED_FIELDS:
            continue
        extras[key] = value
    return extras


def _format_timestamp(created: float) -> str:
    timestamp = datetime.fromtimestamp(created, tz=UTC)
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
