"""Configuration loading: strict file loader and lenient mapping adapter."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_pascal, to_snake

from telemetry_bootstrap.config.errors import (
    ConfigFileNotFoundError,
    ConfigValidationError,
)
from telemetry_bootstrap.config.models import AppSettings, ObservabilitySettings
from telemetry_bootstrap.config.placeholders import resolve_placeholders
from telemetry_bootstrap.errors import ConfigurationIssue, IssueKind

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path("config")
DEFAULT_BASE_FILE = "appsettings.json"
ENV_VAR_NAME = "TELEMETRY_ENV"
DEFAULT_ENV = "development"

_SECTION_KEYS = frozenset(
    {to_pascal(name) for name in AppSettings.model_fields}
    | set(AppSettings.model_fields)
)
_OBSERVABILITY_KEYS = frozenset(
    {to_pascal(name) for name in ObservabilitySettings.model_fields}
    | set(ObservabilitySettings.model_fields)
)
_MAX_REPAIR_PASSES = 16


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries. Override values take precedence."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any]:
    """Load and parse a JSON configuration file.

    Raises:
        ConfigFileNotFoundError: If the file does not exist.
    """
    if not path.exists():
        raise ConfigFileNotFoundError(str(path))

    with path.open(encoding="utf-8") as f:
        return json.load(f)


def load_config(
    *,
    config_dir: Path | str | None = None,
    env: str | None = None,
    strict_placeholders: bool = True,
) -> AppSettings:
    """Load settings from ``appsettings.json`` files with hierarchical merging.

    Configuration is loaded in the following order (later sources override earlier):
    1. <config_dir>/appsettings.json
    2. <config_dir>/appsettings.<environment>.json, when present
    3. Environment variable placeholder resolution

    Unlike :func:`settings_from_mapping`, validation failures are raised.

    Raises:
        ConfigFileNotFoundError: If the base configuration file is not found.
        ConfigValidationError: If configuration validation fails.
        PlaceholderResolutionError: If strict_placeholders=True and a placeholder
            cannot be resolved.
    """
    config_dir = DEFAULT_CONFIG_DIR if config_dir is None else Path(config_dir)

    if env is None:
        env = os.environ.get(ENV_VAR_NAME, DEFAULT_ENV)

    config = load_json_file(config_dir / DEFAULT_BASE_FILE)

    env_path = config_dir / f"appsettings.{env}.json"
    if env_path.exists():
        config = deep_merge(config, load_json_file(env_path))

    config = resolve_placeholders(config, strict=strict_placeholders)

    try:
        return AppSettings.model_validate(_sectioned(config))
    except ValidationError as e:
        errors = [
            {"loc": " -> ".join(str(loc) for loc in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ConfigValidationError(errors) from e


def settings_from_mapping(
    mapping: Mapping[str, Any] | None,
    *,
    issues: list[ConfigurationIssue] | None = None,
) -> AppSettings:
    """Build settings from a configuration mapping without ever failing.

    Values that do not validate are dropped so the field falls back to its
    documented default; each drop is logged and appended to ``issues``.
    A flat mapping carrying ``ServiceName``/``OtlpEndpoint``-style keys is read
    as the ``Observability`` section.
    """
    data = _sectioned(_to_plain_dict(mapping or {}))

    for _ in range(_MAX_REPAIR_PASSES):
        try:
            return AppSettings.model_validate(data)
        except ValidationError as exc:
            repaired = False
            for err in exc.errors():
                location = tuple(err["loc"])
                if _drop_path(data, location):
                    repaired = True
                    _record_default(
                        issues,
                        component=".".join(str(part) for part in location),
                        detail=f"{err['msg']}; using default",
                    )
            if not repaired:
                break

    _record_default(issues, component="settings", detail="unusable configuration; using defaults")
    return AppSettings()


def _sectioned(data: dict[str, Any]) -> dict[str, Any]:
    if any(key in _SECTION_KEYS for key in data):
        return data
    if any(key in _OBSERVABILITY_KEYS for key in data):
        return {"Observability": data}
    return data


def _to_plain_dict(mapping: Mapping[str, Any]) -> dict[str, Any]:
    return {
        str(key): _to_plain_dict(value) if isinstance(value, Mapping) else value
        for key, value in mapping.items()
    }


def _drop_path(data: dict[str, Any], location: tuple[Any, ...]) -> bool:
    if not location:
        return False

    node: Any = data
    for part in location[:-1]:
        key = _matching_key(node, part)
        if key is None:
            return False
        node = node[key]

    key = _matching_key(node, location[-1])
    if key is None:
        return False
    del node[key]
    return True


def _matching_key(node: Any, part: Any) -> str | None:
    if not isinstance(node, dict):
        return None
    text = str(part)
    for candidate in (text, to_snake(text), to_pascal(text)):
        if candidate in node:
            return candidate
    return None


def _record_default(
    issues: list[ConfigurationIssue] | None,
    *,
    component: str,
    detail: str,
) -> None:
    issue = ConfigurationIssue(IssueKind.CONFIGURATION_DEFAULT, component, detail)
    logger.warning(
        "Invalid configuration value at %s: %s",
        component,
        detail,
        extra={"issue_kind": str(issue.kind)},
    )
    if issues is not None:
        issues.append(issue)
