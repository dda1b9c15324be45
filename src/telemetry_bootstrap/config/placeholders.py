"""Environment variable placeholder resolution."""

from __future__ import annotations

import os
import re
from typing import Any

from telemetry_bootstrap.config.errors import PlaceholderResolutionError

PLACEHOLDER_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def resolve_placeholders(
    data: dict[str, Any],
    *,
    strict: bool = True,
    _path: str = "",
) -> dict[str, Any]:
    """Resolve ``${ENV_VAR}`` and ``${ENV_VAR:-fallback}`` placeholders.

    Args:
        data: Configuration dictionary to process.
        strict: If True, raise for placeholders with neither a value nor a fallback.
        _path: Internal path tracker for error messages.

    Returns:
        New dictionary with placeholders resolved.

    Raises:
        PlaceholderResolutionError: If strict=True and a placeholder cannot be resolved.
    """
    result: dict[str, Any] = {}

    for key, value in data.items():
        current_path = f"{_path}.{key}" if _path else key

        if isinstance(value, dict):
            result[key] = resolve_placeholders(value, strict=strict, _path=current_path)
        elif isinstance(value, list):
            result[key] = _resolve_list(value, current_path, strict)
        else:
            result[key] = _resolve_value(value, current_path, strict)

    return result


def _resolve_list(values: list[Any], path: str, strict: bool) -> list[Any]:
    resolved: list[Any] = []
    for i, item in enumerate(values):
        item_path = f"{path}[{i}]"
        if isinstance(item, dict):
            resolved.append(resolve_placeholders(item, strict=strict, _path=item_path))
        elif isinstance(item, list):
            resolved.append(_resolve_list(item, item_path, strict))
        else:
            resolved.append(_resolve_value(item, item_path, strict))
    return resolved


def _resolve_value(value: Any, path: str, strict: bool) -> Any:
    if not isinstance(value, str):
        return value

    def replace_match(match: re.Match[str]) -> str:
        env_var, fallback = match.group(1), match.group(2)
        env_value = os.environ.get(env_var)
        if env_value is not None:
            return env_value
        if fallback is not None:
            return fallback
        if strict:
            raise PlaceholderResolutionError(match.group(0), path)
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace_match, value)
