"""HTTP surface for health, health history and Prometheus scraping.

The same routes are exposed three ways: a framework-free ASGI app, FastAPI
routes and aiohttp routes. Each route is toggled by :class:`EndpointSettings`.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Protocol

from telemetry_bootstrap.errors import MissingDependencyError
from telemetry_bootstrap.health.registry import HealthReport, HealthState
from telemetry_bootstrap.observability.metrics import (
    _asgi_send_response,
    create_prometheus_asgi_app,
    prometheus_content_type,
    render_prometheus_metrics,
)

if TYPE_CHECKING:
    from telemetry_bootstrap.config.models import AppSettings, EndpointSettings
    from telemetry_bootstrap.health.dashboard import HealthDashboard

_JSON_CONTENT_TYPE = "application/json"
_HTML_CONTENT_TYPE = "text/html; charset=utf-8"
_TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


class TelemetrySurface(Protocol):
    """What the endpoints need from a bootstrap handle."""

    settings: AppSettings
    dashboard: HealthDashboard | None
    metrics_registry: Any | None

    async def evaluate_health_async(self) -> HealthReport: ...


def health_status_code(report: HealthReport) -> int:
    """Degraded still serves traffic; only Unhealthy maps to 503."""
    return 503 if report.status is HealthState.UNHEALTHY else 200


async def render_health(surface: TelemetrySurface) -> tuple[int, bytes]:
    report = await surface.evaluate_health_async()
    return health_status_code(report), _json_bytes(report.to_dict())


async def render_health_ui_api(surface: TelemetrySurface) -> bytes:
    dashboard = await _refreshed_dashboard(surface)
    return _json_bytes(dashboard.to_dict())


async def render_health_ui(surface: TelemetrySurface) -> bytes:
    dashboard = await _refreshed_dashboard(surface)
    return dashboard.render_html().encode("utf-8")


def render_metrics(surface: TelemetrySurface) -> bytes:
    return render_prometheus_metrics(registry=surface.metrics_registry)


def enabled_routes(endpoints: EndpointSettings, *, has_dashboard: bool) -> dict[str, str]:
    """Map each enabled path to its route name."""
    routes: dict[str, str] = {}
    if endpoints.health_enabled:
        routes[endpoints.health_path] = "health"
    if endpoints.health_ui_enabled and has_dashboard:
        routes[endpoints.health_ui_path] = "health-ui"
        routes[endpoints.health_ui_api_path] = "health-ui-api"
    if endpoints.metrics_enabled:
        routes[endpoints.metrics_path] = "metrics"
    return routes


def create_telemetry_asgi_app(
    surface: TelemetrySurface,
    *,
    endpoints: EndpointSettings | None = None,
) -> Any:
    """Create an ASGI app serving the enabled telemetry routes."""
    resolved = surface.settings.endpoints if endpoints is None else endpoints
    routes = enabled_routes(resolved, has_dashboard=surface.dashboard is not None)
    metrics_app = create_prometheus_asgi_app(registry=surface.metrics_registry)

    async def app(scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope.get("type") != "http":
            return

        method = str(scope.get("method", "GET")).upper()
        route = routes.get(str(scope.get("path", "/")))

        if route is None:
            await _asgi_send_response(
                send, status=404, body=b"not found", content_type=_TEXT_CONTENT_TYPE
            )
            return

        if route == "metrics":
            # The scrape app only answers on its own path; the configured one may differ.
            await metrics_app({**scope, "path": "/metrics"}, receive, send)
            return

        if method not in {"GET", "HEAD"}:
            await _asgi_send_response(
                send, status=405, body=b"method not allowed", content_type=_TEXT_CONTENT_TYPE
            )
            return

        status, body, content_type = await _dispatch(surface, route)
        await _asgi_send_response(
            send,
            status=status,
            body=b"" if method == "HEAD" else body,
            content_type=content_type,
            content_length=len(body),
        )

    return app


def register_fastapi_endpoints(
    app: Any,
    surface: TelemetrySurface,
    *,
    endpoints: EndpointSettings | None = None,
) -> list[str]:
    """Add the enabled telemetry routes to a FastAPI app. Returns the added paths."""
    responses = _import_fastapi_responses()
    resolved = surface.settings.endpoints if endpoints is None else endpoints
    routes = enabled_routes(resolved, has_dashboard=surface.dashboard is not None)

    for path, route in routes.items():
        app.add_api_route(
            path,
            _fastapi_endpoint(surface, route, responses),
            methods=["GET"],
            name=f"telemetry-{route}",
            include_in_schema=False,
        )
    return list(routes)


def register_aiohttp_endpoints(
    app: Any,
    surface: TelemetrySurface,
    *,
    endpoints: EndpointSettings | None = None,
) -> list[str]:
    """Add the enabled telemetry routes to an aiohttp application."""
    web = _import_aiohttp_web()
    resolved = surface.settings.endpoints if endpoints is None else endpoints
    routes = enabled_routes(resolved, has_dashboard=surface.dashboard is not None)

    for path, route in routes.items():
        app.router.add_get(path, _aiohttp_handler(surface, route, web), name=f"telemetry-{route}")
    return list(routes)


def _fastapi_endpoint(surface: TelemetrySurface, route: str, responses: Any) -> Any:
    async def endpoint() -> Any:
        status, body, content_type = await _dispatch(surface, route)
        return responses.Response(content=body, status_code=status, media_type=content_type)

    return endpoint


def _aiohttp_handler(surface: TelemetrySurface, route: str, web: Any) -> Any:
    async def handler(request: Any) -> Any:
        del request
        status, body, content_type = await _dispatch(surface, route)
        return web.Response(body=body, status=status, headers={"Content-Type": content_type})

    return handler


async def _dispatch(surface: TelemetrySurface, route: str) -> tuple[int, bytes, str]:
    if route == "health":
        status, body = await render_health(surface)
        return status, body, _JSON_CONTENT_TYPE
    if route == "health-ui":
        return 200, await render_health_ui(surface), _HTML_CONTENT_TYPE
    if route == "health-ui-api":
        return 200, await render_health_ui_api(surface), _JSON_CONTENT_TYPE
    return 200, render_metrics(surface), prometheus_content_type()


async def _refreshed_dashboard(surface: TelemetrySurface) -> HealthDashboard:
    dashboard = surface.dashboard
    if dashboard is None:
        raise LookupError("health dashboard is not enabled")
    if dashboard.latest() is None:
        await dashboard.refresh()
    return dashboard


def _json_bytes(payload: Any) -> bytes:
    return json.dumps(payload, default=str, ensure_ascii=True).encode("utf-8")


def _import_fastapi_responses() -> Any:
    try:
        from fastapi import responses
    except ImportError as exc:  # pragma: no cover - exercised when extras are absent
        raise MissingDependencyError(
            "FastAPI endpoints require optional dependency 'fastapi'. "
            "Install with: uv sync --extra http"
        ) from exc
    return responses


def _import_aiohttp_web() -> Any:
    try:
        from aiohttp import web
    except ImportError as exc:  # pragma: no cover - exercised when extras are absent
        raise MissingDependencyError(
            "aiohttp endpoints require optional dependency 'aiohttp'. "
            "Install with: uv sync --extra http"
        ) from exc
    return web
