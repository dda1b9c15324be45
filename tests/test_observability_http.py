"""Tests for the health, health history and scrape HTTP surface."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import pytest

from telemetry_bootstrap.config import AppSettings, EndpointSettings
from telemetry_bootstrap.health import (
    HealthCheckResult,
    HealthDashboard,
    HealthProbe,
    HealthRegistry,
    HealthReport,
    HealthState,
)
from telemetry_bootstrap.observability.endpoints import (
    create_telemetry_asgi_app,
    enabled_routes,
    health_status_code,
    register_aiohttp_endpoints,
    register_fastapi_endpoints,
)


@dataclass
class FakeSurface:
    registry: HealthRegistry
    settings: AppSettings = field(default_factory=AppSettings)
    dashboard: HealthDashboard | None = None
    metrics_registry: Any | None = None

    async def evaluate_health_async(self) -> HealthReport:
        return await self.registry.evaluate_async()


def _surface(*statuses: HealthState, dashboard: bool = False) -> FakeSurface:
    registry = HealthRegistry()
    for index, status in enumerate(statuses):
        registry.register(
            HealthProbe(
                f"probe-{index}",
                lambda status=status: HealthCheckResult(status, "checked"),
            )
        )
    return FakeSurface(
        registry=registry,
        dashboard=HealthDashboard(registry, name="orders-api") if dashboard else None,
    )


async def _call(app: Any, method: str, path: str) -> tuple[int, dict[bytes, bytes], bytes]:
    sent_messages: list[dict[str, Any]] = []

    async def send(message: dict[str, Any]) -> None:
        sent_messages.append(message)

    async def receive() -> dict[str, object]:
        return {"type": "http.request", "body": b"", "more_body": False}

    await app({"type": "http", "method": method, "path": path, "headers": []}, receive, send)
    start, body = sent_messages
    return start["status"], dict(start["headers"]), body["body"]


@pytest.mark.parametrize(
    ("status", "code"),
    [(HealthState.HEALTHY, 200), (HealthState.DEGRADED, 200), (HealthState.UNHEALTHY, 503)],
)
def test_health_status_code(status: HealthState, code: int) -> None:
    assert health_status_code(HealthReport(status=status, duration_ms=0.0)) == code


async def test_health_route_reports_worst_status() -> None:
    app = create_telemetry_asgi_app(_surface(HealthState.HEALTHY, HealthState.UNHEALTHY))

    status, headers, body = await _call(app, "GET", "/health")

    payload = json.loads(body)
    assert status == 503
    assert headers[b"content-type"] == b"application/json"
    assert payload["status"] == "Unhealthy"
    assert set(payload["checks"]) == {"probe-0", "probe-1"}


async def test_degraded_service_still_serves_200() -> None:
    app = create_telemetry_asgi_app(_surface(HealthState.HEALTHY, HealthState.DEGRADED))

    status, _, body = await _call(app, "GET", "/health")

    assert status == 200
    assert json.loads(body)["status"] == "Degraded"


async def test_head_request_has_no_body_but_keeps_length() -> None:
    app = create_telemetry_asgi_app(_surface(HealthState.HEALTHY))

    status, headers, body = await _call(app, "HEAD", "/health")

    assert status == 200
    assert body == b""
    assert int(headers[b"content-length"]) > 0


async def test_unknown_path_and_wrong_method() -> None:
    app = create_telemetry_asgi_app(_surface())

    assert (await _call(app, "GET", "/nope"))[0] == 404
    assert (await _call(app, "POST", "/health"))[0] == 405
    assert (await _call(app, "POST", "/nope"))[0] == 404


async def test_ui_routes_require_a_dashboard() -> None:
    without_dashboard = create_telemetry_asgi_app(_surface(HealthState.HEALTHY))
    with_dashboard = create_telemetry_asgi_app(_surface(HealthState.HEALTHY, dashboard=True))

    assert (await _call(without_dashboard, "GET", "/health-ui"))[0] == 404

    status, headers, body = await _call(with_dashboard, "GET", "/health-ui")
    assert status == 200
    assert headers[b"content-type"].startswith(b"text/html")
    assert b"orders-api" in body

    status, _, body = await _call(with_dashboard, "GET", "/health-ui-api")
    payload = json.loads(body)
    assert status == 200
    assert payload["status"] == "Healthy"
    assert len(payload["history"]) == 1


async def test_routes_follow_endpoint_settings() -> None:
    endpoints = EndpointSettings(health_path="/healthz", metrics_enabled=False)
    app = create_telemetry_asgi_app(_surface(HealthState.HEALTHY), endpoints=endpoints)

    assert (await _call(app, "GET", "/healthz"))[0] == 200
    assert (await _call(app, "GET", "/health"))[0] == 404
    assert (await _call(app, "GET", "/metrics"))[0] == 404


def test_enabled_routes() -> None:
    endpoints = EndpointSettings(health_enabled=False)

    assert enabled_routes(endpoints, has_dashboard=False) == {"/metrics": "metrics"}
    assert enabled_routes(endpoints, has_dashboard=True) == {
        "/health-ui": "health-ui",
        "/health-ui-api": "health-ui-api",
        "/metrics": "metrics",
    }


async def test_metrics_route_renders_registry() -> None:
    prometheus_client = pytest.importorskip("prometheus_client")
    registry = prometheus_client.CollectorRegistry()
    prometheus_client.Counter("orders_created", "Orders created.", registry=registry).inc()
    surface = _surface()
    surface.metrics_registry = registry

    status, headers, body = await _call(create_telemetry_asgi_app(surface), "GET", "/metrics")

    assert status == 200
    assert headers[b"content-type"].startswith(b"text/plain")
    assert b"orders_created_total 1.0" in body


async def test_metrics_route_serves_a_custom_path() -> None:
    prometheus_client = pytest.importorskip("prometheus_client")
    registry = prometheus_client.CollectorRegistry()
    prometheus_client.Gauge("orders_pending", "Orders pending.", registry=registry).set(3)
    surface = _surface()
    surface.metrics_registry = registry
    app = create_telemetry_asgi_app(surface, endpoints=EndpointSettings(metrics_path="/prom"))

    status, _, body = await _call(app, "GET", "/prom")
    assert status == 200
    assert b"orders_pending 3.0" in body

    status, headers, body = await _call(app, "HEAD", "/prom")
    assert status == 200
    assert body == b""
    assert int(headers[b"content-length"]) > 0

    assert (await _call(app, "POST", "/prom"))[0] == 405
    assert (await _call(app, "GET", "/metrics"))[0] == 404


def test_fastapi_routes() -> None:
    fastapi = pytest.importorskip("fastapi")
    testclient = pytest.importorskip("fastapi.testclient")
    app = fastapi.FastAPI()
    surface = _surface(HealthState.UNHEALTHY, dashboard=True)

    paths = register_fastapi_endpoints(app, surface)

    assert paths == ["/health", "/health-ui", "/health-ui-api", "/metrics"]
    client = testclient.TestClient(app)
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "Unhealthy"
    assert client.get("/health-ui-api").json()["name"] == "orders-api"
    assert "/health" not in json.dumps(app.openapi())


async def test_aiohttp_routes() -> None:
    web = pytest.importorskip("aiohttp.web")
    app = web.Application()
    surface = _surface(HealthState.HEALTHY)

    paths = register_aiohttp_endpoints(app, surface)

    assert paths == ["/health", "/metrics"]
    handlers = {
        route.resource.canonical: route.handler
        for route in app.router.routes()
        if route.method == "GET"
    }
    response = await handlers["/health"](None)
    assert response.status == 200
    assert json.loads(response.body)["status"] == "Healthy"
