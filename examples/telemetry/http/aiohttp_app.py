"""Minimal aiohttp service with telemetry and health endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator

from aiohttp import web

from telemetry_bootstrap import Capability, HealthProbe, HealthState, TelemetryBuilder
from telemetry_bootstrap.observability.endpoints import register_aiohttp_endpoints


def _queue_depth_ok() -> HealthState:
    return HealthState.HEALTHY


async def orders(_: web.Request) -> web.Response:
    return web.json_response([])


def build_app() -> web.Application:
    telemetry = (
        TelemetryBuilder({"Observability": {"ServiceName": "orders-worker"}})
        .with_capabilities(Capability.TRACING, Capability.LOGGING, Capability.HEALTH)
        .add_instrumentation("traces", "aiohttp-server")
        .add_probe(HealthProbe("queue", _queue_depth_ok))
        .build()
    )

    async def telemetry_context(_: web.Application) -> AsyncIterator[None]:
        async with telemetry:
            yield

    app = web.Application()
    app.cleanup_ctx.append(telemetry_context)
    app.router.add_get("/orders", orders)
    register_aiohttp_endpoints(app, telemetry)
    return app


if __name__ == "__main__":
    web.run_app(build_app(), host="0.0.0.0", port=8080)
