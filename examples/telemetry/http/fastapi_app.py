"""Minimal FastAPI service with telemetry, health probes and scrape endpoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from telemetry_bootstrap import Capability, bootstrap, load_config
from telemetry_bootstrap.health import SqliteConnectivity
from telemetry_bootstrap.observability.endpoints import register_fastapi_endpoints

telemetry = bootstrap(
    load_config(config_dir="config", env="development"),
    capabilities=(
        Capability.TRACING,
        Capability.METRICS,
        Capability.LOGGING,
        Capability.HEALTH,
        Capability.HEALTH_UI,
        Capability.SCRAPE_ENDPOINT,
    ),
    datastore=SqliteConnectivity("orders.sqlite3"),
)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    async with telemetry:
        yield


app = FastAPI(lifespan=lifespan)
register_fastapi_endpoints(app, telemetry)


@app.get("/orders/{order_id}")
async def get_order(order_id: int) -> dict[str, int]:
    return {"id": order_id}
