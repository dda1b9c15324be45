"""Datastore connectivity adapters surfaced as health probes."""

from __future__ import annotations

from typing import Any, Protocol

from telemetry_bootstrap.config.models import DEFAULT_DATASTORE_PROBE_NAME
from telemetry_bootstrap.errors import MissingDependencyError
from telemetry_bootstrap.health.registry import HealthProbe, HealthState, ProbeKind


def _import_aiosqlite() -> Any:
    try:
        import aiosqlite
    except ImportError as exc:  # pragma: no cover - exercised when extras are absent
        raise MissingDependencyError(
            "SQLite probe requires optional dependency 'aiosqlite'. "
            "Install with: uv sync --extra datastores"
        ) from exc
    return aiosqlite


def _import_asyncpg() -> Any:
    try:
        import asyncpg
    except ImportError as exc:  # pragma: no cover - exercised when extras are absent
        raise MissingDependencyError(
            "PostgreSQL probe requires optional dependency 'asyncpg'. "
            "Install with: uv sync --extra datastores"
        ) from exc
    return asyncpg


def _import_motor_asyncio() -> Any:
    try:
        from motor import motor_asyncio
    except ImportError as exc:  # pragma: no cover - exercised when extras are absent
        raise MissingDependencyError(
            "MongoDB probe requires optional dependency 'motor'. "
            "Install with: uv sync --extra datastores"
        ) from exc
    return motor_asyncio


class DatastoreConnectivity(Protocol):
    """Anything able to answer "can I reach my datastore right now?".

    ``check_connectivity`` may be sync or async. Raising is allowed: the
    registry turns the exception message into an unhealthy result.
    """

    def check_connectivity(self) -> Any: ...


def datastore_probe(
    connectivity: DatastoreConnectivity,
    *,
    name: str = DEFAULT_DATASTORE_PROBE_NAME,
    timeout_seconds: float | None = None,
) -> HealthProbe:
    """Wrap ``connectivity`` as a datastore-kind probe."""
    return HealthProbe(
        name=name,
        check=connectivity.check_connectivity,
        kind=ProbeKind.DATASTORE,
        timeout_seconds=timeout_seconds,
    )


class SqliteConnectivity:
    """Runs ``SELECT 1`` against a SQLite database.

    Uses ``connection`` when given, otherwise opens and closes a short-lived
    connection to ``database`` on each check.
    """

    def __init__(self, database: str = ":memory:", *, connection: Any | None = None) -> None:
        self.database = database
        self._connection = connection

    async def check_connectivity(self) -> HealthState:
        if self._connection is not None:
            await self._connection.execute("SELECT 1")
            return HealthState.HEALTHY

        aiosqlite = _import_aiosqlite()
        async with aiosqlite.connect(self.database) as connection:
            await connection.execute("SELECT 1")
        return HealthState.HEALTHY


class PostgresConnectivity:
    """Runs ``SELECT 1`` through an asyncpg pool or a one-off connection."""

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: Any | None = None,
        connect_timeout_seconds: float = 5.0,
    ) -> None:
        if dsn is None and pool is None:
            raise ValueError("PostgresConnectivity requires a dsn or a pool")
        self.dsn = dsn
        self.connect_timeout_seconds = connect_timeout_seconds
        self._pool = pool

    async def check_connectivity(self) -> HealthState:
        if self._pool is not None:
            await self._pool.fetchval("SELECT 1")
            return HealthState.HEALTHY

        asyncpg = _import_asyncpg()
        connection = await asyncpg.connect(self.dsn, timeout=self.connect_timeout_seconds)
        try:
            await connection.fetchval("SELECT 1")
        finally:
            await connection.close()
        return HealthState.HEALTHY


class MongoConnectivity:
    """Pings a MongoDB database, or lists databases when none is named."""

    def __init__(
        self,
        uri: str | None = None,
        *,
        database: str | None = None,
        client: Any | None = None,
        server_selection_timeout_ms: int = 2000,
    ) -> None:
        if uri is None and client is None:
            raise ValueError("MongoConnectivity requires a uri or a client")
        self.uri = uri
        self.database = database
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client = client

    async def check_connectivity(self) -> HealthState:
        client = self._client
        owned = client is None
        if owned:
            motor_asyncio = _import_motor_asyncio()
            client = motor_asyncio.AsyncIOMotorClient(
                self.uri,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            )
        try:
            if self.database is not None:
                await client[self.database].command("ping")
            else:
                await client.list_database_names()
        finally:
            if owned:
                client.close()
        return HealthState.HEALTHY
