"""Tests for the in-memory health history."""

from __future__ import annotations

import asyncio

import pytest

from telemetry_bootstrap.health import HealthDashboard, HealthProbe, HealthRegistry, HealthState


def _registry(status: HealthState = HealthState.HEALTHY) -> HealthRegistry:
    registry = HealthRegistry()
    registry.register(HealthProbe("database-context", lambda: status))
    return registry


async def test_history_is_bounded() -> None:
    dashboard = HealthDashboard(_registry(), max_history_entries=3)

    for _ in range(5):
        await dashboard.refresh()

    assert len(dashboard.history()) == 3
    assert dashboard.max_history_entries == 3


async def test_payload_reflects_latest_report() -> None:
    dashboard = HealthDashboard(_registry(HealthState.DEGRADED), name="orders-api")

    assert dashboard.to_dict()["status"] is None
    await dashboard.refresh()
    payload = dashboard.to_dict()

    assert payload["name"] == "orders-api"
    assert payload["status"] == "Degraded"
    assert payload["checks"]["database-context"]["status"] == "Degraded"
    assert len(payload["history"]) == 1


async def test_html_escapes_probe_names() -> None:
    registry = HealthRegistry()
    registry.register(HealthProbe("<script>", lambda: HealthState.HEALTHY))
    dashboard = HealthDashboard(registry)
    await dashboard.refresh()

    html = dashboard.render_html()

    assert "&lt;script&gt;" in html
    assert "<script>" not in html


async def test_periodic_refresh_runs_until_stopped() -> None:
    dashboard = HealthDashboard(_registry(), evaluation_interval_seconds=0.01)

    dashboard.start()
    assert dashboard.running is True
    await asyncio.sleep(0.1)
    await dashboard.stop()
    count = len(dashboard.history())
    await asyncio.sleep(0.05)

    assert count >= 2
    assert len(dashboard.history()) == count
    assert dashboard.running is False


def test_invalid_settings_are_rejected() -> None:
    with pytest.raises(ValueError):
        HealthDashboard(HealthRegistry(), evaluation_interval_seconds=0)
    with pytest.raises(ValueError):
        HealthDashboard(HealthRegistry(), max_history_entries=0)
