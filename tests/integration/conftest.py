"""Fixtures for integration tests against real datastores and the OTel SDK."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def sqlite_path(tmp_path: Path) -> str:
    return str(tmp_path / "orders.sqlite3")
