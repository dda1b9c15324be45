"""In-memory health history with periodic evaluation, for the health UI."""

from __future__ import annotations

import asyncio
import html
import logging
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from telemetry_bootstrap.health.registry import HealthRegistry, HealthReport

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class HealthHistoryEntry:
    evaluated_at: datetime
    report: HealthReport

    def to_dict(self) -> dict[str, Any]:
        payload = self.report.to_dict()
        payload["evaluated_at"] = self.evaluated_at.isoformat()
        return payload


class HealthDashboard:
    """Keeps the last ``max_history_entries`` health reports of one service."""

    def __init__(
        self,
        registry: HealthRegistry,
        *,
        name: str = "self",
        evaluation_interval_seconds: float = 15.0,
        max_history_entries: int = 60,
        timeout_seconds: float | None = None,
    ) -> None:
        if evaluation_interval_seconds <= 0:
            raise ValueError("evaluation_interval_seconds must be > 0")
        if max_history_entries < 1:
            raise ValueError("max_history_entries must be >= 1")
        self.registry = registry
        self.name = name
        self.evaluation_interval_seconds = evaluation_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._history: deque[HealthHistoryEntry] = deque(maxlen=max_history_entries)
        self._task: asyncio.Task[None] | None = None

    @property
    def max_history_entries(self) -> int:
        return self._history.maxlen or 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def history(self) -> tuple[HealthHistoryEntry, ...]:
        return tuple(self._history)

    def latest(self) -> HealthHistoryEntry | None:
        return self._history[-1] if self._history else None

    async def refresh(self) -> HealthReport:
        """Evaluate the registry once and append the result to history."""
        report = await self.registry.evaluate_async(timeout_seconds=self.timeout_seconds)
        self._history.append(HealthHistoryEntry(evaluated_at=datetime.now(UTC), report=report))
        return report

    def start(self) -> None:
        """Begin periodic evaluation on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"health-dashboard-{self.name}"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def cancel(self) -> None:
        """Request cancellation without waiting, for synchronous shutdown paths."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        loop = task.get_loop()
        if not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Health dashboard refresh failed")
            await asyncio.sleep(self.evaluation_interval_seconds)

    def to_dict(self) -> dict[str, Any]:
        latest = self.latest()
        return {
            "name": self.name,
            "status": None if latest is None else str(latest.report.status),
            "evaluated_at": None if latest is None else latest.evaluated_at.isoformat(),
            "checks": {} if latest is None else latest.report.to_dict()["checks"],
            "history": [
                {
                    "status": str(entry.report.status),
                    "duration_ms": entry.report.duration_ms,
                    "evaluated_at": entry.evaluated_at.isoformat(),
                }
                for entry in self._history
            ],
        }

    def render_html(self) -> str:
        latest = self.latest()
        name = html.escape(self.name)
        if latest is None:
            body = "<p>No evaluations yet.</p>"
        else:
            rows = "".join(
                "<tr><td>{}</td><td>{}</td><td>{:.1f}</td><td>{}</td></tr>".format(
                    html.escape(result.name),
                    html.escape(str(result.status)),
                    result.duration_ms,
                    html.escape(result.message or ""),
                )
                for result in latest.report.results
            )
            body = (
                f"<p>Status: <strong>{html.escape(str(latest.report.status))}</strong> "
                f"at {html.escape(latest.evaluated_at.isoformat())}</p>"
                "<table><thead><tr><th>Probe</th><th>Status</th><th>Duration (ms)</th>"
                f"<th>Message</th></tr></thead><tbody>{rows}</tbody></table>"
                f"<p>{len(self._history)} of {self.max_history_entries} entries kept.</p>"
            )
        return (
            "<!doctype html><html><head><meta charset=\"utf-8\">"
            f"<title>Health: {name}</title></head><body><h1>{name}</h1>{body}</body></html>"
        )
