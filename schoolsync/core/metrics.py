"""
Sync metrics with Prometheus text exposition.

Every metric is declared up front with its help text, so `/metrics` reports
zeros for a fresh process and a misspelled name fails loudly.
"""

from __future__ import annotations

import time
from typing import Any

PREFIX = "schoolsync_"

COUNTERS = {
    "changes_tracked_total": "Changes written to the change log",
    "change_tracking_failures_total": "Version allocations or change log appends that failed",
    "changes_pruned_total": "Change records removed by retention",
    "messages_delivered_total": "Frames sent to live connections",
    "delivery_failures_total": "Sends that failed and dropped the connection",
    "connections_superseded_total": "Connections closed by a newer one for the same principal",
}

GAUGES = {
    "connections_active": "Registered WebSocket connections",
}


class MetricsCollector:
    """Process-local counters and gauges; each API instance reports its own."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = dict.fromkeys(COUNTERS, 0)
        self._gauges: dict[str, float] = dict.fromkeys(GAUGES, 0)
        self._start_time = time.monotonic()

    def inc(self, name: str, value: int = 1) -> None:
        if name not in self._counters:
            raise KeyError(f"Unknown counter: {name}")
        self._counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        if name not in self._gauges:
            raise KeyError(f"Unknown gauge: {name}")
        self._gauges[name] = value

    def get(self, name: str) -> int | float:
        if name in self._gauges:
            return self._gauges[name]
        return self._counters[name]

    @property
    def uptime(self) -> float:
        return time.monotonic() - self._start_time

    def to_prometheus(self) -> str:
        lines = []
        for kind, help_texts, values in (
            ("counter", COUNTERS, self._counters),
            ("gauge", GAUGES, self._gauges),
        ):
            for name in sorted(values):
                lines.append(f"# HELP {PREFIX}{name} {help_texts[name]}")
                lines.append(f"# TYPE {PREFIX}{name} {kind}")
                lines.append(f"{PREFIX}{name} {values[name]}")
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {self.uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        """Summary for the sync status endpoint, grouped by concern."""
        c = self._counters
        return {
            "changes": {
                "tracked": c["changes_tracked_total"],
                "failed": c["change_tracking_failures_total"],
                "pruned": c["changes_pruned_total"],
            },
            "delivery": {
                "delivered": c["messages_delivered_total"],
                "failed": c["delivery_failures_total"],
            },
            "connections": {
                "active": int(self._gauges["connections_active"]),
                "superseded": c["connections_superseded_total"],
            },
            "uptimeSeconds": round(self.uptime, 1),
        }
