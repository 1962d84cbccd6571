"""
Metrics collection and Prometheus-compatible exposition.

Series are keyed by name plus optional labels, so per-resource-type counters
(``fetches_total{resource_type="leads"}``) sit beside process-wide ones.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "sync_"

DESCRIPTIONS = {
    "ticks_total": "Poll ticks run",
    "fetches_total": "Merged batch fetches issued",
    "fetch_errors_total": "Batch fetches that failed",
    "cache_hits_total": "Batch groups served from the cache",
    "rows_dispatched_total": "Rows delivered to subscribers",
    "groups_disabled_total": "Batch groups unsubscribed after too many failures",
    "subscribers_not_served_total": "Subscribers skipped because a capped or partial fetch did not cover them",
    "api_requests_total": "Requests sent to the REST API",
    "api_errors_total": "REST API requests that failed",
    "events_published_total": "Invalidation events published",
    "subscriptions_active": "Active subscriptions",
    "timer_running": "1 while the shared poll timer runs",
}

SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


def _key(name: str, labels: dict[str, Any]) -> SeriesKey:
    return f"{PREFIX}{name}", tuple(sorted((k, str(v)) for k, v in labels.items()))


def _render(key: SeriesKey) -> str:
    name, labels = key
    if not labels:
        return name
    inner = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{inner}}}"


class MetricsCollector:
    """
    Counters and gauges with Prometheus text format export.

    Counters only go up; gauges hold the latest value. ``get`` without labels
    sums every series of that name.
    """

    def __init__(self) -> None:
        self._counters: dict[SeriesKey, int] = defaultdict(int)
        self._gauges: dict[SeriesKey, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        self._counters[_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        self._gauges[_key(name, labels)] = value

    def get(self, name: str, **labels: Any) -> int | float:
        full, wanted = _key(name, labels)
        wanted_set = set(wanted)
        total: int | float = 0
        for series in (self._gauges, self._counters):
            for (series_name, series_labels), value in series.items():
                if series_name == full and wanted_set <= set(series_labels):
                    total += value
        return total

    def to_prometheus(self) -> str:
        lines: list[str] = []
        for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
            seen: set[str] = set()
            for key in sorted(series):
                name = key[0]
                if name not in seen:
                    seen.add(name)
                    help_text = DESCRIPTIONS.get(name[len(PREFIX):])
                    if help_text:
                        lines.append(f"# HELP {name} {help_text}")
                    lines.append(f"# TYPE {name} {kind}")
                lines.append(f"{_render(key)} {series[key]}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {_render(k): v for k, v in self._counters.items()},
            "gauges": {_render(k): v for k, v in self._gauges.items()},
            "uptime_seconds": time.time() - self._start_time,
        }
