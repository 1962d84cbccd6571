"""
In-process invalidation event bus.

Signals are ephemeral: publish delivers to whoever is listening right now,
synchronously, then the signal is gone. No queue, no replay, no persistence.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from .metrics import MetricsCollector

log = structlog.get_logger()

PROJECT_CHANGED = "project-changed"
PROJECT_DATA_INVALIDATED = "project-data-invalidated"
FORCE_DASHBOARD_REFRESH = "force-dashboard-refresh"
LEADS_DATA_REFRESH = "leads-data-refresh"
PROJECT_DATA_REFRESH = "project-data-refresh"

INVALIDATION_EVENTS = frozenset({
    PROJECT_CHANGED,
    PROJECT_DATA_INVALIDATED,
    FORCE_DASHBOARD_REFRESH,
    LEADS_DATA_REFRESH,
    PROJECT_DATA_REFRESH,
})


@dataclass(frozen=True)
class InvalidationSignal:
    """A named broadcast meaning "discard local state and reload"."""

    name: str
    detail: Mapping[str, Any] = field(default_factory=dict)

    @property
    def project_id(self) -> str | None:
        """Scope of the signal, if it targets one project."""
        value = self.detail.get("project_id", self.detail.get("projectId"))
        return str(value) if value is not None else None


Handler = Callable[[InvalidationSignal], Awaitable[None] | None]


class EventBus:
    """Named-channel publish/subscribe for invalidation signals."""

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._metrics = metrics
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, name: str, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        handlers = self._handlers.get(name)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[name]
        return True

    def listener_count(self, name: str) -> int:
        return len(self._handlers.get(name, ()))

    def publish(self, name: str, detail: Mapping[str, Any] | None = None) -> int:
        """
        Deliver a signal to every current listener of ``name``.

        Handlers run synchronously in registration order. A failing handler is
        logged and does not stop the others. Returns how many handlers ran.
        """
        signal = InvalidationSignal(name, dict(detail or {}))
        handlers = list(self._handlers.get(name, ()))
        if self._metrics:
            self._metrics.inc("events_published_total")
        log.debug("events.publish", signal=name, listeners=len(handlers), detail=signal.detail)

        for handler in handlers:
            try:
                result = handler(signal)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result))
            except Exception:
                log.exception("events.handler_error", signal=name)
        return len(handlers)

    def _track(self, task: asyncio.Future) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("events.async_handler_error", error=repr(exc))
