"""
Batch poller: many logical subscriptions, one shared polling timer.

Each tick:
1. Snapshot active subscriptions and group them by resource type
2. Per group, reuse the batch cache entry or run exactly one merged fetch
3. Fan the rows back out, each subscriber seeing only rows matching its own
   predicate
4. Track failures per resource type with exponential backoff; past the
   attempt limit the whole group is unsubscribed

Groups are processed concurrently and independently. A failing group never
stops the others from being served in the same tick.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

import structlog

from .cache import BatchCache, CacheEntry
from .config import PollingConfig
from .fetchers import FetcherRegistry
from .metrics import MetricsCollector
from .resources import (
    FetchResult,
    Predicate,
    ResourceType,
    SubscriptionError,
    UnknownResourceError,
    filter_rows,
    filters_cover,
    merge_predicates,
    normalize_predicate,
)

log = structlog.get_logger()

Callback = Callable[[Any], Awaitable[None] | None]

WRITE_OPERATIONS = ("INSERT", "UPDATE", "DELETE")

# Set while a tick runs; group tasks spawned by gather inherit it
_IN_TICK: ContextVar[bool] = ContextVar("dashboard_sync_in_tick", default=False)


class ConnectionStatus(str, enum.Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISABLED = "disabled"


@dataclass
class Subscription:
    """A logical interest registration. Owned by the poller."""

    id: str
    resource_type: ResourceType
    predicate: Predicate
    callback: Callback
    batch: bool = False
    active: bool = True
    last_delivered: float | None = None


class BatchPoller:
    """
    Subscription registry and batch scheduler.

    ``subscribe`` must be called from inside a running event loop: the first
    active subscription starts the shared timer task, and the timer stops as
    soon as the registry is empty.
    """

    def __init__(
        self,
        registry: FetcherRegistry,
        config: PollingConfig | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._config = config or PollingConfig()
        self._metrics = metrics
        self._clock = clock
        self._cache = BatchCache(self._config.cache_ttl_seconds)

        # Insertion order doubles as dispatch order within a group
        self._subscriptions: dict[str, Subscription] = {}
        self._attempts: dict[ResourceType, int] = {}
        self._disabled: set[ResourceType] = set()
        self._connected = False
        self._last_retry_delay: float | None = None
        self._last_tick_at: float | None = None
        self._timer_task: asyncio.Task | None = None
        self._stopped_task: asyncio.Task | None = None
        self._busy_task: asyncio.Task | None = None

    # --- Status ---

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def reconnect_attempts(self) -> int:
        return max(self._attempts.values(), default=0)

    @property
    def status(self) -> ConnectionStatus:
        if self._attempts:
            return ConnectionStatus.RECONNECTING
        if self._disabled:
            return ConnectionStatus.DISABLED
        if self._connected:
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.IDLE

    @property
    def disabled_types(self) -> list[ResourceType]:
        return sorted(self._disabled, key=lambda rt: rt.value)

    @property
    def last_retry_delay(self) -> float | None:
        return self._last_retry_delay

    @property
    def last_tick_at(self) -> float | None:
        return self._last_tick_at

    @property
    def timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def active_subscriptions_count(self) -> int:
        return sum(1 for sub in self._subscriptions.values() if sub.active)

    def attempts_for(self, resource_type: ResourceType | str) -> int:
        return self._attempts.get(ResourceType.parse(resource_type), 0)

    def is_active(self, subscription_id: str | None) -> bool:
        sub = self._subscriptions.get(subscription_id) if subscription_id else None
        return sub is not None and sub.active

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self._subscriptions.get(subscription_id)

    def cache_entry(self, resource_type: ResourceType | str) -> CacheEntry | None:
        return self._cache.entry(ResourceType.parse(resource_type))

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the retry following failure number ``attempt``."""
        delay = self._config.reconnect_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self._config.reconnect_max_delay_seconds)

    def snapshot(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for sub in self._subscriptions.values():
            if sub.active:
                by_type[sub.resource_type.value] = by_type.get(sub.resource_type.value, 0) + 1
        return {
            "status": self.status.value,
            "connected": self._connected,
            "reconnect_attempts": self.reconnect_attempts,
            "active_subscriptions": self.active_subscriptions_count,
            "subscriptions_by_type": by_type,
            "disabled_types": [rt.value for rt in self.disabled_types],
            "timer_running": self.timer_running,
            "last_tick_at": self._last_tick_at,
            "last_retry_delay": self._last_retry_delay,
        }

    # --- Registry ---

    def subscribe(
        self,
        resource_type: ResourceType | str,
        predicate: Mapping[str, Any] | None,
        callback: Callback,
        batch: bool = False,
    ) -> str:
        """
        Register interest in rows of ``resource_type`` matching ``predicate``.

        Returns the subscription id immediately; the first data arrives on the
        next tick. Unknown resource types, malformed predicates, and
        non-callable callbacks are rejected here rather than registered as
        no-ops. With ``batch=True`` the callback receives the filtered list
        once per tick instead of one call per row.
        """
        rt = ResourceType.parse(resource_type)
        if rt not in self._registry:
            raise UnknownResourceError(f"No fetcher registered for {rt.value!r}")
        normalized = normalize_predicate(predicate)
        if not callable(callback):
            raise SubscriptionError("callback must be callable")
        loop = asyncio.get_running_loop()

        sub_id = f"rt_{uuid.uuid4().hex[:16]}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            resource_type=rt,
            predicate=normalized,
            callback=callback,
            batch=batch,
        )

        if rt in self._disabled:
            # Fresh interest in a disabled type starts a new batch group
            self._disabled.discard(rt)
            self._attempts.pop(rt, None)
            log.info("poller.type_reenabled", resource_type=rt.value)

        self._start_timer(loop)
        self._update_gauges()
        log.debug(
            "poller.subscribed",
            subscription=sub_id,
            resource_type=rt.value,
            predicate=normalized,
            batch=batch,
        )
        return sub_id

    def subscribe_to_lead_updates(
        self, callback: Callback, project_id: str | None = None, batch: bool = False
    ) -> str:
        return self.subscribe(ResourceType.LEADS, {"project_id": project_id}, callback, batch)

    def subscribe_to_project_updates(
        self, callback: Callback, client_id: str | None = None, batch: bool = False
    ) -> str:
        return self.subscribe(ResourceType.PROJECTS, {"client_id": client_id}, callback, batch)

    def subscribe_to_conversation_updates(
        self, callback: Callback, lead_id: str | None = None, batch: bool = False
    ) -> str:
        return self.subscribe(ResourceType.CONVERSATIONS, {"lead_id": lead_id}, callback, batch)

    def subscribe_to_message_updates(
        self, callback: Callback, lead_id: str | None = None, batch: bool = False
    ) -> str:
        return self.subscribe(ResourceType.MESSAGES, {"lead_id": lead_id}, callback, batch)

    def unsubscribe(self, subscription_id: str) -> bool:
        """Deactivate and remove a subscription. Returns False if it was unknown."""
        sub = self._subscriptions.pop(subscription_id, None)
        if sub is None:
            return False
        sub.active = False
        if not self._subscriptions:
            self._stop_timer()
        self._update_gauges()
        log.debug("poller.unsubscribed", subscription=subscription_id)
        return True

    def unsubscribe_all(self) -> int:
        count = len(self._subscriptions)
        for sub in self._subscriptions.values():
            sub.active = False
        self._subscriptions.clear()
        self._stop_timer()
        self._update_gauges()
        if count:
            log.info("poller.unsubscribed_all", count=count)
        return count

    async def close(self) -> None:
        """Unsubscribe everything and wait for the timer task to finish."""
        self.unsubscribe_all()
        task = self._stopped_task
        self._stopped_task = None
        # Awaiting the timer from inside its own tick would never return
        if task is None or task.done() or _IN_TICK.get():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    # --- Cache ---

    def invalidate(self, resource_type: ResourceType | str | None = None) -> int:
        rt = ResourceType.parse(resource_type) if resource_type is not None else None
        dropped = self._cache.invalidate(rt)
        log.debug("poller.cache_invalidated", resource_type=rt.value if rt else "*", dropped=dropped)
        return dropped

    def notify_write(
        self,
        resource_type: ResourceType | str,
        operation: str,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        """A write completed: the next tick refetches that resource type."""
        rt = ResourceType.parse(resource_type)
        op = operation.upper()
        if op not in WRITE_OPERATIONS:
            raise ValueError(f"Unknown write operation: {operation!r}")
        self._cache.invalidate(rt)
        log.info(
            "poller.write_notified",
            resource_type=rt.value,
            operation=op,
            row_id=(data or {}).get("id"),
        )

    # --- Timer ---

    def _start_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.timer_running:
            return
        self._timer_task = loop.create_task(self._poll_loop())
        log.info("poller.timer_started", interval=self._config.interval_seconds)

    def _stop_timer(self) -> None:
        task = self._timer_task
        if task is None:
            return
        self._timer_task = None
        self._stopped_task = task
        # Only a sleeping timer is cancelled; a tick in flight finishes and the loop exits
        if task is not self._busy_task and not task.done():
            task.cancel()
        log.info("poller.timer_stopped")

    async def _poll_loop(self) -> None:
        task = asyncio.current_task()
        while self._timer_task is task:
            await asyncio.sleep(self._config.interval_seconds)
            if self._timer_task is not task:
                break
            self._busy_task = task
            try:
                await self.poll_once()
            except Exception:
                log.exception("poller.tick_failed")
            finally:
                if self._busy_task is task:
                    self._busy_task = None

    # --- Tick ---

    async def poll_once(self) -> None:
        """Run one batch cycle over every active subscription."""
        active = [sub for sub in self._subscriptions.values() if sub.active]
        if not active:
            return

        now = self._clock()
        groups: dict[ResourceType, list[Subscription]] = {}
        for sub in active:
            groups.setdefault(sub.resource_type, []).append(sub)

        if self._metrics:
            self._metrics.inc("ticks_total")

        token = _IN_TICK.set(True)
        try:
            results = await asyncio.gather(
                *(self._process_group(rt, subs, now) for rt, subs in groups.items()),
                return_exceptions=True,
            )
        finally:
            _IN_TICK.reset(token)
        for rt, result in zip(groups, results):
            if isinstance(result, BaseException):
                log.error("poller.group_failed", resource_type=rt.value, error=repr(result))

        self._last_tick_at = now

    async def _process_group(
        self,
        rt: ResourceType,
        subs: list[Subscription],
        now: float,
    ) -> None:
        try:
            wanted = merge_predicates(sub.predicate for sub in subs)
            rows = self._cache.get(rt, now, wanted)
            if rows is not None:
                served = self._cache.entry(rt).filters
                if self._metrics:
                    self._metrics.inc("cache_hits_total", resource_type=rt.value)
                log.debug("poller.cache_hit", resource_type=rt.value, rows=len(rows))
            else:
                result = await self._fetch(rt, wanted)
                if not result.success:
                    self._handle_batch_error(rt, subs, result.error)
                    return
                rows = result.data
                # A capped or partial fetch only vouches for what it served
                served = result.filters if result.filters is not None else wanted
                self._cache.store(rt, rows, now, served)
                self._mark_healthy(rt)

            await self._dispatch(rt, subs, rows, now, served)
        except Exception:
            log.exception("poller.batch_update_failed", resource_type=rt.value)

    async def _fetch(self, rt: ResourceType, filters: dict[str, list[Any]]) -> FetchResult:
        fetcher = self._registry.get(rt)
        if self._metrics:
            self._metrics.inc("fetches_total", resource_type=rt.value)
        log.debug("poller.fetch", resource_type=rt.value, filters=filters)
        try:
            return await fetcher.fetch(filters)
        except Exception as exc:
            log.warning("poller.fetch_raised", resource_type=rt.value, error=repr(exc))
            return FetchResult.failure(str(exc) or exc.__class__.__name__)

    async def _dispatch(
        self,
        rt: ResourceType,
        subs: list[Subscription],
        rows: list[dict[str, Any]],
        now: float,
        served: Mapping[str, Any],
    ) -> None:
        not_served = []
        for sub in subs:
            # Re-checked here: the subscriber may have left while the fetch was in flight
            if not sub.active:
                continue
            if not filters_cover(served, sub.predicate):
                not_served.append(sub.id)
                continue
            matched = filter_rows(rows, sub.predicate)
            if sub.batch:
                await self._invoke(sub, [dict(row) for row in matched])
            else:
                for row in matched:
                    if not sub.active:
                        break
                    await self._invoke(sub, dict(row))
            sub.last_delivered = now
            if self._metrics:
                self._metrics.inc(
                    "rows_dispatched_total", len(matched), resource_type=sub.resource_type.value
                )

        if not_served:
            log.warning(
                "poller.subscribers_not_served",
                resource_type=rt.value,
                subscriptions=not_served,
            )
            if self._metrics:
                self._metrics.inc(
                    "subscribers_not_served_total", len(not_served), resource_type=rt.value
                )

    async def _invoke(self, sub: Subscription, payload: Any) -> None:
        try:
            result = sub.callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception(
                "poller.callback_error",
                subscription=sub.id,
                resource_type=sub.resource_type.value,
            )

    # --- Failure handling ---

    def _mark_healthy(self, rt: ResourceType) -> None:
        self._attempts.pop(rt, None)
        was_connected = self._connected
        self._connected = not self._attempts
        if self._connected and not was_connected:
            log.info("poller.connected")

    def _handle_batch_error(
        self,
        rt: ResourceType,
        subs: list[Subscription],
        error: str | None,
    ) -> float | None:
        """Count a failed fetch. Returns the retry delay, or None once the group is disabled."""
        self._connected = False
        attempts = self._attempts.get(rt, 0) + 1
        self._attempts[rt] = attempts
        if self._metrics:
            self._metrics.inc("fetch_errors_total", resource_type=rt.value)

        if attempts <= self._config.max_reconnect_attempts:
            delay = self.retry_delay(attempts)
            self._last_retry_delay = delay
            log.warning(
                "poller.batch_retry",
                resource_type=rt.value,
                attempt=attempts,
                max_attempts=self._config.max_reconnect_attempts,
                retry_in=delay,
                error=error,
            )
            return delay

        log.error(
            "poller.max_attempts_reached",
            resource_type=rt.value,
            subscriptions=len(subs),
            error=error,
        )
        self._attempts.pop(rt, None)
        self._cache.invalidate(rt)
        for sub in subs:
            self.unsubscribe(sub.id)
        # Interest registered while the failing fetch was in flight starts a fresh group
        if any(s.active and s.resource_type is rt for s in self._subscriptions.values()):
            log.info("poller.type_kept_alive", resource_type=rt.value)
        else:
            self._disabled.add(rt)
        if self._metrics:
            self._metrics.inc("groups_disabled_total", resource_type=rt.value)
        return None

    def _update_gauges(self) -> None:
        if self._metrics:
            self._metrics.set_gauge("subscriptions_active", self.active_subscriptions_count)
            self._metrics.set_gauge("timer_running", 1 if self.timer_running else 0)
