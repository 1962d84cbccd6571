"""
Headless lead dashboard view.

Owns its local copy of lead rows. Rows arrive two ways: the poller's batch
deliveries on the regular cadence, and immediate out-of-band reloads when an
invalidation signal is published. Both write the same local state and the
later one wins.
"""

from __future__ import annotations

import asyncio
import inspect
import math
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from .events import INVALIDATION_EVENTS, PROJECT_CHANGED, EventBus, InvalidationSignal
from .poller import BatchPoller
from .resources import FetchResult, ResourceType

log = structlog.get_logger()

Loader = Callable[[Mapping[str, Any] | None], Awaitable[FetchResult] | FetchResult]

HOT_LEVELS = frozenset({"HOT", "BURNING", "WHITE_HOT"})

_HEAT_THRESHOLDS = (
    (10, "FROZEN"),
    (20, "ICE_COLD"),
    (35, "COLD"),
    (50, "COOL"),
    (65, "WARM"),
    (80, "HOT"),
    (95, "BURNING"),
)


def heat_level(temperature: Any) -> str:
    if temperature is None or isinstance(temperature, bool):
        return "FROZEN"
    try:
        temp = float(temperature)
    except (TypeError, ValueError):
        return "FROZEN"
    if math.isnan(temp):
        return "FROZEN"
    for limit, level in _HEAT_THRESHOLDS:
        if temp <= limit:
            return level
    return "WHITE_HOT"


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class DashboardStats:
    total_leads: int = 0
    new_leads: int = 0
    hot_leads: int = 0
    converted_leads: int = 0
    conversion_rate: float = 0.0
    average_response_hours: float = 0.0


def compute_stats(leads: Iterable[Mapping[str, Any]]) -> DashboardStats:
    """Aggregate already-fetched lead rows into the dashboard's headline numbers."""
    leads = list(leads)
    stats = DashboardStats(total_leads=len(leads))
    stats.new_leads = sum(1 for lead in leads if lead.get("state") == "new_lead")
    stats.hot_leads = sum(1 for lead in leads if heat_level(lead.get("temperature")) in HOT_LEVELS)
    stats.converted_leads = sum(
        1
        for lead in leads
        if lead.get("state") == "qualified" or lead.get("status") == "purchase_ready"
    )
    if stats.total_leads:
        stats.conversion_rate = stats.converted_leads / stats.total_leads * 100

    response_hours = []
    for lead in leads:
        created = _parse_timestamp(lead.get("created_at"))
        updated = _parse_timestamp(lead.get("updated_at"))
        if created and updated and updated > created:
            response_hours.append((updated - created).total_seconds() / 3600)
    if response_hours:
        stats.average_response_hours = sum(response_hours) / len(response_hours)
    return stats


class LeadDashboard:
    """
    Lead rows for one project, kept live by the poller and the event bus.

    ``loader`` is the regular service call used for immediate reloads, e.g.
    ``SupabaseClient.get_leads``. It receives ``{"project_id": ...}`` or None.
    """

    def __init__(
        self,
        poller: BatchPoller,
        bus: EventBus,
        loader: Loader,
        project_id: str | None = None,
    ):
        self._poller = poller
        self._bus = bus
        self._loader = loader
        self._project_id = project_id

        self._rows: list[dict[str, Any]] = []
        self._last_known: list[dict[str, Any]] = []
        self._subscription_id: str | None = None
        self._reload_task: asyncio.Future | None = None
        self._generation = 0
        self._mounted = False

        self.error: str | None = None
        self.loading = False
        self.last_updated: datetime | None = None

    @property
    def rows(self) -> list[dict[str, Any]]:
        return list(self._rows)

    @property
    def project_id(self) -> str | None:
        return self._project_id

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    @property
    def pending_reload(self) -> asyncio.Future | None:
        return self._reload_task

    @property
    def live_updates_available(self) -> bool:
        """False once the poller has dropped this view's subscription."""
        return self._poller.is_active(self._subscription_id)

    def stats(self) -> DashboardStats:
        return compute_stats(self._rows)

    # --- Lifecycle ---

    def mount(self) -> None:
        if self._mounted:
            return
        self._mounted = True
        self._subscribe_poller()
        for name in INVALIDATION_EVENTS:
            self._bus.subscribe(name, self._on_signal)
        log.info("dashboard.mounted", project=self._project_id)
        self.refresh()

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        for name in INVALIDATION_EVENTS:
            self._bus.unsubscribe(name, self._on_signal)
        if self._subscription_id:
            self._poller.unsubscribe(self._subscription_id)
            self._subscription_id = None
        log.info("dashboard.unmounted", project=self._project_id)

    def _subscribe_poller(self) -> None:
        self._subscription_id = self._poller.subscribe(
            ResourceType.LEADS,
            {"project_id": self._project_id},
            self._on_rows,
            batch=True,
        )

    # --- Data flow ---

    def _filters(self) -> dict[str, Any] | None:
        return {"project_id": self._project_id} if self._project_id else None

    def _on_rows(self, rows: list[dict[str, Any]]) -> None:
        if not self._mounted:
            return
        self._rows = rows
        self._last_known = list(rows)
        self.error = None
        self.last_updated = datetime.now(timezone.utc)

    def _on_signal(self, signal: InvalidationSignal) -> None:
        if not self._mounted:
            return

        if signal.name == PROJECT_CHANGED:
            if signal.project_id is not None and signal.project_id != self._project_id:
                self._switch_project(signal.project_id)
        elif signal.project_id is not None and signal.project_id != self._project_id:
            log.debug("dashboard.signal_ignored", signal=signal.name, scope=signal.project_id)
            return

        log.info("dashboard.invalidated", signal=signal.name, project=self._project_id)
        self._rows = []
        self.refresh()

    def _switch_project(self, project_id: str) -> None:
        if self._subscription_id:
            self._poller.unsubscribe(self._subscription_id)
        self._project_id = project_id
        # Another project's rows are no fallback for this one
        self._last_known = []
        self._subscribe_poller()
        log.info("dashboard.project_switched", project=project_id)

    def refresh(self) -> asyncio.Future:
        """
        Reload rows now, outside the poll cadence.

        The loader is invoked before this returns. A coroutine loader only
        sends its request once the loop next runs; the returned future
        resolves after that.
        """
        self._generation += 1
        generation = self._generation
        self.loading = True
        try:
            pending: Any = self._loader(self._filters())
        except Exception as exc:
            pending = FetchResult.failure(str(exc) or exc.__class__.__name__)
        self._reload_task = asyncio.ensure_future(self._complete_reload(pending, generation))
        return self._reload_task

    async def _complete_reload(self, pending: Any, generation: int) -> None:
        try:
            result = await pending if inspect.isawaitable(pending) else pending
        except Exception as exc:
            result = FetchResult.failure(str(exc) or exc.__class__.__name__)

        if generation != self._generation:
            log.debug("dashboard.reload_superseded", generation=generation)
            return
        self.loading = False
        if not self._mounted:
            return

        if result.success:
            self._rows = list(result.data)
            self._last_known = list(result.data)
            self.error = None
            self.last_updated = datetime.now(timezone.utc)
            return

        # Stale-but-present beats flickering to empty
        self._rows = list(self._last_known)
        self.error = result.error or "reload failed"
        log.warning("dashboard.reload_failed", project=self._project_id, error=self.error)
