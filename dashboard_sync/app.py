"""
Application root.

Builds exactly one of each component (client, fetch strategies, poller, event
bus, health server) and hands them to the views that need them. Nothing here
is a module-level singleton, so tests and separate pages can each own an
independent instance.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

from .api_client import SupabaseClient
from .config import SyncConfig
from .dashboard import LeadDashboard
from .events import EventBus
from .fetchers import FetcherRegistry, default_registry
from .health import HealthServer
from .metrics import MetricsCollector
from .poller import BatchPoller

log = structlog.get_logger()


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        ),
    )


class DashboardSync:
    """
    Owns the sync components for one running dashboard session.

    ``registry`` replaces the default Supabase-backed fetch strategies, which
    is how tests and alternative backends plug in.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        registry: FetcherRegistry | None = None,
        client: SupabaseClient | None = None,
    ):
        self._config = config or SyncConfig()
        self._metrics = MetricsCollector()
        self._client = client or SupabaseClient(
            url=self._config.supabase.url,
            api_key=self._config.supabase.api_key,
            verify_tls=self._config.supabase.verify_tls,
            request_timeout=self._config.supabase.request_timeout_seconds,
            metrics=self._metrics,
        )
        self._registry = registry or default_registry(
            self._client, self._config.polling.conversation_fanout_limit
        )
        self._poller = BatchPoller(self._registry, self._config.polling, self._metrics)
        self._bus = EventBus(self._metrics)
        self._health = HealthServer(
            host=self._config.metrics.host,
            port=self._config.metrics.port,
            metrics=self._metrics,
            status_provider=self._poller.snapshot,
            backend_check=self._client.check_health,
        )
        self._dashboards: list[LeadDashboard] = []
        self._running = False

    @property
    def poller(self) -> BatchPoller:
        return self._poller

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def client(self) -> SupabaseClient:
        return self._client

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        if not self._config.supabase.api_key:
            log.warning("sync.missing_api_key", env=self._config.supabase.api_key_env)

        await self._client.open()

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                log.info(
                    "sync.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except Exception as exc:
                log.warning("sync.health_start_failed", error=str(exc))

        self._running = True
        log.info("sync.started", resource_types=[rt.value for rt in self._registry.types()])

    async def stop(self) -> None:
        """Unmount views, stop polling, close connections."""
        if not self._running:
            return
        self._running = False
        log.info("sync.stopping")

        for dashboard in self._dashboards:
            dashboard.unmount()
        self._dashboards.clear()

        await self._poller.close()
        await self._health.stop()
        await self._client.close()
        log.info("sync.stopped")

    async def __aenter__(self) -> DashboardSync:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def create_dashboard(self, project_id: str | None = None, mount: bool = True) -> LeadDashboard:
        dashboard = LeadDashboard(self._poller, self._bus, self._client.get_leads, project_id)
        if mount:
            dashboard.mount()
        self._dashboards.append(dashboard)
        return dashboard

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "dashboards": len(self._dashboards),
            "poller": self._poller.snapshot(),
            "metrics": self._metrics.to_dict(),
        }
