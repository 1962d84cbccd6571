"""
Health and metrics HTTP server.

Exposes:
- GET /health: JSON poller status and REST API reachability
- GET /metrics: Prometheus-compatible metrics
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from .metrics import MetricsCollector

StatusProvider = Callable[[], dict[str, Any]]
BackendCheck = Callable[[], Awaitable[bool]]


class HealthServer:
    """Lightweight HTTP server for health checks and metrics."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9090,
        metrics: MetricsCollector | None = None,
        status_provider: StatusProvider | None = None,
        backend_check: BackendCheck | None = None,
    ):
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._status_provider = status_provider or (lambda: {})
        self._backend_check = backend_check
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        poller = self._status_provider()
        state = poller.get("status", "idle")
        healthy = state == "connected" or state == "idle"
        body: dict[str, Any] = {"poller": poller}
        if self._backend_check is not None:
            reachable = await self._backend_check()
            body["backend_reachable"] = reachable
            healthy = healthy and reachable
        body["status"] = "healthy" if healthy else "degraded"
        return web.json_response(body)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
