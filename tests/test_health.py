"""Tests for the health and metrics HTTP server."""

import random

import httpx
import pytest

from dashboard_sync.health import HealthServer
from dashboard_sync.metrics import MetricsCollector


def _pick_port():
    return random.randint(19000, 19999)


@pytest.fixture
async def serve():
    servers = []

    async def _start(status: dict, metrics: MetricsCollector | None = None, backend_check=None) -> str:
        port = _pick_port()
        server = HealthServer("127.0.0.1", port, metrics, lambda: status, backend_check)
        await server.start()
        servers.append(server)
        return f"http://127.0.0.1:{port}"

    yield _start
    for server in servers:
        await server.stop()


@pytest.mark.parametrize(
    "poller_status, expected",
    [
        ("connected", "healthy"),
        ("idle", "healthy"),
        ("reconnecting", "degraded"),
        ("disabled", "degraded"),
    ],
)
async def test_health_reflects_poller(serve, poller_status, expected):
    base = await serve({"status": poller_status, "active_subscriptions": 2})

    async with httpx.AsyncClient() as client:
        r = await client.get(f"{base}/health")

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == expected
    assert body["poller"]["active_subscriptions"] == 2
    assert "backend_reachable" not in body


@pytest.mark.parametrize("reachable, expected", [(True, "healthy"), (False, "degraded")])
async def test_health_reports_backend_reachability(serve, reachable, expected):
    async def check():
        return reachable

    base = await serve({"status": "connected"}, backend_check=check)

    async with httpx.AsyncClient() as client:
        r = await client.get(f"{base}/health")

    body = r.json()
    assert body["status"] == expected
    assert body["backend_reachable"] is reachable


async def test_metrics_endpoint(serve):
    metrics = MetricsCollector()
    metrics.inc("fetches_total", 3)
    base = await serve({}, metrics)

    async with httpx.AsyncClient() as client:
        r = await client.get(f"{base}/metrics")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "sync_fetches_total 3" in r.text


async def test_stop_without_start():
    await HealthServer().stop()
