"""
Shared fixtures for dashboard sync tests.
"""

import asyncio

import pytest

from dashboard_sync.config import PollingConfig
from dashboard_sync.events import EventBus
from dashboard_sync.fetchers import FetcherRegistry
from dashboard_sync.metrics import MetricsCollector
from dashboard_sync.poller import BatchPoller
from dashboard_sync.resources import FetchResult, ResourceType


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingFetcher:
    """Fetch strategy serving canned rows and recording every merged filter it sees."""

    def __init__(self, resource_type: ResourceType, rows=None):
        self.resource_type = resource_type
        self.rows = list(rows or [])
        self.calls: list[dict] = []
        self.fail = False
        self.raise_exc: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def fetch(self, filters):
        self.calls.append({key: list(values) for key, values in filters.items()})
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail:
            return FetchResult.failure("backend unavailable")
        return FetchResult.ok(self.rows)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetchers():
    return {rt: RecordingFetcher(rt) for rt in ResourceType}


@pytest.fixture
def registry(fetchers):
    reg = FetcherRegistry()
    for fetcher in fetchers.values():
        reg.register(fetcher)
    return reg


@pytest.fixture
def polling_config():
    # Long interval: tests drive ticks with poll_once()
    return PollingConfig(
        interval_seconds=3600,
        cache_ttl_seconds=8,
        max_reconnect_attempts=5,
        reconnect_delay_seconds=1.0,
        reconnect_max_delay_seconds=60.0,
    )


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
async def poller(registry, polling_config, metrics, clock):
    p = BatchPoller(registry, polling_config, metrics, clock=clock)
    yield p
    await p.close()


@pytest.fixture
def bus(metrics):
    return EventBus(metrics)
