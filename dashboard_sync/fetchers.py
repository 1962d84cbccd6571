"""
Per-resource-type fetch strategies.

The poller never switches on resource type. It looks the type up in a
FetcherRegistry and calls ``fetch(filters)`` on whatever strategy is
registered, so adding a resource type means registering one more fetcher.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import structlog

from .api_client import SupabaseClient
from .resources import FetchResult, ResourceType, UnknownResourceError

log = structlog.get_logger()

Filters = Mapping[str, Sequence[Any]]

DEFAULT_TABLES: dict[ResourceType, str] = {
    ResourceType.LEADS: "leads",
    ResourceType.PROJECTS: "projects",
    ResourceType.CLIENTS: "clients",
    ResourceType.MESSAGES: "whatsapp_messages",
}


@runtime_checkable
class ResourceFetcher(Protocol):
    resource_type: ResourceType

    async def fetch(self, filters: Filters) -> FetchResult: ...


class TableFetcher:
    """One merged query against a single table."""

    def __init__(
        self,
        client: SupabaseClient,
        resource_type: ResourceType,
        table: str,
        order: str | None = None,
    ):
        self.resource_type = resource_type
        self._client = client
        self._table = table
        self._order = order

    async def fetch(self, filters: Filters) -> FetchResult:
        return await self._client.select(self._table, filters or None, order=self._order)

    def __repr__(self) -> str:
        return f"TableFetcher({self.resource_type.value!r}, table={self._table!r})"


class ConversationFetcher:
    """
    Conversations are fetched per lead.

    With ``lead_id`` values in the merged filter, one request per lead is
    issued concurrently and the successful results are concatenated. Without
    them, a single unfiltered request.

    At most ``fanout_limit`` leads are requested per call. Past the cap the
    window rotates across calls so every lead is reached within a few ticks.
    Whenever fewer leads were served than asked for, the result's ``filters``
    names the leads actually served.
    """

    resource_type = ResourceType.CONVERSATIONS

    def __init__(self, client: SupabaseClient, fanout_limit: int = 10):
        self._client = client
        self._fanout_limit = fanout_limit
        self._cursor = 0

    def _window(self, lead_ids: list[Any]) -> list[Any]:
        if len(lead_ids) <= self._fanout_limit:
            return lead_ids
        start = self._cursor % len(lead_ids)
        self._cursor = start + self._fanout_limit
        rotated = lead_ids[start:] + lead_ids[:start]
        log.warning(
            "fetchers.conversation_fanout_capped",
            requested=len(lead_ids),
            limit=self._fanout_limit,
            offset=start,
        )
        return rotated[: self._fanout_limit]

    async def fetch(self, filters: Filters) -> FetchResult:
        wanted = [lead_id for lead_id in (filters or {}).get("lead_id", ()) if lead_id]
        if not wanted:
            return await self._client.get_conversations()

        lead_ids = self._window(wanted)
        results = await asyncio.gather(
            *(self._client.get_conversations(lead_id) for lead_id in lead_ids)
        )
        served = [lead_id for lead_id, r in zip(lead_ids, results) if r.success]
        if not served:
            return FetchResult.failure(results[0].error or "conversation fetch failed")
        if len(served) < len(results):
            log.warning(
                "fetchers.conversation_partial",
                failed=len(results) - len(served),
                total=len(results),
            )
        rows = (row for r in results if r.success for row in r.data)
        if len(served) < len(wanted):
            return FetchResult.ok(rows, filters={"lead_id": served})
        return FetchResult.ok(rows)


class FetcherRegistry:
    """Lookup table of fetch strategies keyed by resource type."""

    def __init__(self) -> None:
        self._fetchers: dict[ResourceType, ResourceFetcher] = {}

    def register(self, fetcher: ResourceFetcher) -> None:
        self._fetchers[ResourceType.parse(fetcher.resource_type)] = fetcher

    def get(self, resource_type: ResourceType | str) -> ResourceFetcher:
        rt = ResourceType.parse(resource_type)
        try:
            return self._fetchers[rt]
        except KeyError:
            raise UnknownResourceError(f"No fetcher registered for {rt.value!r}") from None

    def types(self) -> list[ResourceType]:
        return list(self._fetchers)

    def __contains__(self, resource_type: object) -> bool:
        try:
            return ResourceType.parse(resource_type) in self._fetchers  # type: ignore[arg-type]
        except UnknownResourceError:
            return False

    def __iter__(self) -> Iterator[ResourceFetcher]:
        return iter(self._fetchers.values())

    def __len__(self) -> int:
        return len(self._fetchers)


def default_registry(client: SupabaseClient, fanout_limit: int = 10) -> FetcherRegistry:
    """Registry covering every resource type against one Supabase client."""
    registry = FetcherRegistry()
    for resource_type, table in DEFAULT_TABLES.items():
        # Same ordering the service calls use, so polls and reloads agree
        registry.register(TableFetcher(client, resource_type, table, order="created_at.desc"))
    registry.register(ConversationFetcher(client, fanout_limit))
    return registry
