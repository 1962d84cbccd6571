"""
Batch cache: one entry per resource type.

An entry is only served while it is younger than its ttl and was fetched
with a filter broad enough for the rows now wanted. Invalidation expires
entries regardless of age.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .resources import ResourceType, filters_cover


@dataclass
class CacheEntry:
    data: list[dict[str, Any]]
    fetched_at: float
    ttl: float
    filters: dict[str, list[Any]] = field(default_factory=dict)

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class BatchCache:
    def __init__(self, ttl: float = 8.0):
        self._ttl = ttl
        self._entries: dict[ResourceType, CacheEntry] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(
        self,
        resource_type: ResourceType,
        now: float,
        filters: Mapping[str, Sequence[Any]] | None = None,
    ) -> list[dict[str, Any]] | None:
        entry = self._entries.get(resource_type)
        if entry is None:
            return None
        if not entry.is_fresh(now):
            del self._entries[resource_type]
            return None
        if not filters_cover(entry.filters, filters or {}):
            return None
        return entry.data

    def store(
        self,
        resource_type: ResourceType,
        data: list[dict[str, Any]],
        now: float,
        filters: Mapping[str, Sequence[Any]] | None = None,
    ) -> CacheEntry:
        entry = CacheEntry(
            data=data,
            fetched_at=now,
            ttl=self._ttl,
            filters={k: list(v) for k, v in (filters or {}).items()},
        )
        self._entries[resource_type] = entry
        return entry

    def invalidate(self, resource_type: ResourceType | None = None) -> int:
        """Drop one type's entry, or every entry when no type is given. Returns count dropped."""
        if resource_type is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        return 1 if self._entries.pop(resource_type, None) is not None else 0

    def entry(self, resource_type: ResourceType) -> CacheEntry | None:
        return self._entries.get(resource_type)

    def __len__(self) -> int:
        return len(self._entries)
