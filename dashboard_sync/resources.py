"""
Resource types, subscriber predicates, and the fetch result envelope.

Rows are opaque key-value records. The only thing this layer knows about them
is how to test named fields for equality or set membership, which is enough
to merge many subscriber predicates into one batch query and then split the
batch result back out per subscriber.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping, Sequence, Set
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

Row = Mapping[str, Any]
Predicate = dict[str, tuple[Any, ...]]

_SCALARS = (str, int, float, bool, UUID)


class SubscriptionError(ValueError):
    """Raised synchronously when a subscription request cannot be honoured."""


class UnknownResourceError(SubscriptionError):
    pass


class InvalidPredicateError(SubscriptionError):
    pass


class ResourceType(str, enum.Enum):
    LEADS = "leads"
    PROJECTS = "projects"
    CLIENTS = "clients"
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"

    @classmethod
    def parse(cls, value: ResourceType | str) -> ResourceType:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownResourceError(f"Unknown resource type: {value!r}") from None


@dataclass
class FetchResult:
    """
    Outcome of one data-fetch call: ``{success, data, error}``.

    ``filters`` is set when a fetch served less than it was asked for; it is
    the filter the returned rows actually satisfy.
    """

    success: bool
    data: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    filters: dict[str, list[Any]] | None = None

    @classmethod
    def ok(
        cls,
        data: Iterable[Mapping[str, Any]] | None,
        filters: Mapping[str, Sequence[Any]] | None = None,
    ) -> FetchResult:
        served = {k: list(v) for k, v in filters.items()} if filters is not None else None
        return cls(success=True, data=[dict(r) for r in data or []], filters=served)

    @classmethod
    def failure(cls, error: str) -> FetchResult:
        return cls(success=False, error=error)


def _same(a: Any, b: Any) -> bool:
    # bool is an int subclass: True must not match 1
    return a == b and isinstance(a, bool) == isinstance(b, bool)


def value_in(value: Any, values: Iterable[Any]) -> bool:
    return any(_same(value, candidate) for candidate in values)


def _scalar(key: str, value: Any) -> Any:
    if not isinstance(value, _SCALARS):
        raise InvalidPredicateError(
            f"Predicate value for {key!r} contains unsupported item {value!r}"
        )
    # Rows carry ids as JSON strings
    return str(value) if isinstance(value, UUID) else value


def _normalize_value(key: str, value: Any) -> tuple[Any, ...]:
    if isinstance(value, _SCALARS):
        return (_scalar(key, value),)
    if isinstance(value, (list, tuple, Set)):
        if not value:
            raise InvalidPredicateError(f"Predicate value for {key!r} is an empty collection")
        unique: list[Any] = []
        for item in value:
            item = _scalar(key, item)
            if not value_in(item, unique):
                unique.append(item)
        return tuple(unique)
    raise InvalidPredicateError(f"Unsupported predicate value for {key!r}: {value!r}")


def normalize_predicate(predicate: Mapping[str, Any] | None) -> Predicate:
    """
    Validate a subscriber predicate and normalize every value to a tuple.

    ``None`` or an empty mapping means "all rows". A ``None`` value leaves that
    key unconstrained.
    """
    if predicate is None:
        return {}
    if not isinstance(predicate, Mapping):
        raise InvalidPredicateError(f"Predicate must be a mapping, got {type(predicate).__name__}")

    normalized: Predicate = {}
    for key, value in predicate.items():
        if not isinstance(key, str) or not key:
            raise InvalidPredicateError(f"Predicate keys must be non-empty strings, got {key!r}")
        if value is None:
            continue
        normalized[key] = _normalize_value(key, value)
    return normalized


def matches(row: Row, predicate: Mapping[str, Sequence[Any]]) -> bool:
    return all(value_in(row.get(key), values) for key, values in predicate.items())


def filter_rows(rows: Iterable[Row], predicate: Mapping[str, Sequence[Any]]) -> list[Row]:
    if not predicate:
        return list(rows)
    return [row for row in rows if matches(row, predicate)]


def merge_predicates(predicates: Iterable[Mapping[str, Sequence[Any]]]) -> dict[str, list[Any]]:
    """
    Merge a batch group's predicates into one fetch filter.

    A key is kept only when every predicate constrains it, with the union of
    their values, so the merged filter always selects a superset of what each
    member wants. Any unfiltered predicate makes the whole fetch unfiltered.
    """
    merged: dict[str, list[Any]] | None = None
    for predicate in predicates:
        if not predicate:
            return {}
        if merged is None:
            merged = {key: list(values) for key, values in predicate.items()}
            continue
        for key in list(merged):
            if key not in predicate:
                del merged[key]
                continue
            for value in predicate[key]:
                if not value_in(value, merged[key]):
                    merged[key].append(value)
        if not merged:
            return {}
    return merged or {}


def filters_cover(
    cached: Mapping[str, Sequence[Any]],
    wanted: Mapping[str, Sequence[Any]],
) -> bool:
    """True when rows fetched with ``cached`` include every row ``wanted`` selects."""
    for key, values in cached.items():
        if key not in wanted:
            return False
        if not all(value_in(value, values) for value in wanted[key]):
            return False
    return True
