"""
Supabase data-fetch client.

Talks to the Supabase REST endpoint (PostgREST) and returns every outcome as
a FetchResult. HTTP and transport failures never escape as exceptions; the
poller decides what a failure means.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID

import httpx
import structlog

from .metrics import MetricsCollector
from .resources import FetchResult

log = structlog.get_logger()

_RESERVED = set(',()"')


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, UUID):
        return str(value)
    text = str(value)
    if any(ch in _RESERVED for ch in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def build_filter_params(filters: Mapping[str, Any] | None) -> list[tuple[str, str]]:
    """Translate an equality / in-set filter into PostgREST query params."""
    params: list[tuple[str, str]] = []
    for key, value in (filters or {}).items():
        if value is None:
            params.append((key, "is.null"))
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if len(values) == 1:
                params.append((key, f"eq.{_format_value(values[0])}"))
            else:
                joined = ",".join(_format_value(v) for v in values)
                params.append((key, f"in.({joined})"))
        else:
            params.append((key, f"eq.{_format_value(value)}"))
    return params


class SupabaseClient:
    """
    Async client for the Supabase REST API.

    One method per resource the dashboard polls, plus a generic ``select``.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        verify_tls: bool = True,
        request_timeout: int = 30,
        metrics: MetricsCollector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._metrics = metrics
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = httpx.AsyncClient(
            base_url=f"{self._url}/rest/v1",
            headers=headers,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> SupabaseClient:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
        columns: str = "*",
    ) -> FetchResult:
        """Run ``select`` on a table. ``order`` takes PostgREST form, e.g. ``created_at.desc``."""
        if self._client is None:
            return FetchResult.failure("client is not open")

        params: list[tuple[str, str]] = [("select", columns)]
        params.extend(build_filter_params(filters))
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))

        if self._metrics:
            self._metrics.inc("api_requests_total", table=table)
        try:
            resp = await self._client.get(f"/{table}", params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            log.warning("api.http_error", table=table, status=exc.response.status_code)
            self._count_error(table)
            return FetchResult.failure(f"HTTP {exc.response.status_code} from {table}")
        except httpx.HTTPError as exc:
            log.warning("api.request_failed", table=table, error=str(exc))
            self._count_error(table)
            return FetchResult.failure(str(exc) or exc.__class__.__name__)
        except ValueError:
            log.warning("api.invalid_json", table=table)
            self._count_error(table)
            return FetchResult.failure(f"invalid JSON from {table}")

        if not isinstance(data, list):
            self._count_error(table)
            return FetchResult.failure(f"unexpected payload from {table}")
        return FetchResult.ok(data)

    def _count_error(self, table: str) -> None:
        if self._metrics:
            self._metrics.inc("api_errors_total", table=table)

    # --- Resources ---

    async def get_leads(self, filters: Mapping[str, Any] | None = None) -> FetchResult:
        return await self.select("leads", filters, order="created_at.desc")

    async def get_projects(self, filters: Mapping[str, Any] | None = None) -> FetchResult:
        return await self.select("projects", filters, order="created_at.desc")

    async def get_clients(self, filters: Mapping[str, Any] | None = None) -> FetchResult:
        return await self.select("clients", filters, order="created_at.desc")

    async def get_conversations(self, lead_id: str | None = None) -> FetchResult:
        filters = {"lead_id": lead_id} if lead_id else None
        return await self.select("conversations", filters)

    async def get_messages(self, filters: Mapping[str, Sequence[Any]] | None = None) -> FetchResult:
        return await self.select("whatsapp_messages", filters, order="created_at.desc")

    # --- Health ---

    async def check_health(self) -> bool:
        result = await self.select("clients", columns="id", limit=1)
        return result.success
