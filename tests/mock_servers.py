"""
Mock Supabase REST (PostgREST) server for client and end-to-end tests.

Serves in-memory tables at /rest/v1/{table} with eq / in / is filters,
order, limit, and column selection. Tables listed in ``app.state.fail_tables``
answer 503.
"""

from typing import Any

from fastapi import FastAPI, HTTPException, Request

RESERVED_PARAMS = {"select", "order", "limit"}


def _parse_in_list(operand: str) -> list[str]:
    inner = operand.strip()
    if inner.startswith("(") and inner.endswith(")"):
        inner = inner[1:-1]
    return [item.strip().strip('"') for item in inner.split(",") if item.strip()]


def _matches(row: dict[str, Any], column: str, expression: str) -> bool:
    op, _, operand = expression.partition(".")
    value = row.get(column)
    if op == "eq":
        return value is not None and str(value) == operand.strip('"')
    if op == "in":
        return value is not None and str(value) in _parse_in_list(operand)
    if op == "is" and operand == "null":
        return value is None
    raise HTTPException(status_code=400, detail=f"unsupported filter {expression}")


def create_supabase_app(tables: dict[str, list[dict[str, Any]]] | None = None) -> FastAPI:
    app = FastAPI(title="Mock Supabase")
    app.state.tables = tables if tables is not None else {}
    app.state.fail_tables = set()
    app.state.requests = []

    @app.get("/rest/v1/{table}")
    async def select(table: str, request: Request):
        params = list(request.query_params.multi_items())
        app.state.requests.append({
            "table": table,
            "params": params,
            "apikey": request.headers.get("apikey"),
            "authorization": request.headers.get("authorization"),
        })

        if table in app.state.fail_tables:
            raise HTTPException(status_code=503, detail="service unavailable")
        if table not in app.state.tables:
            raise HTTPException(status_code=404, detail=f"relation {table} does not exist")

        rows = list(app.state.tables[table])
        columns, order, limit = "*", None, None
        for key, value in params:
            if key == "select":
                columns = value
            elif key == "order":
                order = value
            elif key == "limit":
                limit = int(value)
            else:
                rows = [row for row in rows if _matches(row, key, value)]

        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: str(r.get(column) or ""), reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            wanted = columns.split(",")
            rows = [{c: row.get(c) for c in wanted} for row in rows]
        return rows

    return app
