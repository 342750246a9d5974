"""Supabase client helpers – import tracking lives in its own schema."""

from __future__ import annotations

from typing import Any

from supabase import Client, create_client

from bookimport.config import get_settings

PAGE_SIZE = 1000

_client: Client | None = None


def get_client() -> Client:
    """Return a singleton Supabase client (service-role for backend workers)."""
    global _client
    if _client is None:
        s = get_settings()
        if not s.supabase_url or not s.supabase_service_role_key:
            raise RuntimeError(
                "BOOKIMPORT_SUPABASE_URL and BOOKIMPORT_SUPABASE_SERVICE_ROLE_KEY must be set"
            )
        _client = create_client(s.supabase_url, s.supabase_service_role_key)
    return _client


def _table(name: str):
    """Return a table query builder scoped to the tracking schema."""
    return get_client().schema(get_settings().supabase_schema).table(name)


def upsert_rows(table: str, rows: list[dict], on_conflict: str) -> list[dict]:
    """Upsert rows into a table, returning the upserted records."""
    if not rows:
        return []
    return (
        _table(table)
        .upsert(rows, on_conflict=on_conflict)
        .execute()
        .data
    )


def insert_rows(table: str, rows: list[dict]) -> list[dict]:
    """Insert rows into a table, returning inserted records."""
    if not rows:
        return []
    return _table(table).insert(rows).execute().data


def select_rows(
    table: str,
    columns: str = "*",
    filters: dict | None = None,
    order_col: str | None = None,
    desc: bool = False,
) -> list[dict]:
    """Simple select with optional equality filters and ordering."""
    q = _table(table).select(columns)
    for k, v in (filters or {}).items():
        q = q.eq(k, v)
    if order_col:
        q = q.order(order_col, desc=desc)
    return q.execute().data


def paginated_select(
    table: str,
    columns: str = "*",
    filters: list[tuple[str, str, Any]] | None = None,
    order_col: str = "id",
) -> list[dict]:
    """Fetch all matching rows with pagination (Supabase caps at 1000)."""
    all_rows: list[dict] = []
    offset = 0

    while True:
        q = _table(table).select(columns).order(order_col).range(offset, offset + PAGE_SIZE - 1)
        for col, op, val in filters or []:
            if op == "eq":
                q = q.eq(col, val)
            elif op == "gte":
                q = q.gte(col, val)
            elif op == "in":
                q = q.in_(col, val)
        rows = q.execute().data
        all_rows.extend(rows)
        if len(rows) < PAGE_SIZE:
            break
        offset += PAGE_SIZE

    return all_rows


def update_rows(
    table: str,
    values: dict,
    filters: dict,
) -> list[dict]:
    """Update rows matching equality filters. Returns updated records."""
    q = _table(table).update(values)
    for k, v in filters.items():
        q = q.eq(k, v)
    return q.execute().data
