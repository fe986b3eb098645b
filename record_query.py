"""Payload coercion and parameterized SQL building for dynamic CRUD."""

from __future__ import annotations

import math
import os
from typing import Any, Dict, List, Tuple

from forge.field_types import FIELD_TYPES
from forge.identifiers import quote_ident


Query = Tuple[str, list]

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
_FALSE_STRINGS = {"false", "0", "no", "off"}


def max_limit() -> int:
    return int(os.getenv("FORGE_LIST_MAX_LIMIT", "1000"))


def _to_number(value: Any) -> float | None:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    return num


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def coerce_payload(payload: Any, fields: List[dict]) -> Dict[str, Any]:
    """Keep declared fields only; drop empty values and unparseable numbers."""
    if not isinstance(payload, dict):
        return {}
    values: Dict[str, Any] = {}
    for field in fields:
        name = field.get("name")
        if name not in payload:
            continue
        value = payload[name]
        if value is None or value == "":
            continue
        ftype = field.get("type")
        if ftype == "number":
            num = _to_number(value)
            if num is None:
                continue
            values[name] = num
        elif ftype == "relation":
            num = _to_number(value)
            if num is None or not num.is_integer():
                continue
            values[name] = int(num)
        elif ftype == "boolean":
            values[name] = _to_bool(value)
        else:
            values[name] = value
    return values


def parse_paging(page: Any = None, limit: Any = None) -> Tuple[int, int]:
    def _positive(raw: Any, fallback: int) -> int:
        try:
            num = int(str(raw).strip())
        except (TypeError, ValueError):
            return fallback
        return num if num > 0 else fallback

    page_num = _positive(page, DEFAULT_PAGE)
    limit_num = min(_positive(limit, DEFAULT_LIMIT), max_limit())
    return page_num, limit_num


def searchable_fields(fields: List[dict]) -> list[dict]:
    return [f for f in fields if FIELD_TYPES.get(f.get("type")) and FIELD_TYPES[f["type"]].searchable]


def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_search(fields: List[dict], search: str | None) -> Query:
    term = (search or "").strip()
    if not term:
        return "", []
    clauses = []
    params: list = []
    pattern = f"%{escape_like(term)}%"
    for field in searchable_fields(fields):
        column = quote_ident(field["name"])
        if FIELD_TYPES[field["type"]].search_cast:
            column = f"{column}::text"
        clauses.append(f"{column} ILIKE %s")
        params.append(pattern)
    if not clauses:
        return "", []
    return "WHERE " + " OR ".join(clauses), params


def build_insert(table: str, values: Dict[str, Any]) -> Query:
    columns = ", ".join(quote_ident(k) for k in values)
    placeholders = ", ".join(["%s"] * len(values))
    return f"INSERT INTO {quote_ident(table)} ({columns}) VALUES ({placeholders}) RETURNING *", list(values.values())


def build_select_page(table: str, fields: List[dict], search: str | None, limit: int, offset: int) -> Query:
    where, params = build_search(fields, search)
    sql = f'SELECT * FROM {quote_ident(table)} {where} ORDER BY "id" DESC LIMIT %s OFFSET %s'
    return sql, params + [limit, offset]


def build_count(table: str, fields: List[dict], search: str | None) -> Query:
    where, params = build_search(fields, search)
    return f"SELECT COUNT(*) AS total FROM {quote_ident(table)} {where}", params


def build_select_one(table: str, record_id: int) -> Query:
    return f'SELECT * FROM {quote_ident(table)} WHERE "id" = %s', [record_id]


def build_update(table: str, record_id: int, values: Dict[str, Any]) -> Query:
    assignments = ", ".join(f"{quote_ident(k)} = %s" for k in values)
    return (
        f'UPDATE {quote_ident(table)} SET {assignments} WHERE "id" = %s RETURNING *',
        list(values.values()) + [record_id],
    )


def build_delete(table: str, record_id: int) -> Query:
    return f'DELETE FROM {quote_ident(table)} WHERE "id" = %s RETURNING "id"', [record_id]
