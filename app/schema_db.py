"""PostgreSQL schema backend: catalog introspection and atomic DDL application."""

from __future__ import annotations

import os

from app.db import execute, fetch_all, get_conn
from forge.identifiers import quote_ident


_COLUMNS_SQL = """
    select c.column_name, c.data_type, c.is_nullable, c.column_default,
           fk.foreign_table, fk.constraint_name as fk_constraint
    from information_schema.columns c
    left join (
        select kcu.column_name, ccu.table_name as foreign_table, tc.constraint_name
        from information_schema.table_constraints tc
        join information_schema.key_column_usage kcu
          on kcu.constraint_name = tc.constraint_name and kcu.table_schema = tc.table_schema
        join information_schema.constraint_column_usage ccu
          on ccu.constraint_name = tc.constraint_name and ccu.table_schema = tc.table_schema
        where tc.constraint_type = 'FOREIGN KEY' and tc.table_schema = %s and tc.table_name = %s
    ) fk on fk.column_name = c.column_name
    where c.table_schema = %s and c.table_name = %s
    order by c.ordinal_position
"""


def db_schema() -> str:
    return os.getenv("FORGE_DB_SCHEMA", "public").strip() or "public"


class DbSchemaBackend:
    def __init__(self, schema: str | None = None) -> None:
        self._schema = schema or db_schema()

    def table_columns(self, table: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                _COLUMNS_SQL,
                [self._schema, table, self._schema, table],
                query_name="schema.introspect",
            )
        columns: list[dict] = []
        seen: set[str] = set()
        for row in rows:
            if row["column_name"] in seen:
                continue
            seen.add(row["column_name"])
            columns.append(row)
        return columns

    def apply(self, table: str, steps: list[dict]) -> None:
        with get_conn() as conn:
            for step in steps:
                execute(conn, step["sql"], None, query_name=f"schema.{step['kind']}")

    def drop_table(self, table: str) -> None:
        with get_conn() as conn:
            execute(conn, f"DROP TABLE IF EXISTS {quote_ident(table)} CASCADE", None, query_name="schema.drop_table")
