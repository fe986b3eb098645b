"""Dynamic CRUD over model tables: record service + PostgreSQL record store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg2

from app.db import fetch_all, fetch_one, get_conn
from forge.errors import BadRequestError, NotFoundError, trim_db_message
from record_query import (
    build_count,
    build_delete,
    build_insert,
    build_select_one,
    build_select_page,
    build_update,
    coerce_payload,
    parse_paging,
)
from schema_plan import table_name


logger = logging.getLogger("forge.records")


@contextmanager
def _client_errors():
    try:
        yield
    except (psycopg2.IntegrityError, psycopg2.DataError, psycopg2.ProgrammingError) as exc:
        raise BadRequestError(trim_db_message(exc), code="DB_CONSTRAINT") from exc


class DbRecordStore:
    def insert(self, table: str, values: dict) -> dict:
        sql, params = build_insert(table, values)
        with _client_errors(), get_conn() as conn:
            return fetch_one(conn, sql, params, query_name="records.insert")

    def page(self, table: str, fields: list[dict], search: str | None, limit: int, offset: int) -> tuple[list[dict], int]:
        page_sql, page_params = build_select_page(table, fields, search, limit, offset)
        count_sql, count_params = build_count(table, fields, search)
        with _client_errors(), get_conn(isolation="repeatable read") as conn:
            rows = fetch_all(conn, page_sql, page_params, query_name="records.page")
            count_row = fetch_one(conn, count_sql, count_params, query_name="records.count")
        return rows, int((count_row or {}).get("total") or 0)

    def get(self, table: str, record_id: int) -> dict | None:
        sql, params = build_select_one(table, record_id)
        with get_conn() as conn:
            return fetch_one(conn, sql, params, query_name="records.get")

    def update(self, table: str, record_id: int, values: dict) -> dict | None:
        sql, params = build_update(table, record_id, values)
        with _client_errors(), get_conn() as conn:
            return fetch_one(conn, sql, params, query_name="records.update")

    def delete(self, table: str, record_id: int) -> bool:
        sql, params = build_delete(table, record_id)
        with get_conn() as conn:
            return fetch_one(conn, sql, params, query_name="records.delete") is not None


class RecordService:
    def __init__(self, registry, store) -> None:
        self._registry = registry
        self._store = store

    def create(self, model_name: str, payload: dict, owner_id: int | None = None) -> dict:
        model = self._registry.get(model_name)
        values = coerce_payload(payload, model.get("fields") or [])
        owner_field = model.get("ownerField")
        if owner_field and owner_id is not None:
            values[owner_field] = owner_id
        if not values:
            raise BadRequestError("Cannot create record with empty data.", code="EMPTY_PAYLOAD")
        record = self._store.insert(table_name(model), values)
        logger.info("record_created model=%s id=%s", model_name, (record or {}).get("id"))
        return record

    def list(self, model_name: str, page=None, limit=None, search: str | None = None) -> dict:
        model = self._registry.get(model_name)
        page_num, limit_num = parse_paging(page, limit)
        offset = (page_num - 1) * limit_num
        term = search.strip() if isinstance(search, str) else ""
        rows, total = self._store.page(table_name(model), model.get("fields") or [], term, limit_num, offset)
        return {"data": rows, "total": total, "page": page_num, "limit": limit_num}

    def find_one(self, model_name: str, record_id: int) -> dict:
        model = self._registry.get(model_name)
        record = self._store.get(table_name(model), record_id)
        if record is None:
            raise NotFoundError(f"Record with ID {record_id} not found in {model_name}.", code="RECORD_NOT_FOUND")
        return record

    def update(self, model_name: str, record_id: int, payload: dict) -> dict:
        model = self._registry.get(model_name)
        values = coerce_payload(payload, model.get("fields") or [])
        values["updatedAt"] = datetime.now(timezone.utc)
        if len(values) <= 1:
            raise BadRequestError("No valid fields provided for update.", code="EMPTY_PAYLOAD")
        record = self._store.update(table_name(model), record_id, values)
        if record is None:
            raise NotFoundError(
                f"Record with ID {record_id} not found in {model_name} to update.",
                code="RECORD_NOT_FOUND",
            )
        logger.info("record_updated model=%s id=%s fields=%s", model_name, record_id, sorted(k for k in values if k != "updatedAt"))
        return record

    def delete(self, model_name: str, record_id: int) -> dict:
        model = self._registry.get(model_name)
        self.find_one(model_name, record_id)
        self._store.delete(table_name(model), record_id)
        logger.info("record_deleted model=%s id=%s", model_name, record_id)
        return {"message": f"Record {record_id} from {model_name} deleted successfully."}
