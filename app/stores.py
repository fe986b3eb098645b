"""In-memory schema + record backends (USE_DB unset); mirror the PostgreSQL catalog shape."""

from __future__ import annotations

import copy
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List

from forge.errors import BadRequestError
from forge.field_types import CATALOG_TYPE_FOR_SQL, FIELD_TYPES, field_type_for_catalog
from forge.identifiers import catalog_default, format_number, is_empty_default, parse_date_value, quote_default
from record_query import searchable_fields


_NUMBER_TEXT_RE = re.compile(r"^-?[0-9]+(\.[0-9]+)?$")
_INTEGER_TEXT_RE = re.compile(r"^[0-9]+$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemorySchemaError(RuntimeError):
    """Raised where PostgreSQL would reject the statement."""


def _system_columns(table: str) -> Dict[str, dict]:
    return {
        "id": {
            "data_type": "integer",
            "is_nullable": "NO",
            "column_default": f"nextval('{table}_id_seq'::regclass)",
            "foreign_table": None,
            "fk_constraint": None,
            "unique": True,
        },
        "createdAt": {
            "data_type": "timestamp with time zone",
            "is_nullable": "YES",
            "column_default": "CURRENT_TIMESTAMP",
            "foreign_table": None,
            "fk_constraint": None,
            "unique": False,
        },
        "updatedAt": {
            "data_type": "timestamp with time zone",
            "is_nullable": "YES",
            "column_default": "CURRENT_TIMESTAMP",
            "foreign_table": None,
            "fk_constraint": None,
            "unique": False,
        },
    }


def _catalog_default_expr(literal: str, field_type: str) -> str:
    """Render a default the way ``information_schema`` reports it."""
    if field_type == "boolean":
        return literal.lower()
    if field_type in ("number", "relation"):
        return literal
    return f"{literal}::{CATALOG_TYPE_FOR_SQL[FIELD_TYPES[field_type].sql_type]}"


def _text_of(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return format_number(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _cast_value(value: Any, field_type: str) -> Any:
    """Python rendition of the USING expressions in ``forge.field_types``."""
    if value is None:
        return None
    text = _text_of(value)
    if field_type == "string":
        return text
    if field_type == "number":
        return float(text) if _NUMBER_TEXT_RE.match(text) else 0.0
    if field_type == "boolean":
        lowered = text.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        return None
    if field_type == "relation":
        return int(text) if _INTEGER_TEXT_RE.match(text) else None
    if field_type == "date":
        parsed = parse_date_value(text)
        if parsed is None:
            raise MemorySchemaError(f'invalid input syntax for type timestamp with time zone: "{text}"')
        return parsed
    return value


def _column_type(column: dict) -> str | None:
    return field_type_for_catalog(column.get("data_type"))


class MemoryDatabase:
    """Tables keyed by name: ``{"columns": {name: catalog}, "rows": {id: row}, "next_id": n}``."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.tables: Dict[str, dict] = {}

    def snapshot(self) -> Dict[str, dict]:
        with self.lock:
            return copy.deepcopy(self.tables)

    def table(self, name: str) -> dict | None:
        return self.tables.get(name)


class MemorySchemaBackend:
    def __init__(self, database: MemoryDatabase) -> None:
        self._db = database

    def table_columns(self, table: str) -> list[dict]:
        with self._db.lock:
            entry = self._db.table(table)
            if entry is None:
                return []
            return [
                {
                    "column_name": name,
                    "data_type": col["data_type"],
                    "is_nullable": col["is_nullable"],
                    "column_default": col["column_default"],
                    "foreign_table": col["foreign_table"],
                    "fk_constraint": col["fk_constraint"],
                }
                for name, col in entry["columns"].items()
            ]

    def apply(self, table: str, steps: list[dict]) -> None:
        """All steps land or none do."""
        with self._db.lock:
            tables = copy.deepcopy(self._db.tables)
            for step in steps:
                self._apply_step(tables, table, step)
            self._db.tables = tables

    def drop_table(self, table: str) -> None:
        with self._db.lock:
            self._db.tables.pop(table, None)
            # CASCADE drops the referencing constraints, not the columns
            for entry in self._db.tables.values():
                for col in entry["columns"].values():
                    if col.get("foreign_table") == table:
                        col["foreign_table"] = None
                        col["fk_constraint"] = None

    def _new_column(self, table: str, field: dict, target_table: str | None, required: bool) -> dict:
        ftype = FIELD_TYPES[field["type"]]
        default = field.get("default")
        column_default = None
        if not is_empty_default(default):
            column_default = _catalog_default_expr(quote_default(default, ftype.name), ftype.name)
        return {
            "data_type": CATALOG_TYPE_FOR_SQL[ftype.sql_type],
            "is_nullable": "NO" if required else "YES",
            "column_default": column_default,
            "foreign_table": target_table if ftype.name == "relation" else None,
            "fk_constraint": f"{table}_{field['name']}_fkey"[:63] if ftype.name == "relation" else None,
            "unique": bool(field.get("unique")),
        }

    def _require_table(self, tables: dict, table: str) -> dict:
        entry = tables.get(table)
        if entry is None:
            raise MemorySchemaError(f'relation "{table}" does not exist')
        return entry

    def _require_column(self, entry: dict, table: str, column: str) -> dict:
        col = entry["columns"].get(column)
        if col is None:
            raise MemorySchemaError(f'column "{column}" of relation "{table}" does not exist')
        return col

    def _apply_step(self, tables: dict, table: str, step: dict) -> None:
        kind = step["kind"]
        if kind in ("create_function", "drop_trigger", "create_trigger"):
            return
        if kind == "create_table":
            if table in tables:
                return
            columns = _system_columns(table)
            target_tables = step.get("target_tables") or {}
            for field in step["fields"]:
                target = target_tables.get(field.get("targetModel")) if field["type"] == "relation" else None
                if target is not None and target != table:
                    self._require_table(tables, target)
                columns[field["name"]] = self._new_column(table, field, target, bool(field.get("required")))
            tables[table] = {"columns": columns, "rows": {}, "next_id": 1}
            return

        entry = self._require_table(tables, table)
        column = step.get("column")
        rows = entry["rows"].values()

        if kind == "add_column":
            field = step["field"]
            if column in entry["columns"]:
                raise MemorySchemaError(f'column "{column}" of relation "{table}" already exists')
            target = step.get("target_table")
            if target is not None and target != table:
                self._require_table(tables, target)
            col = self._new_column(table, field, target, bool(step.get("required")))
            fill = None
            if col["column_default"] is not None:
                fill = catalog_default(col["column_default"], field["type"])
            if step.get("required") and fill is None and entry["rows"]:
                raise MemorySchemaError(f'column "{column}" of relation "{table}" contains null values')
            entry["columns"][column] = col
            for row in rows:
                row[column] = fill
        elif kind == "drop_column":
            entry["columns"].pop(column, None)
            for row in rows:
                row.pop(column, None)
        elif kind == "backfill":
            self._require_column(entry, table, column)
            zero = catalog_default(step["value_sql"], step["field_type"])
            for row in rows:
                if row.get(column) is None:
                    row[column] = zero
        elif kind == "require":
            col = self._require_column(entry, table, column)
            if any(row.get(column) is None for row in rows):
                raise MemorySchemaError(f'column "{column}" of relation "{table}" contains null values')
            col["is_nullable"] = "NO"
        elif kind == "relax":
            self._require_column(entry, table, column)["is_nullable"] = "YES"
        elif kind == "retype":
            col = self._require_column(entry, table, column)
            to_type = step["to_type"]
            converted = {rid: _cast_value(row.get(column), to_type) for rid, row in entry["rows"].items()}
            for rid, value in converted.items():
                entry["rows"][rid][column] = value
            col["data_type"] = CATALOG_TYPE_FOR_SQL[FIELD_TYPES[to_type].sql_type]
        elif kind == "set_default":
            col = self._require_column(entry, table, column)
            col["column_default"] = _catalog_default_expr(step["default_sql"], step["field_type"])
        elif kind == "drop_default":
            self._require_column(entry, table, column)["column_default"] = None
        elif kind == "drop_fk":
            col = self._require_column(entry, table, column)
            col["foreign_table"] = None
            col["fk_constraint"] = None
        elif kind == "add_fk":
            col = self._require_column(entry, table, column)
            target = step["target_table"]
            target_rows = entry["rows"] if target == table else self._require_table(tables, target)["rows"]
            for row in rows:
                value = row.get(column)
                if value is not None and value not in target_rows:
                    raise MemorySchemaError(
                        f'insert or update on table "{table}" violates foreign key constraint "{step["constraint"]}"'
                    )
            col["foreign_table"] = target
            col["fk_constraint"] = step["constraint"]
        else:
            raise MemorySchemaError(f"unsupported schema step: {kind}")


class MemoryRecordStore:
    def __init__(self, database: MemoryDatabase) -> None:
        self._db = database

    def _entry(self, table: str) -> dict:
        entry = self._db.table(table)
        if entry is None:
            raise BadRequestError(f'relation "{table}" does not exist', code="DB_CONSTRAINT")
        return entry

    def _convert(self, table: str, entry: dict, values: dict) -> dict:
        out: Dict[str, Any] = {}
        for name, value in values.items():
            col = entry["columns"].get(name)
            if col is None:
                raise BadRequestError(f'column "{name}" of relation "{table}" does not exist', code="DB_CONSTRAINT")
            if value is None:
                out[name] = None
                continue
            ftype = _column_type(col)
            if ftype == "date" and not isinstance(value, datetime):
                parsed = parse_date_value(value)
                if parsed is None:
                    raise BadRequestError(
                        f'invalid input syntax for type timestamp with time zone: "{value}"',
                        code="DB_CONSTRAINT",
                    )
                value = parsed
            elif ftype == "string" and not isinstance(value, str):
                value = _text_of(value)
            elif ftype == "boolean" and not isinstance(value, bool):
                raise BadRequestError(f'invalid input syntax for type boolean: "{value}"', code="DB_CONSTRAINT")
            out[name] = value
        return out

    def _check_row(self, table: str, entry: dict, row: dict, row_id: int) -> None:
        for name, col in entry["columns"].items():
            value = row.get(name)
            if value is None:
                if col["is_nullable"] == "NO":
                    raise BadRequestError(
                        f'null value in column "{name}" of relation "{table}" violates not-null constraint',
                        code="DB_CONSTRAINT",
                    )
                continue
            if col.get("unique") and name != "id":
                for other_id, other in entry["rows"].items():
                    if other_id != row_id and other.get(name) == value:
                        raise BadRequestError(
                            f'duplicate key value violates unique constraint "{table}_{name}_key"',
                            code="DB_CONSTRAINT",
                        )
            target = col.get("foreign_table")
            if target:
                target_entry = entry if target == table else self._db.table(target)
                if target_entry is None or (value not in target_entry["rows"] and not (target == table and value == row_id)):
                    raise BadRequestError(
                        f'insert or update on table "{table}" violates foreign key constraint "{col["fk_constraint"]}"',
                        code="DB_CONSTRAINT",
                    )

    def insert(self, table: str, values: dict) -> dict:
        with self._db.lock:
            entry = self._entry(table)
            converted = self._convert(table, entry, values)
            row_id = entry["next_id"]
            now = _now()
            row: Dict[str, Any] = {}
            for name, col in entry["columns"].items():
                if name in converted:
                    row[name] = converted[name]
                elif name == "id":
                    row[name] = row_id
                elif name in ("createdAt", "updatedAt"):
                    row[name] = now
                elif col["column_default"] is not None:
                    row[name] = catalog_default(col["column_default"], _column_type(col) or "string")
                else:
                    row[name] = None
            row["id"] = row_id
            self._check_row(table, entry, row, row_id)
            entry["next_id"] = row_id + 1
            entry["rows"][row_id] = row
            return copy.deepcopy(row)

    def _matches(self, row: dict, fields: List[dict], term: str) -> bool:
        needle = term.lower()
        for field in searchable_fields(fields):
            value = row.get(field["name"])
            if value is not None and needle in _text_of(value).lower():
                return True
        return False

    def page(self, table: str, fields: List[dict], search: str | None, limit: int, offset: int) -> tuple[list[dict], int]:
        with self._db.lock:
            entry = self._entry(table)
            rows = list(entry["rows"].values())
            term = (search or "").strip()
            if term and searchable_fields(fields):
                rows = [r for r in rows if self._matches(r, fields, term)]
            rows.sort(key=lambda r: r["id"], reverse=True)
            total = len(rows)
            return copy.deepcopy(rows[offset:offset + limit]), total

    def get(self, table: str, record_id: int) -> dict | None:
        with self._db.lock:
            row = self._entry(table)["rows"].get(record_id)
            return copy.deepcopy(row) if row is not None else None

    def update(self, table: str, record_id: int, values: dict) -> dict | None:
        with self._db.lock:
            entry = self._entry(table)
            current = entry["rows"].get(record_id)
            if current is None:
                return None
            converted = self._convert(table, entry, values)
            row = dict(current)
            row.update(converted)
            row["updatedAt"] = _now()
            self._check_row(table, entry, row, record_id)
            entry["rows"][record_id] = row
            return copy.deepcopy(row)

    def delete(self, table: str, record_id: int) -> bool:
        with self._db.lock:
            entry = self._entry(table)
            if entry["rows"].pop(record_id, None) is None:
                return False
            # ON DELETE SET NULL
            for other in self._db.tables.values():
                for name, col in other["columns"].items():
                    if col.get("foreign_table") != table:
                        continue
                    for row in other["rows"].values():
                        if row.get(name) == record_id:
                            row[name] = None
            return True
