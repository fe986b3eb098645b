"""Schema planning: definition + live catalog -> ordered DDL steps, without side effects."""

from __future__ import annotations

from typing import Any, Dict, List

from forge.errors import BadRequestError
from forge.field_types import FIELD_TYPES, catalog_matches, field_type_for_catalog
from forge.identifiers import (
    defaults_differ,
    is_empty_default,
    is_safe_default,
    quote_default,
    quote_ident,
)


Step = Dict[str, Any]

SYSTEM_COLUMNS = ("id", "createdAt", "updatedAt")
TRIGGER_NAME = "set_updated_at"
TRIGGER_FUNCTION = "forge_set_updated_at"

_SYSTEM_COLUMN_SQL = [
    '"id" SERIAL PRIMARY KEY',
    '"createdAt" TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP',
    '"updatedAt" TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP',
]


def _step(kind: str, sql: str, change: str | None, column: str | None = None, **extra: Any) -> Step:
    step = {"kind": kind, "sql": sql, "change": change, "column": column}
    step.update(extra)
    return step


def table_name(definition: dict) -> str:
    return definition.get("tableName") or str(definition["name"]).lower()


def protected_columns(definition: dict) -> set[str]:
    protected = set(SYSTEM_COLUMNS)
    if definition.get("ownerField"):
        protected.add(definition["ownerField"])
    return protected


def fk_constraint_name(table: str, column: str) -> str:
    return f"{table}_{column}_fkey"[:63]


def _target_table(field: dict, target_tables: Dict[str, str]) -> str:
    target = field.get("targetModel")
    table = target_tables.get(target) if target else None
    if not table:
        raise BadRequestError(
            f"Relation target model '{target}' has no known table.",
            code="RELATION_TARGET_UNKNOWN",
            path=field.get("name"),
        )
    return table


def column_sql(field: dict, target_tables: Dict[str, str], *, with_not_null: bool = True) -> str:
    ftype = FIELD_TYPES.get(field.get("type"))
    if ftype is None:
        raise BadRequestError(f"Unsupported field type: {field.get('type')}", code="INVALID_FIELD_TYPE", path=field.get("name"))
    sql = f"{quote_ident(field['name'])} {ftype.sql_type}"
    if ftype.name == "relation":
        sql += f' REFERENCES {quote_ident(_target_table(field, target_tables))}("id") ON DELETE SET NULL'
    if field.get("required") and with_not_null:
        sql += " NOT NULL"
    if field.get("unique"):
        sql += " UNIQUE"
    default = field.get("default")
    if not is_empty_default(default):
        if not is_safe_default(default, ftype.name):
            raise BadRequestError(
                f"Invalid default value for field '{field['name']}'. Potential SQL injection or type mismatch detected.",
                code="INVALID_DEFAULT",
                path=field["name"],
            )
        sql += f" DEFAULT {quote_default(default, ftype.name)}"
    return sql


def plan_create(definition: dict, target_tables: Dict[str, str]) -> List[Step]:
    fields = definition.get("fields") or []
    if not fields:
        raise BadRequestError("A model must have at least one valid field.", code="NO_FIELDS", path="fields")
    table = table_name(definition)
    qtable = quote_ident(table)
    columns = _SYSTEM_COLUMN_SQL + [column_sql(f, target_tables) for f in fields]
    return [
        _step(
            "create_table",
            f"CREATE TABLE IF NOT EXISTS {qtable} ({', '.join(columns)})",
            f"Creating table: {table} ({len(fields)} field(s))",
            fields=[dict(f) for f in fields],
            target_tables=dict(target_tables),
        ),
        _step(
            "create_function",
            f"""
            CREATE OR REPLACE FUNCTION {TRIGGER_FUNCTION}()
            RETURNS TRIGGER AS $$
            BEGIN
              NEW."updatedAt" = NOW();
              RETURN NEW;
            END;
            $$ LANGUAGE plpgsql
            """,
            None,
        ),
        _step("drop_trigger", f"DROP TRIGGER IF EXISTS {TRIGGER_NAME} ON {qtable}", None),
        _step(
            "create_trigger",
            f"CREATE TRIGGER {TRIGGER_NAME} BEFORE UPDATE ON {qtable} FOR EACH ROW EXECUTE PROCEDURE {TRIGGER_FUNCTION}()",
            f"Installing updatedAt trigger on: {table}",
        ),
    ]


def _plan_add(table: str, field: dict, target_tables: Dict[str, str]) -> List[Step]:
    qtable = quote_ident(table)
    name = field["name"]
    ftype = FIELD_TYPES[field["type"]]
    needs_backfill = bool(field.get("required")) and is_empty_default(field.get("default"))
    steps = [
        _step(
            "add_column",
            f"ALTER TABLE {qtable} ADD COLUMN {column_sql(field, target_tables, with_not_null=not needs_backfill)}",
            f"Adding column: {name} ({field['type']})",
            column=name,
            field=dict(field),
            required=not needs_backfill and bool(field.get("required")),
            target_table=target_tables.get(field.get("targetModel")) if ftype.name == "relation" else None,
        )
    ]
    if needs_backfill:
        steps.extend(_plan_require(table, field))
    return steps


def _plan_require(table: str, field: dict) -> List[Step]:
    qtable = quote_ident(table)
    name = field["name"]
    qcol = quote_ident(name)
    ftype = FIELD_TYPES[field["type"]]
    steps: List[Step] = []
    if ftype.zero_sql is not None:
        steps.append(
            _step(
                "backfill",
                f"UPDATE {qtable} SET {qcol} = {ftype.zero_sql} WHERE {qcol} IS NULL",
                f"Backfilling NULLs in '{name}' before making it required",
                column=name,
                value_sql=ftype.zero_sql,
                field_type=ftype.name,
            )
        )
    steps.append(
        _step(
            "require",
            f"ALTER TABLE {qtable} ALTER COLUMN {qcol} SET NOT NULL",
            f"Making column required: {name}",
            column=name,
        )
    )
    return steps


def _plan_relation_fk(table: str, field: dict, column: dict, target_tables: Dict[str, str]) -> List[Step]:
    qtable = quote_ident(table)
    name = field["name"]
    current_target = column.get("foreign_table")
    current_constraint = column.get("fk_constraint")
    steps: List[Step] = []
    wanted = _target_table(field, target_tables) if field["type"] == "relation" else None
    if current_target and current_target != wanted:
        constraint = current_constraint or fk_constraint_name(table, name)
        steps.append(
            _step(
                "drop_fk",
                f"ALTER TABLE {qtable} DROP CONSTRAINT IF EXISTS {quote_ident(constraint)}",
                f"Dropping foreign key on: {name}",
                column=name,
                constraint=constraint,
            )
        )
        current_target = None
    if wanted and current_target != wanted:
        constraint = fk_constraint_name(table, name)
        steps.append(
            _step(
                "add_fk",
                f'ALTER TABLE {qtable} ADD CONSTRAINT {quote_ident(constraint)} FOREIGN KEY ({quote_ident(name)}) '
                f'REFERENCES {quote_ident(wanted)}("id") ON DELETE SET NULL',
                f"Adding foreign key: {name} -> {wanted}",
                column=name,
                constraint=constraint,
                target_table=wanted,
            )
        )
    return steps


def plan_migration(definition: dict, columns: List[dict], target_tables: Dict[str, str]) -> List[Step]:
    table = table_name(definition)
    qtable = quote_ident(table)
    fields = definition.get("fields") or []
    existing = {c["column_name"]: c for c in columns}
    field_names = [f["name"] for f in fields]
    protected = protected_columns(definition)
    steps: List[Step] = []

    for field in fields:
        if field["name"] not in existing:
            steps.extend(_plan_add(table, field, target_tables))

    for column_name in existing:
        if column_name in field_names or column_name in protected:
            continue
        steps.append(
            _step(
                "drop_column",
                f"ALTER TABLE {qtable} DROP COLUMN IF EXISTS {quote_ident(column_name)} CASCADE",
                f"Removing column: {column_name}",
                column=column_name,
            )
        )

    for field in fields:
        column = existing.get(field["name"])
        if column is None:
            continue
        name = field["name"]
        qcol = quote_ident(name)
        ftype = FIELD_TYPES[field["type"]]
        current_default = column.get("column_default")

        if name not in protected:
            fk_steps = _plan_relation_fk(table, field, column, target_tables)
            steps.extend(s for s in fk_steps if s["kind"] == "drop_fk")
            if not catalog_matches(ftype.name, column.get("data_type")):
                if current_default is not None:
                    steps.append(
                        _step(
                            "drop_default",
                            f"ALTER TABLE {qtable} ALTER COLUMN {qcol} DROP DEFAULT",
                            f"Removing default for '{name}' before changing its type",
                            column=name,
                        )
                    )
                    current_default = None
                from_type = field_type_for_catalog(column.get("data_type")) or column.get("data_type")
                steps.append(
                    _step(
                        "retype",
                        f"ALTER TABLE {qtable} ALTER COLUMN {qcol} TYPE {ftype.sql_type} {ftype.using(qcol)}",
                        f"Changing column type: {name} ({from_type} -> {ftype.name})",
                        column=name,
                        from_type=from_type,
                        to_type=ftype.name,
                    )
                )
            steps.extend(s for s in fk_steps if s["kind"] == "add_fk")

        nullable = str(column.get("is_nullable", "YES")).upper() == "YES"
        if field.get("required") and nullable:
            steps.extend(_plan_require(table, field))
        elif not field.get("required") and not nullable:
            steps.append(
                _step(
                    "relax",
                    f"ALTER TABLE {qtable} ALTER COLUMN {qcol} DROP NOT NULL",
                    f"Making column optional: {name}",
                    column=name,
                )
            )

        declared = field.get("default")
        if defaults_differ(declared, current_default, ftype.name):
            if not is_empty_default(declared):
                literal = quote_default(declared, ftype.name)
                steps.append(
                    _step(
                        "set_default",
                        f"ALTER TABLE {qtable} ALTER COLUMN {qcol} SET DEFAULT {literal}",
                        f"Setting default for '{name}' to {literal}",
                        column=name,
                        default_sql=literal,
                        field_type=ftype.name,
                    )
                )
            elif current_default is not None:
                steps.append(
                    _step(
                        "drop_default",
                        f"ALTER TABLE {qtable} ALTER COLUMN {qcol} DROP DEFAULT",
                        f"Removing default for '{name}'",
                        column=name,
                    )
                )
    return steps


def changes_of(steps: List[Step]) -> list[str]:
    return [s["change"] for s in steps if s.get("change")]


_LOSSY_FALLBACK = {"number": "0", "boolean": "NULL", "relation": "NULL"}


def lossy_warnings(steps: List[Step]) -> list[dict]:
    warnings = []
    for step in steps:
        if step.get("kind") != "retype" or step.get("to_type") not in _LOSSY_FALLBACK:
            continue
        column = step.get("column")
        to_type = step.get("to_type")
        warnings.append(
            {
                "code": "LOSSY_CAST",
                "message": f"Existing values in '{column}' that are not valid {to_type} values were converted to {_LOSSY_FALLBACK[to_type]}.",
                "path": column,
                "detail": {"from": step.get("from_type"), "to": to_type},
            }
        )
    return warnings
