"""Behavior table for the closed set of field types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict


@dataclass(frozen=True)
class FieldType:
    name: str
    sql_type: str
    catalog_types: frozenset
    using: Callable[[str], str]
    zero_sql: str | None
    searchable: bool = False
    search_cast: bool = False


def _using_text(col: str) -> str:
    return f"USING {col}::TEXT"


def _using_number(col: str) -> str:
    return (
        f"USING CASE WHEN {col}::TEXT ~ '^-?[0-9]+(\\.[0-9]+)?$' "
        f"THEN {col}::TEXT::DOUBLE PRECISION ELSE 0 END"
    )


def _using_boolean(col: str) -> str:
    return (
        f"USING CASE WHEN {col}::TEXT ILIKE 'true' THEN TRUE "
        f"WHEN {col}::TEXT ILIKE 'false' THEN FALSE ELSE NULL END"
    )


def _using_date(col: str) -> str:
    return f"USING {col}::TIMESTAMP WITH TIME ZONE"


def _using_relation(col: str) -> str:
    return f"USING CASE WHEN {col}::TEXT ~ '^[0-9]+$' THEN {col}::TEXT::INTEGER ELSE NULL END"


FIELD_TYPES: Dict[str, FieldType] = {
    "string": FieldType(
        name="string",
        sql_type="TEXT",
        catalog_types=frozenset({"text", "character varying", "character", "uuid"}),
        using=_using_text,
        zero_sql="''",
        searchable=True,
    ),
    "number": FieldType(
        name="number",
        sql_type="DOUBLE PRECISION",
        catalog_types=frozenset({"double precision", "real", "numeric", "integer", "bigint", "smallint"}),
        using=_using_number,
        zero_sql="0",
        searchable=True,
        search_cast=True,
    ),
    "boolean": FieldType(
        name="boolean",
        sql_type="BOOLEAN",
        catalog_types=frozenset({"boolean"}),
        using=_using_boolean,
        zero_sql="FALSE",
    ),
    "date": FieldType(
        name="date",
        sql_type="TIMESTAMP WITH TIME ZONE",
        catalog_types=frozenset({"timestamp with time zone", "timestamp without time zone", "date"}),
        using=_using_date,
        zero_sql="'1970-01-01T00:00:00Z'",
    ),
    "relation": FieldType(
        name="relation",
        sql_type="INTEGER",
        catalog_types=frozenset({"integer", "bigint", "smallint"}),
        using=_using_relation,
        zero_sql=None,
    ),
}

FIELD_TYPE_NAMES = tuple(FIELD_TYPES.keys())

# catalog data_type reported for each storage type
CATALOG_TYPE_FOR_SQL = {
    "TEXT": "text",
    "DOUBLE PRECISION": "double precision",
    "BOOLEAN": "boolean",
    "TIMESTAMP WITH TIME ZONE": "timestamp with time zone",
    "INTEGER": "integer",
}


def catalog_matches(type_name: str, data_type: str | None) -> bool:
    ftype = FIELD_TYPES.get(type_name)
    if ftype is None or not data_type:
        return False
    return data_type.strip().lower() in ftype.catalog_types


def field_type_for_catalog(data_type: str | None) -> str | None:
    """Best-effort reverse mapping, used only for change log wording."""
    if not data_type:
        return None
    lowered = data_type.lower()
    if "text" in lowered or "char" in lowered or "uuid" in lowered:
        return "string"
    if "bool" in lowered:
        return "boolean"
    if "timestamp" in lowered or lowered == "date":
        return "date"
    if any(token in lowered for token in ("int", "double", "real", "numeric", "decimal", "float")):
        return "number"
    return None
