"""Identifier validation, quoting and default-literal handling for generated SQL."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any

from .errors import BadRequestError


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FORBIDDEN_TOKENS = ("DROP", "DELETE", "INSERT", "UPDATE", "ALTER", "CREATE", "TABLE", "SCHEMA", "SELECT")
_FORBIDDEN_RE = re.compile(r"\b(" + "|".join(_FORBIDDEN_TOKENS) + r")\b", re.IGNORECASE)
_CAST_SUFFIX_RE = re.compile(r"::[A-Za-z_][A-Za-z0-9_ ]*(\[\])?$")
_SHORT_OFFSET_RE = re.compile(r"([+-]\d{2})$")

# Postgres folds identifiers longer than this; treat them as invalid instead.
MAX_IDENTIFIER_LENGTH = 63


def is_valid_identifier(name: Any) -> bool:
    if not isinstance(name, str) or not name:
        return False
    if len(name) > MAX_IDENTIFIER_LENGTH:
        return False
    return bool(_IDENTIFIER_RE.match(name))


def quote_ident(name: str) -> str:
    if not is_valid_identifier(name):
        raise BadRequestError(f"Invalid SQL identifier '{name}'.", code="INVALID_IDENTIFIER", path=str(name))
    return f'"{name}"'


def is_empty_default(value: Any) -> bool:
    return value is None or value == ""


def parse_date_value(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        text = _SHORT_OFFSET_RE.sub(r"\1:00", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        num = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    return num


def is_safe_default(value: Any, field_type: str) -> bool:
    """Reject statement separators, comment markers, keywords and type mismatches."""
    if is_empty_default(value):
        return True
    text = str(value)
    if ";" in text or "--" in text:
        return False
    if _FORBIDDEN_RE.search(text):
        return False
    if field_type in ("number", "relation"):
        return _parse_number(text) is not None
    if field_type == "boolean":
        return text.strip().lower() in ("true", "false")
    if field_type == "date":
        return parse_date_value(text) is not None
    return True


def format_number(num: float) -> str:
    if num.is_integer() and abs(num) < 1e15:
        return str(int(num))
    return repr(num)


def quote_literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def quote_default(value: Any, field_type: str) -> str:
    if field_type == "boolean":
        return "TRUE" if str(value).strip().lower() == "true" else "FALSE"
    if field_type in ("number", "relation"):
        num = _parse_number(value)
        if num is None:
            raise BadRequestError(f"Invalid numeric default value: {value}", code="INVALID_DEFAULT")
        return format_number(num)
    if field_type == "date":
        # Explicit UTC offset so the session TimeZone never shifts the stored instant.
        parsed = parse_date_value(value)
        if parsed is None:
            raise BadRequestError(f"Invalid date default value: {value}", code="INVALID_DEFAULT")
        return quote_literal(parsed.isoformat())
    return quote_literal(str(value))


def canonical_default(value: Any, field_type: str) -> Any:
    """Comparable form of a declared default (None when no default is declared)."""
    if is_empty_default(value):
        return None
    if field_type in ("number", "relation"):
        return _parse_number(value)
    if field_type == "boolean":
        return str(value).strip().lower() == "true"
    if field_type == "date":
        return parse_date_value(value)
    return str(value)


def _strip_catalog_expr(expr: str) -> str:
    text = expr.strip()
    while True:
        before = text
        text = _CAST_SUFFIX_RE.sub("", text).strip()
        if text.startswith("(") and text.endswith(")"):
            text = text[1:-1].strip()
        if text == before:
            return text


def catalog_default(column_default: str | None, field_type: str) -> Any:
    """Comparable form of ``information_schema.columns.column_default``."""
    if column_default is None:
        return None
    text = _strip_catalog_expr(str(column_default))
    if text.upper() == "NULL":
        return None
    if len(text) >= 2 and text.startswith("'") and text.endswith("'"):
        text = text[1:-1].replace("''", "'")
    if field_type in ("number", "relation"):
        num = _parse_number(text)
        return num if num is not None else text
    if field_type == "boolean":
        lowered = text.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        return text
    if field_type == "date":
        parsed = parse_date_value(text)
        return parsed if parsed is not None else text
    return text


def defaults_differ(declared: Any, column_default: str | None, field_type: str) -> bool:
    return canonical_default(declared, field_type) != catalog_default(column_default, field_type)
