"""Model definition validation and normalization before any DDL is planned."""

from __future__ import annotations

import copy
from typing import Any

from forge.errors import BadRequestError, NotFoundError
from forge.field_types import FIELD_TYPE_NAMES
from forge.identifiers import is_safe_default, is_valid_identifier


RESERVED_NAMES = {"user", "users", "migration", "migrations", "enum", "_prisma_migrations"}
PERMISSIONS = {"create", "read", "update", "delete", "all"}
DEFAULT_RBAC = {
    "Admin": ["all"],
    "Manager": ["create", "read", "update"],
    "Viewer": ["read"],
}

_IDENT_HINT = "It must start with a letter or underscore and contain only letters, numbers, or underscores."


def _bad(message: str, path: str | None = None, code: str = "INVALID_DEFINITION") -> BadRequestError:
    return BadRequestError(message, code=code, path=path)


def _validate_rbac(rbac: Any) -> None:
    if rbac is None:
        return
    if not isinstance(rbac, dict):
        raise _bad("rbac must be an object mapping roles to permission lists.", "rbac")
    for role, perms in rbac.items():
        if not isinstance(role, str) or not role.strip():
            raise _bad("rbac role names must be non-empty strings.", "rbac")
        if not isinstance(perms, list):
            raise _bad(f"Permissions for role '{role}' must be a list.", f"rbac.{role}")
        for perm in perms:
            if perm not in PERMISSIONS:
                raise _bad(
                    f"Unknown permission '{perm}' for role '{role}'. Allowed: {sorted(PERMISSIONS)}.",
                    f"rbac.{role}",
                    code="INVALID_PERMISSION",
                )


def _validate_field(model_name: str, field: Any, idx: int, seen: set[str], registry) -> None:
    path = f"fields[{idx}]"
    if not isinstance(field, dict):
        raise _bad("Each field must be an object.", path)
    name = field.get("name")
    if not is_valid_identifier(name):
        raise _bad(f"Invalid field name '{name}'. Field names {_IDENT_HINT[3:]}", path, code="INVALID_IDENTIFIER")
    lowered = name.lower()
    if lowered in seen:
        raise _bad(f"Duplicate field name '{name}' in model '{model_name}'.", path, code="DUPLICATE_FIELD")
    seen.add(lowered)
    if lowered in ("id", "createdat", "updatedat"):
        raise _bad(f"Field name '{name}' collides with a system column.", path, code="RESERVED_FIELD")

    ftype = field.get("type")
    if ftype not in FIELD_TYPE_NAMES:
        raise _bad(f"Unsupported field type '{ftype}' for field '{name}'.", path, code="INVALID_FIELD_TYPE")

    if ftype == "relation":
        target = field.get("targetModel")
        if not target:
            raise _bad(f"Target model is required for relation field '{name}'.", path, code="RELATION_TARGET_MISSING")
        if not is_valid_identifier(target):
            raise _bad(
                f"Invalid target model name '{target}' for relation field '{name}'.",
                path,
                code="INVALID_IDENTIFIER",
            )
        if target != model_name and (registry is None or registry.find(target) is None):
            raise NotFoundError(
                f"Relation target model '{target}' not found. Please define it first.",
                code="RELATION_TARGET_UNKNOWN",
                path=path,
            )

    for flag in ("required", "unique"):
        if field.get(flag) is not None and not isinstance(field.get(flag), bool):
            raise _bad(f"'{flag}' for field '{name}' must be true or false.", path, code="INVALID_FIELD_FLAG")

    if "default" in field and not is_safe_default(field.get("default"), ftype):
        raise _bad(
            f"Invalid or unsafe default value for field '{name}' of type '{ftype}'.",
            path,
            code="INVALID_DEFAULT",
        )


def validate_model_definition(definition: Any, registry=None) -> None:
    if not isinstance(definition, dict):
        raise _bad("Model definition must be an object.")
    name = definition.get("name")
    fields = definition.get("fields")
    if not name or not isinstance(fields, list):
        raise _bad("Model name and fields array are required.")
    if not is_valid_identifier(name):
        raise _bad(f"Model name '{name}' is not valid. {_IDENT_HINT}", "name", code="INVALID_IDENTIFIER")
    if name.lower() in RESERVED_NAMES:
        raise _bad(
            f"The model name '{name}' is a reserved keyword. Please choose a different name.",
            "name",
            code="RESERVED_NAME",
        )

    table = definition.get("tableName")
    if table:
        if not is_valid_identifier(table):
            raise _bad(f"Table name '{table}' is not valid. {_IDENT_HINT}", "tableName", code="INVALID_IDENTIFIER")
        if table.lower() in RESERVED_NAMES:
            raise _bad(f"The table name '{table}' is reserved.", "tableName", code="RESERVED_NAME")
    effective_table = table or name.lower()
    if registry is not None:
        owner = registry.table_owner(effective_table)
        if owner is not None and owner != name:
            raise _bad(
                f"Table '{effective_table}' already belongs to model '{owner}'.",
                "tableName",
                code="TABLE_CONFLICT",
            )

    seen: set[str] = set()
    for idx, field in enumerate(fields):
        _validate_field(name, field, idx, seen, registry)

    owner_field = definition.get("ownerField")
    if owner_field:
        if not is_valid_identifier(owner_field):
            raise _bad(f"The ownerField name '{owner_field}' is not valid. {_IDENT_HINT}", "ownerField", code="INVALID_IDENTIFIER")
        declared = next((f for f in fields if f.get("name") == owner_field), None)
        if declared is not None and declared.get("type") != "number":
            raise _bad(
                f"The ownerField '{owner_field}' must be of type 'number' (to store user IDs).",
                "ownerField",
                code="INVALID_OWNER_FIELD",
            )
        if declared is None and owner_field.lower() in seen:
            raise _bad(
                f"The ownerField '{owner_field}' differs only by case from a declared field.",
                "ownerField",
                code="DUPLICATE_FIELD",
            )

    _validate_rbac(definition.get("rbac"))


def normalize_model_definition(definition: dict) -> dict:
    model = copy.deepcopy(definition)
    model["tableName"] = model.get("tableName") or model["name"].lower()
    if model.get("rbac") is None:
        model["rbac"] = copy.deepcopy(DEFAULT_RBAC)
    fields = []
    for field in model.get("fields") or []:
        item = dict(field)
        item["required"] = bool(item.get("required"))
        item["unique"] = bool(item.get("unique"))
        if item.get("type") != "relation":
            item.pop("targetModel", None)
        fields.append(item)
    owner_field = model.get("ownerField")
    if owner_field and not any(f.get("name") == owner_field for f in fields):
        fields.append({"name": owner_field, "type": "number", "required": False, "unique": False})
    if not owner_field:
        model.pop("ownerField", None)
    model["fields"] = fields
    return model
