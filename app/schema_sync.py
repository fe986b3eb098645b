"""Publish/delete pipeline: validate, converge the table, persist the document, refresh the registry."""

from __future__ import annotations

import logging

from app.model_validate import normalize_model_definition, validate_model_definition
from definition_store import DefinitionStore
from forge.definition_hash import definition_hash
from forge.errors import BadRequestError, ForgeError, InternalError, NotFoundError, trim_db_message
from forge.identifiers import is_valid_identifier
from model_registry import ModelRegistry
from schema_plan import changes_of, lossy_warnings, plan_create, plan_migration


logger = logging.getLogger("forge.schema")


class SchemaSynthesizer:
    def __init__(self, registry: ModelRegistry, store: DefinitionStore, backend) -> None:
        self._registry = registry
        self._store = store
        self._backend = backend

    def _target_tables(self, model: dict) -> dict[str, str]:
        tables: dict[str, str] = {}
        for field in model.get("fields") or []:
            target = field.get("targetModel")
            if field.get("type") != "relation" or not target or target in tables:
                continue
            if target == model["name"]:
                tables[target] = model["tableName"]
                continue
            target_def = self._registry.get(target)
            tables[target] = target_def.get("tableName") or target.lower()
        return tables

    def _apply(self, model: dict, steps: list[dict], created: bool) -> None:
        table = model["tableName"]
        try:
            self._backend.apply(table, steps)
        except ForgeError:
            raise
        except Exception as exc:
            logger.error(
                "schema_migration_failed model=%s table=%s created=%s error=%s",
                model["name"],
                table,
                created,
                exc,
                exc_info=True,
            )
            action = "create database table" if created else "update database schema"
            raise InternalError(
                f"Failed to {action}: {trim_db_message(exc)}",
                code="SCHEMA_APPLY_FAILED",
                path=model["name"],
            ) from exc
        for step in steps:
            logger.info("schema_change table=%s kind=%s column=%s", table, step["kind"], step.get("column"))

    def publish(self, definition: dict) -> dict:
        validate_model_definition(definition, self._registry)
        model = normalize_model_definition(definition)
        name = model["name"]
        table = model["tableName"]
        target_tables = self._target_tables(model)

        columns = self._backend.table_columns(table)
        created = not columns
        if created:
            steps = plan_create(model, target_tables)
        else:
            steps = plan_migration(model, columns, target_tables)
        warnings = lossy_warnings(steps)
        for warning in warnings:
            logger.warning("schema_lossy_cast table=%s column=%s to=%s", table, warning["path"], warning["detail"]["to"])

        if steps:
            self._apply(model, steps, created)

        self._store.write(model)
        if not self._registry.load(name):
            logger.error("registry_refresh_failed model=%s", name)

        if created:
            logger.info("schema_table_created model=%s table=%s", name, table)
            message = f"Model '{name}' published and table created successfully!"
            changes = changes_of(steps)
        elif steps:
            logger.info("schema_migrated model=%s table=%s steps=%s", name, table, len(steps))
            changes = changes_of(steps)
            message = f"Model '{name}' updated successfully with {len(changes)} schema change(s)."
        else:
            logger.info("schema_up_to_date model=%s table=%s", name, table)
            changes = []
            message = f"Model '{name}' is already up to date, no schema changes needed."
        return {
            "message": message,
            "created": created,
            "changes": changes,
            "warnings": warnings,
            "model": model,
            "definition_hash": definition_hash(model),
        }

    def delete(self, name: str) -> dict:
        if not is_valid_identifier(name):
            raise BadRequestError("Invalid model name provided.", code="INVALID_IDENTIFIER", path="name")
        if not self._store.exists(name):
            raise NotFoundError(f"Model definition file for '{name}' not found.", path=name)
        definition = self._registry.find(name)
        if definition is None:
            definition = self._store.read(name)
        table = definition.get("tableName") or name.lower()
        try:
            self._backend.drop_table(table)
        except Exception as exc:
            logger.error("schema_drop_failed model=%s table=%s error=%s", name, table, exc, exc_info=True)
            raise InternalError(
                "Failed to delete model and table due to a database error.",
                code="SCHEMA_DROP_FAILED",
                path=name,
            ) from exc
        self._store.delete(name)
        self._registry.evict(name)
        logger.info("schema_table_dropped model=%s table=%s", name, table)
        return {"message": f"Model '{name}' and its table deleted successfully."}
