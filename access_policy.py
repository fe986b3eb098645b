"""Per-request access decisions from role policy and record ownership."""

from __future__ import annotations

import logging
from typing import Any, Callable

from forge.errors import BadRequestError, ForbiddenError


logger = logging.getLogger("forge.access")

_METHOD_PERMISSIONS = {
    "POST": "create",
    "GET": "read",
    "HEAD": "read",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}

ALL = "all"


def required_permission(method: str) -> str | None:
    return _METHOD_PERMISSIONS.get(str(method or "").upper())


def role_permissions(definition: dict, role: str | None) -> set[str]:
    rbac = definition.get("rbac") if isinstance(definition, dict) else None
    if not isinstance(rbac, dict) or role is None:
        return set()
    perms = rbac.get(role)
    if not isinstance(perms, list):
        return set()
    return {p for p in perms if isinstance(p, str)}


def _same_identity(owner_value: Any, principal_id: Any) -> bool:
    if owner_value is None or principal_id is None:
        return False
    if isinstance(owner_value, bool) or isinstance(principal_id, bool):
        return False
    try:
        return float(owner_value) == float(principal_id)
    except (TypeError, ValueError):
        return False


def authorize(
    principal: dict | None,
    method: str,
    model_name: str | None,
    record_id: int | None,
    registry,
    fetch_record: Callable[[str, int], dict],
    *,
    public: bool = False,
    admin_role: str = "Admin",
) -> dict:
    if public:
        return {"allowed": True, "reason": "public"}

    role = principal.get("role") if isinstance(principal, dict) else None
    principal_id = principal.get("id") if isinstance(principal, dict) else None
    if not role or principal_id is None or isinstance(principal_id, bool):
        raise ForbiddenError("User authentication information missing.", code="AUTH_CLAIMS_MISSING")

    permission = required_permission(method)
    if permission is None:
        return {"allowed": True, "reason": "non_resource_method"}
    if not model_name:
        return {"allowed": True, "reason": "non_resource_route"}

    definition = registry.get(model_name)
    perms = role_permissions(definition, role)
    if permission not in perms and ALL not in perms:
        logger.info("access_denied model=%s role=%s permission=%s reason=role", model_name, role, permission)
        raise ForbiddenError(
            f"Your role ('{role}') does not have the '{permission}' permission for '{model_name}'.",
            code="PERMISSION_DENIED",
            detail={"role": role, "permission": permission, "model": model_name},
        )

    owner_field = definition.get("ownerField")
    if permission in ("update", "delete") and owner_field and role != admin_role:
        if record_id is None:
            raise BadRequestError(
                "An ID is required to perform an update or delete operation.",
                code="RECORD_ID_REQUIRED",
            )
        record = fetch_record(model_name, record_id)
        if not _same_identity(record.get(owner_field), principal_id):
            logger.info("access_denied model=%s role=%s permission=%s reason=ownership", model_name, role, permission)
            raise ForbiddenError(
                "You do not have permission to modify this record because you are not the owner.",
                code="OWNERSHIP_DENIED",
                detail={"role": role, "permission": permission, "model": model_name},
            )
        return {"allowed": True, "reason": "owner"}

    return {"allowed": True, "reason": "role"}
