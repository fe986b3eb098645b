"""Deterministic serialization and hashing of model definitions."""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any


class DefinitionTypeError(TypeError):
    """Raised when a definition holds a value that is not plain JSON."""


def _check(obj: Any, path: str = "$") -> None:
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise DefinitionTypeError(f"Unsupported key type at {path}: {type(key).__name__}")
            _check(value, f"{path}.{key}")
        return
    if isinstance(obj, list):
        for idx, item in enumerate(obj):
            _check(item, f"{path}[{idx}]")
        return
    if isinstance(obj, float) and not math.isfinite(obj):
        raise ValueError(f"Non-finite float at {path}: {obj!r}")
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return
    raise DefinitionTypeError(f"Unsupported type at {path}: {type(obj).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Sorted keys, list order preserved, no whitespace."""
    _check(obj)
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def definition_hash(definition: Any) -> str:
    digest = hashlib.sha256(canonical_dumps(definition).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
