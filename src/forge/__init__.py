"""Model forge kernel utilities."""

from .definition_hash import DefinitionTypeError, canonical_dumps, definition_hash
from .errors import (
    BadRequestError,
    ForbiddenError,
    ForgeError,
    InternalError,
    NotFoundError,
    UnauthorizedError,
    trim_db_message,
)

__all__ = [
    "BadRequestError",
    "DefinitionTypeError",
    "ForbiddenError",
    "ForgeError",
    "InternalError",
    "NotFoundError",
    "UnauthorizedError",
    "canonical_dumps",
    "definition_hash",
    "trim_db_message",
]
