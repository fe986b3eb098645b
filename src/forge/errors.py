"""Error taxonomy shared by the schema engine and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ForgeError(Exception):
    message: str
    code: str = "BAD_REQUEST"
    path: str | None = None
    detail: dict | None = None
    status: int = 400

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message} (path={self.path})" if self.path else f"{self.code}: {self.message}"

    def to_issue(self) -> dict:
        return {"code": self.code, "message": self.message, "path": self.path, "detail": self.detail}


@dataclass
class BadRequestError(ForgeError):
    code: str = "BAD_REQUEST"
    status: int = 400


@dataclass
class UnauthorizedError(ForgeError):
    code: str = "AUTH_REQUIRED"
    status: int = 401


@dataclass
class ForbiddenError(ForgeError):
    code: str = "FORBIDDEN"
    status: int = 403


@dataclass
class NotFoundError(ForgeError):
    code: str = "NOT_FOUND"
    status: int = 404


@dataclass
class InternalError(ForgeError):
    code: str = "INTERNAL_ERROR"
    status: int = 500


def trim_db_message(exc: BaseException | str) -> str:
    """Reduce a driver error to the first line after any ``ERROR:`` prefix."""
    if isinstance(exc, BaseException):
        raw = getattr(exc, "pgerror", None) or str(exc)
    else:
        raw = exc
    text = str(raw or "")
    if "ERROR:" in text:
        text = text.split("ERROR:")[-1]
    text = text.strip()
    first = text.split("\n", 1)[0].strip() if text else ""
    return first or "Database error"
