from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class FinanceError(ValueError):
    code = "error"
    default_message = GENERIC_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.args[0])


class ValidationFailed(FinanceError):
    code = "validation"
    default_message = "Invalid data"


class NotFound(FinanceError):
    code = "not_found"
    default_message = "Record not found"


class UniquenessConflict(FinanceError):
    code = "conflict"
    default_message = "This record already exists"


class ConsistencyViolation(FinanceError):
    code = "consistency"
    default_message = "The change could not be applied consistently and was undone"


# Storage-engine error text -> message safe to show to the user.
STORAGE_ERROR_MESSAGES: dict[str, tuple[str, str]] = {
    "unique constraint failed": ("conflict", "This record already exists"),
    "not null constraint failed": ("validation", "Required fields are missing"),
    "foreign key constraint failed": ("not_found", "Related record not found"),
    "check constraint failed": ("validation", "Invalid value for this field"),
    "no such table": ("unexpected", "The database is not set up correctly"),
    "database is locked": (
        "unexpected",
        "The system is temporarily unavailable. Please try again.",
    ),
}


@dataclass
class Result:
    success: bool
    data: Any = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "Result":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "unexpected") -> "Result":
        return cls(success=False, error=error, code=code)


def classify(exc: BaseException) -> tuple[str, str]:
    """Return ``(code, user-facing message)`` for any error raised by the core."""
    if isinstance(exc, FinanceError):
        return exc.code, exc.message
    if isinstance(exc, ValidationError):
        errors = exc.errors()
        if not errors:
            return "validation", ValidationFailed.default_message
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg") or ValidationFailed.default_message
        return "validation", f"{field}: {message}" if field else message
    if isinstance(exc, SQLAlchemyError):
        text = str(exc).lower()
        for pattern, (code, message) in STORAGE_ERROR_MESSAGES.items():
            if pattern in text:
                return code, message
    return "unexpected", GENERIC_ERROR_MESSAGE


def friendly_message(exc: BaseException) -> str:
    return classify(exc)[1]
