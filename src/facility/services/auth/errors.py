"""Exception types shared by the authentication and directory services."""
from __future__ import annotations

from .enums import ErrorCode

__all__ = ["FacilityError", "DirectoryError"]


class FacilityError(RuntimeError):
    """Base error carrying a machine readable code and a user-facing message."""

    def __init__(self, message: str, *, error_code: ErrorCode | str | None = None) -> None:
        super().__init__(message)
        self.error_code = ErrorCode(error_code) if error_code else ErrorCode.VALIDATION_ERROR

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class DirectoryError(FacilityError):
    """Raised when an administrative directory operation is rejected."""
