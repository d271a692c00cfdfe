"""Enumerations for roles, authentication outcomes and error codes."""
from __future__ import annotations

from enum import Enum

__all__ = [
    "Role",
    "AuthReason",
    "ErrorCode",
    "ELEVATED_ROLES",
]


class _StrEnum(str, Enum):
    """``str``-backed enum that serializes as its value."""

    def __str__(self) -> str:  # pragma: no cover - convenience for logging only
        return str(self.value)


class Role(_StrEnum):
    ADMIN = "admin"
    PARENT = "parent"
    CHILD = "child"


class AuthReason(_StrEnum):
    INVALID_PIN = "invalid_pin"
    PIN_ONLY = "pin_only"
    PIN_AND_HARDWARE = "pin_and_hardware"
    HARDWARE_MISMATCH = "hardware_mismatch"


class ErrorCode(_StrEnum):
    INVALID_PIN = "invalid_pin"
    HARDWARE_MISMATCH = "hardware_mismatch"
    PASSPHRASE_INCORRECT = "passphrase_incorrect"
    PASSPHRASE_EXPIRED = "passphrase_expired"
    RATE_LIMITED = "rate_limited"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    PERSIST_FAILURE = "persist_failure"
    INTERNAL_UNAVAILABLE = "internal_unavailable"


ELEVATED_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.PARENT})
