"""Domain errors. Callers branch on the class or its ``kind``, never the message."""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    RETRY = "RETRY"
    PERMISSION = "PERMISSION"
    DATA = "DATA"
    STATE = "STATE"
    NOT_FOUND = "NOT_FOUND"


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.PERMISSION: 403,
    ErrorKind.RETRY: 409,
    ErrorKind.STATE: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DATA: 422,
}


class AffiliateError(Exception):
    """Base class for affiliate desk failures."""

    kind: ErrorKind = ErrorKind.DATA

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "kind": self.kind.value}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(AffiliateError):
    kind = ErrorKind.NOT_FOUND


class PermissionDenied(AffiliateError):
    kind = ErrorKind.PERMISSION


class AlreadyOwned(AffiliateError):
    """The ownership pointer moved between read and write. Safe to retry."""

    kind = ErrorKind.RETRY


class InvalidState(AffiliateError):
    kind = ErrorKind.STATE


class ValidationFailure(AffiliateError):
    kind = ErrorKind.DATA


__all__ = [
    "AffiliateError",
    "AlreadyOwned",
    "ErrorKind",
    "HTTP_STATUS_BY_KIND",
    "InvalidState",
    "NotFound",
    "PermissionDenied",
    "ValidationFailure",
]
