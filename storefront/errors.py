"""Typed failures shared by every service.

Services raise a ``ServiceError`` subclass; the HTTP layer maps the
error's ``kind`` to a status code. Nothing downstream inspects message
text.
"""
from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


class ServiceError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    default_message = "internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(ServiceError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "unauthorized"


class Forbidden(ServiceError):
    kind = ErrorKind.FORBIDDEN
    default_message = "forbidden"


class NotFound(ServiceError):
    kind = ErrorKind.NOT_FOUND
    default_message = "not found"


class ValidationFailed(ServiceError):
    kind = ErrorKind.VALIDATION
    default_message = "invalid input"


class Conflict(ServiceError):
    kind = ErrorKind.CONFLICT
    default_message = "conflict"


class InternalError(ServiceError):
    kind = ErrorKind.INTERNAL
