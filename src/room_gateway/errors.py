"""Error taxonomy shared by every gateway operation.

Operations raise :class:`GatewayError` with an :class:`ErrorKind`; the HTTP
layer maps the kind to a status code through :data:`STATUS_BY_KIND` and never
inspects the underlying cause.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    AUTH_DENIED = "AUTH_DENIED"
    SCOPE_DENIED = "SCOPE_DENIED"
    ROLE_DENIED = "ROLE_DENIED"
    CONFIG_LOAD_FAILED = "CONFIG_LOAD_FAILED"
    ROOM_NOT_CONFIGURED = "ROOM_NOT_CONFIGURED"
    ROUTE_NOT_IMPLEMENTED = "ROUTE_NOT_IMPLEMENTED"
    DEVICE_TIMEOUT = "DEVICE_TIMEOUT"
    DEVICE_ERROR = "DEVICE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_USER = "DUPLICATE_USER"
    EXTERNAL_USER_IMMUTABLE = "EXTERNAL_USER_IMMUTABLE"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.AUTH_DENIED: 401,
    ErrorKind.SCOPE_DENIED: 403,
    ErrorKind.ROLE_DENIED: 403,
    ErrorKind.CONFIG_LOAD_FAILED: 500,
    ErrorKind.ROOM_NOT_CONFIGURED: 404,
    ErrorKind.ROUTE_NOT_IMPLEMENTED: 404,
    ErrorKind.DEVICE_TIMEOUT: 504,
    ErrorKind.DEVICE_ERROR: 502,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.DUPLICATE_USER: 409,
    ErrorKind.EXTERNAL_USER_IMMUTABLE: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.REQUEST_TIMEOUT: 504,
    ErrorKind.INTERNAL_ERROR: 500,
}


class GatewayError(Exception):
    """Failure with a stable error kind and optional structured details."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = dict(details or {})

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND.get(self.kind, 500)

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, message={self.message!r})"


class ConfigParseError(GatewayError):
    """Public room configuration could not be read or parsed."""

    def __init__(self, message: str, file: str | None = None) -> None:
        super().__init__(ErrorKind.CONFIG_LOAD_FAILED, message, {"file": file} if file else None)
        self.file = file


class DuplicateUser(GatewayError):
    def __init__(self, username: str) -> None:
        super().__init__(ErrorKind.DUPLICATE_USER, f"User '{username}' already exists")


class ExternalUserImmutable(GatewayError):
    def __init__(self, username: str) -> None:
        super().__init__(
            ErrorKind.EXTERNAL_USER_IMMUTABLE,
            f"User '{username}' is managed externally and cannot be modified",
        )


class UserNotFound(GatewayError):
    def __init__(self, username: str) -> None:
        super().__init__(ErrorKind.NOT_FOUND, f"User '{username}' not found")


def validation_error(message: str, **details: Any) -> GatewayError:
    return GatewayError(ErrorKind.VALIDATION_ERROR, message, details or None)
