"""Device client contract shared by the pool, the OBS adapter and tests."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from room_gateway.errors import ErrorKind, GatewayError


class DeviceError(Exception):
    """Base class for failures talking to a room device."""


class DeviceConnectError(DeviceError):
    """The device could not be reached, or the connection dropped."""


class DeviceCommandError(DeviceError):
    """The device answered a request with an error status."""

    def __init__(self, request_type: str, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.request_type = request_type
        self.code = code


def device_failure(exc: DeviceError) -> GatewayError:
    """Map a device-layer exception to the error reported to callers."""
    details: dict[str, Any] = {}
    if isinstance(exc, DeviceCommandError):
        details["request"] = exc.request_type
        if exc.code is not None:
            details["deviceCode"] = exc.code
    return GatewayError(ErrorKind.DEVICE_ERROR, str(exc) or "Device request failed", details)


@dataclass(frozen=True)
class DeviceTarget:
    endpoint: str
    password: str | None = field(default=None, repr=False)

    @property
    def fingerprint(self) -> str:
        """Pool key covering endpoint and credential without exposing the credential."""
        material = f"{self.endpoint}|{self.password or ''}".encode("utf-8")
        return hashlib.sha256(material).hexdigest()


class DeviceClient(Protocol):
    @property
    def closed(self) -> bool: ...

    async def connect(self) -> None: ...

    async def call(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        ...

    async def disconnect(self) -> None: ...


# Factories receive the target and a callback to invoke when the connection
# notices it has been closed by the remote side.
ClientFactory = Callable[[DeviceTarget, Callable[[], None]], DeviceClient]
