"""Room device access: client contract, OBS adapter and connection pool."""

from room_gateway.devices.client import (
    ClientFactory,
    DeviceClient,
    DeviceCommandError,
    DeviceConnectError,
    DeviceError,
    DeviceTarget,
)
from room_gateway.devices.operations import DeviceOperations
from room_gateway.devices.pool import DeviceConnectionPool

__all__ = [
    "ClientFactory",
    "DeviceClient",
    "DeviceCommandError",
    "DeviceConnectError",
    "DeviceConnectionPool",
    "DeviceError",
    "DeviceOperations",
    "DeviceTarget",
]
