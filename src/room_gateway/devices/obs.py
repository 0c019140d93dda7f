"""obs-websocket v5 client built on obsws-python.

``ReqClient`` is blocking, so every network call runs in a worker thread.
Requests on one connection are serialized because the underlying websocket
is not safe for concurrent use.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable
from urllib.parse import urlsplit

import obsws_python as obs
from obsws_python.error import OBSSDKError, OBSSDKRequestError, OBSSDKTimeoutError

from room_gateway.devices.client import DeviceCommandError, DeviceConnectError, DeviceTarget

logger = logging.getLogger(__name__)

DEFAULT_OBS_PORT = 4455


def parse_endpoint(endpoint: str) -> tuple[str, int]:
    parts = urlsplit(endpoint if "://" in endpoint else f"ws://{endpoint}")
    if parts.scheme not in {"ws", "wss"} or not parts.hostname:
        raise DeviceConnectError(f"Unsupported device endpoint: {endpoint!r}")
    try:
        port = parts.port or DEFAULT_OBS_PORT
    except ValueError as exc:
        raise DeviceConnectError(f"Invalid port in device endpoint: {endpoint!r}") from exc
    return parts.hostname, port


class ObsDeviceClient:
    def __init__(
        self,
        target: DeviceTarget,
        on_closed: Callable[[], None] | None = None,
        *,
        request_timeout: float = 5.0,
    ) -> None:
        self._target = target
        self._on_closed = on_closed
        self._request_timeout = request_timeout
        self._client: obs.ReqClient | None = None
        self._abandoned = False
        self._state_lock = threading.Lock()
        self._request_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        client = self._client
        if client is None:
            return True
        ws = getattr(getattr(client, "base_client", None), "ws", None)
        return ws is not None and not getattr(ws, "connected", True)

    def _connect_sync(self) -> None:
        host, port = parse_endpoint(self._target.endpoint)
        try:
            client = obs.ReqClient(
                host=host,
                port=port,
                password=self._target.password or "",
                timeout=self._request_timeout,
            )
        except OBSSDKError as exc:
            raise DeviceConnectError(f"OBS handshake with {host}:{port} failed: {exc}") from exc
        except Exception as exc:
            raise DeviceConnectError(f"Cannot connect to {host}:{port}: {exc}") from exc

        with self._state_lock:
            if self._abandoned:
                # The caller gave up waiting; do not leak the socket.
                _close_quietly(client)
                raise DeviceConnectError(f"Connection to {host}:{port} abandoned")
            self._client = client
        logger.info("Connected to OBS at %s:%s", host, port)

    async def connect(self) -> None:
        await asyncio.to_thread(self._connect_sync)

    def _send_sync(self, client: obs.ReqClient, request_type: str, data: dict[str, Any] | None):
        try:
            response = client.send(request_type, data, raw=True)
        except OBSSDKRequestError as exc:
            code = getattr(exc, "code", None)
            raise DeviceCommandError(request_type, str(exc), code=code) from exc
        except OBSSDKTimeoutError as exc:
            raise DeviceConnectError(f"{request_type} timed out") from exc
        except Exception as exc:
            raise DeviceConnectError(f"{request_type} failed: {exc}") from exc
        return dict(response or {})

    async def call(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        async with self._request_lock:
            client = self._client
            if client is None or self.closed:
                self._mark_closed()
                raise DeviceConnectError("OBS connection is closed")
            try:
                return await asyncio.to_thread(self._send_sync, client, request_type, data)
            except DeviceConnectError:
                # on_closed touches pool state: loop thread only
                self._mark_closed()
                raise

    def _mark_closed(self) -> None:
        if self._on_closed is not None:
            self._on_closed()

    async def disconnect(self) -> None:
        with self._state_lock:
            self._abandoned = True
            client, self._client = self._client, None
        if client is not None:
            await asyncio.to_thread(_close_quietly, client)


def _close_quietly(client: obs.ReqClient) -> None:
    try:
        client.disconnect()
    except Exception as exc:
        logger.debug("Ignoring error while closing OBS connection: %s", exc)


def obs_client_factory(request_timeout: float = 5.0):
    """Build a pool client factory producing :class:`ObsDeviceClient` instances."""

    def factory(target: DeviceTarget, on_closed: Callable[[], None]) -> ObsDeviceClient:
        return ObsDeviceClient(target, on_closed, request_timeout=request_timeout)

    return factory
