"""Connection pool keeping one live connection per device target.

All bookkeeping happens on the event loop without awaiting between checking
and updating an entry, so the entry map needs no lock. Concurrent callers for
a target that is not yet connected share a single connect task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from room_gateway.devices.client import (
    ClientFactory,
    DeviceClient,
    DeviceConnectError,
    DeviceTarget,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PooledConnection:
    target: DeviceTarget
    client: DeviceClient | None = None
    connected: bool = False
    connecting: asyncio.Task[DeviceClient] | None = None
    last_used: float = 0.0
    in_use: int = 0

    @property
    def live(self) -> bool:
        return self.connected and self.client is not None and not self.client.closed


class DeviceConnectionPool:
    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        connect_timeout: float = 1.5,
        idle_ttl: float = 30 * 60,
        sweep_interval: float = 10 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = client_factory
        self._connect_timeout = connect_timeout
        self._idle_ttl = idle_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, PooledConnection] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def size(self) -> int:
        return len(self._entries)

    def get_entry(self, target: DeviceTarget) -> PooledConnection | None:
        return self._entries.get(target.fingerprint)

    async def with_connection(
        self,
        target: DeviceTarget,
        fn: Callable[[DeviceClient], Awaitable[T]],
    ) -> T:
        """Run *fn* against a live connection to *target*.

        Any exception from *fn* discards the connection before propagating,
        so the next call reconnects instead of reusing a poisoned handle.
        """
        entry, client = await self._acquire(target)
        entry.in_use += 1
        entry.last_used = self._clock()
        try:
            return await fn(client)
        except Exception:
            await self._discard(entry, client)
            raise
        finally:
            entry.in_use -= 1
            entry.last_used = self._clock()

    async def _acquire(self, target: DeviceTarget) -> tuple[PooledConnection, DeviceClient]:
        key = target.fingerprint
        entry = self._entries.get(key)
        if entry is None:
            entry = PooledConnection(target=target, last_used=self._clock())
            self._entries[key] = entry

        if entry.live:
            return entry, entry.client  # type: ignore[return-value]

        if entry.connecting is None:
            entry.connecting = asyncio.ensure_future(self._connect(key, entry))
        # Shielded so one waiter being cancelled does not abort the shared attempt.
        client = await asyncio.shield(entry.connecting)
        return entry, client

    async def _connect(self, key: str, entry: PooledConnection) -> DeviceClient:
        client: DeviceClient | None = None

        def on_closed() -> None:
            if entry.client is client and entry.connected:
                logger.info("Device connection to %s closed", entry.target.endpoint)
                entry.connected = False

        stale = entry.client
        entry.client = None
        entry.connected = False
        try:
            if stale is not None:
                await _disconnect_quietly(stale)
            client = self._factory(entry.target, on_closed)
            try:
                await asyncio.wait_for(client.connect(), timeout=self._connect_timeout)
            except asyncio.TimeoutError:
                await _disconnect_quietly(client)
                raise DeviceConnectError(
                    f"Timed out after {self._connect_timeout:.1f}s connecting to "
                    f"{entry.target.endpoint}"
                ) from None
            except DeviceConnectError:
                await _disconnect_quietly(client)
                raise
        except DeviceConnectError as exc:
            logger.warning("Device connect failed: %s", exc)
            if self._entries.get(key) is entry and entry.in_use == 0:
                self._entries.pop(key, None)
            raise
        finally:
            entry.connecting = None

        entry.client = client
        entry.connected = True
        entry.last_used = self._clock()
        return client

    async def _discard(self, entry: PooledConnection, client: DeviceClient) -> None:
        if entry.client is not client:
            return
        entry.client = None
        entry.connected = False
        key = entry.target.fingerprint
        if self._entries.get(key) is entry and entry.connecting is None:
            self._entries.pop(key, None)
        await _disconnect_quietly(client)

    async def sweep_idle(self, now: float | None = None) -> int:
        """Close connections unused for longer than the idle TTL."""
        now = self._clock() if now is None else now
        evicted: list[PooledConnection] = []
        for key, entry in list(self._entries.items()):
            if entry.connecting is not None or entry.in_use:
                continue
            if now - entry.last_used > self._idle_ttl:
                self._entries.pop(key, None)
                evicted.append(entry)

        for entry in evicted:
            client, entry.client = entry.client, None
            entry.connected = False
            if client is not None:
                await _disconnect_quietly(client)
        if evicted:
            logger.info("Evicted %d idle device connection(s)", len(evicted))
        return len(evicted)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_idle()
            except Exception:
                logger.exception("Device pool sweep failed")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            if entry.connecting is not None:
                entry.connecting.cancel()
            client, entry.client = entry.client, None
            entry.connected = False
            if client is not None:
                await _disconnect_quietly(client)


async def _disconnect_quietly(client: DeviceClient) -> None:
    try:
        await client.disconnect()
    except Exception:
        logger.exception("Error while disconnecting device client")
