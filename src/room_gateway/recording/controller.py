"""Idempotent recording control converging on device-reported state.

Concurrent requests for the same room are not serialized with a lock.
Instead every command moves the operation into a transitional state before
its first ``await``; a second caller that observes ``starting``/``stopping``
gets an in-progress answer and never re-issues the device command.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from room_gateway.devices.client import (
    DeviceClient,
    DeviceCommandError,
    DeviceError,
    DeviceTarget,
    device_failure,
)
from room_gateway.devices.pool import DeviceConnectionPool
from room_gateway.errors import ErrorKind, GatewayError
from room_gateway.recording.state import RecordOperation, RecordState, RecordStateRegistry

logger = logging.getLogger(__name__)

# obs-websocket v5 RequestStatus codes.
OUTPUT_RUNNING = 500
OUTPUT_NOT_RUNNING = 501
OUTPUT_PAUSED = 502
OUTPUT_NOT_PAUSED = 503


@dataclass(frozen=True)
class IdempotentErrors:
    """Device errors that mean the requested effect already holds."""

    codes: frozenset[int]
    pattern: re.Pattern[str]

    def matches(self, exc: DeviceCommandError) -> bool:
        if exc.code is not None and exc.code in self.codes:
            return True
        return bool(self.pattern.search(str(exc)))


START_ALREADY = IdempotentErrors(
    frozenset({OUTPUT_RUNNING}),
    re.compile(r"already|in progress|\bactive\b", re.IGNORECASE),
)
STOP_ALREADY = IdempotentErrors(
    frozenset({OUTPUT_NOT_RUNNING}),
    re.compile(r"not recording|inactive|not active|already", re.IGNORECASE),
)
PAUSE_ALREADY = IdempotentErrors(
    frozenset({OUTPUT_NOT_RUNNING, OUTPUT_PAUSED}),
    re.compile(
        r"not recording|inactive|not active|does not support|unsupported|already paused",
        re.IGNORECASE,
    ),
)
RESUME_ALREADY = IdempotentErrors(
    frozenset({OUTPUT_NOT_RUNNING, OUTPUT_NOT_PAUSED}),
    re.compile(
        r"not recording|inactive|not active|does not support|unsupported|not paused",
        re.IGNORECASE,
    ),
)


def _number(status: dict[str, Any], key: str) -> float:
    try:
        return float(status.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def is_recording(status: dict[str, Any]) -> bool:
    return bool(status.get("outputActive"))


def has_output(status: dict[str, Any]) -> bool:
    return _number(status, "outputBytes") > 0 or _number(status, "outputDuration") > 0


@dataclass
class RecordResult:
    """Outcome of a recording command.

    ``outcome`` is one of ``started``, ``stopped``, ``paused``, ``resumed``,
    ``already``, ``in_progress`` or ``status``.
    """

    outcome: str
    operation: RecordOperation
    device_status: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return 202 if self.outcome == "in_progress" else 200

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": True}
        if self.outcome == "in_progress":
            payload.update(
                status=self.operation.state.value,
                sede=self.operation.site,
                sala=self.operation.room,
            )
        elif self.outcome != "status":
            payload[self.outcome] = True
        if self.device_status is not None:
            payload["status"] = self.device_status
        payload.update(self.extra)
        payload["op"] = self.operation.to_dict()
        return payload


class RecordingController:
    def __init__(
        self,
        pool: DeviceConnectionPool,
        registry: RecordStateRegistry,
        *,
        poll_interval: float = 0.25,
        poll_attempts: int = 40,
        start_settle: float = 0.5,
        status_retry_attempts: int = 6,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._pool = pool
        self._registry = registry
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._start_settle = start_settle
        self._status_retries = status_retry_attempts
        self._sleep = sleep

    @property
    def registry(self) -> RecordStateRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Device helpers
    # ------------------------------------------------------------------

    async def _call(self, target: DeviceTarget, request_type: str) -> dict[str, Any]:
        async def run(client: DeviceClient) -> dict[str, Any]:
            return await client.call(request_type)

        return await self._pool.with_connection(target, run)

    async def _record_status(self, target: DeviceTarget) -> dict[str, Any]:
        return await self._call(target, "GetRecordStatus")

    async def _issue(
        self, target: DeviceTarget, request_type: str, idempotent: IdempotentErrors
    ) -> tuple[bool, dict[str, Any]]:
        """Send a command; returns ``(already, response)``.

        Idempotent failures are recognised inside the pooled call so they do
        not count as errors against the connection.
        """

        async def run(client: DeviceClient) -> tuple[bool, dict[str, Any]]:
            try:
                return False, await client.call(request_type)
            except DeviceCommandError as exc:
                if idempotent.matches(exc):
                    logger.info("%s treated as already applied: %s", request_type, exc)
                    return True, {}
                raise

        return await self._pool.with_connection(target, run)

    async def _poll(
        self, target: DeviceTarget, done: Callable[[dict[str, Any]], bool]
    ) -> dict[str, Any] | None:
        for attempt in range(self._poll_attempts + 1):
            status = await self._record_status(target)
            if done(status):
                return status
            if attempt < self._poll_attempts:
                await self._sleep(self._poll_interval)
        return None

    async def _settled_status(self, target: DeviceTarget) -> dict[str, Any]:
        """Record status, re-read briefly while active with no output yet."""
        status = await self._record_status(target)
        for _ in range(self._status_retries):
            if not is_recording(status) or has_output(status):
                break
            await self._sleep(self._poll_interval)
            status = await self._record_status(target)
        return status

    def _reconcile(self, op: RecordOperation, status: dict[str, Any]) -> None:
        if op.state.transitional:
            return
        if is_recording(status):
            if op.state is not RecordState.ACTIVE:
                self._registry.transition(op, RecordState.ACTIVE, last_error=None)
        elif op.state in (RecordState.ACTIVE, RecordState.ERROR):
            self._registry.transition(op, RecordState.IDLE)

    def _timeout(self, op: RecordOperation, message: str) -> GatewayError:
        self._registry.transition(op, RecordState.ERROR, last_error=message)
        return GatewayError(
            ErrorKind.DEVICE_TIMEOUT,
            message,
            {"sede": op.site, "sala": op.room, "op": op.to_dict()},
        )

    def _fail(self, op: RecordOperation, exc: BaseException) -> None:
        self._registry.transition(op, RecordState.ERROR, last_error=str(exc) or type(exc).__name__)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self, site: str, room: str, target: DeviceTarget) -> RecordResult:
        op = self._registry.get(site, room)
        if op.state is RecordState.STARTING:
            return RecordResult("in_progress", op)
        self._registry.transition(op, RecordState.STARTING, last_error=None)

        try:
            status = await self._record_status(target)
            if is_recording(status):
                self._registry.transition(op, RecordState.ACTIVE)
                return RecordResult("already", op, status)

            already, _ = await self._issue(target, "StartRecord", START_ALREADY)
            await self._sleep(self._start_settle)
            confirmed = await self._poll(target, lambda s: is_recording(s) or has_output(s))
        except DeviceError as exc:
            self._fail(op, exc)
            raise device_failure(exc) from exc
        except BaseException as exc:
            self._fail(op, exc)
            raise

        if confirmed is None:
            raise self._timeout(op, "Timed out waiting for recording to start")

        self._registry.transition(op, RecordState.ACTIVE)
        return RecordResult("already" if already else "started", op, confirmed)

    async def stop(self, site: str, room: str, target: DeviceTarget) -> RecordResult:
        op = self._registry.get(site, room)
        if op.state is RecordState.STOPPING:
            return RecordResult("in_progress", op)
        self._registry.transition(op, RecordState.STOPPING, last_error=None)

        try:
            before = await self._record_status(target)
            if not is_recording(before):
                self._registry.transition(op, RecordState.IDLE)
                return RecordResult("already", op, before, {"outputPath": None})

            already, response = await self._issue(target, "StopRecord", STOP_ALREADY)
            output_path = (
                response.get("outputPath")
                or response.get("outputFileName")
                or response.get("outputFilename")
            )
            confirmed = await self._poll(target, lambda s: not is_recording(s))
        except DeviceError as exc:
            self._fail(op, exc)
            raise device_failure(exc) from exc
        except BaseException as exc:
            self._fail(op, exc)
            raise

        if confirmed is None:
            raise self._timeout(op, "Timed out waiting for recording to stop")

        self._registry.transition(
            op,
            RecordState.IDLE,
            last_output_path=output_path or op.last_output_path,
        )
        if output_path:
            logger.info("Recording for %s/%s saved to %s", site, room, output_path)
        return RecordResult(
            "already" if already else "stopped", op, confirmed, {"outputPath": output_path}
        )

    async def _toggle_pause(
        self,
        site: str,
        room: str,
        target: DeviceTarget,
        *,
        pause: bool,
    ) -> RecordResult:
        op = self._registry.get(site, room)
        request_type = "PauseRecord" if pause else "ResumeRecord"
        try:
            before = await self._record_status(target)
            paused = before.get("outputPaused")
            if not is_recording(before):
                outcome, status, note = "already", before, "not recording"
            elif pause and paused is True:
                outcome, status, note = "already", before, "already paused"
            elif not pause and paused is False:
                outcome, status, note = "already", before, "not paused"
            else:
                already, _ = await self._issue(
                    target, request_type, PAUSE_ALREADY if pause else RESUME_ALREADY
                )
                status = await self._record_status(target)
                outcome = "already" if already else ("paused" if pause else "resumed")
                note = None
        except DeviceError as exc:
            self._registry.note_error(op, str(exc))
            raise device_failure(exc) from exc

        self._reconcile(op, status)
        extra = {"note": note} if note else {}
        return RecordResult(outcome, op, status, extra)

    async def pause(self, site: str, room: str, target: DeviceTarget) -> RecordResult:
        return await self._toggle_pause(site, room, target, pause=True)

    async def resume(self, site: str, room: str, target: DeviceTarget) -> RecordResult:
        return await self._toggle_pause(site, room, target, pause=False)

    async def status(self, site: str, room: str, target: DeviceTarget) -> RecordResult:
        op = self._registry.get(site, room)
        try:
            status = await self._settled_status(target)
        except DeviceError as exc:
            self._registry.note_error(op, str(exc))
            raise device_failure(exc) from exc
        self._reconcile(op, status)
        return RecordResult("status", op, status)

    async def state(self, site: str, room: str, target: DeviceTarget) -> dict[str, Any]:
        """Stream and record status together, reconciling the record state."""
        op = self._registry.get(site, room)

        async def run(client: DeviceClient) -> dict[str, Any]:
            return {
                "stream": await client.call("GetStreamStatus"),
                "record": await client.call("GetRecordStatus"),
            }

        try:
            out = await self._pool.with_connection(target, run)
        except DeviceError as exc:
            self._registry.note_error(op, str(exc))
            raise device_failure(exc) from exc
        self._reconcile(op, out["record"])
        return {"ok": True, "sede": site, "sala": room, **out, "op": op.to_dict()}

    async def summary(self, site: str, room: str, target: DeviceTarget) -> dict[str, Any]:
        op = self._registry.get(site, room)
        try:
            stream = await self._call(target, "GetStreamStatus")
            record = await self._settled_status(target)
        except DeviceError as exc:
            self._registry.note_error(op, str(exc))
            raise device_failure(exc) from exc
        return {
            "ok": True,
            "sede": site,
            "sala": room,
            "state": {
                "state": op.state.value,
                "ts": op.last_transition_at,
                "lastOutputPath": op.last_output_path,
                "lastError": op.last_error,
            },
            "stream": stream,
            "record": record,
        }
