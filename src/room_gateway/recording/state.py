"""Per-room recording operation state and its persistence."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from room_gateway.utils.files import read_json, write_json_atomic
from room_gateway.utils.time import utc_now_iso

logger = logging.getLogger(__name__)


class RecordState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    ERROR = "error"

    @property
    def transitional(self) -> bool:
        return self in (RecordState.STARTING, RecordState.STOPPING)


_UNSET: Any = object()


@dataclass
class RecordOperation:
    site: str
    room: str
    state: RecordState = RecordState.IDLE
    last_transition_at: str = ""
    last_output_path: str | None = None
    last_error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.site, self.room)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sede": self.site,
            "sala": self.room,
            "state": self.state.value,
            "ts": self.last_transition_at,
            "lastOutputPath": self.last_output_path,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordOperation":
        return cls(
            site=str(data["sede"]),
            room=str(data["sala"]),
            state=RecordState(data.get("state", RecordState.IDLE.value)),
            last_transition_at=str(data.get("ts") or ""),
            last_output_path=data.get("lastOutputPath"),
            last_error=data.get("lastError"),
        )


class RecordStateRegistry:
    """Process-lifetime map of ``(site, room)`` to :class:`RecordOperation`.

    Mutations are synchronous so a caller can move an operation into a
    transitional state before its first suspension point. Each transition
    schedules a coalesced write of the whole registry when a state path is
    configured.
    """

    def __init__(self, state_path: str | Path | None = None) -> None:
        self._path = Path(state_path) if state_path else None
        self._operations: dict[tuple[str, str], RecordOperation] = {}
        self._dirty = False
        self._flush_task: asyncio.Task[None] | None = None

    @property
    def size(self) -> int:
        return len(self._operations)

    def get(self, site: str, room: str) -> RecordOperation:
        key = (site, room)
        op = self._operations.get(key)
        if op is None:
            op = RecordOperation(site=site, room=room, last_transition_at=utc_now_iso())
            self._operations[key] = op
        return op

    def snapshot(self) -> list[dict[str, Any]]:
        return [op.to_dict() for _, op in sorted(self._operations.items())]

    def transition(
        self,
        op: RecordOperation,
        state: RecordState,
        *,
        last_output_path: Any = _UNSET,
        last_error: Any = _UNSET,
    ) -> None:
        previous = op.state
        op.state = state
        op.last_transition_at = utc_now_iso()
        if last_output_path is not _UNSET:
            op.last_output_path = last_output_path
        if last_error is not _UNSET:
            op.last_error = last_error
        if previous is not state:
            logger.info("Record %s/%s: %s -> %s", op.site, op.room, previous.value, state.value)
        self._schedule_flush()

    def note_error(self, op: RecordOperation, message: str) -> None:
        """Record a failure without changing the operation state."""
        op.last_error = message
        self._schedule_flush()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        if self._path is None:
            return
        self._dirty = True
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._flush_task = loop.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while self._dirty:
            self._dirty = False
            document = {"operations": self.snapshot()}
            try:
                await asyncio.to_thread(write_json_atomic, self._path, document)
            except OSError:
                logger.exception("Failed to persist record state to %s", self._path)

    async def flush(self) -> None:
        if self._flush_task is not None:
            await self._flush_task
        if self._dirty and self._path is not None:
            await self._flush_loop()

    def restore(self) -> int:
        """Load persisted operations; interrupted transitions become ``error``."""
        if self._path is None or not self._path.exists():
            return 0
        try:
            document = read_json(self._path)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable record state %s: %s", self._path, exc)
            return 0

        restored = 0
        entries = document.get("operations", []) if isinstance(document, dict) else []
        for entry in entries:
            try:
                op = RecordOperation.from_dict(entry)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed record state entry: %r", entry)
                continue
            if op.state.transitional:
                op.state = RecordState.ERROR
                op.last_error = "interrupted by restart"
            self._operations[op.key] = op
            restored += 1
        if restored:
            logger.info("Restored %d record operation(s) from %s", restored, self._path)
        return restored
