"""Recording operation state machine."""

from room_gateway.recording.controller import RecordingController, RecordResult
from room_gateway.recording.state import RecordOperation, RecordState, RecordStateRegistry

__all__ = [
    "RecordOperation",
    "RecordResult",
    "RecordState",
    "RecordStateRegistry",
    "RecordingController",
]
