from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from room_gateway.config import (
    AuditSettings,
    AuthSettings,
    DeviceSettings,
    RecordingSettings,
    RoomsSettings,
    SecuritySettings,
    Settings,
    StorageSettings,
)
from room_gateway.devices.client import DeviceCommandError, DeviceConnectError, DeviceTarget

JWT_SECRET = "test-secret-for-room-gateway-0123456789"
BOOTSTRAP_USER = "rootadmin"
BOOTSTRAP_PASSWORD = "bootstrap-pass"

PUBLIC_ROOMS: dict[str, Any] = {
    "siteA": {
        "room1": {
            "label": "Room 1",
            "obs": {"ws": {"host": "10.0.0.11", "port": 4455}},
            "rtsp": "rtsp://cam-1/stream",
        },
        "room2": {
            "label": "Room 2",
            "obs": {"ws": {"host": "10.0.0.12", "port": 4455}},
        },
        "closed": {"label": "Closed", "enabled": False, "ws": "ws://10.0.0.13:4455"},
    },
    "siteB": {
        "room9": {"label": "Room 9", "ws": "ws://10.0.1.9:4455", "needsSecrets": False},
    },
}

SECRET_ROOMS: dict[str, Any] = {
    "siteA": {
        "room1": {"obs": {"password": "room1-secret"}},
        "room2": {"obs": {"password": "room2-secret"}},
    },
}


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


class FakeObsDevice:
    """In-memory stand-in for one OBS instance, answering obs-websocket requests."""

    def __init__(self) -> None:
        self.record_active = False
        self.record_paused = False
        self.record_bytes = 0
        self.stream_active = False
        self.inputs: dict[str, dict[str, Any]] = {"Mic": {"muted": False, "volumeDb": 0.0}}
        self.scenes = ["Main", "Slides"]
        self.current_scene = "Main"
        self.calls: list[str] = []
        self.errors: dict[str, Exception] = {}
        self.connect_error: Exception | None = None
        self.connect_delay = 0.0
        self.connects = 0

    def count(self, request_type: str) -> int:
        return self.calls.count(request_type)

    def _record_status(self) -> dict[str, Any]:
        return {
            "outputActive": self.record_active,
            "outputPaused": self.record_paused,
            "outputBytes": self.record_bytes,
            "outputDuration": 1000 if self.record_active else 0,
        }

    def handle(self, request_type: str, data: dict[str, Any] | None) -> dict[str, Any]:
        data = data or {}
        if request_type in self.errors:
            raise self.errors[request_type]

        if request_type == "GetRecordStatus":
            return self._record_status()
        if request_type == "StartRecord":
            if self.record_active:
                raise DeviceCommandError(request_type, "Output already active", code=500)
            self.record_active = True
            self.record_bytes = 2048
            return {}
        if request_type == "StopRecord":
            if not self.record_active:
                raise DeviceCommandError(request_type, "Output not active", code=501)
            self.record_active = False
            self.record_paused = False
            self.record_bytes = 0
            return {"outputPath": "/recordings/out.mkv"}
        if request_type == "PauseRecord":
            if not self.record_active:
                raise DeviceCommandError(request_type, "Output not active", code=501)
            if self.record_paused:
                raise DeviceCommandError(request_type, "Output already paused", code=502)
            self.record_paused = True
            return {}
        if request_type == "ResumeRecord":
            if not self.record_active:
                raise DeviceCommandError(request_type, "Output not active", code=501)
            if not self.record_paused:
                raise DeviceCommandError(request_type, "Output not paused", code=503)
            self.record_paused = False
            return {}
        if request_type == "GetStreamStatus":
            return {"outputActive": self.stream_active}
        if request_type == "StartStream":
            self.stream_active = True
            return {}
        if request_type == "StopStream":
            self.stream_active = False
            return {}
        if request_type == "GetInputList":
            return {"inputs": [{"inputName": name} for name in self.inputs]}
        if request_type in {"GetInputMute", "SetInputMute", "GetInputVolume", "SetInputVolume"}:
            name = data.get("inputName")
            if name not in self.inputs:
                raise DeviceCommandError(request_type, f"No source named {name}", code=600)
            item = self.inputs[name]
            if request_type == "GetInputMute":
                return {"inputMuted": item["muted"]}
            if request_type == "SetInputMute":
                item["muted"] = bool(data["inputMuted"])
                return {}
            if request_type == "SetInputVolume":
                item["volumeDb"] = float(data["inputVolumeDb"])
                return {}
            return {"inputVolumeDb": item["volumeDb"]}
        if request_type == "GetSceneList":
            return {"scenes": [{"sceneName": name} for name in self.scenes]}
        if request_type == "GetCurrentProgramScene":
            return {"currentProgramSceneName": self.current_scene}
        if request_type == "SetCurrentProgramScene":
            if data.get("sceneName") not in self.scenes:
                raise DeviceCommandError(request_type, "No scene by that name", code=600)
            self.current_scene = data["sceneName"]
            return {}
        raise DeviceCommandError(request_type, "Unknown request type", code=204)


class FakeObsClient:
    def __init__(
        self,
        device: FakeObsDevice,
        target: DeviceTarget,
        on_closed: Callable[[], None],
    ) -> None:
        self.device = device
        self.target = target
        self.on_closed = on_closed
        self.connected = False
        self.disconnected = False

    @property
    def closed(self) -> bool:
        return not self.connected

    async def connect(self) -> None:
        self.device.connects += 1
        if self.device.connect_delay:
            await asyncio.sleep(self.device.connect_delay)
        if self.device.connect_error is not None:
            raise self.device.connect_error
        self.connected = True

    async def call(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.connected:
            raise DeviceConnectError("not connected")
        self.device.calls.append(request_type)
        await asyncio.sleep(0)
        return self.device.handle(request_type, data)

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnected = True


class FakeFleet:
    """Client factory handing out fake clients backed by one device per endpoint."""

    def __init__(self) -> None:
        self.devices: dict[str, FakeObsDevice] = {}
        self.clients: list[FakeObsClient] = []

    def device(self, endpoint: str) -> FakeObsDevice:
        return self.devices.setdefault(endpoint, FakeObsDevice())

    def __call__(self, target: DeviceTarget, on_closed: Callable[[], None]) -> FakeObsClient:
        client = FakeObsClient(self.device(target.endpoint), target, on_closed)
        self.clients.append(client)
        return client


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def room1_target() -> DeviceTarget:
    return DeviceTarget("ws://10.0.0.11:4455", "room1-secret")


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return _sleep


def write_rooms(tmp_path: Path) -> tuple[Path, Path]:
    public_path = tmp_path / "salas.json"
    secrets_path = tmp_path / "salas.secrets.json"
    public_path.write_text(json.dumps(PUBLIC_ROOMS), encoding="utf-8")
    secrets_path.write_text(json.dumps(SECRET_ROOMS), encoding="utf-8")
    return public_path, secrets_path


@pytest.fixture
def gateway_settings(tmp_path: Path) -> Settings:
    public_path, secrets_path = write_rooms(tmp_path)
    return Settings(
        auth=AuthSettings(
            jwt_secret=JWT_SECRET,
            bcrypt_rounds=4,
            bootstrap_username=BOOTSTRAP_USER,
            bootstrap_password=BOOTSTRAP_PASSWORD,
        ),
        storage=StorageSettings(
            users_path=str(tmp_path / "users-roles.json"),
            record_state_path=str(tmp_path / "record-state.json"),
        ),
        rooms=RoomsSettings(
            public_path=str(public_path),
            secrets_path=str(secrets_path),
            cache_ttl_seconds=30.0,
        ),
        devices=DeviceSettings(connect_timeout_seconds=1.0),
        recording=RecordingSettings(
            poll_interval_seconds=0.0,
            poll_attempts=3,
            start_settle_seconds=0.0,
            status_retry_attempts=0,
        ),
        audit=AuditSettings(directory=str(tmp_path / "audit")),
        security=SecuritySettings(rate_limit_per_ip=1000, login_rate_limit_per_ip=50),
    )
