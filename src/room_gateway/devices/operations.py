"""Stream, audio and scene operations against a room's OBS instance."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from room_gateway.devices.client import DeviceClient, DeviceError, DeviceTarget, device_failure
from room_gateway.devices.pool import DeviceConnectionPool
from room_gateway.errors import validation_error

logger = logging.getLogger(__name__)

MIN_VOLUME_DB = -60.0
MAX_VOLUME_DB = 10.0


def clamp_volume(value: Any) -> float:
    try:
        volume = float(value)
    except (TypeError, ValueError):
        raise validation_error("inputVolumeDb must be a number", field="inputVolumeDb") from None
    if volume != volume:  # NaN
        raise validation_error("inputVolumeDb must be a number", field="inputVolumeDb")
    return max(MIN_VOLUME_DB, min(MAX_VOLUME_DB, volume))


def _require_text(value: Any, field: str) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise validation_error(f"{field} is required", field=field)
    return text


class DeviceOperations:
    def __init__(self, pool: DeviceConnectionPool) -> None:
        self._pool = pool

    async def _run(
        self,
        target: DeviceTarget,
        fn: Callable[[DeviceClient], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        try:
            return await self._pool.with_connection(target, fn)
        except DeviceError as exc:
            raise device_failure(exc) from exc

    async def stream_status(self, target: DeviceTarget) -> dict[str, Any]:
        async def run(client: DeviceClient) -> dict[str, Any]:
            return {"status": await client.call("GetStreamStatus")}

        return await self._run(target, run)

    async def start_stream(self, target: DeviceTarget) -> dict[str, Any]:
        async def run(client: DeviceClient) -> dict[str, Any]:
            status = await client.call("GetStreamStatus")
            if status.get("outputActive"):
                return {"already": True, "status": status}
            await client.call("StartStream")
            return {"started": True, "status": await client.call("GetStreamStatus")}

        return await self._run(target, run)

    async def stop_stream(self, target: DeviceTarget) -> dict[str, Any]:
        async def run(client: DeviceClient) -> dict[str, Any]:
            status = await client.call("GetStreamStatus")
            if not status.get("outputActive"):
                return {"already": True, "status": status}
            await client.call("StopStream")
            return {"stopped": True, "status": await client.call("GetStreamStatus")}

        return await self._run(target, run)

    async def list_inputs(self, target: DeviceTarget) -> dict[str, Any]:
        async def run(client: DeviceClient) -> dict[str, Any]:
            return {"inputs": await client.call("GetInputList")}

        return await self._run(target, run)

    async def toggle_mute(self, target: DeviceTarget, input_name: Any) -> dict[str, Any]:
        name = _require_text(input_name, "inputName")

        async def run(client: DeviceClient) -> dict[str, Any]:
            current = await client.call("GetInputMute", {"inputName": name})
            muted = not bool(current.get("inputMuted"))
            await client.call("SetInputMute", {"inputName": name, "inputMuted": muted})
            return {"inputName": name, "inputMuted": muted}

        return await self._run(target, run)

    async def set_volume(
        self, target: DeviceTarget, input_name: Any, volume_db: Any
    ) -> dict[str, Any]:
        name = _require_text(input_name, "inputName")
        if volume_db is None:
            raise validation_error("inputVolumeDb is required", field="inputVolumeDb")
        volume = clamp_volume(volume_db)

        async def run(client: DeviceClient) -> dict[str, Any]:
            await client.call("SetInputVolume", {"inputName": name, "inputVolumeDb": volume})
            return {
                "inputName": name,
                "volume": await client.call("GetInputVolume", {"inputName": name}),
            }

        return await self._run(target, run)

    async def list_scenes(self, target: DeviceTarget) -> dict[str, Any]:
        async def run(client: DeviceClient) -> dict[str, Any]:
            scenes = await client.call("GetSceneList")
            current = await client.call("GetCurrentProgramScene")
            return {**scenes, "currentProgramSceneName": current.get("currentProgramSceneName")}

        return await self._run(target, run)

    async def set_scene(self, target: DeviceTarget, scene_name: Any) -> dict[str, Any]:
        name = _require_text(scene_name, "sceneName")

        async def run(client: DeviceClient) -> dict[str, Any]:
            await client.call("SetCurrentProgramScene", {"sceneName": name})
            current = await client.call("GetCurrentProgramScene")
            return {"set": True, "currentProgramSceneName": current.get("currentProgramSceneName")}

        logger.info("Switching program scene on %s to %r", target.endpoint, name)
        return await self._run(target, run)
