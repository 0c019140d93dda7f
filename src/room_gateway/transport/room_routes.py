"""Room listing and per-room device control endpoints."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from room_gateway.app import AppContext
from room_gateway.auth.context import get_request_context
from room_gateway.auth.gate import AuthorizationGate
from room_gateway.devices.client import DeviceTarget
from room_gateway.errors import ErrorKind, GatewayError
from room_gateway.logging_utils import sanitize_log_value
from room_gateway.recording.controller import RecordResult
from room_gateway.transport.guards import require_admin, require_session, resolve_scope
from room_gateway.transport.responses import ensure_trace_id, json_response, read_json_body
from room_gateway.utils.http import is_loopback_request

logger = logging.getLogger(__name__)

ActionHandler = Callable[["RoomRequest"], Awaitable[Response]]


class RoomRequest:
    """A resolved, authorized request against one room's device."""

    def __init__(
        self,
        request: Request,
        site: str,
        room: str,
        target: DeviceTarget,
        params: dict[str, Any],
    ) -> None:
        self.request = request
        self.site = site
        self.room = room
        self.target = target
        self.params = params

    def param(self, *names: str) -> Any:
        for name in names:
            value = self.params.get(name)
            if value is not None:
                return value
        return None


class RoomRoutes:
    def __init__(self, context: AppContext) -> None:
        self._ctx = context
        self._actions: dict[str, ActionHandler] = {
            "status": self._stream_status,
            "stream/start": self._stream_start,
            "stream/stop": self._stream_stop,
            "inputs": self._inputs,
            "audio/mute/toggle": self._mute_toggle,
            "audio/volume/set": self._volume_set,
            "record/start": self._record_start,
            "record/stop": self._record_stop,
            "record/pause": self._record_pause,
            "record/resume": self._record_resume,
            "record/status": self._record_status,
            "scenes": self._scenes,
            "scene/set": self._scene_set,
            "state": self._state,
            "summary": self._summary,
        }

    def routes(self) -> list[Route]:
        return [
            Route("/rooms", endpoint=self.list_rooms, methods=["GET"]),
            Route("/rooms/full", endpoint=self.list_rooms_full, methods=["GET"]),
            Route(
                "/rooms/{site}/{room}/{action:path}",
                endpoint=self.dispatch,
                methods=["GET", "POST"],
            ),
        ]

    @property
    def actions(self) -> list[str]:
        return sorted(self._actions)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def list_rooms(self, request: Request) -> Response:
        session = require_session(request)
        scope = await resolve_scope(self._ctx.users, session)
        snapshot = await self._ctx.rooms.snapshot()

        def allowed(site: str, room: str) -> bool:
            return AuthorizationGate.authorize(scope, site, room)

        return json_response(
            request,
            {
                "ok": True,
                "traceId": ensure_trace_id(request),
                "counts": snapshot.counts,
                "warnings": snapshot.warnings,
                "salas": snapshot.public_list(allowed),
            },
        )

    async def list_rooms_full(self, request: Request) -> Response:
        if not is_loopback_request(request):
            if getattr(request.state, "session", None) is None:
                raise GatewayError(ErrorKind.ROLE_DENIED, "Administrator role required")
            await require_admin(request, self._ctx.users)
        snapshot = await self._ctx.rooms.snapshot()
        return json_response(
            request,
            {
                "ok": True,
                "traceId": ensure_trace_id(request),
                "counts": snapshot.counts,
                "warnings": snapshot.warnings,
                "salas": snapshot.full_list(),
            },
        )

    # ------------------------------------------------------------------
    # Per-room dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, request: Request) -> Response:
        site = request.path_params["site"]
        room = request.path_params["room"]
        action = request.path_params["action"].strip("/")

        # Scope is enforced before any configuration read or device contact.
        session = require_session(request)
        scope = await resolve_scope(self._ctx.users, session)
        if not AuthorizationGate.authorize(scope, site, room):
            raise GatewayError(
                ErrorKind.SCOPE_DENIED,
                "Room is outside the user's scope",
                {"sede": site, "sala": room},
            )

        snapshot = await self._ctx.rooms.snapshot()
        config = snapshot.lookup(site, room)
        if config is None or not config.is_operable:
            raise GatewayError(
                ErrorKind.ROOM_NOT_CONFIGURED,
                f"Room {site}/{room} is not configured",
                {"sede": site, "sala": room},
            )

        handler = self._actions.get(action)
        if handler is None:
            raise GatewayError(
                ErrorKind.ROUTE_NOT_IMPLEMENTED,
                f"Unknown room action: {action}",
                {"action": action},
            )

        params: dict[str, Any] = dict(request.query_params)
        if request.method == "POST":
            params.update(await read_json_body(request))

        request.state.audit_meta = {
            "action": action.replace("/", "."),
            "sede": config.site,
            "sala": config.room,
        }
        if request.method == "POST":
            ctx = get_request_context()
            logger.info(
                "request_id=%s user=%s %s on %s",
                ctx.request_id,
                sanitize_log_value(ctx.subject or "anonymous"),
                action,
                config.id,
            )
        target = DeviceTarget(config.endpoint or "", config.password)
        return await handler(RoomRequest(request, config.site, config.room, target, params))

    def _device_payload(self, call: RoomRequest, result: dict[str, Any]) -> Response:
        return json_response(
            call.request, {"ok": True, "sede": call.site, "sala": call.room, **result}
        )

    def _record_payload(self, call: RoomRequest, result: RecordResult) -> Response:
        return json_response(call.request, result.to_payload(), status_code=result.http_status)

    # stream, audio and scenes

    async def _stream_status(self, call: RoomRequest) -> Response:
        return self._device_payload(call, await self._ctx.devices.stream_status(call.target))

    async def _stream_start(self, call: RoomRequest) -> Response:
        return self._device_payload(call, await self._ctx.devices.start_stream(call.target))

    async def _stream_stop(self, call: RoomRequest) -> Response:
        return self._device_payload(call, await self._ctx.devices.stop_stream(call.target))

    async def _inputs(self, call: RoomRequest) -> Response:
        return self._device_payload(call, await self._ctx.devices.list_inputs(call.target))

    async def _mute_toggle(self, call: RoomRequest) -> Response:
        result = await self._ctx.devices.toggle_mute(call.target, call.param("inputName"))
        return self._device_payload(call, result)

    async def _volume_set(self, call: RoomRequest) -> Response:
        result = await self._ctx.devices.set_volume(
            call.target,
            call.param("inputName"),
            call.param("inputVolumeDb", "db"),
        )
        return self._device_payload(call, result)

    async def _scenes(self, call: RoomRequest) -> Response:
        return self._device_payload(call, await self._ctx.devices.list_scenes(call.target))

    async def _scene_set(self, call: RoomRequest) -> Response:
        result = await self._ctx.devices.set_scene(call.target, call.param("sceneName"))
        return self._device_payload(call, result)

    # recording

    async def _record_start(self, call: RoomRequest) -> Response:
        result = await self._ctx.recording.start(call.site, call.room, call.target)
        return self._record_payload(call, result)

    async def _record_stop(self, call: RoomRequest) -> Response:
        result = await self._ctx.recording.stop(call.site, call.room, call.target)
        return self._record_payload(call, result)

    async def _record_pause(self, call: RoomRequest) -> Response:
        result = await self._ctx.recording.pause(call.site, call.room, call.target)
        return self._record_payload(call, result)

    async def _record_resume(self, call: RoomRequest) -> Response:
        result = await self._ctx.recording.resume(call.site, call.room, call.target)
        return self._record_payload(call, result)

    async def _record_status(self, call: RoomRequest) -> Response:
        result = await self._ctx.recording.status(call.site, call.room, call.target)
        return self._record_payload(call, result)

    async def _state(self, call: RoomRequest) -> Response:
        payload = await self._ctx.recording.state(call.site, call.room, call.target)
        return json_response(call.request, payload)

    async def _summary(self, call: RoomRequest) -> Response:
        payload = await self._ctx.recording.summary(call.site, call.room, call.target)
        return json_response(call.request, payload)
