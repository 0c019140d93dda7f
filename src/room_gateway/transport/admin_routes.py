"""Administrator endpoints: user management, audit reader and room reload."""

from __future__ import annotations

import logging
from typing import Any

from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from room_gateway.app import AppContext
from room_gateway.audit.models import AuditFilters
from room_gateway.audit.sink import DATE_RE
from room_gateway.errors import ErrorKind, GatewayError, validation_error
from room_gateway.transport.guards import require_admin
from room_gateway.transport.responses import json_response, read_json_body
from room_gateway.utils.time import utc_today

logger = logging.getLogger(__name__)


class AdminRoutes:
    def __init__(self, context: AppContext) -> None:
        self._ctx = context

    def routes(self) -> list[Route]:
        return [
            Route("/admin/users", endpoint=self.list_users, methods=["GET"]),
            Route("/admin/users", endpoint=self.create_user, methods=["POST"]),
            Route("/admin/users/{username}", endpoint=self.update_user, methods=["PUT"]),
            Route("/admin/users/{username}", endpoint=self.delete_user, methods=["DELETE"]),
            Route("/admin/audit", endpoint=self.read_audit, methods=["GET"]),
            Route("/admin/rooms/reload", endpoint=self.reload_rooms, methods=["POST"]),
        ]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def list_users(self, request: Request) -> Response:
        await require_admin(request, self._ctx.users)
        users = await self._ctx.users.list_users()
        return json_response(request, {"ok": True, "users": [u.public_view() for u in users]})

    async def create_user(self, request: Request) -> Response:
        await require_admin(request, self._ctx.users)
        body = await read_json_body(request)
        request.state.audit_meta = {
            "action": "user.create",
            "target": body.get("username"),
            "role": body.get("role"),
        }
        user = await self._ctx.users.create(
            body.get("username"),
            body.get("password"),
            body.get("role"),
            note=body.get("note"),
            scope=body.get("scope"),
        )
        return json_response(request, {"ok": True, "user": user.public_view()}, status_code=201)

    async def update_user(self, request: Request) -> Response:
        await require_admin(request, self._ctx.users)
        username = request.path_params["username"]
        body = await read_json_body(request)
        request.state.audit_meta = {
            "action": "user.update",
            "target": username,
            "fields": sorted(body),
        }
        user = await self._ctx.users.update(username, body)
        return json_response(request, {"ok": True, "user": user.public_view()})

    async def delete_user(self, request: Request) -> Response:
        session = await require_admin(request, self._ctx.users)
        username = request.path_params["username"]
        request.state.audit_meta = {"action": "user.delete", "target": username}
        if username == session.subject:
            raise validation_error("Administrators cannot delete their own account")
        await self._ctx.users.delete(username)
        return json_response(request, {"ok": True, "deleted": username})

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _filter_value(self, request: Request, name: str) -> str | None:
        value = request.query_params.get(name, "").strip()
        if not value:
            return None
        if len(value) > self._ctx.settings.audit.max_filter_length:
            raise validation_error(f"{name} filter is too long", field=name)
        return value

    def _limit(self, request: Request) -> int:
        audit = self._ctx.settings.audit
        raw = request.query_params.get("limit")
        if raw is None or not raw.strip():
            return min(audit.default_limit, audit.max_limit)
        try:
            limit = int(raw)
        except ValueError:
            raise validation_error("limit must be an integer", field="limit") from None
        return max(1, min(limit, audit.max_limit))

    async def read_audit(self, request: Request) -> Response:
        await require_admin(request, self._ctx.users)
        sink = self._ctx.audit
        if sink is None:
            raise GatewayError(ErrorKind.NOT_FOUND, "Audit logging is disabled")

        date = request.query_params.get("date", "").strip() or utc_today()
        if not DATE_RE.match(date):
            raise validation_error("date must be formatted YYYY-MM-DD", field="date")
        limit = self._limit(request)
        filters = AuditFilters(
            user=self._filter_value(request, "user"),
            action=self._filter_value(request, "action"),
            contains=self._filter_value(request, "contains"),
        )

        events: list[dict[str, Any]] = await sink.query(date, limit, filters)
        return json_response(
            request,
            {
                "ok": True,
                "date": date,
                "count": len(events),
                "events": events,
                "availableDates": await sink.list_dates(),
            },
        )

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def reload_rooms(self, request: Request) -> Response:
        await require_admin(request, self._ctx.users)
        request.state.audit_meta = {"action": "rooms.reload"}
        self._ctx.rooms.invalidate()
        snapshot = await self._ctx.rooms.snapshot()
        logger.info("Room configuration reloaded: %s", snapshot.counts)
        return json_response(
            request, {"ok": True, "counts": snapshot.counts, "warnings": snapshot.warnings}
        )
