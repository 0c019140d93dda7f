"""Login and session introspection endpoints."""

from __future__ import annotations

import logging

from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from room_gateway.app import AppContext
from room_gateway.errors import ErrorKind, GatewayError, validation_error
from room_gateway.logging_utils import sanitize_log_value
from room_gateway.transport.guards import require_session, resolve_scope
from room_gateway.transport.responses import json_response, read_json_body

logger = logging.getLogger(__name__)


class SessionRoutes:
    def __init__(self, context: AppContext) -> None:
        self._ctx = context

    def routes(self) -> list[Route]:
        return [
            Route("/login", endpoint=self.login, methods=["POST"]),
            Route("/session", endpoint=self.session, methods=["GET"]),
            Route("/me", endpoint=self.me, methods=["GET"]),
        ]

    async def login(self, request: Request) -> Response:
        body = await read_json_body(request)
        username = str(body.get("username") or body.get("user") or "").strip()
        password = body.get("password") or body.get("pass") or ""
        if not username or not isinstance(password, str) or not password:
            raise validation_error("username and password are required")

        users = self._ctx.users
        user = None
        if await users.verify(username, password):
            user = await users.resolve(username)
        if user is None or not user.enabled:
            logger.info("Login failed for %s", sanitize_log_value(username))
            raise GatewayError(ErrorKind.AUTH_DENIED, "Invalid username or password")

        token, session = self._ctx.tokens.issue(user.username, user.role)
        request.state.session = session
        request.state.audit_meta = {"action": "login"}
        logger.info(
            "Login succeeded for %s (%s)", sanitize_log_value(user.username), user.role.value
        )

        response = json_response(
            request,
            {"ok": True, "token": token, "role": user.role.value, "user": user.username},
        )
        response.set_cookie(
            self._ctx.gate.cookie_name,
            token,
            max_age=self._ctx.tokens.ttl_seconds,
            path="/",
            httponly=True,
            samesite="lax",
        )
        return response

    async def session(self, request: Request) -> Response:
        session = require_session(request)
        return json_response(
            request, {"ok": True, "user": session.subject, "role": session.role.value}
        )

    async def me(self, request: Request) -> Response:
        session = require_session(request)
        scope = await resolve_scope(self._ctx.users, session)
        return json_response(
            request,
            {
                "ok": True,
                "user": session.subject,
                "role": session.role.value,
                "scope": scope.model_dump() if scope is not None else None,
            },
        )
