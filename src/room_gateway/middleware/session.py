"""Session middleware: authenticate every request, never reject."""

from __future__ import annotations

import logging
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from room_gateway.auth.context import RequestContext, reset_request_context, set_request_context
from room_gateway.auth.gate import AuthorizationGate
from room_gateway.transport.responses import ensure_trace_id
from room_gateway.utils.http import get_client_ip

logger = logging.getLogger(__name__)


class SessionMiddleware(BaseHTTPMiddleware):
    """Resolve the caller's session and publish it on ``request.state``.

    Routes decide for themselves whether a session is required; this layer
    only makes ``request.state.session`` (``Session | None``) and the
    request context available.
    """

    def __init__(
        self,
        app: Callable,
        gate: AuthorizationGate,
        trust_forwarded_headers: bool = False,
    ) -> None:
        super().__init__(app)
        self._gate = gate
        self._trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        session = self._gate.authenticate(request)
        request.state.session = session

        ctx = RequestContext(
            request_id=ensure_trace_id(request),
            subject=session.subject if session else None,
            role=session.role if session else None,
            client_ip=get_client_ip(request, self._trust_forwarded_headers),
        )
        token = set_request_context(ctx)
        try:
            return await call_next(request)
        finally:
            reset_request_context(token)
