"""Audit middleware: request lifecycle logging and post-response audit records."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from starlette.background import BackgroundTask, BackgroundTasks
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from room_gateway.audit.models import AuditEvent
from room_gateway.audit.sink import AuditSink
from room_gateway.logging_utils import sanitize_log_value
from room_gateway.transport.responses import ensure_trace_id
from room_gateway.utils.http import get_client_ip
from room_gateway.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

_MAX_USER_AGENT_LENGTH = 256


def _chain_background(response: Response, task: BackgroundTask) -> None:
    existing = response.background
    if existing is None:
        response.background = task
        return
    tasks = BackgroundTasks()
    tasks.add_task(existing)
    tasks.add_task(task)
    response.background = tasks


class AuditMiddleware(BaseHTTPMiddleware):
    """
    Audit logging middleware.

    - Logs REQUEST_START / REQUEST_END for every request
    - Appends an audit event for authenticated requests once the response
      has been sent; the write can never change the response
    - Never audits the audit reader itself or the health probe
    """

    EXEMPT_PATHS = frozenset({"/health", "/admin/audit"})

    def __init__(
        self,
        app: Callable,
        sink: AuditSink | None,
        trust_forwarded_headers: bool = False,
    ) -> None:
        super().__init__(app)
        self._sink = sink
        self._trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = ensure_trace_id(request)
        started = time.perf_counter()
        client_ip = get_client_ip(request, trust_forwarded_headers=self._trust_forwarded_headers)
        safe_path = sanitize_log_value(request.url.path)

        logger.info(
            "REQUEST_START request_id=%s method=%s path=%s client_ip=%s",
            request_id,
            request.method,
            safe_path,
            sanitize_log_value(client_ip),
        )

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            logger.exception(
                "REQUEST_FAILED request_id=%s method=%s path=%s",
                request_id,
                request.method,
                safe_path,
            )
            raise
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            session = getattr(request.state, "session", None)
            subject = sanitize_log_value(session.subject) if session else "anonymous"
            logger.info(
                "REQUEST_END request_id=%s user=%s method=%s path=%s status=%s duration_ms=%d",
                request_id,
                subject,
                request.method,
                safe_path,
                status_code,
                duration_ms,
            )

        event = self._build_event(request, status_code, client_ip, duration_ms)
        if event is not None and self._sink is not None:
            _chain_background(response, BackgroundTask(self._sink.record, event))
        return response

    def _build_event(
        self,
        request: Request,
        status_code: int,
        client_ip: str,
        duration_ms: int,
    ) -> AuditEvent | None:
        if request.url.path in self.EXEMPT_PATHS:
            return None
        session = getattr(request.state, "session", None)
        if session is None:
            return None

        meta: dict[str, Any] | None = getattr(request.state, "audit_meta", None)
        user_agent = request.headers.get("user-agent")
        return AuditEvent(
            ts=utc_now_iso(),
            user=session.subject,
            role=session.role.value,
            method=request.method,
            path=request.url.path,
            status=status_code,
            ip=client_ip,
            user_agent=user_agent[:_MAX_USER_AGENT_LENGTH] if user_agent else None,
            duration_ms=duration_ms,
            meta=dict(meta) if meta else None,
        )
