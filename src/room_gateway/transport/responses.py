"""JSON response helpers shared by every route."""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

from room_gateway.errors import ErrorKind, GatewayError, validation_error

logger = logging.getLogger(__name__)

TRACE_HEADER = "x-request-id"
_TRACE_ID_RE = re.compile(r"[^A-Za-z0-9._:-]")
_MAX_TRACE_ID_LENGTH = 64


def ensure_trace_id(request: Request) -> str:
    """Return the request's trace id, assigning one on first use."""
    existing = getattr(request.state, "trace_id", None)
    if existing:
        return existing
    supplied = request.headers.get(TRACE_HEADER, "")
    trace_id = _TRACE_ID_RE.sub("", supplied)[:_MAX_TRACE_ID_LENGTH] or str(uuid.uuid4())
    request.state.trace_id = trace_id
    return trace_id


def json_response(
    request: Request, payload: dict[str, Any], status_code: int = 200
) -> JSONResponse:
    trace_id = ensure_trace_id(request)
    return JSONResponse(payload, status_code=status_code, headers={TRACE_HEADER: trace_id})


def error_response(request: Request, exc: GatewayError) -> JSONResponse:
    trace_id = ensure_trace_id(request)
    body: dict[str, Any] = {
        **exc.details,
        "ok": False,
        "code": exc.kind.value,
        "message": exc.message,
        "traceId": trace_id,
    }
    if exc.status_code >= 500:
        logger.warning("trace_id=%s %s: %s", trace_id, exc.kind.value, exc.message)
    return JSONResponse(body, status_code=exc.status_code, headers={TRACE_HEADER: trace_id})


def error_body(request: Request, kind: ErrorKind, message: str, **details: Any) -> JSONResponse:
    """Error response for middleware that rejects before any handler runs."""
    return error_response(request, GatewayError(kind, message, details or None))


async def read_json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise validation_error("Request body must be valid JSON") from None
    if not isinstance(data, dict):
        raise validation_error("Request body must be a JSON object")
    return data
