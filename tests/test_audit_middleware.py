"""Tests for audit middleware event capture and request logging."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse

from room_gateway.auth.tokens import Session
from room_gateway.middleware.audit import AuditMiddleware
from room_gateway.users.models import Role


def _request(path: str = "/rooms", headers: dict[str, str] | None = None) -> Request:
    raw_headers = [
        (k.lower().encode("utf-8"), v.encode("utf-8")) for k, v in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": "POST",
        "path": path,
        "headers": raw_headers,
        "scheme": "http",
        "server": ("gateway.local", 80),
        "client": ("10.0.0.7", 12345),
    }
    return Request(scope)


def _session(subject: str = "ana", role: Role = Role.OPERATOR) -> Session:
    now = datetime.now(timezone.utc)
    return Session(subject=subject, role=role, issued_at=now, expires_at=now + timedelta(hours=1))


def _sink() -> MagicMock:
    sink = MagicMock()
    sink.record = AsyncMock()
    return sink


@pytest.mark.asyncio
async def test_authenticated_request_is_recorded_after_response() -> None:
    sink = _sink()
    middleware = AuditMiddleware(AsyncMock(), sink)
    request = _request("/rooms/siteA/room1/record/start", {"user-agent": "ua/1"})
    request.state.session = _session()
    request.state.audit_meta = {"action": "record.start", "sede": "siteA", "sala": "room1"}

    response = await middleware.dispatch(
        request, AsyncMock(return_value=JSONResponse({"ok": True}))
    )

    sink.record.assert_not_called()
    assert isinstance(response.background, BackgroundTask)
    await response.background()

    event = sink.record.await_args.args[0]
    assert event.user == "ana"
    assert event.role == "operator"
    assert event.path == "/rooms/siteA/room1/record/start"
    assert event.status == 200
    assert event.ip == "10.0.0.7"
    assert event.user_agent == "ua/1"
    assert event.meta == {"action": "record.start", "sede": "siteA", "sala": "room1"}


@pytest.mark.asyncio
async def test_existing_background_task_is_kept() -> None:
    sink = _sink()
    middleware = AuditMiddleware(AsyncMock(), sink)
    request = _request()
    request.state.session = _session()
    earlier = AsyncMock()
    inner = JSONResponse({"ok": True}, background=BackgroundTask(earlier))

    response = await middleware.dispatch(request, AsyncMock(return_value=inner))
    await response.background()

    earlier.assert_awaited_once()
    sink.record.assert_awaited_once()


@pytest.mark.asyncio
async def test_anonymous_request_is_not_recorded() -> None:
    sink = _sink()
    middleware = AuditMiddleware(AsyncMock(), sink)
    request = _request()
    request.state.session = None

    response = await middleware.dispatch(
        request, AsyncMock(return_value=JSONResponse({"ok": False}, status_code=401))
    )

    assert response.background is None
    sink.record.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/health", "/admin/audit"])
async def test_exempt_paths_are_not_recorded(path: str) -> None:
    sink = _sink()
    middleware = AuditMiddleware(AsyncMock(), sink)
    request = _request(path)
    request.state.session = _session(role=Role.ADMIN)

    response = await middleware.dispatch(
        request, AsyncMock(return_value=JSONResponse({"ok": True}))
    )

    assert response.background is None


@pytest.mark.asyncio
async def test_disabled_sink_still_logs(caplog: pytest.LogCaptureFixture) -> None:
    middleware = AuditMiddleware(AsyncMock(), None)
    request = _request("/rooms", {"x-request-id": "trace-1"})
    request.state.session = _session()

    with caplog.at_level(logging.INFO, logger="room_gateway.middleware.audit"):
        response = await middleware.dispatch(
            request, AsyncMock(return_value=JSONResponse({"ok": True}))
        )

    assert response.background is None
    messages = [record.getMessage() for record in caplog.records]
    assert any("REQUEST_START request_id=trace-1" in m for m in messages)
    assert any("REQUEST_END request_id=trace-1 user=ana" in m for m in messages)


@pytest.mark.asyncio
async def test_failures_are_logged_and_reraised(caplog: pytest.LogCaptureFixture) -> None:
    middleware = AuditMiddleware(AsyncMock(), _sink())
    request = _request()
    request.state.session = None

    with caplog.at_level(logging.INFO, logger="room_gateway.middleware.audit"):
        with pytest.raises(RuntimeError):
            await middleware.dispatch(request, AsyncMock(side_effect=RuntimeError("boom")))

    assert any("REQUEST_FAILED" in record.getMessage() for record in caplog.records)
    assert any("status=500" in record.getMessage() for record in caplog.records)
