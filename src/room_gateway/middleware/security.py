"""Request guard middleware: body size limit, rate limits and timeouts."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from room_gateway.config import SecuritySettings
from room_gateway.errors import ErrorKind
from room_gateway.transport.responses import ensure_trace_id, error_body
from room_gateway.utils.http import get_client_ip

logger = logging.getLogger(__name__)

_GUARD_EXEMPT_PATHS = frozenset({"/health"})
LOGIN_PATH = "/login"


class BodySizeLimitExceeded(Exception):
    """Raised when request body exceeds size limit."""


class RateLimitBucket:
    """Request timestamps for one key, oldest first."""

    def __init__(self) -> None:
        self.hits: deque[float] = deque()

    def prune(self, cutoff: float) -> None:
        while self.hits and self.hits[0] <= cutoff:
            self.hits.popleft()

    @property
    def last_hit(self) -> float | None:
        return self.hits[-1] if self.hits else None

    def __len__(self) -> int:
        return len(self.hits)


class SlidingWindowRateLimiter:
    """Per-key sliding window limiter.

    Process-local: with several uvicorn workers each keeps its own counters.
    Idle buckets are dropped periodically so one-off clients do not
    accumulate.
    """

    PURGE_INTERVAL: float = 60.0
    IDLE_BUCKET_AGE: float = 300.0

    def __init__(
        self,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = asyncio.Lock()
        self._next_purge = 0.0

    @property
    def tracked_keys(self) -> int:
        return len(self._buckets)

    async def allow(self, key: str, limit: int) -> bool:
        async with self._lock:
            now = self._clock()
            if now >= self._next_purge:
                self._purge_idle(now)
                self._next_purge = now + self.PURGE_INTERVAL

            bucket = self._buckets.setdefault(key, RateLimitBucket())
            bucket.prune(now - self._window)
            if len(bucket) >= limit:
                return False
            bucket.hits.append(now)
            return True

    def _purge_idle(self, now: float) -> None:
        cutoff = now - self.IDLE_BUCKET_AGE
        for key in [k for k, b in self._buckets.items() if (b.last_hit or 0.0) < cutoff]:
            del self._buckets[key]


class RequestGuardMiddleware(BaseHTTPMiddleware):
    """
    Pre-authentication guard.

    - Request body size limit (Content-Length fast path plus streaming check)
    - Per-IP rate limit, with a tighter limit for login attempts
    - Overall request timeout
    """

    EXEMPT_PATHS = _GUARD_EXEMPT_PATHS

    def __init__(
        self,
        app: Callable,
        config: SecuritySettings,
        trust_forwarded_headers: bool = False,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        super().__init__(app)
        self.config = config
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self._trust_forwarded_headers = trust_forwarded_headers

    def _too_large(self, request: Request) -> Response:
        return error_body(
            request,
            ErrorKind.PAYLOAD_TOO_LARGE,
            f"Request body exceeds {self.config.max_body_size_bytes} bytes",
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        ensure_trace_id(request)
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        max_size = self.config.max_body_size_bytes
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
                if size < 0:
                    raise ValueError("negative content-length")
                if size > max_size:
                    logger.warning("Request body too large: %d > %d", size, max_size)
                    return self._too_large(request)
            except ValueError:
                logger.warning("Invalid Content-Length header: %r", content_length)

        transfer_encoding = request.headers.get("transfer-encoding", "").lower()
        if "chunked" in transfer_encoding or request.method in ("POST", "PUT", "PATCH"):
            try:
                await self._check_body_size_streaming(request, max_size)
            except BodySizeLimitExceeded:
                logger.warning("Request body exceeded limit during streaming")
                return self._too_large(request)

        client_ip = get_client_ip(request, trust_forwarded_headers=self._trust_forwarded_headers)
        if not await self.rate_limiter.allow(f"ip:{client_ip}", self.config.rate_limit_per_ip):
            logger.warning("Rate limit exceeded for IP: %s", client_ip)
            return self._rate_limited(request, "Too many requests from this IP")

        if request.method == "POST" and request.url.path == LOGIN_PATH:
            if not await self.rate_limiter.allow(
                f"login:{client_ip}", self.config.login_rate_limit_per_ip
            ):
                logger.warning("Login rate limit exceeded for IP: %s", client_ip)
                return self._rate_limited(request, "Too many login attempts")

        try:
            return await asyncio.wait_for(
                call_next(request),
                timeout=self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Request timeout after %s seconds", self.config.request_timeout_seconds)
            return error_body(
                request,
                ErrorKind.REQUEST_TIMEOUT,
                f"Request timed out after {self.config.request_timeout_seconds} seconds",
            )

    @staticmethod
    def _rate_limited(request: Request, message: str) -> Response:
        response = error_body(request, ErrorKind.RATE_LIMITED, message)
        response.headers["Retry-After"] = "60"
        return response

    async def _check_body_size_streaming(self, request: Request, max_size: int) -> int:
        buf = bytearray()
        async for chunk in request.stream():
            buf.extend(chunk)
            if len(buf) > max_size:
                raise BodySizeLimitExceeded(f"Body exceeded {max_size} bytes")
        # Cache the body so downstream handlers can read it
        request._body = bytes(buf)
        return len(buf)
