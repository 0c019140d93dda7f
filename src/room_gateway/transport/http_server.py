"""Starlette HTTP server assembly."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from room_gateway import __version__
from room_gateway.app import AppContext, get_app_context
from room_gateway.errors import ErrorKind, GatewayError
from room_gateway.middleware.audit import AuditMiddleware
from room_gateway.middleware.security import RequestGuardMiddleware
from room_gateway.middleware.session import SessionMiddleware
from room_gateway.transport.admin_routes import AdminRoutes
from room_gateway.transport.responses import error_body, error_response
from room_gateway.transport.room_routes import RoomRoutes
from room_gateway.transport.session_routes import SessionRoutes

logger = logging.getLogger(__name__)


async def _gateway_error_handler(request: Request, exc: GatewayError) -> Response:
    return error_response(request, exc)


async def _unhandled_error_handler(request: Request, exc: Exception) -> Response:
    logger.error("Unhandled error on %s %s: %r", request.method, request.url.path, exc)
    return error_body(request, ErrorKind.INTERNAL_ERROR, "Internal server error")


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the gateway HTTP application.

    *context* defaults to the process-wide context built from settings.
    """
    ctx = context or get_app_context()
    settings = ctx.settings
    trust_forwarded = settings.server.http_trust_forwarded_headers

    # Order: RequestGuard -> Session -> Audit
    # The guard rejects oversized or abusive traffic before any token work;
    # the audit layer sits innermost so it sees the resolved session.
    middleware: list[Middleware] = [
        Middleware(
            RequestGuardMiddleware,
            config=settings.security,
            trust_forwarded_headers=trust_forwarded,
        ),
        Middleware(
            SessionMiddleware,
            gate=ctx.gate,
            trust_forwarded_headers=trust_forwarded,
        ),
        Middleware(
            AuditMiddleware,
            sink=ctx.audit,
            trust_forwarded_headers=trust_forwarded,
        ),
    ]

    # CORS must be outermost so preflight requests are answered before any
    # other layer can reject them.
    if settings.server.http_enable_cors and settings.server.http_allowed_origins:
        from starlette.middleware.cors import CORSMiddleware

        middleware.insert(
            0,
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.server.http_allowed_origins),
                allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
                allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-Id"],
                allow_credentials=True,
            ),
        )

    async def health_handler(request: Request) -> Response:
        return JSONResponse(
            {
                "ok": True,
                "status": "healthy",
                "version": __version__,
                "uptimeSeconds": round(ctx.uptime_seconds, 3),
                "pool": {"connections": ctx.pool.size},
                "recordOps": ctx.recording.registry.size,
            }
        )

    async def not_found_handler(request: Request, exc: Exception) -> Response:
        return error_body(request, ErrorKind.NOT_FOUND, "Not found", path=request.url.path)

    routes = [
        Route("/health", endpoint=health_handler, methods=["GET"]),
        *SessionRoutes(ctx).routes(),
        *RoomRoutes(ctx).routes(),
        *AdminRoutes(ctx).routes(),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting room gateway v%s...", __version__)
        restored = ctx.recording.registry.restore()
        if restored:
            logger.info("Restored %d record operations", restored)
        ctx.pool.start()
        logger.info("Room gateway started")
        try:
            yield
        finally:
            logger.info("Stopping room gateway...")
            await ctx.pool.close()
            await ctx.recording.registry.flush()

    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={
            404: not_found_handler,
            GatewayError: _gateway_error_handler,
            Exception: _unhandled_error_handler,
        },
        lifespan=lifespan,
    )
    app.state.context = ctx
    return app

