"""Request-scoped authentication context."""

from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone

from room_gateway.users.models import Role


@dataclass(frozen=True)
class RequestContext:
    """
    Immutable request-scoped context.

    Set by the session middleware for every request; ``subject`` and ``role``
    are ``None`` when the caller is not authenticated.
    """

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    subject: str | None = None
    role: Role | None = None
    client_ip: str = "unknown"
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def authenticated(self) -> bool:
        return self.subject is not None


_request_context: ContextVar[RequestContext | None] = ContextVar(
    "request_context",
    default=None,
)


def set_request_context(ctx: RequestContext) -> Token[RequestContext | None]:
    """Set context and return reset token."""
    return _request_context.set(ctx)


def reset_request_context(token: Token[RequestContext | None]) -> None:
    """Reset context using token from set_request_context()."""
    _request_context.reset(token)


def get_request_context() -> RequestContext:
    """Get context or raise RuntimeError."""
    ctx = _request_context.get()
    if ctx is None:
        raise RuntimeError("No request context set")
    return ctx


def get_request_context_optional() -> RequestContext | None:
    return _request_context.get()
