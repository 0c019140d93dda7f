"""Session and role checks used by route handlers."""

from __future__ import annotations

from starlette.requests import Request

from room_gateway.auth.tokens import Session
from room_gateway.errors import ErrorKind, GatewayError
from room_gateway.users.models import Role, Scope
from room_gateway.users.store import CredentialStore


def require_session(request: Request) -> Session:
    session = getattr(request.state, "session", None)
    if session is None:
        raise GatewayError(ErrorKind.AUTH_DENIED, "Authentication required")
    return session


async def require_admin(request: Request, users: CredentialStore) -> Session:
    """Session of an active administrator.

    The role comes from the credential store, not the token: an account
    that was demoted or disabled after login loses access immediately.
    """
    session = require_session(request)
    user = await users.resolve(session.subject)
    if user is None or not user.enabled:
        raise GatewayError(ErrorKind.AUTH_DENIED, "Session user is no longer active")
    if user.role is not Role.ADMIN:
        raise GatewayError(ErrorKind.ROLE_DENIED, "Administrator role required")
    return session


async def resolve_scope(users: CredentialStore, session: Session) -> Scope | None:
    """Current scope of the session's user.

    A token whose user has since been deleted or disabled no longer
    authenticates; it must not fall back to unrestricted access.
    """
    user = await users.resolve(session.subject)
    if user is None or not user.enabled:
        raise GatewayError(ErrorKind.AUTH_DENIED, "Session user is no longer active")
    return user.scope
