"""Authentication of inbound requests and scope-based room authorization."""

from __future__ import annotations

import logging

from starlette.requests import Request

from room_gateway.auth.tokens import Session, TokenIssuer, TokenValidationError
from room_gateway.users.models import Scope
from room_gateway.utils.http import extract_bearer_token

logger = logging.getLogger(__name__)


def scope_allows(scope: Scope | None, site: str, room: str) -> bool:
    """Decide whether *scope* grants access to ``site/room``.

    ``None`` is unrestricted. A non-empty ``sedes`` list that lacks the site
    denies outright. A ``salas`` entry for the site restricts access to the
    listed rooms; otherwise any room of an allowed site is granted. A scope
    that names neither the site in ``sedes`` nor in ``salas`` denies.
    """
    if scope is None:
        return True

    site_key = (site or "").lower()
    room_key = (room or "").lower()

    if scope.sedes and site_key not in scope.sedes:
        return False
    if site_key in scope.salas:
        return room_key in scope.salas[site_key]
    return site_key in scope.sedes


class AuthorizationGate:
    def __init__(self, tokens: TokenIssuer, cookie_name: str) -> None:
        self._tokens = tokens
        self._cookie_name = cookie_name

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    def authenticate(self, request: Request) -> Session | None:
        """Return the session carried by *request*, or ``None``.

        The Authorization header wins over the cookie whenever it is present,
        even when it is not a bearer credential. Never raises.
        """
        token = extract_bearer_token(request, self._cookie_name)
        if not token:
            return None
        try:
            return self._tokens.decode(token)
        except TokenValidationError as exc:
            logger.debug("Rejected session token: %s", exc.code)
            return None

    @staticmethod
    def authorize(scope: Scope | None, site: str, room: str) -> bool:
        return scope_allows(scope, site, room)
