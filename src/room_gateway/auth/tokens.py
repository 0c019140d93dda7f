"""Signed, stateless session tokens."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

from room_gateway.users.models import Role

logger = logging.getLogger(__name__)


class TokenValidationError(Exception):
    """Token validation failure with error code."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Session:
    subject: str
    role: Role
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Issues and validates HMAC-signed JWT session tokens.

    Tokens carry only ``sub``, ``role``, ``iat`` and ``exp``. Scope is looked
    up from the credential store on each request so that scope changes apply
    without waiting for tokens to expire.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        ttl_seconds: int = 8 * 3600,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def issue(self, subject: str, role: Role) -> tuple[str, Session]:
        issued_at = self._clock().replace(microsecond=0)
        session = Session(
            subject=subject,
            role=role,
            issued_at=issued_at,
            expires_at=issued_at + self._ttl,
        )
        token = jwt.encode(
            {
                "sub": subject,
                "role": role.value,
                "iat": int(issued_at.timestamp()),
                "exp": int(session.expires_at.timestamp()),
            },
            self._secret,
            algorithm=self._algorithm,
        )
        return token, session

    def decode(self, token: str) -> Session:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp", "iat"], "verify_exp": True},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenValidationError("Token expired", "token_expired") from e
        except jwt.InvalidTokenError as e:
            raise TokenValidationError(f"Invalid token: {e}", "invalid_token") from e

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenValidationError("Token has no subject", "invalid_token")
        try:
            role = Role(str(claims.get("role", "")).lower())
        except ValueError as e:
            raise TokenValidationError("Token has an unknown role", "invalid_token") from e

        return Session(
            subject=subject,
            role=role,
            issued_at=datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )
