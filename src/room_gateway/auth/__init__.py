"""Authentication and scope authorization."""

from room_gateway.auth.context import (
    RequestContext,
    get_request_context,
    get_request_context_optional,
    reset_request_context,
    set_request_context,
)
from room_gateway.auth.gate import AuthorizationGate, scope_allows
from room_gateway.auth.tokens import Session, TokenIssuer, TokenValidationError

__all__ = [
    "AuthorizationGate",
    "RequestContext",
    "Session",
    "TokenIssuer",
    "TokenValidationError",
    "get_request_context",
    "get_request_context_optional",
    "reset_request_context",
    "scope_allows",
    "set_request_context",
]
