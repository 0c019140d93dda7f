"""Request guard, session and audit middleware."""

from .audit import AuditMiddleware
from .security import RequestGuardMiddleware, SlidingWindowRateLimiter
from .session import SessionMiddleware

__all__ = [
    "AuditMiddleware",
    "RequestGuardMiddleware",
    "SessionMiddleware",
    "SlidingWindowRateLimiter",
]
