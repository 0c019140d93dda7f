"""Shared HTTP utilities."""

from __future__ import annotations

import ipaddress

from starlette.requests import Request


def _sanitize_ip(value: str) -> str:
    """Strip control characters from an IP string to prevent log injection."""
    return "".join(c for c in value if 0x20 <= ord(c) < 0x7F)


def first_forwarded_value(value: str | None) -> str | None:
    """Extract the first value from a comma-separated forwarded header."""
    if not value:
        return None
    first = value.split(",", 1)[0].strip()
    return first or None


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Get client IP with optional trusted proxy header support."""
    if trust_forwarded_headers:
        forwarded_for = first_forwarded_value(request.headers.get("x-forwarded-for"))
        if forwarded_for:
            return _sanitize_ip(forwarded_for)

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return _sanitize_ip(real_ip.strip())

    if request.client:
        return request.client.host

    return "unknown"


def is_loopback_request(request: Request) -> bool:
    """True when the TCP peer itself is a loopback address.

    Forwarded headers are deliberately ignored: a proxy on localhost would
    otherwise make every remote caller look local.
    """
    if not request.client:
        return False
    host = request.client.host
    if host.startswith("::ffff:"):
        host = host[7:]
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return host == "localhost"


def extract_bearer_token(request: Request, cookie_name: str) -> str | None:
    """Bearer token from the Authorization header, else from the session cookie."""
    auth_header = request.headers.get("authorization", "")
    if auth_header:
        if auth_header.lower().startswith("bearer "):
            token = auth_header[7:].strip()
            return token or None
        return None
    cookie = request.cookies.get(cookie_name, "").strip()
    return cookie or None
