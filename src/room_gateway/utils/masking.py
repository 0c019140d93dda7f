"""Shared sensitive-field masking utilities.

Two flavours are provided:

- ``redact_sensitive_fields`` keeps the key and replaces its value with a
  marker. Used for audit metadata, where the presence of a field matters.
- ``strip_sensitive_fields`` drops the key entirely. Used for the public
  projection of room configuration, where secrets must not be hinted at.

Both walk dicts and lists recursively, match keys by *substring*
(case-insensitive) and replace self-referencing containers with
``CIRCULAR_MARKER`` instead of recursing forever.
"""

from __future__ import annotations

from collections.abc import Iterable

_MAX_REDACT_DEPTH = 20

REDACTED_MARKER = "[REDACTED]"
CIRCULAR_MARKER = "[CIRCULAR]"

# Canonical list of sensitive key markers for audit metadata.
SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "password",
    "pass",
    "pwd",
    "token",
    "authorization",
    "auth",
    "secret",
    "cookie",
    "credential",
    "apikey",
)

# Keys removed from room configuration before it leaves the server.
PUBLIC_CONFIG_SECRET_MARKERS: tuple[str, ...] = (
    "password",
    "pass",
    "secret",
    "token",
    "auth",
    "rtsp",
    "cookie",
)


def is_sensitive_key(key: object, markers: Iterable[str] = SENSITIVE_KEY_MARKERS) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in markers)


def redact_sensitive_fields(
    value: object,
    *,
    mask: str = REDACTED_MARKER,
    markers: Iterable[str] = SENSITIVE_KEY_MARKERS,
    max_depth: int = _MAX_REDACT_DEPTH,
) -> object:
    """Return a copy of *value* with sensitive values replaced by *mask*.

    When ``max_depth`` is exceeded the entire sub-tree is replaced with
    *mask*. A container that appears inside itself becomes
    ``CIRCULAR_MARKER``; a container shared by two siblings is copied twice.
    """
    marker_list = tuple(m.lower() for m in markers)
    return _walk(value, marker_list, mask, max_depth, 0, set(), drop=False)


def strip_sensitive_fields(
    value: object,
    *,
    markers: Iterable[str] = PUBLIC_CONFIG_SECRET_MARKERS,
    max_depth: int = _MAX_REDACT_DEPTH,
) -> object:
    """Return a copy of *value* with every sensitive key removed."""
    marker_list = tuple(m.lower() for m in markers)
    return _walk(value, marker_list, REDACTED_MARKER, max_depth, 0, set(), drop=True)


def _walk(
    value: object,
    markers: tuple[str, ...],
    mask: str,
    max_depth: int,
    depth: int,
    ancestors: set[int],
    *,
    drop: bool,
) -> object:
    if not isinstance(value, (dict, list, tuple)):
        return value
    if depth >= max_depth:
        return mask
    marker = id(value)
    if marker in ancestors:
        return CIRCULAR_MARKER
    ancestors.add(marker)
    try:
        if isinstance(value, dict):
            cleaned: dict[str, object] = {}
            for key, item in value.items():
                if is_sensitive_key(key, markers):
                    if not drop:
                        cleaned[key] = mask
                    continue
                cleaned[key] = _walk(
                    item, markers, mask, max_depth, depth + 1, ancestors, drop=drop
                )
            return cleaned
        return [
            _walk(item, markers, mask, max_depth, depth + 1, ancestors, drop=drop)
            for item in value
        ]
    finally:
        ancestors.discard(marker)
