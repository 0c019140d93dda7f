"""Deep merge and field extraction over JSON-like room configuration trees."""

from __future__ import annotations

import copy
from typing import Any


def deep_merge(base: Any, extra: Any) -> dict[str, Any]:
    """Right-biased recursive merge; neither input is mutated.

    Nested mappings are merged key by key. Any other value in *extra*
    (scalars, lists) replaces the value in *base* outright.
    """
    result = copy.deepcopy(base) if isinstance(base, dict) else {}
    if not isinstance(extra, dict):
        return result
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_endpoint(config: dict[str, Any]) -> str | None:
    """Device websocket URL from ``ws``, ``obs.ws`` or ``obs.ws.{url|host,port}``."""
    if not isinstance(config, dict):
        return None
    direct = _text(config.get("ws"))
    if direct:
        return direct

    obs = config.get("obs")
    if not isinstance(obs, dict):
        return None
    ws = obs.get("ws")
    if _text(ws):
        return _text(ws)
    if isinstance(ws, dict):
        url = _text(ws.get("url"))
        if url:
            return url
        host = ws.get("host") or ws.get("ip")
        port = ws.get("port")
        if host and port:
            return f"ws://{host}:{port}"
    return None


def extract_password(config: dict[str, Any]) -> str | None:
    if not isinstance(config, dict):
        return None
    direct = config.get("password")
    if isinstance(direct, str) and direct:
        return direct
    obs = config.get("obs")
    if not isinstance(obs, dict):
        return None
    candidates = [obs.get("password")]
    if isinstance(obs.get("ws"), dict):
        candidates.append(obs["ws"].get("password"))
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def extract_stream_source(config: dict[str, Any]) -> str | None:
    """Upstream camera URL from ``rtsp``, ``rtsp.url``, ``rtspUrl`` or ``stream.rtsp``."""
    if not isinstance(config, dict):
        return None
    rtsp = config.get("rtsp")
    if _text(rtsp):
        return _text(rtsp)
    if isinstance(rtsp, dict) and _text(rtsp.get("url")):
        return _text(rtsp.get("url"))
    if _text(config.get("rtspUrl")):
        return _text(config.get("rtspUrl"))
    stream = config.get("stream")
    if isinstance(stream, dict) and _text(stream.get("rtsp")):
        return _text(stream.get("rtsp"))
    return None
