"""Room configuration resolver.

Rooms are declared in a public document shaped ``{site: {room: {...}}}``. An
optional secrets document with the same shape supplies device credentials.
Both are merged per room into a :class:`RoomsSnapshot`, which also carries a
sanitized projection safe to return to clients and a list of configuration
warnings.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from room_gateway.errors import ConfigParseError
from room_gateway.rooms.merge import (
    deep_merge,
    extract_endpoint,
    extract_password,
    extract_stream_source,
)
from room_gateway.utils.masking import strip_sensitive_fields

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomConfig:
    site: str
    room: str
    endpoint: str | None
    password: str | None = field(default=None, repr=False)
    enabled: bool = True
    requires_secrets: bool = True
    has_secrets: bool = False
    merged: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def id(self) -> str:
        return f"{self.site}/{self.room}"

    @property
    def is_operable(self) -> bool:
        return self.enabled and bool(self.endpoint)

    def public_view(self) -> dict[str, Any]:
        sanitized = strip_sensitive_fields(self.merged)
        return {
            "id": self.id,
            "sede": self.site,
            "sala": self.room,
            "hasSecrets": self.has_secrets,
            **sanitized,
        }

    def full_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sede": self.site,
            "sala": self.room,
            "hasSecrets": self.has_secrets,
            **self.merged,
        }


@dataclass
class RoomsSnapshot:
    rooms: dict[str, dict[str, RoomConfig]]
    warnings: list[dict[str, Any]]
    counts: dict[str, int]

    def ordered(self) -> list[RoomConfig]:
        configs = [cfg for by_room in self.rooms.values() for cfg in by_room.values()]
        return sorted(configs, key=lambda cfg: cfg.id)

    def lookup(self, site: str, room: str) -> RoomConfig | None:
        by_room = self.rooms.get(site)
        if by_room is None:
            lowered = site.lower()
            by_room = next(
                (rooms for name, rooms in self.rooms.items() if name.lower() == lowered), None
            )
        if by_room is None:
            return None
        config = by_room.get(room)
        if config is None:
            lowered = room.lower()
            config = next((cfg for name, cfg in by_room.items() if name.lower() == lowered), None)
        return config

    def public_list(
        self, allowed: Callable[[str, str], bool] | None = None
    ) -> list[dict[str, Any]]:
        """Sanitized room list, optionally filtered by an access predicate."""
        return [
            cfg.public_view()
            for cfg in self.ordered()
            if allowed is None or allowed(cfg.site, cfg.room)
        ]

    def full_list(self) -> list[dict[str, Any]]:
        return [cfg.full_view() for cfg in self.ordered()]


def _as_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _collect_duplicates(
    rooms: Iterable[RoomConfig],
    extractor: Callable[[dict[str, Any]], str | None],
    code: str,
    warnings: list[dict[str, Any]],
) -> int:
    grouped: dict[str, tuple[str, list[str]]] = {}
    for cfg in rooms:
        value = extractor(cfg.merged)
        if not value:
            continue
        key = value.strip().lower()
        grouped.setdefault(key, (value.strip(), []))[1].append(cfg.id)

    duplicates = 0
    for raw, ids in grouped.values():
        unique_ids = list(dict.fromkeys(ids))
        if len(unique_ids) <= 1:
            continue
        duplicates += 1
        warnings.append(
            {
                "code": code,
                "value": raw,
                "ids": unique_ids,
                "message": f"'{raw}' is shared by {', '.join(unique_ids)}",
            }
        )
    return duplicates


def build_snapshot(public_tree: Any, secrets_tree: Any) -> RoomsSnapshot:
    """Merge the two trees and compute warnings and counts."""
    public_tree = public_tree if isinstance(public_tree, dict) else {}
    secrets_tree = secrets_tree if isinstance(secrets_tree, dict) else {}

    rooms: dict[str, dict[str, RoomConfig]] = {}
    warnings: list[dict[str, Any]] = []
    seen: set[str] = set()
    total_sites = 0
    total_rooms = 0
    with_secrets = 0
    missing_secrets = 0

    for site, site_rooms in public_tree.items():
        if not isinstance(site_rooms, dict):
            continue
        site = str(site)
        total_sites += 1
        rooms.setdefault(site, {})
        site_secrets = secrets_tree.get(site)
        site_secrets = site_secrets if isinstance(site_secrets, dict) else {}

        for room, raw in site_rooms.items():
            if not isinstance(raw, dict):
                continue
            room = str(room)
            room_id = f"{site}/{room}"
            seen.add(room_id)
            total_rooms += 1

            enabled = _as_bool(raw.get("enabled"), True)
            requires_secrets = enabled and _as_bool(raw.get("needsSecrets"), True)
            secret_cfg = site_secrets.get(room)
            secret_cfg = secret_cfg if isinstance(secret_cfg, dict) else {}
            merged = deep_merge(raw, secret_cfg)

            has_secrets = bool(secret_cfg)
            if has_secrets:
                with_secrets += 1
            elif requires_secrets:
                missing_secrets += 1
                warnings.append(
                    {
                        "code": "missing-secrets",
                        "id": room_id,
                        "message": f"No secrets configured for {room_id}",
                    }
                )

            rooms[site][room] = RoomConfig(
                site=site,
                room=room,
                endpoint=extract_endpoint(merged),
                password=extract_password(merged),
                enabled=enabled,
                requires_secrets=requires_secrets,
                has_secrets=has_secrets,
                merged=merged,
            )

    for site, site_secrets in secrets_tree.items():
        if not isinstance(site_secrets, dict):
            continue
        for room in site_secrets:
            room_id = f"{site}/{room}"
            if room_id not in seen:
                warnings.append(
                    {
                        "code": "secrets-extra",
                        "id": room_id,
                        "message": f"Secrets present for undeclared room {room_id}",
                    }
                )

    snapshot = RoomsSnapshot(rooms=rooms, warnings=warnings, counts={})
    ordered = snapshot.ordered()
    duplicate_endpoints = _collect_duplicates(
        ordered, extract_endpoint, "duplicate-endpoint", warnings
    )
    duplicate_sources = _collect_duplicates(
        ordered, extract_stream_source, "duplicate-stream-source", warnings
    )
    snapshot.counts = {
        "totalSedes": total_sites,
        "totalSalas": total_rooms,
        "withSecrets": with_secrets,
        "missingSecrets": missing_secrets,
        "duplicateEndpoints": duplicate_endpoints,
        "duplicateStreamSources": duplicate_sources,
    }
    return snapshot


def _read_tree(path: Path, *, optional: bool) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        if optional:
            return {}
        raise ConfigParseError(f"Room configuration not found: {path.name}", str(path)) from exc
    except OSError as exc:
        raise ConfigParseError(f"Cannot read {path.name}: {exc}", str(path)) from exc

    if not raw.strip():
        return {}
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigParseError(f"Cannot parse {path.name}: {exc}", str(path)) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigParseError(f"{path.name} must contain a mapping of sites", str(path))
    return data


class RoomConfigResolver:
    """Loads and caches :class:`RoomsSnapshot` objects.

    A failed load is never cached: the next call retries the files.
    """

    def __init__(
        self,
        public_path: str | Path,
        secrets_path: str | Path | None = None,
        *,
        cache_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._public_path = Path(public_path)
        self._secrets_path = Path(secrets_path) if secrets_path else None
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._cached: RoomsSnapshot | None = None
        self._loaded_at = 0.0

    def _load_sync(self) -> RoomsSnapshot:
        public_tree = _read_tree(self._public_path, optional=False)
        secrets_tree = (
            _read_tree(self._secrets_path, optional=True) if self._secrets_path else {}
        )
        return build_snapshot(public_tree, secrets_tree)

    async def snapshot(self) -> RoomsSnapshot:
        now = self._clock()
        if self._cached is not None and now - self._loaded_at < self._cache_ttl:
            return self._cached

        try:
            snapshot = await asyncio.to_thread(self._load_sync)
        except ConfigParseError as exc:
            logger.error("Room configuration load failed: %s", exc.message)
            raise

        self._cached = snapshot
        self._loaded_at = self._clock()
        if snapshot.warnings:
            logger.info(
                "Room configuration loaded with %d warning(s): %s",
                len(snapshot.warnings),
                ", ".join(sorted({w["code"] for w in snapshot.warnings})),
            )
        return snapshot

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = 0.0
