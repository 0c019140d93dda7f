"""User records, roles, scopes and tagged password hashes."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    ADMIN = "admin"


class UserSource(str, Enum):
    LOCAL = "local"
    EXTERNAL = "external"


# Sources written by older deployments ("ad" for directory-synced accounts,
# "env" for the environment-defined account) are all externally managed.
_LEGACY_SOURCES = {"ad": UserSource.EXTERNAL, "env": UserSource.EXTERNAL}


class Scope(BaseModel):
    """Site/room restriction for a user; ``None`` on the user means unrestricted.

    Site and room identifiers are compared case-insensitively.
    """

    sedes: list[str] = Field(default_factory=list)
    salas: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("sedes", mode="before")
    @classmethod
    def _normalize_sedes(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple, set)):
            raise ValueError("sedes must be a list of site identifiers")
        return sorted({str(item).strip().lower() for item in value if str(item).strip()})

    @field_validator("salas", mode="before")
    @classmethod
    def _normalize_salas(cls, value: Any) -> dict[str, list[str]]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("salas must map site identifiers to room lists")
        normalized: dict[str, list[str]] = {}
        for site, rooms in value.items():
            if not isinstance(rooms, (list, tuple, set)):
                raise ValueError(f"salas[{site!r}] must be a list of room identifiers")
            normalized[str(site).strip().lower()] = sorted(
                {str(room).strip().lower() for room in rooms if str(room).strip()}
            )
        return normalized


_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_SHA256_HEX_RE = re.compile(r"^[a-fA-F0-9]{64}$")


@dataclass(frozen=True)
class PasswordHash:
    """Explicitly tagged password hash: ``{algorithm, params, digest}``."""

    algorithm: str
    digest: str = field(repr=False)
    params: dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return {"algorithm": self.algorithm, "params": dict(self.params), "digest": self.digest}

    @classmethod
    def from_document(cls, value: Any) -> "PasswordHash":
        """Load a stored hash, converting the bare-string format of older documents."""
        if isinstance(value, dict):
            return cls(
                algorithm=str(value.get("algorithm", "unknown")),
                digest=str(value.get("digest", "")),
                params=dict(value.get("params") or {}),
            )
        if isinstance(value, str):
            if value.startswith(_BCRYPT_PREFIXES):
                rounds = _bcrypt_rounds(value)
                return cls(
                    algorithm="bcrypt",
                    digest=value,
                    params={"rounds": rounds} if rounds else {},
                )
            if _SHA256_HEX_RE.match(value):
                return cls(algorithm="sha256", digest=value.lower())
        return cls(algorithm="unknown", digest="")


def _bcrypt_rounds(value: str) -> int | None:
    parts = value.split("$")
    if len(parts) > 2 and parts[2].isdigit():
        return int(parts[2])
    return None


@dataclass
class User:
    username: str
    role: Role
    password_hash: PasswordHash | None = None
    enabled: bool = True
    source: UserSource = UserSource.LOCAL
    scope: Scope | None = None
    note: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_external(self) -> bool:
        return self.source is UserSource.EXTERNAL

    def to_document(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "passwordHash": self.password_hash.to_document() if self.password_hash else None,
            "role": self.role.value,
            "enabled": self.enabled,
            "source": self.source.value,
            "scope": self.scope.model_dump() if self.scope is not None else None,
            "note": self.note,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def public_view(self) -> dict[str, Any]:
        """User as returned by the admin API: never includes the hash."""
        data = self.to_document()
        data.pop("passwordHash")
        return data

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "User":
        raw_source = str(data.get("source") or UserSource.LOCAL.value).lower()
        source = _LEGACY_SOURCES.get(raw_source)
        if source is None:
            source = UserSource(raw_source) if raw_source in {"local", "external"} else (
                UserSource.EXTERNAL
            )
        raw_scope = data.get("scope")
        stored_hash = data.get("passwordHash")
        return cls(
            username=str(data["username"]),
            role=Role(str(data.get("role") or Role.OPERATOR.value).lower()),
            password_hash=PasswordHash.from_document(stored_hash) if stored_hash else None,
            enabled=data.get("enabled") is not False,
            source=source,
            scope=Scope.model_validate(raw_scope) if isinstance(raw_scope, dict) else None,
            note=data.get("note"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )
