"""Data models for audit records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class AuditEvent:
    ts: str
    user: str
    role: str | None
    method: str
    path: str
    status: int
    ip: str
    user_agent: str | None
    duration_ms: int
    meta: dict[str, Any] | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "ts": self.ts,
            "user": self.user,
            "role": self.role,
            "method": self.method,
            "path": self.path,
            "status": self.status,
            "ip": self.ip,
            "userAgent": self.user_agent,
            "durationMs": self.duration_ms,
            "meta": self.meta,
        }


@dataclass(frozen=True)
class AuditFilters:
    user: str | None = None
    action: str | None = None
    contains: str | None = None

    def matches(self, record: dict[str, Any]) -> bool:
        if self.user and str(record.get("user") or "").lower() != self.user.lower():
            return False
        if self.action:
            meta = record.get("meta")
            action = meta.get("action") if isinstance(meta, dict) else None
            if action != self.action:
                return False
        if self.contains and self.contains not in str(record.get("path") or ""):
            return False
        return True
