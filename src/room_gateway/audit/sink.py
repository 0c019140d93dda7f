"""Append-only JSON Lines audit log with daily files and size rotation.

Layout under the audit directory::

    audit-2024-05-01.jsonl      primary file for the day
    audit-2024-05-01_2.jsonl    first continuation once the primary is full
    ...
    audit-2024-05-01_20.jsonl   last continuation; kept growing once reached
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

from room_gateway.audit.models import AuditEvent, AuditFilters
from room_gateway.utils.masking import redact_sensitive_fields
from room_gateway.utils.time import utc_today

logger = logging.getLogger(__name__)

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FILE_RE = re.compile(r"^audit-(\d{4}-\d{2}-\d{2})(?:_\d+)?\.jsonl$")


class AuditSink:
    def __init__(
        self,
        directory: str | Path,
        *,
        max_bytes: int = 50 * 1024 * 1024,
        max_continuations: int = 20,
        max_limit: int = 500,
    ) -> None:
        self._directory = Path(directory)
        self._max_bytes = max_bytes
        self._max_continuations = max_continuations
        self._max_limit = max_limit
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def file_for(self, date: str, index: int = 1) -> Path:
        suffix = "" if index <= 1 else f"_{index}"
        return self._directory / f"audit-{date}{suffix}.jsonl"

    def _select_file(self, date: str) -> Path:
        for index in range(1, self._max_continuations + 1):
            candidate = self.file_for(date, index)
            try:
                size = candidate.stat().st_size
            except FileNotFoundError:
                return candidate
            if size < self._max_bytes:
                return candidate
        last = self.file_for(date, self._max_continuations)
        logger.warning(
            "All %d audit files for %s exceed %d bytes; appending to %s",
            self._max_continuations,
            date,
            self._max_bytes,
            last.name,
        )
        return last

    def _append_sync(self, line: str, date: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        target = self._select_file(date)
        with target.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    async def record(self, event: AuditEvent) -> None:
        """Append *event*; failures are logged and never raised."""
        try:
            record = event.to_record()
            if record["meta"]:
                record["meta"] = redact_sensitive_fields(record["meta"])
            line = json.dumps(record, ensure_ascii=False, default=str)
            date = event.ts[:10] if DATE_RE.match(event.ts[:10]) else utc_today()
            async with self._lock:
                await asyncio.to_thread(self._append_sync, line, date)
        except Exception:
            logger.exception("Failed to write audit event for %s %s", event.method, event.path)

    def _read_sync(self, date: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for index in range(1, self._max_continuations + 1):
            path = self.file_for(date, index)
            if not path.exists():
                if index == 1:
                    continue
                break
            with path.open("r", encoding="utf-8", errors="replace") as handle:
                for raw in handle:
                    raw = raw.strip()
                    if not raw:
                        continue
                    try:
                        parsed = json.loads(raw)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(parsed, dict):
                        records.append(parsed)
        return records

    async def query(
        self,
        date: str,
        limit: int,
        filters: AuditFilters | None = None,
    ) -> list[dict[str, Any]]:
        """Events for *date*, newest first, capped at the configured maximum."""
        if not DATE_RE.match(date or ""):
            raise ValueError(f"Invalid audit date: {date!r}")
        limit = max(1, min(int(limit), self._max_limit))
        filters = filters or AuditFilters()

        records = await asyncio.to_thread(self._read_sync, date)

        seen: set[str] = set()
        matched: list[dict[str, Any]] = []
        for record in records:
            fingerprint = json.dumps(record, sort_keys=True, ensure_ascii=False, default=str)
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            if filters.matches(record):
                matched.append(record)

        matched.reverse()
        return matched[:limit]

    def _dates_sync(self, max_dates: int) -> list[str]:
        if not self._directory.is_dir():
            return []
        dates = {
            match.group(1)
            for path in self._directory.iterdir()
            if (match := _FILE_RE.match(path.name))
        }
        return sorted(dates, reverse=True)[:max_dates]

    async def list_dates(self, max_dates: int = 30) -> list[str]:
        return await asyncio.to_thread(self._dates_sync, max_dates)
