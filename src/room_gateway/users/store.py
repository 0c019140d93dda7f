"""Credential store backed by a single JSON document.

The document has the shape ``{"users": [...]}`` and is rewritten atomically
on every change. Reads never take the lock (``os.replace`` guarantees a whole
document); read-modify-write cycles are serialized by an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from room_gateway.errors import (
    DuplicateUser,
    ErrorKind,
    ExternalUserImmutable,
    GatewayError,
    UserNotFound,
    validation_error,
)
from room_gateway.users.hashing import hash_password, needs_upgrade, verify_password
from room_gateway.users.models import Role, Scope, User, UserSource
from room_gateway.utils.files import read_json, write_json_atomic
from room_gateway.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 32
NOTE_MAX_LENGTH = 256

_UPDATABLE_FIELDS = frozenset({"password", "role", "enabled", "note", "scope"})


@dataclass(frozen=True)
class BootstrapAccount:
    """Environment-defined account used to reach a freshly deployed gateway."""

    username: str
    password: str = field(repr=False)
    role: Role = Role.ADMIN

    def as_user(self) -> User:
        return User(
            username=self.username,
            role=self.role,
            source=UserSource.EXTERNAL,
            note="bootstrap account",
        )


def validate_username(username: Any) -> str:
    if not isinstance(username, str):
        raise validation_error("username is required", field="username")
    cleaned = username.strip()
    if not (USERNAME_MIN_LENGTH <= len(cleaned) <= USERNAME_MAX_LENGTH):
        raise validation_error(
            f"username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters",
            field="username",
        )
    if not USERNAME_RE.match(cleaned):
        raise validation_error(
            "username may only contain letters, digits, '.', '_' and '-'",
            field="username",
        )
    return cleaned


def _coerce_role(value: Any) -> Role:
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(role.value for role in Role)
        raise validation_error(f"role must be one of: {allowed}", field="role") from None


def _coerce_scope(value: Any) -> Scope | None:
    if value is None:
        return None
    if isinstance(value, Scope):
        return value
    try:
        return Scope.model_validate(value)
    except ValidationError as exc:
        raise validation_error(f"invalid scope: {exc.errors()[0]['msg']}", field="scope") from exc


def _coerce_note(value: Any) -> str | None:
    if value is None:
        return None
    note = str(value).strip()
    if len(note) > NOTE_MAX_LENGTH:
        raise validation_error(
            f"note must be at most {NOTE_MAX_LENGTH} characters", field="note"
        )
    return note or None


class CredentialStore:
    def __init__(
        self,
        path: str | Path,
        *,
        bcrypt_rounds: int = 12,
        password_min_length: int = 6,
        bootstrap: BootstrapAccount | None = None,
    ) -> None:
        self._path = Path(path)
        self._bcrypt_rounds = bcrypt_rounds
        self._password_min_length = password_min_length
        self._bootstrap = bootstrap
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def _read_document_sync(self) -> list[User]:
        if not self._path.exists():
            return []
        try:
            document = read_json(self._path)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to read user store %s: %s", self._path, exc)
            raise GatewayError(ErrorKind.INTERNAL_ERROR, "User store is unreadable") from exc

        raw_users = document.get("users") if isinstance(document, dict) else None
        if not isinstance(raw_users, list):
            logger.error("User store %s has no 'users' list", self._path)
            raise GatewayError(ErrorKind.INTERNAL_ERROR, "User store is malformed")

        users: list[User] = []
        for entry in raw_users:
            if not isinstance(entry, dict) or not entry.get("username"):
                logger.warning("Skipping malformed user entry in %s", self._path)
                continue
            try:
                users.append(User.from_document(entry))
            except (ValueError, ValidationError) as exc:
                logger.warning(
                    "Skipping user entry %r in %s: %s", entry.get("username"), self._path, exc
                )
        return users

    async def _load(self) -> list[User]:
        return await asyncio.to_thread(self._read_document_sync)

    async def _save(self, users: list[User]) -> None:
        document = {"users": [user.to_document() for user in users]}
        await asyncio.to_thread(write_json_atomic, self._path, document)

    def _validate_password(self, password: Any) -> str:
        if not isinstance(password, str) or len(password) < self._password_min_length:
            raise validation_error(
                f"password must be at least {self._password_min_length} characters",
                field="password",
            )
        return password

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_users(self) -> list[User]:
        users = await self._load()
        if self._bootstrap and not any(u.username == self._bootstrap.username for u in users):
            users.append(self._bootstrap.as_user())
        return sorted(users, key=lambda user: user.username.lower())

    async def resolve(self, username: str) -> User | None:
        """Return the user record (without touching its hash) or ``None``."""
        if not username:
            return None
        for user in await self._load():
            if user.username == username:
                return user
        if self._bootstrap and self._bootstrap.username == username:
            return self._bootstrap.as_user()
        return None

    async def verify(self, username: str, plaintext: str) -> bool:
        """Check a password; unknown or disabled users simply fail.

        A match against a legacy hash rewrites the record with a bcrypt hash
        before returning. Failure to persist the upgrade is logged and does
        not fail the login.
        """
        if not username or not isinstance(plaintext, str):
            return False

        user = None
        for candidate in await self._load():
            if candidate.username == username:
                user = candidate
                break

        if user is None:
            if self._bootstrap and self._bootstrap.username == username:
                return hmac.compare_digest(
                    plaintext.encode("utf-8"), self._bootstrap.password.encode("utf-8")
                )
            return False

        if not user.enabled or user.password_hash is None:
            return False

        if not await verify_password(plaintext, user.password_hash):
            return False

        if needs_upgrade(user.password_hash):
            try:
                await self._upgrade_hash(username, plaintext)
            except Exception:
                logger.exception("Failed to persist password hash upgrade for %s", username)
        return True

    async def _upgrade_hash(self, username: str, plaintext: str) -> None:
        new_hash = await hash_password(plaintext, self._bcrypt_rounds)
        async with self._lock:
            users = await self._load()
            for user in users:
                if user.username == username and user.password_hash and needs_upgrade(
                    user.password_hash
                ):
                    user.password_hash = new_hash
                    user.updated_at = utc_now_iso()
                    await self._save(users)
                    logger.info("Upgraded legacy password hash for %s", username)
                    return

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        username: Any,
        password: Any,
        role: Any,
        *,
        note: Any = None,
        scope: Any = None,
    ) -> User:
        name = validate_username(username)
        secret = self._validate_password(password)
        resolved_role = _coerce_role(role)
        resolved_scope = _coerce_scope(scope)
        resolved_note = _coerce_note(note)

        if await self.resolve(name) is not None:
            raise DuplicateUser(name)

        password_hash = await hash_password(secret, self._bcrypt_rounds)
        now = utc_now_iso()
        user = User(
            username=name,
            role=resolved_role,
            password_hash=password_hash,
            scope=resolved_scope,
            note=resolved_note,
            created_at=now,
            updated_at=now,
        )

        async with self._lock:
            users = await self._load()
            if any(existing.username == name for existing in users) or (
                self._bootstrap and self._bootstrap.username == name
            ):
                raise DuplicateUser(name)
            users.append(user)
            await self._save(users)

        logger.info("Created user %s with role %s", name, resolved_role.value)
        return user

    async def update(self, username: str, changes: Mapping[str, Any]) -> User:
        """Apply a partial update; keys absent from *changes* are left unchanged."""
        current = await self.resolve(username)
        if current is None:
            raise UserNotFound(username)
        if current.is_external:
            raise ExternalUserImmutable(username)

        applied = {key: value for key, value in changes.items() if key in _UPDATABLE_FIELDS}
        new_role = _coerce_role(applied["role"]) if "role" in applied else None
        new_scope = _coerce_scope(applied["scope"]) if "scope" in applied else None
        new_note = _coerce_note(applied["note"]) if "note" in applied else None
        if "enabled" in applied and not isinstance(applied["enabled"], bool):
            raise validation_error("enabled must be a boolean", field="enabled")
        new_hash = None
        if applied.get("password") is not None:
            new_hash = await hash_password(
                self._validate_password(applied["password"]), self._bcrypt_rounds
            )

        async with self._lock:
            users = await self._load()
            target = next((user for user in users if user.username == username), None)
            if target is None:
                raise UserNotFound(username)
            if target.is_external:
                raise ExternalUserImmutable(username)

            if new_role is not None:
                target.role = new_role
            if "scope" in applied:
                target.scope = new_scope
            if "note" in applied:
                target.note = new_note
            if "enabled" in applied:
                target.enabled = applied["enabled"]
            if new_hash is not None:
                target.password_hash = new_hash
            target.updated_at = utc_now_iso()
            await self._save(users)

        logger.info("Updated user %s (fields: %s)", username, ", ".join(sorted(applied)) or "none")
        return target

    async def delete(self, username: str) -> None:
        async with self._lock:
            users = await self._load()
            target = next((user for user in users if user.username == username), None)
            if target is None:
                if self._bootstrap and self._bootstrap.username == username:
                    raise ExternalUserImmutable(username)
                raise UserNotFound(username)
            if target.is_external:
                raise ExternalUserImmutable(username)
            await self._save([user for user in users if user.username != username])

        logger.info("Deleted user %s", username)
