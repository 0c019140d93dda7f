"""Application context assembly."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from functools import lru_cache

from room_gateway.audit.sink import AuditSink
from room_gateway.auth.gate import AuthorizationGate
from room_gateway.auth.tokens import TokenIssuer
from room_gateway.config import Settings, load_settings, require_jwt_secret
from room_gateway.devices.client import ClientFactory
from room_gateway.devices.obs import obs_client_factory
from room_gateway.devices.operations import DeviceOperations
from room_gateway.devices.pool import DeviceConnectionPool
from room_gateway.recording.controller import RecordingController
from room_gateway.recording.state import RecordStateRegistry
from room_gateway.rooms.resolver import RoomConfigResolver
from room_gateway.users.models import Role
from room_gateway.users.store import BootstrapAccount, CredentialStore


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built once per process; the HTTP app reads every collaborator from here.
    """

    settings: Settings
    users: CredentialStore
    rooms: RoomConfigResolver
    tokens: TokenIssuer
    gate: AuthorizationGate
    pool: DeviceConnectionPool
    devices: DeviceOperations
    recording: RecordingController
    audit: AuditSink | None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at


def _bootstrap_account(settings: Settings) -> BootstrapAccount | None:
    auth = settings.auth
    if not auth.bootstrap_username or not auth.bootstrap_password:
        return None
    return BootstrapAccount(
        username=auth.bootstrap_username,
        password=auth.bootstrap_password,
        role=Role(auth.bootstrap_role),
    )


def build_app_context(
    settings: Settings,
    client_factory: ClientFactory | None = None,
) -> AppContext:
    """Wire every collaborator from *settings*.

    *client_factory* replaces the OBS client factory (tests pass a fake).
    """
    secret = require_jwt_secret(settings)

    users = CredentialStore(
        settings.storage.users_path,
        bcrypt_rounds=settings.auth.bcrypt_rounds,
        password_min_length=settings.auth.password_min_length,
        bootstrap=_bootstrap_account(settings),
    )
    rooms = RoomConfigResolver(
        settings.rooms.public_path,
        settings.rooms.secrets_path,
        cache_ttl_seconds=settings.rooms.cache_ttl_seconds,
    )
    tokens = TokenIssuer(
        secret,
        algorithm=settings.auth.jwt_algorithm,
        ttl_seconds=settings.auth.token_ttl_seconds,
    )
    gate = AuthorizationGate(tokens, settings.auth.cookie_name)

    pool = DeviceConnectionPool(
        client_factory or obs_client_factory(settings.devices.request_timeout_seconds),
        connect_timeout=settings.devices.connect_timeout_seconds,
        idle_ttl=settings.devices.idle_ttl_seconds,
        sweep_interval=settings.devices.sweep_interval_seconds,
    )
    registry = RecordStateRegistry(settings.storage.record_state_path)
    recording = RecordingController(
        pool,
        registry,
        poll_interval=settings.recording.poll_interval_seconds,
        poll_attempts=settings.recording.poll_attempts,
        start_settle=settings.recording.start_settle_seconds,
        status_retry_attempts=settings.recording.status_retry_attempts,
    )

    audit = None
    if settings.audit.enabled:
        audit = AuditSink(
            settings.audit.directory,
            max_bytes=settings.audit.max_bytes,
            max_continuations=settings.audit.max_continuations,
            max_limit=settings.audit.max_limit,
        )

    return AppContext(
        settings=settings,
        users=users,
        rooms=rooms,
        tokens=tokens,
        gate=gate,
        pool=pool,
        devices=DeviceOperations(pool),
        recording=recording,
        audit=audit,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())
