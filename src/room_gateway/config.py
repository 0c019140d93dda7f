"""Configuration management for the room control gateway."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

_config_logger = logging.getLogger(__name__)

MIN_JWT_SECRET_LENGTH = 32


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8081, ge=1024, le=65535)
    http_allowed_origins: tuple[str, ...] = Field(default=())
    http_enable_cors: bool = Field(default=False)
    http_trust_forwarded_headers: bool = Field(default=False)


class AuthSettings(BaseModel):
    """Session token and credential settings.

    The bootstrap account authenticates only while it is absent from the
    user document and is always reported as an external (read-only) user.
    """

    jwt_secret: str | None = Field(default=None, repr=False)
    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = Field(default="HS256")
    token_ttl_seconds: int = Field(default=8 * 3600, ge=60, le=7 * 24 * 3600)
    cookie_name: str = Field(default="gateway_token", min_length=1)
    bcrypt_rounds: int = Field(default=12, ge=4, le=16)
    password_min_length: int = Field(default=6, ge=1, le=128)
    bootstrap_username: str | None = Field(default=None)
    bootstrap_password: str | None = Field(default=None, repr=False)
    bootstrap_role: Literal["viewer", "operator", "admin"] = Field(default="admin")


class StorageSettings(BaseModel):
    users_path: str = Field(default="./config/users-roles.json")
    record_state_path: str = Field(default="./data/record-state.json")


class RoomsSettings(BaseModel):
    public_path: str = Field(default="./config/salas.json")
    secrets_path: str = Field(default="./config/salas.secrets.json")
    cache_ttl_seconds: float = Field(default=30.0, ge=0.0, le=600.0)


class DeviceSettings(BaseModel):
    connect_timeout_seconds: float = Field(default=1.5, gt=0.0, le=30.0)
    request_timeout_seconds: float = Field(default=5.0, gt=0.0, le=60.0)
    idle_ttl_seconds: float = Field(default=30 * 60, gt=0.0)
    sweep_interval_seconds: float = Field(default=10 * 60, gt=0.0)


class RecordingSettings(BaseModel):
    poll_interval_seconds: float = Field(default=0.25, ge=0.0, le=5.0)
    poll_attempts: int = Field(default=40, ge=1, le=400)
    start_settle_seconds: float = Field(default=0.5, ge=0.0, le=5.0)
    status_retry_attempts: int = Field(default=6, ge=0, le=50)


class AuditSettings(BaseModel):
    enabled: bool = Field(default=True)
    directory: str = Field(default="./logs")
    max_bytes: int = Field(default=50 * 1024 * 1024, ge=1024)
    max_continuations: int = Field(default=20, ge=2, le=999)
    default_limit: int = Field(default=200, ge=1)
    max_limit: int = Field(default=500, ge=1)
    max_filter_length: int = Field(default=128, ge=1)


class SecuritySettings(BaseModel):
    rate_limit_per_ip: int = Field(default=600, ge=1, description="requests per minute")
    login_rate_limit_per_ip: int = Field(default=20, ge=1, description="logins per minute")
    max_body_size_bytes: int = Field(default=1024 * 1024, ge=1024)
    request_timeout_seconds: float = Field(default=30.0, ge=0.1)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    rooms: RoomsSettings = Field(default_factory=RoomsSettings)
    devices: DeviceSettings = Field(default_factory=DeviceSettings)
    recording: RecordingSettings = Field(default_factory=RecordingSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)


ENV_KEYS = {
    "host": "GATEWAY_HOST",
    "port": "GATEWAY_PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "jwt_secret": "GATEWAY_JWT_SECRET",
    "token_ttl": "GATEWAY_TOKEN_TTL_SECONDS",
    "cookie_name": "GATEWAY_COOKIE_NAME",
    "bootstrap_user": "GATEWAY_BOOTSTRAP_USER",
    "bootstrap_password": "GATEWAY_BOOTSTRAP_PASSWORD",
    "bootstrap_role": "GATEWAY_BOOTSTRAP_ROLE",
    "users_path": "USERS_PATH",
    "record_state_path": "RECORD_STATE_PATH",
    "rooms_public_path": "ROOMS_PUBLIC_PATH",
    "rooms_secrets_path": "ROOMS_SECRETS_PATH",
    "audit_dir": "AUDIT_DIR",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    """Resolve relative paths against the project root.

    Absolute paths are deployment choices and are kept as given; relative
    paths must stay inside the project root.
    """
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate.resolve())
    root = _project_root().resolve()
    resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _env_optional(key: str) -> str | None:
    value = os.getenv(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "http_allowed_origins": tuple(
                _split_csv_preserve_case(os.getenv("HTTP_ALLOWED_ORIGINS"))
            ),
            "http_enable_cors": _env_bool("HTTP_ENABLE_CORS", ServerSettings().http_enable_cors),
            "http_trust_forwarded_headers": _env_bool(
                "HTTP_TRUST_FORWARDED_HEADERS",
                ServerSettings().http_trust_forwarded_headers,
            ),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "auth": {
            "jwt_secret": _env_optional(ENV_KEYS["jwt_secret"]),
            "jwt_algorithm": os.getenv("GATEWAY_JWT_ALGORITHM", AuthSettings().jwt_algorithm),
            "token_ttl_seconds": _env_int(ENV_KEYS["token_ttl"], AuthSettings().token_ttl_seconds),
            "cookie_name": os.getenv(ENV_KEYS["cookie_name"], AuthSettings().cookie_name),
            "bcrypt_rounds": _env_int("GATEWAY_BCRYPT_ROUNDS", AuthSettings().bcrypt_rounds),
            "password_min_length": _env_int(
                "GATEWAY_PASSWORD_MIN_LENGTH", AuthSettings().password_min_length
            ),
            "bootstrap_username": _env_optional(ENV_KEYS["bootstrap_user"]),
            "bootstrap_password": _env_optional(ENV_KEYS["bootstrap_password"]),
            "bootstrap_role": os.getenv(ENV_KEYS["bootstrap_role"], AuthSettings().bootstrap_role),
        },
        "storage": {
            "users_path": _resolve_path(
                os.getenv(ENV_KEYS["users_path"], StorageSettings().users_path)
            ),
            "record_state_path": _resolve_path(
                os.getenv(ENV_KEYS["record_state_path"], StorageSettings().record_state_path)
            ),
        },
        "rooms": {
            "public_path": _resolve_path(
                os.getenv(ENV_KEYS["rooms_public_path"], RoomsSettings().public_path)
            ),
            "secrets_path": _resolve_path(
                os.getenv(ENV_KEYS["rooms_secrets_path"], RoomsSettings().secrets_path)
            ),
            "cache_ttl_seconds": _env_float(
                "ROOMS_CACHE_TTL_SECONDS", RoomsSettings().cache_ttl_seconds
            ),
        },
        "devices": {
            "connect_timeout_seconds": _env_float(
                "DEVICE_CONNECT_TIMEOUT_SECONDS", DeviceSettings().connect_timeout_seconds
            ),
            "request_timeout_seconds": _env_float(
                "DEVICE_REQUEST_TIMEOUT_SECONDS", DeviceSettings().request_timeout_seconds
            ),
            "idle_ttl_seconds": _env_float(
                "DEVICE_IDLE_TTL_SECONDS", DeviceSettings().idle_ttl_seconds
            ),
            "sweep_interval_seconds": _env_float(
                "DEVICE_SWEEP_INTERVAL_SECONDS", DeviceSettings().sweep_interval_seconds
            ),
        },
        "recording": {
            "poll_interval_seconds": _env_float(
                "RECORD_POLL_INTERVAL_SECONDS", RecordingSettings().poll_interval_seconds
            ),
            "poll_attempts": _env_int("RECORD_POLL_ATTEMPTS", RecordingSettings().poll_attempts),
            "start_settle_seconds": _env_float(
                "RECORD_START_SETTLE_SECONDS", RecordingSettings().start_settle_seconds
            ),
            "status_retry_attempts": _env_int(
                "RECORD_STATUS_RETRY_ATTEMPTS", RecordingSettings().status_retry_attempts
            ),
        },
        "audit": {
            "enabled": _env_bool("AUDIT_ENABLED", AuditSettings().enabled),
            "directory": _resolve_path(os.getenv(ENV_KEYS["audit_dir"], AuditSettings().directory)),
            "max_bytes": _env_int("AUDIT_MAX_BYTES", AuditSettings().max_bytes),
            "max_continuations": _env_int(
                "AUDIT_MAX_CONTINUATIONS", AuditSettings().max_continuations
            ),
        },
        "security": {
            "rate_limit_per_ip": _env_int(
                "RATE_LIMIT_PER_IP", SecuritySettings().rate_limit_per_ip
            ),
            "login_rate_limit_per_ip": _env_int(
                "LOGIN_RATE_LIMIT_PER_IP", SecuritySettings().login_rate_limit_per_ip
            ),
            "max_body_size_bytes": _env_int(
                "MAX_BODY_SIZE_BYTES", SecuritySettings().max_body_size_bytes
            ),
            "request_timeout_seconds": _env_float(
                "REQUEST_TIMEOUT_SECONDS", SecuritySettings().request_timeout_seconds
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.storage.users_path).parent.mkdir(parents=True, exist_ok=True)
    Path(settings.storage.record_state_path).parent.mkdir(parents=True, exist_ok=True)

    return settings


def require_jwt_secret(settings: Settings) -> str:
    """Return the signing secret or refuse to serve without a strong one."""
    secret = settings.auth.jwt_secret
    if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
        raise RuntimeError(
            f"{ENV_KEYS['jwt_secret']} must be set and at least "
            f"{MIN_JWT_SECRET_LENGTH} characters long"
        )
    return secret
