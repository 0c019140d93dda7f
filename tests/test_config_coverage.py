from __future__ import annotations

import pytest

from room_gateway import config


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(config, "load_dotenv", lambda **_: None)
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


def test_split_csv_preserve_case() -> None:
    values = config._split_csv_preserve_case(" A, B ,,C ")
    assert values == ["A", "B", "C"]


def test_resolve_path_keeps_absolute_paths(tmp_path) -> None:
    absolute = str((tmp_path / "users.json").resolve())
    assert config._resolve_path(absolute) == absolute


def test_resolve_path_relative_traversal_rejected() -> None:
    with pytest.raises(ValueError, match="Path traversal detected"):
        config._resolve_path("../../outside.json")


def test_resolve_path_relative_is_anchored_at_project_root() -> None:
    root = config._project_root().resolve()
    assert config._resolve_path("config/salas.json") == str(root / "config" / "salas.json")


def test_env_int_uses_default_for_blank(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VALUE", "")
    assert config._env_int("TEST_INT_VALUE", 7) == 7


def test_env_int_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_INVALID", "not_a_number")
    assert config._env_int("TEST_INT_INVALID", 42) == 42


def test_env_float_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_FLOAT_INVALID", "not_a_float")
    assert config._env_float("TEST_FLOAT_INVALID", 2.5) == 2.5


def test_env_bool_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_BOOL_TRUE", "Yes")
    monkeypatch.setenv("TEST_BOOL_FALSE", "off")
    assert config._env_bool("TEST_BOOL_TRUE", False) is True
    assert config._env_bool("TEST_BOOL_FALSE", True) is False
    assert config._env_bool("TEST_BOOL_MISSING", True) is True


def test_load_settings_reads_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("GATEWAY_PORT", "9090")
    monkeypatch.setenv("GATEWAY_JWT_SECRET", "x" * 40)
    monkeypatch.setenv("GATEWAY_BOOTSTRAP_USER", "admin")
    monkeypatch.setenv("USERS_PATH", str(tmp_path / "store" / "users.json"))
    monkeypatch.setenv("RECORD_STATE_PATH", str(tmp_path / "state" / "record.json"))
    monkeypatch.setenv("AUDIT_DIR", str(tmp_path / "audit"))
    monkeypatch.setenv("HTTP_ALLOWED_ORIGINS", "https://a.example, https://b.example")

    settings = config.load_settings()

    assert settings.server.port == 9090
    assert settings.auth.jwt_secret == "x" * 40
    assert settings.auth.bootstrap_username == "admin"
    assert settings.server.http_allowed_origins == ("https://a.example", "https://b.example")
    assert (tmp_path / "store").is_dir()
    assert (tmp_path / "state").is_dir()
    assert config.load_settings() is settings


def test_load_settings_raises_runtime_error_on_validation(
    monkeypatch: pytest.MonkeyPatch, tmp_path
) -> None:
    monkeypatch.setenv("USERS_PATH", str(tmp_path / "users.json"))
    monkeypatch.setenv("RECORD_STATE_PATH", str(tmp_path / "record.json"))
    # Port below the allowed minimum.
    monkeypatch.setenv("GATEWAY_PORT", "80")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


def test_require_jwt_secret_rejects_short_secret() -> None:
    settings = config.Settings(auth=config.AuthSettings(jwt_secret="short"))
    with pytest.raises(RuntimeError, match="GATEWAY_JWT_SECRET"):
        config.require_jwt_secret(settings)


def test_require_jwt_secret_rejects_missing_secret() -> None:
    with pytest.raises(RuntimeError):
        config.require_jwt_secret(config.Settings())


def test_require_jwt_secret_returns_secret() -> None:
    secret = "s" * config.MIN_JWT_SECRET_LENGTH
    settings = config.Settings(auth=config.AuthSettings(jwt_secret=secret))
    assert config.require_jwt_secret(settings) == secret


def test_settings_repr_hides_secrets() -> None:
    settings = config.AuthSettings(jwt_secret="super-secret-value", bootstrap_password="pw123456")
    rendered = repr(settings)
    assert "super-secret-value" not in rendered
    assert "pw123456" not in rendered
