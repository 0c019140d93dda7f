"""End-to-end tests for the gateway HTTP application."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from conftest import BOOTSTRAP_PASSWORD, BOOTSTRAP_USER
from room_gateway.app import build_app_context
from room_gateway.transport.http_server import create_http_app

ROOM1_ENDPOINT = "ws://10.0.0.11:4455"


@pytest.fixture
def context(gateway_settings, fleet):
    return build_app_context(gateway_settings, client_factory=fleet)


@pytest.fixture
def client(context):
    with TestClient(create_http_app(context)) as test_client:
        yield test_client


def _login(client: TestClient, username: str, password: str) -> dict[str, str]:
    response = client.post("/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin(client) -> dict[str, str]:
    return _login(client, BOOTSTRAP_USER, BOOTSTRAP_PASSWORD)


def _create_user(client, admin, username, role, scope=None) -> dict[str, str]:
    response = client.post(
        "/admin/users",
        json={"username": username, "password": "secret-pass", "role": role, "scope": scope},
        headers=admin,
    )
    assert response.status_code == 201, response.text
    return _login(client, username, "secret-pass")


class TestHealthAndErrors:
    def test_health(self, client) -> None:
        response = client.get("/health")
        body = response.json()
        assert response.status_code == 200
        assert body["ok"] is True
        assert body["status"] == "healthy"
        assert body["pool"] == {"connections": 0}

    def test_unknown_path(self, client) -> None:
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
        assert response.json()["path"] == "/nowhere"

    def test_trace_id_is_echoed(self, client) -> None:
        response = client.get("/rooms", headers={"x-request-id": "trace-42"})
        assert response.headers["x-request-id"] == "trace-42"
        assert response.json()["traceId"] == "trace-42"


class TestSession:
    def test_login_sets_cookie_and_returns_token(self, client) -> None:
        response = client.post(
            "/login", json={"username": BOOTSTRAP_USER, "password": BOOTSTRAP_PASSWORD}
        )
        body = response.json()
        assert body["ok"] is True
        assert body["role"] == "admin"
        assert body["user"] == BOOTSTRAP_USER
        assert "gateway_token" in response.headers["set-cookie"]
        assert "httponly" in response.headers["set-cookie"].lower()

        session = client.get("/session")
        assert session.json() == {"ok": True, "user": BOOTSTRAP_USER, "role": "admin"}

    def test_login_accepts_short_field_names(self, client) -> None:
        response = client.post("/login", json={"user": BOOTSTRAP_USER, "pass": BOOTSTRAP_PASSWORD})
        assert response.status_code == 200

    def test_bad_password(self, client) -> None:
        response = client.post("/login", json={"username": BOOTSTRAP_USER, "password": "nope"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_DENIED"

    def test_missing_fields(self, client) -> None:
        response = client.post("/login", json={"username": BOOTSTRAP_USER})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_malformed_body(self, client) -> None:
        response = client.post(
            "/login", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400

    def test_me(self, client, admin) -> None:
        body = client.get("/me", headers=admin).json()
        assert body == {"ok": True, "user": BOOTSTRAP_USER, "role": "admin", "scope": None}

    def test_requires_token(self, client) -> None:
        for path in ("/session", "/me", "/rooms"):
            response = client.get(path)
            assert response.status_code == 401
            assert response.json()["code"] == "AUTH_DENIED"

    def test_garbage_token(self, client) -> None:
        response = client.get("/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_deleted_user_token_stops_working(self, client, admin) -> None:
        ana = _create_user(client, admin, "ana", "operator")
        assert client.get("/me", headers=ana).status_code == 200

        assert client.delete("/admin/users/ana", headers=admin).status_code == 200

        response = client.get("/me", headers=ana)
        assert response.status_code == 401


class TestRooms:
    def test_list_rooms_for_admin(self, client, admin) -> None:
        body = client.get("/rooms", headers=admin).json()
        ids = [room["id"] for room in body["salas"]]
        assert ids == ["siteA/closed", "siteA/room1", "siteA/room2", "siteB/room9"]
        assert "room1-secret" not in json.dumps(body)
        assert "rtsp" not in body["salas"][1]
        assert body["counts"]["totalSedes"] == 2

    def test_list_rooms_filtered_by_scope(self, client, admin) -> None:
        bob = _create_user(client, admin, "bob", "operator", {"sedes": ["siteB"]})
        body = client.get("/rooms", headers=bob).json()
        assert [room["id"] for room in body["salas"]] == ["siteB/room9"]

    def test_full_list_requires_admin(self, client, admin) -> None:
        viewer = _create_user(client, admin, "vic", "viewer")
        denied = client.get("/rooms/full", headers=viewer)
        assert denied.status_code == 403
        assert denied.json()["code"] == "ROLE_DENIED"

        full = client.get("/rooms/full", headers=admin).json()
        assert "room1-secret" in json.dumps(full)

    def test_reload(self, client, admin) -> None:
        response = client.post("/admin/rooms/reload", headers=admin)
        assert response.status_code == 200
        assert response.json()["counts"]["totalSalas"] >= 3

    def test_malformed_config_is_500(self, client, admin, context, gateway_settings) -> None:
        Path(gateway_settings.rooms.public_path).write_text("{not json", encoding="utf-8")
        context.rooms.invalidate()

        listing = client.get("/rooms", headers=admin)
        action = client.get("/rooms/siteA/room1/record/status", headers=admin)

        for response in (listing, action):
            assert response.status_code == 500
            body = response.json()
            assert body["ok"] is False
            assert body["code"] == "CONFIG_LOAD_FAILED"
            assert body["traceId"] == response.headers["x-request-id"]

    def test_full_list_rechecks_stored_role(self, client, admin) -> None:
        other = _create_user(client, admin, "admin2", "admin")
        assert client.get("/rooms/full", headers=other).status_code == 200

        client.put("/admin/users/admin2", json={"role": "viewer"}, headers=admin)

        response = client.get("/rooms/full", headers=other)
        assert response.status_code == 403
        assert response.json()["code"] == "ROLE_DENIED"


class TestRoomActions:
    def test_record_start_is_idempotent(self, client, admin, fleet) -> None:
        first = client.get("/rooms/siteA/room1/record/start", headers=admin)
        second = client.get("/rooms/siteA/room1/record/start", headers=admin)

        assert first.status_code == 200
        assert first.json()["started"] is True
        assert second.json()["already"] is True
        assert second.json()["op"]["state"] == "active"
        assert fleet.device(ROOM1_ENDPOINT).count("StartRecord") == 1
        assert fleet.clients[0].target.password == "room1-secret"

    def test_record_stop_when_idle(self, client, admin) -> None:
        body = client.post("/rooms/siteA/room1/record/stop", headers=admin).json()
        assert body["already"] is True
        assert body["outputPath"] is None

    def test_scope_denied_before_device_contact(self, client, admin, fleet) -> None:
        bob = _create_user(client, admin, "bob", "operator", {"sedes": ["siteB"]})

        response = client.get("/rooms/siteA/room1/record/start", headers=bob)

        assert response.status_code == 403
        assert response.json()["code"] == "SCOPE_DENIED"
        assert fleet.clients == []

    def test_scope_denied_for_unknown_room(self, client, admin) -> None:
        bob = _create_user(client, admin, "bob", "operator", {"sedes": ["siteB"]})
        response = client.get("/rooms/siteA/ghost/status", headers=bob)
        assert response.json()["code"] == "SCOPE_DENIED"

    def test_room_not_configured(self, client, admin, fleet) -> None:
        for path in ("/rooms/siteA/ghost/status", "/rooms/siteA/closed/status"):
            response = client.get(path, headers=admin)
            assert response.status_code == 404
            assert response.json()["code"] == "ROOM_NOT_CONFIGURED"
        assert fleet.clients == []

    def test_unknown_action(self, client, admin) -> None:
        response = client.get("/rooms/siteA/room1/teleport", headers=admin)
        assert response.status_code == 404
        assert response.json()["code"] == "ROUTE_NOT_IMPLEMENTED"

    def test_unauthenticated_action(self, client, fleet) -> None:
        response = client.get("/rooms/siteA/room1/status")
        assert response.status_code == 401
        assert fleet.clients == []

    def test_viewer_can_read_status(self, client, admin) -> None:
        viewer = _create_user(client, admin, "vic", "viewer")
        response = client.get("/rooms/siteA/room1/status", headers=viewer)
        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "sede": "siteA",
            "sala": "room1",
            "status": {"outputActive": False},
        }

    def test_scene_set_reads_json_body(self, client, admin, fleet) -> None:
        response = client.post(
            "/rooms/siteA/room1/scene/set", json={"sceneName": "Slides"}, headers=admin
        )
        assert response.status_code == 200
        assert fleet.device(ROOM1_ENDPOINT).current_scene == "Slides"

    def test_volume_from_query_string(self, client, admin, fleet) -> None:
        response = client.get(
            "/rooms/siteA/room1/audio/volume/set",
            params={"inputName": "Mic", "db": "-6"},
            headers=admin,
        )
        assert response.status_code == 200
        assert fleet.device(ROOM1_ENDPOINT).inputs["Mic"]["volumeDb"] == -6.0

    def test_device_error_is_502(self, client, admin) -> None:
        response = client.post(
            "/rooms/siteA/room1/scene/set", json={"sceneName": "Nope"}, headers=admin
        )
        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "DEVICE_ERROR"
        assert body["deviceCode"] == 600


class TestAdminUsers:
    def test_crud_flow(self, client, admin, gateway_settings) -> None:
        created = client.post(
            "/admin/users",
            json={"username": "ana", "password": "secret-pass", "role": "viewer", "note": "n"},
            headers=admin,
        )
        assert created.status_code == 201
        assert "passwordHash" not in created.json()["user"]

        duplicate = client.post(
            "/admin/users",
            json={"username": "ana", "password": "secret-pass", "role": "viewer"},
            headers=admin,
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "DUPLICATE_USER"

        updated = client.put("/admin/users/ana", json={"role": "operator"}, headers=admin)
        assert updated.json()["user"]["role"] == "operator"

        listed = client.get("/admin/users", headers=admin).json()["users"]
        assert [user["username"] for user in listed] == ["ana", BOOTSTRAP_USER]

        assert client.delete("/admin/users/ana", headers=admin).json() == {
            "ok": True,
            "deleted": "ana",
        }
        missing = client.delete("/admin/users/ana", headers=admin)
        assert missing.status_code == 404

        with open(gateway_settings.storage.users_path, encoding="utf-8") as handle:
            assert json.load(handle) == {"users": []}

    def test_invalid_role(self, client, admin) -> None:
        response = client.post(
            "/admin/users",
            json={"username": "ana", "password": "secret-pass", "role": "root"},
            headers=admin,
        )
        assert response.status_code == 400
        assert response.json()["field"] == "role"

    def test_non_admin_is_denied(self, client, admin) -> None:
        viewer = _create_user(client, admin, "vic", "viewer")
        response = client.get("/admin/users", headers=viewer)
        assert response.status_code == 403
        assert response.json()["code"] == "ROLE_DENIED"

    def test_cannot_delete_self(self, client, admin) -> None:
        response = client.delete(f"/admin/users/{BOOTSTRAP_USER}", headers=admin)
        assert response.status_code == 400

    def test_external_user_is_immutable(self, client, admin, gateway_settings) -> None:
        other = _create_user(client, admin, "admin2", "admin")
        with open(gateway_settings.storage.users_path, encoding="utf-8") as handle:
            before = handle.read()

        deleted = client.delete(f"/admin/users/{BOOTSTRAP_USER}", headers=other)
        updated = client.put(
            f"/admin/users/{BOOTSTRAP_USER}", json={"role": "viewer"}, headers=other
        )

        assert deleted.status_code == 403
        assert deleted.json()["code"] == "EXTERNAL_USER_IMMUTABLE"
        assert updated.json()["code"] == "EXTERNAL_USER_IMMUTABLE"
        with open(gateway_settings.storage.users_path, encoding="utf-8") as handle:
            assert handle.read() == before

    def test_disabled_user_cannot_log_in(self, client, admin) -> None:
        _create_user(client, admin, "ana", "operator")
        client.put("/admin/users/ana", json={"enabled": False}, headers=admin)

        response = client.post("/login", json={"username": "ana", "password": "secret-pass"})
        assert response.status_code == 401

    def test_disabled_admin_token_is_rejected(self, client, admin) -> None:
        boss = _create_user(client, admin, "boss", "admin")
        disabled = client.put("/admin/users/boss", json={"enabled": False}, headers=admin)
        assert disabled.status_code == 200

        response = client.post(
            "/admin/users",
            json={"username": "mallory", "password": "secret-pass", "role": "admin"},
            headers=boss,
        )

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_DENIED"
        listing = client.get("/admin/users", headers=admin).json()
        usernames = [user["username"] for user in listing["users"]]
        assert "mallory" not in usernames

    def test_demoted_admin_token_is_denied(self, client, admin) -> None:
        boss = _create_user(client, admin, "boss", "admin")
        client.put("/admin/users/boss", json={"role": "viewer"}, headers=admin)

        response = client.get("/admin/users", headers=boss)

        assert response.status_code == 403
        assert response.json()["code"] == "ROLE_DENIED"


class TestAudit:
    def test_events_are_recorded(self, client, admin) -> None:
        client.get("/rooms/siteA/room1/status", headers=admin)

        body = client.get("/admin/audit", headers=admin).json()

        assert body["ok"] is True
        actions = [(event.get("meta") or {}).get("action") for event in body["events"]]
        assert "status" in actions
        assert "login" in actions
        assert body["count"] == len(body["events"])
        assert body["date"] in body["availableDates"]
        assert all(event["path"] != "/admin/audit" for event in body["events"])

    def test_filter_by_action(self, client, admin) -> None:
        client.get("/rooms/siteA/room1/status", headers=admin)
        body = client.get("/admin/audit", params={"action": "login"}, headers=admin).json()
        assert body["events"]
        assert {event["meta"]["action"] for event in body["events"]} == {"login"}

    @pytest.mark.parametrize(
        "params",
        [{"date": "2024-13"}, {"date": "../../etc"}, {"limit": "many"}, {"user": "x" * 500}],
    )
    def test_invalid_query(self, client, admin, params) -> None:
        response = client.get("/admin/audit", params=params, headers=admin)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_login_password_never_written(self, client, admin, gateway_settings) -> None:
        client.post(
            "/admin/users",
            json={"username": "ana", "password": "super-secret-value", "role": "viewer"},
            headers=admin,
        )
        audit_dir = Path(gateway_settings.audit.directory)
        contents = "".join(path.read_text(encoding="utf-8") for path in audit_dir.glob("*.jsonl"))
        assert "super-secret-value" not in contents
        assert BOOTSTRAP_PASSWORD not in contents
