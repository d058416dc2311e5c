from __future__ import annotations

import sqlite3
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from portal.config import PortalSettings
from portal.database import Database, hash_password
from portal.enrichment import BattleMetricsClient
from portal.models import Role
from portal.service import SESSION_COOKIE_NAME, create_app

PASSWORD = "correct-horse-battery"


def _battlemetrics(request: httpx.Request) -> httpx.Response:
    external_id = request.url.path.rsplit("/", 1)[-1]
    if external_id == "1001":
        return httpx.Response(
            200,
            json={
                "data": {
                    "attributes": {
                        "name": "Moose Main",
                        "players": 12,
                        "maxPlayers": 200,
                        "status": "online",
                        "ip": "203.0.113.7",
                        "port": 28015,
                        "details": {"mode": "vanilla", "region": "eu", "map": "Procedural Map"},
                    }
                }
            },
        )
    return httpx.Response(503, text="maintenance")


@pytest.fixture()
def settings(tmp_path: Path) -> PortalSettings:
    return PortalSettings(
        database_path=tmp_path / "portal.sqlite3",
        secure_cookies=False,
        battlemetrics_api_key="test-key",
    )


@pytest.fixture()
def app(database: Database, settings: PortalSettings):
    enrichment = BattleMetricsClient.from_settings(
        settings, transport=httpx.MockTransport(_battlemetrics)
    )
    return create_app(database=database, settings=settings, enrichment=enrichment)


@pytest.fixture()
def accounts(database: Database):
    hashed = hash_password(PASSWORD)
    return {
        role: database.insert_account(role.value, hashed, role)
        for role in (Role.OWNER, Role.ADMIN, Role.STAFF)
    }


def _client_for(app, role: Role | None = None) -> TestClient:
    client = TestClient(app)
    if role is not None:
        response = client.post("/api/login", json={"username": role.value, "password": PASSWORD})
        assert response.status_code == 200, response.text
    return client


def _assert_failure(response: httpx.Response, status_code: int, kind: str) -> dict:
    assert response.status_code == status_code, response.text
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == kind
    assert body["message"]
    return body


def test_healthcheck(app) -> None:
    response = TestClient(app).get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_login_issues_hardened_session_cookie(app, accounts) -> None:
    client = TestClient(app)

    response = client.post("/api/login", json={"username": "admin", "password": PASSWORD})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "data": {"id": accounts[Role.ADMIN].id, "username": "admin", "role": "admin"},
    }
    cookie = response.headers["set-cookie"].lower()
    assert cookie.startswith(f"{SESSION_COOKIE_NAME}=")
    assert "httponly" in cookie
    assert "samesite=lax" in cookie
    assert "max-age=28800" in cookie
    assert "secure" not in cookie


def test_secure_flag_is_set_by_default(database: Database, tmp_path: Path, accounts) -> None:
    app = create_app(
        database=database,
        settings=PortalSettings(database_path=tmp_path / "portal.sqlite3"),
    )

    response = TestClient(app).post("/api/login", json={"username": "staff", "password": PASSWORD})

    assert response.status_code == 200
    assert "secure" in response.headers["set-cookie"].lower()


def test_login_failures_are_generic(app, accounts) -> None:
    client = TestClient(app)

    unknown = client.post("/api/login", json={"username": "nobody", "password": PASSWORD})
    wrong = client.post("/api/login", json={"username": "admin", "password": "nope"})

    first = _assert_failure(unknown, 401, "Unauthorized")
    second = _assert_failure(wrong, 401, "Unauthorized")
    assert first["message"] == second["message"] == "Invalid credentials. Please try again."
    assert SESSION_COOKIE_NAME not in client.cookies


@pytest.mark.parametrize(
    "payload",
    [{}, {"username": "admin"}, {"password": PASSWORD}, {"username": "admin", "password": 123}],
)
def test_login_input_errors_are_validation_errors(app, accounts, payload) -> None:
    response = TestClient(app).post("/api/login", json=payload)
    _assert_failure(response, 422, "ValidationError")


def test_login_regenerates_session_token(app, accounts) -> None:
    client = _client_for(app, Role.ADMIN)
    first_token = client.cookies.get(SESSION_COOKIE_NAME)

    client.post("/api/login", json={"username": "admin", "password": PASSWORD})
    second_token = client.cookies.get(SESSION_COOKIE_NAME)

    assert first_token and second_token and first_token != second_token
    stale = TestClient(app).get(
        "/api/auth/check", headers={"Cookie": f"{SESSION_COOKIE_NAME}={first_token}"}
    )
    assert stale.json()["data"] == {"authenticated": False}


def test_auth_check_re_resolves_role(app, database, accounts) -> None:
    anonymous = TestClient(app).get("/api/auth/check")
    assert anonymous.json() == {"success": True, "data": {"authenticated": False}}

    client = _client_for(app, Role.STAFF)
    assert client.get("/api/auth/check").json()["data"]["role"] == "staff"

    with sqlite3.connect(database.path) as conn:
        conn.execute("UPDATE users SET role = 'admin' WHERE id = ?", (accounts[Role.STAFF].id,))

    data = client.get("/api/auth/check").json()["data"]
    assert data == {
        "authenticated": True,
        "userId": accounts[Role.STAFF].id,
        "userName": "staff",
        "role": "admin",
    }


def test_logout_destroys_session(app, accounts) -> None:
    client = _client_for(app, Role.ADMIN)

    response = client.post("/api/logout")

    assert response.json() == {"success": True}
    assert client.get("/api/auth/check").json()["data"]["authenticated"] is False
    _assert_failure(client.get("/api/users"), 401, "Unauthorized")


def test_server_writes_require_a_session(app) -> None:
    client = TestClient(app)

    _assert_failure(client.post("/api/servers", json={"externalId": "1001"}), 401, "Unauthorized")
    _assert_failure(client.delete("/api/servers/1"), 401, "Unauthorized")


def test_server_upsert_list_and_delete(app, accounts) -> None:
    client = _client_for(app, Role.STAFF)

    enriched = client.post("/api/servers", json={"externalId": "1001"})
    fallback = client.post("/api/servers", json={"externalId": 999999})

    assert enriched.status_code == 200
    assert enriched.json()["data"]["displayName"] == "Moose Main"
    assert enriched.json()["data"]["gameTitle"] == "vanilla"
    assert enriched.json()["data"]["region"] == "eu"
    assert fallback.json()["data"]["displayName"] == "Server 999999"
    assert fallback.json()["data"]["gameTitle"] is None

    public = TestClient(app).get("/api/servers").json()["data"]
    assert [server["externalId"] for server in public] == ["1001", "999999"]

    server_id = fallback.json()["data"]["id"]
    assert client.delete(f"/api/servers/{server_id}").json() == {"success": True}
    assert [s["externalId"] for s in TestClient(app).get("/api/servers").json()["data"]] == ["1001"]

    _assert_failure(client.delete(f"/api/servers/{server_id + 100}"), 404, "NotFound")
    _assert_failure(client.delete("/api/servers/abc"), 422, "ValidationError")
    _assert_failure(client.delete("/api/servers/0"), 422, "ValidationError")
    _assert_failure(client.post("/api/servers", json={"externalId": "  "}), 422, "ValidationError")


def test_server_status_endpoints(app, accounts) -> None:
    client = _client_for(app, Role.ADMIN)
    client.post("/api/servers", json={"externalId": "1001"})
    client.post("/api/servers", json={"externalId": "2002"})
    public = TestClient(app)

    live = public.get("/api/servers/1001/status")
    assert live.status_code == 200
    assert live.json()["data"] == {
        "externalId": "1001",
        "name": "Moose Main",
        "players": 12,
        "maxPlayers": 200,
        "status": "online",
        "map": "Procedural Map",
        "ip": "203.0.113.7",
        "port": 28015,
    }

    _assert_failure(public.get("/api/servers/2002/status"), 502, "ServerError")
    _assert_failure(public.get("/api/servers/3003/status"), 404, "NotFound")

    cluster = public.get("/api/servers/status").json()["data"]
    assert [entry["externalId"] for entry in cluster] == ["1001"]


def test_announcement_endpoints(app, database, accounts) -> None:
    client = _client_for(app, Role.STAFF)
    server = client.post("/api/servers", json={"externalId": "1001"}).json()["data"]

    scoped = client.post(
        "/api/announcements",
        json={"message": "Wipe tonight", "severity": "warning", "serverId": server["id"]},
    )
    global_note = client.post(
        "/api/announcements",
        json={"message": "Welcome", "severity": "shouting", "endsAt": "2000-01-01T00:00"},
    )

    assert scoped.status_code == 201
    assert scoped.json()["data"]["serverName"] == "Moose Main"
    assert scoped.json()["data"]["externalId"] == "1001"
    assert global_note.json()["data"]["severity"] == "info"
    assert global_note.json()["data"]["serverId"] is None
    assert global_note.json()["data"]["endsAt"] == "2000-01-01 00:00:00"

    public = TestClient(app)
    everything = public.get("/api/announcements").json()["data"]
    assert {a["message"] for a in everything} == {"Wipe tonight", "Welcome"}

    visible = public.get("/api/announcements", params={"externalId": "1001", "active": "1"}).json()["data"]
    assert [a["message"] for a in visible] == ["Wipe tonight"]

    by_server = public.get("/api/announcements", params={"serverId": server["id"]}).json()["data"]
    assert len(by_server) == 2

    announcement_id = scoped.json()["data"]["id"]
    assert client.delete(f"/api/announcements/{announcement_id}").json() == {"success": True}
    deleted = database.get_announcement(announcement_id)
    assert deleted.active is False
    assert deleted.ends_at is not None

    _assert_failure(client.delete("/api/announcements/424242"), 404, "NotFound")
    _assert_failure(client.post("/api/announcements", json={"message": ""}), 422, "ValidationError")
    _assert_failure(
        client.post("/api/announcements", json={"message": "x", "serverId": 999}),
        422,
        "ValidationError",
    )
    _assert_failure(public.get("/api/announcements", params={"active": "perhaps"}), 422, "ValidationError")
    _assert_failure(
        public.post("/api/announcements", json={"message": "anonymous"}), 401, "Unauthorized"
    )


def test_user_management_is_limited_to_owner_and_admin(app, accounts) -> None:
    staff = _client_for(app, Role.STAFF)
    _assert_failure(staff.get("/api/users"), 403, "Forbidden")
    _assert_failure(
        staff.post("/api/users", json={"username": "x", "password": "pw"}), 403, "Forbidden"
    )

    admin = _client_for(app, Role.ADMIN)
    listed = admin.get("/api/users").json()["data"]
    assert [user["username"] for user in listed] == ["admin", "owner", "staff"]
    assert all("password" not in key.lower() for user in listed for key in user)


def test_user_creation_rules(app, accounts) -> None:
    admin = _client_for(app, Role.ADMIN)
    owner = _client_for(app, Role.OWNER)

    created = admin.post("/api/users", json={"username": "newbie", "password": "pw-123"})
    assert created.status_code == 201
    assert created.json()["data"]["role"] == "admin"
    assert created.json()["data"]["isActive"] is True

    _assert_failure(
        admin.post("/api/users", json={"username": "newbie", "password": "pw-123"}), 409, "Conflict"
    )
    _assert_failure(
        admin.post("/api/users", json={"username": "boss", "password": "pw", "role": "owner"}),
        403,
        "Forbidden",
    )
    _assert_failure(
        admin.post("/api/users", json={"username": "odd", "password": "pw", "role": "god"}),
        422,
        "ValidationError",
    )

    promoted = owner.post("/api/users", json={"username": "boss", "password": "pw", "role": "owner"})
    assert promoted.status_code == 201
    assert promoted.json()["data"]["role"] == "owner"


def test_deactivation_revokes_sessions_and_blocks_login(app, accounts) -> None:
    staff = _client_for(app, Role.STAFF)
    admin = _client_for(app, Role.ADMIN)
    staff_id = accounts[Role.STAFF].id

    assert admin.post(f"/api/users/{staff_id}/deactivate").json() == {"success": True}

    _assert_failure(staff.post("/api/servers", json={"externalId": "1001"}), 401, "Unauthorized")
    relogin = TestClient(app).post("/api/login", json={"username": "staff", "password": PASSWORD})
    _assert_failure(relogin, 401, "Unauthorized")

    assert admin.post(f"/api/users/{staff_id}/reactivate").json() == {"success": True}
    _client_for(app, Role.STAFF)

    _assert_failure(admin.post("/api/users/9999/deactivate"), 404, "NotFound")
    _assert_failure(admin.post("/api/users/-1/reactivate"), 422, "ValidationError")


def test_password_reset(app, accounts) -> None:
    admin = _client_for(app, Role.ADMIN)
    staff_id = accounts[Role.STAFF].id

    response = admin.post(f"/api/users/{staff_id}/password", json={"password": "brand-new-secret"})
    assert response.json() == {"success": True}

    client = TestClient(app)
    old = client.post("/api/login", json={"username": "staff", "password": PASSWORD})
    _assert_failure(old, 401, "Unauthorized")
    new = client.post("/api/login", json={"username": "staff", "password": "brand-new-secret"})
    assert new.status_code == 200

    _assert_failure(
        admin.post(f"/api/users/{staff_id}/password", json={"password": ""}), 422, "ValidationError"
    )
    _assert_failure(
        admin.post("/api/users/5000/password", json={"password": "x"}), 404, "NotFound"
    )


def test_store_failures_do_not_leak_details(app, database, accounts, monkeypatch) -> None:
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("no such table: servers")

    monkeypatch.setattr(database, "list_active_servers", broken)

    response = TestClient(app).get("/api/servers")

    body = _assert_failure(response, 500, "ServerError")
    assert "servers" not in body["message"]


def test_announcement_fields_of_any_type_are_coerced(app, accounts) -> None:
    client = _client_for(app, Role.STAFF)

    response = client.post(
        "/api/announcements",
        json={"message": "hi", "severity": 3, "startsAt": 12345, "endsAt": ["soon"]},
    )

    assert response.status_code == 201, response.text
    data = response.json()["data"]
    assert data["severity"] == "info"
    assert data["startsAt"] is None
    assert data["endsAt"] is None


def test_admins_cannot_take_over_owner_accounts(app, accounts) -> None:
    admin = _client_for(app, Role.ADMIN)
    owner_id = accounts[Role.OWNER].id

    _assert_failure(
        admin.post(f"/api/users/{owner_id}/password", json={"password": "hijacked-password"}),
        403,
        "Forbidden",
    )
    _assert_failure(admin.post(f"/api/users/{owner_id}/deactivate"), 403, "Forbidden")
    _assert_failure(admin.post(f"/api/users/{owner_id}/reactivate"), 403, "Forbidden")

    hijack = TestClient(app).post(
        "/api/login", json={"username": "owner", "password": "hijacked-password"}
    )
    _assert_failure(hijack, 401, "Unauthorized")

    owner = _client_for(app, Role.OWNER)
    reset = owner.post(f"/api/users/{owner_id}/password", json={"password": "rotated-password"})
    assert reset.json() == {"success": True}
