from app.api.v1 import auth as auth_routes
from app.db import models


def test_login_sets_cookie_and_me_returns_actor(client, seed_user, login):
    tenant, user = seed_user()

    response = client.post("/api/auth/login", json={"email": "ADMIN@acme.test ", "password": "Secret12345!"})
    assert response.status_code == 200
    body = response.json()
    assert body["user"] == {"id": user.id, "email": "admin@acme.test", "fullName": "Acme Admin"}
    assert body["tenant"]["slug"] == "acme"
    assert "mo_sess" in response.headers["set-cookie"]
    assert "HttpOnly" in response.headers["set-cookie"]

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["tenant"]["id"] == tenant.id


def test_login_with_wrong_password_is_rejected(client, seed_user):
    seed_user()

    response = client.post("/api/auth/login", json={"email": "admin@acme.test", "password": "nope"})
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "invalid_credentials"
    assert body["requestId"]


def test_login_with_unknown_email_is_rejected(client):
    response = client.post("/api/auth/login", json={"email": "ghost@acme.test", "password": "x"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_credentials"


def test_inactive_user_cannot_login(client, seed_user, db_session, monkeypatch):
    _, user = seed_user()
    user.is_active = False
    db_session.commit()
    burned = []
    monkeypatch.setattr(auth_routes, "_burn_verification", burned.append)

    response = client.post("/api/auth/login", json={"email": "admin@acme.test", "password": "Secret12345!"})
    assert response.status_code == 401
    assert burned == ["Secret12345!"]


def test_unknown_email_still_verifies_a_password(client, monkeypatch):
    burned = []
    monkeypatch.setattr(auth_routes, "_burn_verification", burned.append)

    client.post("/api/auth/login", json={"email": "ghost@acme.test", "password": "x"})
    assert burned == ["x"]


def test_wrong_password_for_active_user_skips_dummy_verification(client, seed_user, monkeypatch):
    seed_user()
    burned = []
    monkeypatch.setattr(auth_routes, "_burn_verification", burned.append)

    client.post("/api/auth/login", json={"email": "admin@acme.test", "password": "nope"})
    assert burned == []


def test_requests_without_session_are_unauthorized(client):
    response = client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_csrf_token_is_stable_for_session(client, seed_user, login):
    seed_user()
    first = login(client)
    assert first
    assert client.get("/api/auth/csrf").json()["csrfToken"] == first


def test_logout_requires_csrf(client, seed_user, login):
    seed_user()
    login(client)

    response = client.post("/api/auth/logout")
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "CSRF_INVALID"


def test_logout_revokes_session(client, make_client, seed_user, login, db_session):
    seed_user()
    csrf = login(client)
    token = client.cookies.get("mo_sess")

    response = client.post("/api/auth/logout", headers={"X-CSRF-Token": csrf})
    assert response.status_code == 204

    replay = make_client().get("/api/auth/me", headers={"Cookie": f"mo_sess={token}"})
    assert replay.status_code == 401

    actions = [row.action for row in db_session.query(models.AuditLog).order_by(models.AuditLog.created_at)]
    assert actions == ["auth.login", "auth.logout"]


def test_relogin_revokes_previous_session(client, make_client, seed_user, login, db_session):
    seed_user()
    login(client)
    old_token = client.cookies.get("mo_sess")
    login(client)

    replay = make_client().get("/api/auth/me", headers={"Cookie": f"mo_sess={old_token}"})
    assert replay.status_code == 401
    assert client.get("/api/auth/me").status_code == 200
    assert db_session.query(models.UserSession).filter(models.UserSession.revoked_at.isnot(None)).count() == 1
