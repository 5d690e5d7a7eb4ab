import uuid

from fastapi.testclient import TestClient

from app import main
from app.core.config import Settings
from app.main import create_app


def test_request_id_is_echoed_into_header_and_error_body(client):
    response = client.get("/api/auth/me", headers={"X-Request-Id": "req-abc"})
    assert response.status_code == 401
    assert response.headers["X-Request-Id"] == "req-abc"
    assert response.json()["requestId"] == "req-abc"


def test_request_id_is_generated_when_absent(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert uuid.UUID(response.headers["X-Request-Id"])


def test_security_headers_on_every_response(client):
    for response in (client.get("/api/health"), client.get("/api/nope")):
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "default-src 'none'" in response.headers["Content-Security-Policy"]
        assert "Strict-Transport-Security" not in response.headers


def test_hsts_only_in_production(monkeypatch):
    monkeypatch.setenv("APP_ENV", "prod")
    response = TestClient(create_app(Settings())).get("/api/health")
    assert response.headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains"


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_cors_preflight_for_allowed_origin(client):
    response = client.options(
        "/api/customers",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-CSRF-Token, Idempotency-Key",
        },
    )
    assert response.status_code == 204
    assert response.content == b""
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
    assert response.headers["Access-Control-Allow-Credentials"] == "true"
    assert "Origin" in response.headers["Vary"]
    allowed = response.headers["Access-Control-Allow-Headers"].lower()
    assert "x-csrf-token" in allowed
    assert "idempotency-key" in allowed
    assert "PATCH" in response.headers["Access-Control-Allow-Methods"]
    assert response.headers["X-Request-Id"]


def test_cors_ignores_unknown_origin(client):
    response = client.options(
        "/api/estimates",
        headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 400
    assert "Access-Control-Allow-Origin" not in response.headers

    plain = client.get("/api/health", headers={"Origin": "http://localhost:3000"})
    assert plain.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
    assert plain.headers["Vary"] == "Origin"
    assert "X-Request-Id" in plain.headers["Access-Control-Expose-Headers"]

    foreign = client.get("/api/health", headers={"Origin": "https://evil.example"})
    assert "Access-Control-Allow-Origin" not in foreign.headers


def test_oversized_body_is_rejected(client):
    body = b"{" + b" " * (2 * 1024 * 1024) + b"}"
    response = client.post(
        "/api/customers",
        content=body,
        headers={"Content-Type": "application/json", "X-Request-Id": "big-1"},
    )
    assert response.status_code == 413
    assert response.json()["error"]["code"] == "payload_too_large"
    assert response.headers["X-Request-Id"] == "big-1"


def test_schema_is_created_on_startup(monkeypatch, settings):
    created = []
    monkeypatch.setattr(main, "create_schema", created.append)

    with TestClient(create_app(settings)) as client:
        assert created == [main.engine]
        assert client.get("/api/health").json() == {"status": "ok"}
