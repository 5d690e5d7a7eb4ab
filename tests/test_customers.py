from app.db import models


def test_create_and_get_customer(admin_client, db_session):
    response = admin_client.post(
        "/api/customers",
        json={"firstName": " Jane ", "lastName": "Doe", "email": "Jane@Example.com", "phone": "5125550100"},
    )
    assert response.status_code == 201
    created = response.json()
    assert created["firstName"] == "Jane"
    assert created["email"] == "jane@example.com"

    fetched = admin_client.get(f"/api/customers/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == created["id"]

    audit = db_session.query(models.AuditLog).filter(models.AuditLog.action == "customers.create").one()
    assert audit.entity_id == created["id"]
    assert audit.request_id


def test_create_customer_requires_names(admin_client):
    response = admin_client.post("/api/customers", json={"firstName": "Jane", "lastName": "  "})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_duplicate_email_conflicts_case_insensitively(admin_client):
    first = admin_client.post("/api/customers", json={"firstName": "A", "lastName": "B", "email": "dup@x.com"})
    assert first.status_code == 201
    second = admin_client.post("/api/customers", json={"firstName": "C", "lastName": "D", "email": "DUP@x.com"})
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "customer_exists"


def test_get_customer_rejects_malformed_id(admin_client):
    response = admin_client.get("/api/customers/not-a-uuid")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_customer_id"


def test_customers_are_scoped_to_tenant(admin_client, make_client, seed_user, login):
    created = admin_client.post("/api/customers", json={"firstName": "Jane", "lastName": "Doe"}).json()

    seed_user(email="admin@globex.test", tenant_slug="globex")
    other = make_client()
    login(other, email="admin@globex.test")

    response = other.get(f"/api/customers/{created['id']}")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "customer_not_found"


def test_write_requires_permission(make_client, seed_user, login):
    seed_user(email="reader@acme.test", role="readonly", permissions=["customers.read"])
    client = make_client()
    csrf = login(client, email="reader@acme.test")

    response = client.post(
        "/api/customers",
        json={"firstName": "Jane", "lastName": "Doe"},
        headers={"X-CSRF-Token": csrf},
    )
    assert response.status_code == 403
    body = response.json()
    assert body["error"]["code"] == "forbidden"
    assert body["error"]["details"] == {"permission": "customers.write"}


def test_write_without_csrf_token_is_forbidden(client, seed_user, login):
    seed_user()
    login(client)

    response = client.post("/api/customers", json={"firstName": "Jane", "lastName": "Doe"})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "CSRF_INVALID"

    wrong = client.post(
        "/api/customers",
        json={"firstName": "Jane", "lastName": "Doe"},
        headers={"X-CSRF-Token": "not-the-token"},
    )
    assert wrong.status_code == 403


def test_read_requires_read_permission(admin_client, make_client, seed_user, login):
    created = admin_client.post("/api/customers", json={"firstName": "Ada", "lastName": "Lovelace"}).json()
    seed_user(email="writer@acme.test", role="writer", permissions=["customers.write"])
    writer = make_client()
    login(writer, email="writer@acme.test")

    response = writer.get(f"/api/customers/{created['id']}")
    assert response.status_code == 403
    assert response.json()["error"] == {
        "code": "forbidden",
        "message": "Permission denied",
        "details": {"permission": "customers.read"},
    }
