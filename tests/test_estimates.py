from app.api.v1 import estimates as estimate_routes
from app.api.v1.customers import find_customer_by_email
from app.db import models


def _post(client, body, key="est-1"):
    return client.post("/api/estimates", json=body, headers={"Idempotency-Key": key})


def test_create_estimate_assigns_number_and_customer(admin_client, estimate_body, db_session):
    response = _post(admin_client, estimate_body())
    assert response.status_code == 201
    estimate = response.json()["estimate"]
    assert estimate["estimateNumber"] == "E-000001"
    assert estimate["status"] == "draft"
    assert estimate["moveDate"] == "2026-03-22"

    customer = db_session.query(models.Customer).filter(models.Customer.id == estimate["customerId"]).one()
    assert (customer.first_name, customer.last_name) == ("Jane", "Doe")
    assert customer.email == "jane@example.com"


def test_estimate_numbers_increment_per_tenant(admin_client, estimate_body):
    first = _post(admin_client, estimate_body(), key="a").json()["estimate"]
    second = _post(admin_client, estimate_body(email="other@example.com"), key="b").json()["estimate"]
    assert (first["estimateNumber"], second["estimateNumber"]) == ("E-000001", "E-000002")


def test_create_requires_idempotency_key(admin_client, estimate_body):
    response = admin_client.post("/api/estimates", json=estimate_body())
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "missing_idempotency_key"


def test_replay_with_same_payload_returns_original(admin_client, estimate_body, db_session):
    first = _post(admin_client, estimate_body())
    replay = _post(admin_client, estimate_body(customerName=" Jane Doe "))
    assert first.status_code == 201
    assert replay.status_code == 200
    assert replay.json()["estimate"]["id"] == first.json()["estimate"]["id"]
    assert db_session.query(models.Estimate).count() == 1


def test_reusing_key_with_different_payload_conflicts(admin_client, estimate_body):
    _post(admin_client, estimate_body())
    response = _post(admin_client, estimate_body(originCity="Houston"))
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "IDEMPOTENCY_KEY_REUSE"


def test_missing_required_field_is_validation_error(admin_client, estimate_body):
    body = estimate_body()
    del body["originPostalCode"]
    response = _post(admin_client, body)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_patch_estimate_updates_fields_and_customer(admin_client, estimate_body, db_session):
    estimate = _post(admin_client, estimate_body()).json()["estimate"]

    response = admin_client.patch(
        f"/api/estimates/{estimate['id']}",
        json={"customerName": "Janet Smith", "pickupTime": "10:30"},
    )
    assert response.status_code == 200
    updated = response.json()["estimate"]
    assert updated["customerName"] == "Janet Smith"
    assert updated["pickupTime"] == "10:30"

    db_session.expire_all()
    customer = db_session.query(models.Customer).filter(models.Customer.id == estimate["customerId"]).one()
    assert (customer.first_name, customer.last_name) == ("Janet", "Smith")

    audit = db_session.query(models.AuditLog).filter(models.AuditLog.action == "estimate.update").one()
    assert set(audit.metadata_json["fieldsChanged"]) == {"customerName", "pickupTime"}


def test_patch_without_fields_is_rejected(admin_client, estimate_body):
    estimate = _post(admin_client, estimate_body()).json()["estimate"]
    response = admin_client.patch(f"/api/estimates/{estimate['id']}", json={})
    assert response.status_code == 400


def test_patch_with_unchanged_values_writes_no_audit(admin_client, estimate_body, db_session):
    estimate = _post(admin_client, estimate_body()).json()["estimate"]

    response = admin_client.patch(
        f"/api/estimates/{estimate['id']}",
        json={"customerName": "Jane Doe", "originCity": " Austin "},
    )
    assert response.status_code == 200
    assert db_session.query(models.AuditLog).filter(models.AuditLog.action == "estimate.update").count() == 0


def test_create_retries_when_customer_email_was_taken_concurrently(
    admin_client, estimate_body, db_session, monkeypatch
):
    user = db_session.query(models.User).first()
    racing = models.Customer(tenant_id=user.tenant_id, first_name="Jane", last_name="Doe", email="jane@example.com")
    db_session.add(racing)
    db_session.commit()

    lookups = []

    def _lookup(db, tenant_id, email):
        lookups.append(email)
        if len(lookups) == 1:
            return None
        return find_customer_by_email(db, tenant_id, email)

    monkeypatch.setattr(estimate_routes, "find_customer_by_email", _lookup)

    response = _post(admin_client, estimate_body())
    assert response.status_code == 201
    assert response.json()["estimate"]["customerId"] == racing.id
    assert response.json()["estimate"]["estimateNumber"] == "E-000001"
    assert len(lookups) == 2


def test_create_reports_conflict_when_customer_race_persists(admin_client, estimate_body, db_session, monkeypatch):
    user = db_session.query(models.User).first()
    db_session.add(
        models.Customer(tenant_id=user.tenant_id, first_name="Jane", last_name="Doe", email="jane@example.com")
    )
    db_session.commit()
    monkeypatch.setattr(estimate_routes, "find_customer_by_email", lambda db, tenant_id, email: None)

    response = _post(admin_client, estimate_body())
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "customer_exists"
    assert db_session.query(models.Estimate).count() == 0


def test_convert_creates_single_job(admin_client, estimate_body, db_session):
    estimate = _post(admin_client, estimate_body()).json()["estimate"]
    url = f"/api/estimates/{estimate['id']}/convert"

    first = admin_client.post(url, headers={"Idempotency-Key": "conv-1"})
    assert first.status_code == 201
    job = first.json()["job"]
    assert job["jobNumber"] == "J-000001"
    assert job["status"] == "booked"
    assert job["scheduledDate"] == "2026-03-22"
    assert job["estimateId"] == estimate["id"]

    replay = admin_client.post(url, headers={"Idempotency-Key": "conv-1"})
    assert replay.status_code == 200
    assert replay.json()["job"]["id"] == job["id"]

    other_key = admin_client.post(url, headers={"Idempotency-Key": "conv-2"})
    assert other_key.status_code == 200
    assert other_key.json()["job"]["id"] == job["id"]

    assert db_session.query(models.Job).count() == 1
    refreshed = admin_client.get(f"/api/estimates/{estimate['id']}").json()["estimate"]
    assert refreshed["status"] == "converted"
    assert refreshed["convertedJobId"] == job["id"]


def test_convert_key_reused_for_other_estimate_conflicts(admin_client, estimate_body):
    first = _post(admin_client, estimate_body(), key="a").json()["estimate"]
    second = _post(admin_client, estimate_body(email="b@example.com"), key="b").json()["estimate"]

    admin_client.post(f"/api/estimates/{first['id']}/convert", headers={"Idempotency-Key": "conv"})
    response = admin_client.post(f"/api/estimates/{second['id']}/convert", headers={"Idempotency-Key": "conv"})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "IDEMPOTENCY_KEY_REUSE"


def test_convert_unknown_estimate_is_not_found(admin_client):
    response = admin_client.post(
        "/api/estimates/8a0d5a8e-3b8f-4c53-9a55-0d3f0d7c1e11/convert",
        headers={"Idempotency-Key": "conv"},
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "estimate_not_found"
