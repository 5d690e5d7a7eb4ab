from app.db import models


def test_calendar_lists_jobs_in_range(admin_client, create_job):
    job = create_job(admin_client)

    response = admin_client.get("/api/calendar", params={"from": "2026-03-01", "to": "2026-04-01"})
    assert response.status_code == 200
    cards = response.json()["jobs"]
    assert len(cards) == 1
    card = cards[0]
    assert card["jobId"] == job["id"]
    assert card["customerName"] == "Jane Doe"
    assert card["originShort"] == "Austin, TX"
    assert card["hasStorage"] is False
    assert card["balanceDueCents"] == 0


def test_calendar_range_is_half_open(admin_client, create_job):
    create_job(admin_client)

    response = admin_client.get("/api/calendar", params={"from": "2026-03-01", "to": "2026-03-22"})
    assert response.json()["jobs"] == []


def test_calendar_validates_range(admin_client):
    missing = admin_client.get("/api/calendar", params={"from": "2026-03-01"})
    assert missing.status_code == 400

    backwards = admin_client.get("/api/calendar", params={"from": "2026-03-10", "to": "2026-03-01"})
    assert backwards.status_code == 400
    assert backwards.json()["error"]["code"] == "validation_error"

    bad_phase = admin_client.get(
        "/api/calendar",
        params={"from": "2026-03-01", "to": "2026-04-01", "phase": "lost"},
    )
    assert bad_phase.status_code == 400


def test_calendar_filters_by_phase(admin_client, create_job):
    create_job(admin_client)
    params = {"from": "2026-03-01", "to": "2026-04-01"}

    assert len(admin_client.get("/api/calendar", params={**params, "phase": "booked"}).json()["jobs"]) == 1
    assert admin_client.get("/api/calendar", params={**params, "phase": "completed"}).json()["jobs"] == []


def test_calendar_is_tenant_scoped(admin_client, create_job, make_client, seed_user, login):
    create_job(admin_client)
    seed_user(email="admin@globex.test", tenant_slug="globex")
    other = make_client()
    login(other, email="admin@globex.test")

    response = other.get("/api/calendar", params={"from": "2026-03-01", "to": "2026-04-01"})
    assert response.json()["jobs"] == []


def test_patch_job_schedule_and_phase_are_audited(admin_client, create_job, db_session):
    job = create_job(admin_client)

    response = admin_client.patch(
        f"/api/jobs/{job['id']}",
        json={"scheduledDate": "2026-03-25", "status": "scheduled"},
    )
    assert response.status_code == 200
    updated = response.json()["job"]
    assert updated["scheduledDate"] == "2026-03-25"
    assert updated["status"] == "scheduled"

    schedule = db_session.query(models.AuditLog).filter(models.AuditLog.action == "job.schedule_update").one()
    assert schedule.metadata_json == {
        "before": {"scheduledDate": "2026-03-22", "pickupTime": "09:00"},
        "after": {"scheduledDate": "2026-03-25", "pickupTime": "09:00"},
    }
    phase = db_session.query(models.AuditLog).filter(models.AuditLog.action == "job.phase_update").one()
    assert phase.metadata_json == {"before": "booked", "after": "scheduled"}


def test_patch_job_without_changes_writes_no_audit(admin_client, create_job, db_session):
    job = create_job(admin_client)

    response = admin_client.patch(f"/api/jobs/{job['id']}", json={"status": "booked"})
    assert response.status_code == 200
    assert db_session.query(models.AuditLog).filter(models.AuditLog.entity_type == "job").count() == 0


def test_patch_job_validates_input(admin_client, create_job):
    job = create_job(admin_client)

    empty = admin_client.patch(f"/api/jobs/{job['id']}", json={})
    assert empty.status_code == 400

    bad_status = admin_client.patch(f"/api/jobs/{job['id']}", json={"status": "lost"})
    assert bad_status.status_code == 400


def test_sales_role_cannot_edit_calendar(admin_client, create_job, make_client, seed_user, login):
    job = create_job(admin_client)
    seed_user(email="sales@acme.test", role="sales")
    sales = make_client()
    csrf = login(sales, email="sales@acme.test")

    assert sales.get(f"/api/jobs/{job['id']}").status_code == 200
    response = sales.patch(
        f"/api/jobs/{job['id']}",
        json={"status": "completed"},
        headers={"X-CSRF-Token": csrf},
    )
    assert response.status_code == 403
