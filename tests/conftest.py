import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.security import get_password_hash
from app.db import models
from app.db.init_db import DEFAULT_ROLES, assign_role, ensure_role
from app.db.session import get_db
from app.main import create_app

PASSWORD = "Secret12345!"


@pytest.fixture()
def engine():
    # one shared connection so the app and the test see the same in-memory database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture()
def settings():
    return Settings()


@pytest.fixture()
def app(session_factory, settings):
    application = create_app(settings)

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    application.dependency_overrides[get_db] = _get_db
    return application


@pytest.fixture()
def make_client(app):
    def _make():
        return TestClient(app)

    return _make


@pytest.fixture()
def client(make_client):
    return make_client()


@pytest.fixture()
def seed_user(db_session):
    """Create (or reuse) a tenant and add a user bound to one role."""

    def _seed(
        email="admin@acme.test",
        tenant_slug="acme",
        role="admin",
        permissions=None,
        full_name="Acme Admin",
        password=PASSWORD,
    ):
        tenant = db_session.query(models.Tenant).filter(models.Tenant.slug == tenant_slug).first()
        if tenant is None:
            tenant = models.Tenant(slug=tenant_slug, name=tenant_slug.title())
            db_session.add(tenant)
            db_session.flush()
        user = models.User(
            tenant_id=tenant.id,
            email=email,
            full_name=full_name,
            password_hash=get_password_hash(password),
            is_active=True,
        )
        db_session.add(user)
        db_session.flush()
        if permissions is None:
            description, permissions = DEFAULT_ROLES[role]
        else:
            description = None
        assign_role(db_session, user, ensure_role(db_session, tenant.id, role, permissions, description))
        db_session.commit()
        return tenant, user

    return _seed


@pytest.fixture()
def login():
    """Log ``client`` in and return the session's CSRF token."""

    def _login(client, email="admin@acme.test", password=PASSWORD):
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return client.get("/api/auth/csrf").json()["csrfToken"]

    return _login


@pytest.fixture()
def admin_client(client, seed_user, login):
    seed_user()
    csrf = login(client)
    client.headers["X-CSRF-Token"] = csrf
    return client


def estimate_payload(**overrides):
    payload = {
        "customerName": "Jane Doe",
        "primaryPhone": "5125550100",
        "email": "jane@example.com",
        "originAddressLine1": "100 Congress Ave",
        "originCity": "Austin",
        "originState": "TX",
        "originPostalCode": "78701",
        "destinationAddressLine1": "200 Main St",
        "destinationCity": "Dallas",
        "destinationState": "TX",
        "destinationPostalCode": "75001",
        "moveDate": "2026-03-22",
        "pickupTime": "09:00",
        "leadSource": "Referral",
        "estimatedTotalCents": 250000,
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def estimate_body():
    return estimate_payload


@pytest.fixture()
def create_estimate():
    def _create(client, key="est-key-1", **overrides):
        response = client.post(
            "/api/estimates",
            json=estimate_payload(**overrides),
            headers={"Idempotency-Key": key},
        )
        assert response.status_code in (200, 201), response.text
        return response.json()["estimate"]

    return _create


@pytest.fixture()
def create_job(create_estimate):
    """Create an estimate and convert it; returns the job body."""

    def _create(client, key="job-key-1", **overrides):
        estimate = create_estimate(client, key="est-" + key, **overrides)
        response = client.post(
            f"/api/estimates/{estimate['id']}/convert",
            headers={"Idempotency-Key": "convert-" + key},
        )
        assert response.status_code in (200, 201), response.text
        return response.json()["job"]

    return _create
