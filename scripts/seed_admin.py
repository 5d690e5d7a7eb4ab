import os

from app.db.init_db import create_schema, seed_tenant_admin
from app.db.session import SessionLocal, engine


def main() -> None:
    tenant_slug = os.getenv("SEED_TENANT_SLUG", "local-dev").strip()
    tenant_name = os.getenv("SEED_TENANT_NAME", "Local Dev Tenant").strip()
    email = os.getenv("SEED_ADMIN_EMAIL", "admin@local.moveops").strip().lower()
    password = os.getenv("SEED_ADMIN_PASSWORD", "Admin12345!")
    full_name = os.getenv("SEED_ADMIN_NAME", "Local Admin").strip()
    if not tenant_slug or not email or not password:
        raise SystemExit("SEED_TENANT_SLUG, SEED_ADMIN_EMAIL and SEED_ADMIN_PASSWORD must not be empty.")

    create_schema(engine)
    db = SessionLocal()
    try:
        tenant, user = seed_tenant_admin(
            db,
            tenant_slug=tenant_slug,
            tenant_name=tenant_name,
            email=email,
            password=password,
            full_name=full_name,
        )
        print(f"Seeded tenant={tenant.slug} admin={user.email}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
