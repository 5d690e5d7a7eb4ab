import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.security import get_password_hash
from app.db import models

logger = logging.getLogger("moveops")

PERMISSION_DESCRIPTIONS = {
    "customers.read": "Read customer records",
    "customers.write": "Create and update customer records",
    "estimates.read": "Read estimate records",
    "estimates.write": "Create and update estimate records",
    "estimates.convert": "Convert estimates into jobs",
    "calendar.read": "Read calendar and schedule views",
    "calendar.write": "Update calendar schedule and phase values",
    "jobs.read": "Read job records",
    "jobs.write": "Update job scheduling and status",
    "storage.read": "Read storage records",
    "storage.write": "Create and update storage records",
    "imports.read": "Read import runs and reports",
    "imports.write": "Run CSV imports",
    "exports.read": "Download CSV exports",
}

DEFAULT_ROLES = {
    "admin": ("Tenant administrator", sorted(PERMISSION_DESCRIPTIONS)),
    "sales": (
        "Sales role",
        ["estimates.read", "estimates.write", "estimates.convert", "calendar.read", "jobs.read"],
    ),
    "ops": (
        "Operations role",
        [
            "estimates.read",
            "calendar.read",
            "calendar.write",
            "jobs.read",
            "jobs.write",
            "storage.read",
            "storage.write",
        ],
    ),
}


def create_schema(engine) -> None:
    models.Base.metadata.create_all(bind=engine)


def ensure_permissions(db: Session) -> dict[str, models.Permission]:
    existing = {perm.name: perm for perm in db.query(models.Permission).all()}
    for name, description in PERMISSION_DESCRIPTIONS.items():
        perm = existing.get(name)
        if perm is None:
            perm = models.Permission(name=name, description=description)
            db.add(perm)
            existing[name] = perm
        else:
            perm.description = description
    db.flush()
    return existing


def ensure_role(
    db: Session,
    tenant_id: str,
    name: str,
    permission_names: list[str],
    description: str | None = None,
) -> models.Role:
    permissions = ensure_permissions(db)
    role = (
        db.query(models.Role)
        .filter(models.Role.tenant_id == tenant_id, models.Role.name == name)
        .first()
    )
    if role is None:
        role = models.Role(tenant_id=tenant_id, name=name, description=description)
        db.add(role)
        db.flush()
    elif description:
        role.description = description

    bound = {link.permission_id for link in role.permissions}
    for perm_name in permission_names:
        perm = permissions[perm_name]
        if perm.id not in bound:
            db.add(models.RolePermission(role_id=role.id, permission_id=perm.id))
            bound.add(perm.id)
    db.flush()
    return role


def assign_role(db: Session, user: models.User, role: models.Role) -> None:
    exists = (
        db.query(models.UserRole)
        .filter(
            models.UserRole.tenant_id == user.tenant_id,
            models.UserRole.user_id == user.id,
            models.UserRole.role_id == role.id,
        )
        .first()
    )
    if not exists:
        db.add(models.UserRole(tenant_id=user.tenant_id, user_id=user.id, role_id=role.id))
        db.flush()


def seed_tenant_admin(
    db: Session,
    *,
    tenant_slug: str,
    tenant_name: str,
    email: str,
    password: str,
    full_name: str,
) -> tuple[models.Tenant, models.User]:
    tenant = db.query(models.Tenant).filter(models.Tenant.slug == tenant_slug).first()
    if tenant is None:
        tenant = models.Tenant(slug=tenant_slug, name=tenant_name)
        db.add(tenant)
        db.flush()
    else:
        tenant.name = tenant_name

    user = (
        db.query(models.User)
        .filter(
            models.User.tenant_id == tenant.id,
            func.lower(models.User.email) == email.strip().lower(),
        )
        .first()
    )
    if user is None:
        user = models.User(
            tenant_id=tenant.id,
            email=email.strip().lower(),
            full_name=full_name,
            password_hash=get_password_hash(password),
            is_active=True,
        )
        db.add(user)
        db.flush()

    roles = {
        name: ensure_role(db, tenant.id, name, perms, description)
        for name, (description, perms) in DEFAULT_ROLES.items()
    }
    assign_role(db, user, roles["admin"])
    db.commit()
    logger.info("seed completed tenant=%s admin=%s", tenant_slug, user.email)
    return tenant, user
