import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, Request
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import ApiError
from app.db import models
from app.db.session import get_db

# argon2id, m=64 MiB, t=3, p=2, 16 byte salt, 32 byte key
pwd_context = CryptContext(
    schemes=["argon2"],
    argon2__type="ID",
    argon2__memory_cost=65536,
    argon2__rounds=3,
    argon2__parallelism=2,
    argon2__salt_size=16,
    argon2__digest_size=32,
)

UNSAFE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass
class Actor:
    session_id: str
    user_id: str
    tenant_id: str
    email: str
    full_name: str
    tenant_slug: str
    tenant_name: str
    csrf_token: str
    expires_at: datetime


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Raises ValueError when the stored hash cannot be parsed."""
    return pwd_context.verify(plain_password, hashed_password)


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def get_settings_from_request(request: Request) -> Settings:
    return request.app.state.settings


def find_session_by_token(db: Session, token: str) -> models.UserSession | None:
    return (
        db.query(models.UserSession)
        .filter(models.UserSession.token_hash == hash_token(token))
        .first()
    )


def get_current_actor(request: Request, db: Session = Depends(get_db)) -> Actor:
    settings = get_settings_from_request(request)
    token = request.cookies.get(settings.SESSION_COOKIE_NAME, "")
    if not token:
        raise ApiError(401, "unauthorized", "Authentication required")

    now = datetime.utcnow()
    row = (
        db.query(models.UserSession, models.User, models.Tenant)
        .join(models.User, models.User.id == models.UserSession.user_id)
        .join(models.Tenant, models.Tenant.id == models.UserSession.tenant_id)
        .filter(
            models.UserSession.token_hash == hash_token(token),
            models.UserSession.revoked_at.is_(None),
            models.UserSession.expires_at > now,
            models.User.is_active.is_(True),
        )
        .first()
    )
    if not row:
        raise ApiError(401, "unauthorized", "Session is invalid")

    session, user, tenant = row
    session.last_seen_at = now
    db.commit()

    return Actor(
        session_id=session.id,
        user_id=user.id,
        tenant_id=tenant.id,
        email=user.email,
        full_name=user.full_name,
        tenant_slug=tenant.slug,
        tenant_name=tenant.name,
        csrf_token=session.csrf_token,
        expires_at=session.expires_at,
    )


def require_csrf(request: Request, actor: Actor = Depends(get_current_actor)) -> Actor:
    settings = get_settings_from_request(request)
    if not settings.CSRF_ENFORCE or request.method not in UNSAFE_METHODS:
        return actor
    supplied = request.headers.get("X-CSRF-Token", "").strip()
    if not supplied or not hmac.compare_digest(supplied, actor.csrf_token):
        raise ApiError(403, "CSRF_INVALID", "Invalid CSRF token")
    return actor


def get_user_permissions(db: Session, tenant_id: str, user_id: str) -> set[str]:
    rows = (
        db.query(models.Permission.name)
        .join(models.RolePermission, models.RolePermission.permission_id == models.Permission.id)
        .join(models.Role, models.Role.id == models.RolePermission.role_id)
        .join(models.UserRole, models.UserRole.role_id == models.Role.id)
        .filter(
            models.UserRole.user_id == user_id,
            models.UserRole.tenant_id == tenant_id,
            models.Role.tenant_id == tenant_id,
        )
        .distinct()
        .all()
    )
    return {name for (name,) in rows}


def require_permission(permission_code: str):
    def _dependency(
        actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db),
    ) -> Actor:
        if permission_code not in get_user_permissions(db, actor.tenant_id, actor.user_id):
            raise ApiError(403, "forbidden", "Permission denied", {"permission": permission_code})
        return actor

    return _dependency


def require_any_permission(*permission_codes: str):
    def _dependency(
        actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db),
    ) -> Actor:
        granted = get_user_permissions(db, actor.tenant_id, actor.user_id)
        if not granted.intersection(permission_codes):
            raise ApiError(
                403,
                "forbidden",
                "Permission denied",
                {"permissions": list(permission_codes)},
            )
        return actor

    return _dependency
