import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import ApiError, request_id_for
from app.core.rate_limit import rate_limit
from app.core.security import (
    Actor,
    find_session_by_token,
    generate_token,
    get_current_actor,
    get_settings_from_request,
    hash_token,
    pwd_context,
    require_csrf,
    verify_password,
)
from app.db import models
from app.db.session import get_db
from app.services.audit import log_audit

router = APIRouter(tags=["Auth"])
logger = logging.getLogger("moveops")

_dummy_hash: str | None = None


def _burn_verification(password: str) -> None:
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = pwd_context.hash("moveops-placeholder")
    pwd_context.verify(password, _dummy_hash)


class LoginRequest(BaseModel):
    email: str
    password: str


class UserOut(BaseModel):
    id: str
    email: str
    fullName: str


class TenantOut(BaseModel):
    id: str
    slug: str
    name: str


class AuthResponse(BaseModel):
    user: UserOut
    tenant: TenantOut


class CsrfResponse(BaseModel):
    csrfToken: str


def _actor_response(actor: Actor) -> AuthResponse:
    return AuthResponse(
        user=UserOut(id=actor.user_id, email=actor.email, fullName=actor.full_name),
        tenant=TenantOut(id=actor.tenant_id, slug=actor.tenant_slug, name=actor.tenant_name),
    )


@router.post(
    "/auth/login",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limit("login"))],
)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    settings = get_settings_from_request(request)
    email = payload.email.strip().lower()

    candidates = (
        db.query(models.User)
        .filter(func.lower(models.User.email) == email)
        .order_by(models.User.created_at)
        .all()
    )
    user = None
    try:
        for candidate in candidates:
            if not candidate.is_active:
                continue
            if verify_password(payload.password, candidate.password_hash):
                user = candidate
                break
        if user is None and not any(candidate.is_active for candidate in candidates):
            _burn_verification(payload.password)
    except ValueError:
        logger.exception("password verification failed email=%s", email)
        raise ApiError(500, "internal_error", "Internal server error")

    if user is None:
        raise ApiError(401, "invalid_credentials", "Invalid email or password")

    previous = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if previous:
        stale = find_session_by_token(db, previous)
        if stale and stale.revoked_at is None:
            stale.revoked_at = datetime.utcnow()

    token = generate_token()
    expires_at = datetime.utcnow() + settings.session_ttl
    session = models.UserSession(
        tenant_id=user.tenant_id,
        user_id=user.id,
        token_hash=hash_token(token),
        csrf_token=generate_token(),
        expires_at=expires_at,
        last_seen_at=datetime.utcnow(),
    )
    db.add(session)
    db.commit()

    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.COOKIE_SECURE,
        path="/",
        expires=expires_at.replace(tzinfo=timezone.utc),
    )

    log_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action="auth.login",
        entity_type="session",
        entity_id=session.id,
        request_id=request_id_for(request),
    )
    tenant = user.tenant
    return AuthResponse(
        user=UserOut(id=user.id, email=user.email, fullName=user.full_name),
        tenant=TenantOut(id=tenant.id, slug=tenant.slug, name=tenant.name),
    )


@router.post("/auth/logout", status_code=204)
def logout(
    request: Request,
    actor: Actor = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    settings = get_settings_from_request(request)
    (
        db.query(models.UserSession)
        .filter(
            models.UserSession.id == actor.session_id,
            models.UserSession.tenant_id == actor.tenant_id,
            models.UserSession.revoked_at.is_(None),
        )
        .update({models.UserSession.revoked_at: datetime.utcnow()}, synchronize_session=False)
    )
    db.commit()

    log_audit(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        action="auth.logout",
        entity_type="session",
        entity_id=actor.session_id,
        request_id=request_id_for(request),
    )

    response = Response(status_code=204)
    response.delete_cookie(
        settings.SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.COOKIE_SECURE,
    )
    return response


@router.get("/auth/me", response_model=AuthResponse)
def me(actor: Actor = Depends(get_current_actor)):
    return _actor_response(actor)


@router.get("/auth/csrf", response_model=CsrfResponse)
def csrf_token(actor: Actor = Depends(get_current_actor)):
    return CsrfResponse(csrfToken=actor.csrf_token)
