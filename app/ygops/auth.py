from __future__ import annotations

import uuid

from flask import Blueprint, current_app, g, request, session
from sqlalchemy import select
from werkzeug.security import check_password_hash

from app.ygops.audit import client_ip, record_event
from app.ygops.cache import CacheService, get_cache, user_key
from app.ygops.db import db_session
from app.ygops.errors import AuthenticationError, ForbiddenError
from app.ygops.models import User
from app.ygops.modules.two_factor import lockout
from app.ygops.modules.two_factor.challenge import ChallengeService
from app.ygops.ratelimit import get_rate_limiter
from app.ygops.rbac import effective_permissions, require_login
from app.ygops.security import ensure_csrf_token
from app.ygops.utils import request_payload, utcnow

bp = Blueprint("auth", __name__)


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active or user.deleted_at is not None:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def establish_session(user: User) -> None:
    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    ensure_csrf_token()
    g.current_user = user


def _locked_error(user: User) -> ForbiddenError:
    return ForbiddenError(
        "Account is temporarily locked due to repeated failed sign-in attempts.",
        code="ACCOUNT_LOCKED",
        details={"locked_until": user.locked_until.isoformat() if user.locked_until else None},
    )


@bp.post("/login")
def login_post():
    payload = request_payload(request)
    email = str(payload.get("email") or "").strip().lower()
    password = str(payload.get("password") or "")
    ip = client_ip() or "unknown"
    now = utcnow()

    s = db_session()
    user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user and user.is_locked(now):
        raise _locked_error(user)

    get_rate_limiter().check_or_raise(ip, "login")

    if not user or not user.is_active or user.deleted_at is not None or not check_password_hash(user.password_hash, password):
        status = lockout.record_failed_attempt(s, user, now=now, ip=ip) if user and user.is_active else None
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        if status and status.is_locked:
            raise _locked_error(user)  # type: ignore[arg-type]
        raise AuthenticationError("Invalid email or password.", code="INVALID_CREDENTIALS")

    if user.two_factor_enabled:
        challenge = ChallengeService().initiate(s, user, ip=ip, now=now)
        s.commit()
        return {"requires_2fa": True, **challenge.to_dict()}

    lockout.reset_failed_attempts(user)
    user.last_login_at = now
    establish_session(user)
    get_rate_limiter().reset(ip, "login")
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    get_cache().invalidate_user(user.id)
    current_app.logger.info("User %s signed in (request_id=%s)", user.id, getattr(g, "request_id", None))
    return {"requires_2fa": False, "user": user.to_dict(), "csrf_token": session.get("csrf_token")}


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return {"ok": True}


@bp.get("/me")
@require_login
def me():
    user: User = g.current_user
    return {
        "user": get_cache().get_or_set(user_key(user.id, "profile"), user.to_dict, ttl=CacheService.TTL_SHORT),
        "permissions": sorted(effective_permissions(user)),
        "two_factor": {
            "enabled": user.two_factor_enabled,
            "method": user.preferred_2fa_method,
            "phone_verified": user.phone_verified,
        },
    }


@bp.get("/csrf")
def csrf():
    return {"csrf_token": ensure_csrf_token()}
