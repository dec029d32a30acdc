from __future__ import annotations

from flask import Blueprint, g, request

from app.ygops.db import db_session
from app.ygops.errors import ValidationError
from app.ygops.models import User
from app.ygops.modules.admin_roles.permissions import (
    DEPARTMENTS,
    ROLE_TEMPLATES,
    SENIORITIES,
    permissions_by_category,
)
from app.ygops.modules.admin_roles.service import (
    UNSET,
    convert_contractor_to_permanent,
    create_admin_role,
    extend_contractor_role,
    get_admin_role,
    get_expiring_roles,
    get_role_stats,
    get_user_permissions,
    list_admin_roles,
    revoke_admin_role,
    update_admin_role,
)
from app.ygops.rbac import require_permission
from app.ygops.utils import parse_datetime, request_payload

bp = Blueprint("admin_roles", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


def _datetime_field(payload: dict, name: str):
    raw = payload.get(name)
    if raw in (None, ""):
        return None
    try:
        return parse_datetime(str(raw))
    except ValueError as e:
        raise ValidationError(f"{name} must be an ISO-8601 datetime") from e


@bp.get("")
@require_permission("admin_roles:view")
def roles_list():
    s = db_session()
    user_id = request.args.get("user_id", type=int)
    roles = list_admin_roles(
        s,
        department=(request.args.get("department") or "").strip() or None,
        user_id=user_id,
        active_only=_flag("active_only"),
        include_deleted=_flag("include_deleted"),
    )
    return {"items": [r.to_dict() for r in roles], "total": len(roles)}


@bp.get("/catalogue")
@require_permission("admin_roles:view")
def roles_catalogue():
    return {
        "departments": list(DEPARTMENTS),
        "seniorities": list(SENIORITIES),
        "permissions": permissions_by_category(),
        "templates": {f"{dept}:{sen}": perms for (dept, sen), perms in ROLE_TEMPLATES.items()},
    }


@bp.get("/stats")
@require_permission("admin_roles:view")
def roles_stats():
    return get_role_stats(db_session())


@bp.get("/expiring")
@require_permission("admin_roles:view")
def roles_expiring():
    days = request.args.get("days", default=7, type=int)
    roles = get_expiring_roles(db_session(), days=max(1, days))
    return {"items": [r.to_dict() for r in roles], "days": days}


@bp.get("/users/<int:user_id>/permissions")
@require_permission("admin_roles:view")
def user_permissions(user_id: int):
    perms = get_user_permissions(db_session(), user_id)
    return {"user_id": user_id, "permissions": perms}


@bp.get("/<int:role_id>")
@require_permission("admin_roles:view")
def roles_detail(role_id: int):
    return get_admin_role(db_session(), role_id).to_dict()


@bp.post("")
@require_permission("admin_roles:manage")
def roles_create():
    s = db_session()
    payload = request_payload(request)
    try:
        user_id = int(payload.get("user_id"))
    except (TypeError, ValueError) as e:
        raise ValidationError("user_id is required") from e
    role = create_admin_role(
        s,
        actor=_current_user(),
        user_id=user_id,
        department=str(payload.get("department") or ""),
        seniority=str(payload.get("seniority") or "JUNIOR"),
        permissions=payload.get("permissions") or [],
        expires_at=_datetime_field(payload, "expires_at"),
    )
    s.commit()
    return role.to_dict(), 201


@bp.patch("/<int:role_id>")
@require_permission("admin_roles:manage")
def roles_update(role_id: int):
    s = db_session()
    payload = request_payload(request)
    role = update_admin_role(
        s,
        role_id,
        actor=_current_user(),
        seniority=payload.get("seniority"),
        permissions=payload.get("permissions"),
        is_active=payload.get("is_active"),
        expires_at=_datetime_field(payload, "expires_at") if "expires_at" in payload else UNSET,
    )
    s.commit()
    return role.to_dict()


@bp.delete("/<int:role_id>")
@require_permission("admin_roles:manage")
def roles_revoke(role_id: int):
    s = db_session()
    payload = request_payload(request)
    role = revoke_admin_role(s, role_id, actor=_current_user(), reason=str(payload.get("reason") or ""))
    s.commit()
    return role.to_dict()


@bp.post("/<int:role_id>/extend")
@require_permission("admin_roles:manage")
def roles_extend(role_id: int):
    s = db_session()
    payload = request_payload(request)
    new_expires_at = _datetime_field(payload, "expires_at")
    if new_expires_at is None:
        raise ValidationError("expires_at is required")
    role = extend_contractor_role(
        s,
        role_id,
        actor=_current_user(),
        new_expires_at=new_expires_at,
        reason=payload.get("reason"),
    )
    s.commit()
    return role.to_dict()


@bp.post("/<int:role_id>/convert")
@require_permission("admin_roles:manage")
def roles_convert(role_id: int):
    s = db_session()
    payload = request_payload(request)
    role = convert_contractor_to_permanent(
        s,
        role_id,
        actor=_current_user(),
        department=str(payload.get("department") or ""),
        seniority=str(payload.get("seniority") or "JUNIOR"),
        permissions=payload.get("permissions") or [],
    )
    s.commit()
    return role.to_dict(), 201
