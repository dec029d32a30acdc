from __future__ import annotations

from flask import Blueprint, g, request

from app.ygops.db import db_session
from app.ygops.errors import ForbiddenError, ValidationError
from app.ygops.models import User
from app.ygops.modules.assets import service as assets
from app.ygops.modules.licensing import ownership, service
from app.ygops.rbac import require_login, require_permission, user_has_permission
from app.ygops.utils import parse_datetime, request_payload

bp = Blueprint("licensing", __name__)
ownership_bp = Blueprint("ownership", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _datetime_field(payload: dict, name: str, *, required: bool = False):
    try:
        value = parse_datetime(payload.get(name))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an ISO-8601 datetime") from e
    if value is None and required:
        raise ValidationError(f"{name} is required")
    return value


def _int_field(payload: dict, name: str, *, default: int | None = None, required: bool = False) -> int | None:
    raw = payload.get(name, default)
    if raw is None:
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer") from e


def _object_field(payload: dict, name: str) -> dict | None:
    value = payload.get(name)
    if value is not None and not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object")
    return value


def _visible_license(license_id: int):
    s = db_session()
    lic = service.get_license(s, license_id)
    if not service.can_view(s, _current_user(), lic):
        raise ForbiddenError("You cannot view this license")
    return lic


def _ensure_brand_or(lic, permission: str) -> None:
    u = _current_user()
    if lic.brand_user_id != u.id and not user_has_permission(u, permission, db_session()):
        raise ForbiddenError("You cannot change this license")


# ---------- Licenses ----------
@bp.get("")
@require_login
def licenses_list():
    page = service.list_licenses(
        db_session(),
        viewer=_current_user(),
        status=request.args.get("status"),
        ip_asset_id=request.args.get("ip_asset_id", type=int),
        brand_user_id=request.args.get("brand_user_id", type=int),
        license_type=request.args.get("license_type"),
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 20, type=int),
    )
    page["items"] = [lic.to_dict() for lic in page["items"]]
    return page


@bp.post("")
@require_permission("licenses.create")
def licenses_create():
    s = db_session()
    payload = request_payload(request)
    lic = service.create_license(
        s,
        actor=_current_user(),
        ip_asset_id=_int_field(payload, "ip_asset_id", required=True),
        start_date=_datetime_field(payload, "start_date", required=True),
        end_date=_datetime_field(payload, "end_date", required=True),
        license_type=str(payload.get("license_type") or "NON_EXCLUSIVE"),
        fee_cents=_int_field(payload, "fee_cents", default=0),
        rev_share_bps=_int_field(payload, "rev_share_bps", default=0),
        brand_user_id=_int_field(payload, "brand_user_id"),
        project_id=_int_field(payload, "project_id"),
        scope=_object_field(payload, "scope"),
        payment_terms=payload.get("payment_terms"),
        billing_frequency=payload.get("billing_frequency"),
        auto_renew=bool(payload.get("auto_renew")),
        metadata=_object_field(payload, "metadata"),
    )
    s.commit()
    return {"license": lic.to_dict()}, 201


@bp.get("/stats")
@require_login
def licenses_stats():
    s = db_session()
    u = _current_user()
    brand_user_id = request.args.get("brand_user_id", type=int)
    if not user_has_permission(u, "licenses.view_all", s):
        brand_user_id = u.id
    return service.license_stats(s, brand_user_id=brand_user_id)


@bp.post("/conflicts")
@require_login
def licenses_conflicts():
    payload = request_payload(request)
    conflicts = service.find_conflicts(
        db_session(),
        ip_asset_id=_int_field(payload, "ip_asset_id", required=True),
        start=_datetime_field(payload, "start_date", required=True),
        end=_datetime_field(payload, "end_date", required=True),
        license_type=str(payload.get("license_type") or "NON_EXCLUSIVE").upper(),
        scope=_object_field(payload, "scope"),
        exclude_license_id=_int_field(payload, "exclude_license_id"),
    )
    return {"has_conflicts": bool(conflicts), "conflicts": conflicts}


@bp.get("/<int:license_id>")
@require_login
def licenses_get(license_id: int):
    return {"license": _visible_license(license_id).to_dict()}


@bp.patch("/<int:license_id>")
@require_login
def licenses_update(license_id: int):
    s = db_session()
    lic = _visible_license(license_id)
    _ensure_brand_or(lic, "licenses.edit_all")
    payload = request_payload(request)
    changes: dict = {}
    for name in ("start_date", "end_date"):
        if name in payload:
            changes[name] = _datetime_field(payload, name, required=True)
    for name in ("fee_cents", "rev_share_bps"):
        if name in payload:
            changes[name] = _int_field(payload, name)
    if "scope" in payload:
        changes["scope"] = _object_field(payload, "scope") or {}
    for name in ("payment_terms", "billing_frequency"):
        if name in payload:
            changes[name] = payload.get(name)
    if "auto_renew" in payload:
        changes["auto_renew"] = bool(payload.get("auto_renew"))
    service.update_license(s, lic, actor=_current_user(), changes=changes)
    s.commit()
    return {"license": lic.to_dict()}


@bp.post("/<int:license_id>/submit")
@require_login
def licenses_submit(license_id: int):
    s = db_session()
    lic = _visible_license(license_id)
    _ensure_brand_or(lic, "licenses.edit_all")
    service.submit_for_approval(s, lic, actor=_current_user())
    s.commit()
    return {"license": lic.to_dict()}


@bp.post("/<int:license_id>/approve")
@require_login
def licenses_approve(license_id: int):
    s = db_session()
    lic = service.get_license(s, license_id)
    service.approve_license(s, lic, actor=_current_user())
    s.commit()
    return {"license": lic.to_dict()}


@bp.post("/<int:license_id>/renew")
@require_login
def licenses_renew(license_id: int):
    s = db_session()
    lic = _visible_license(license_id)
    _ensure_brand_or(lic, "licenses.edit_all")
    payload = request_payload(request)
    adjustment = payload.get("fee_adjustment_percent")
    if adjustment is not None and (isinstance(adjustment, bool) or not isinstance(adjustment, (int, float))):
        raise ValidationError("fee_adjustment_percent must be a number")
    renewal = service.generate_renewal(
        s,
        lic,
        actor=_current_user(),
        duration_days=_int_field(payload, "duration_days"),
        fee_adjustment_percent=adjustment,
        rev_share_adjustment_bps=_int_field(payload, "rev_share_adjustment_bps"),
    )
    s.commit()
    return {"license": renewal.to_dict()}, 201


@bp.post("/<int:license_id>/terminate")
@require_login
def licenses_terminate(license_id: int):
    s = db_session()
    u = _current_user()
    lic = _visible_license(license_id)
    allowed = (
        lic.brand_user_id == u.id
        or service.can_approve(s, u, lic)
        or user_has_permission(u, "licenses.terminate_all", s)
        or user_has_permission(u, "licensing:terminate", s)
    )
    if not allowed:
        raise ForbiddenError("You cannot terminate this license")
    payload = request_payload(request)
    service.terminate_license(
        s, lic, actor=u, reason=str(payload.get("reason") or ""), effective=_datetime_field(payload, "effective_date")
    )
    s.commit()
    return {"license": lic.to_dict()}


@bp.delete("/<int:license_id>")
@require_login
def licenses_delete(license_id: int):
    s = db_session()
    lic = _visible_license(license_id)
    _ensure_brand_or(lic, "licenses.edit_all")
    service.delete_license(s, lic, actor=_current_user())
    s.commit()
    return {"license": lic.to_dict()}


# ---------- Ownership ----------
def _editable_asset(asset_id: int):
    asset = assets.get_asset(db_session(), asset_id)
    assets.ensure_can(assets.can_edit(_current_user(), asset), "edit")
    return asset


def _can_manage_disputes(u: User) -> bool:
    return user_has_permission(u, "ip_assets.edit_all", db_session())


@ownership_bp.get("/assets/<int:asset_id>")
@require_login
def ownership_summary(asset_id: int):
    s = db_session()
    asset = assets.get_asset(s, asset_id)
    assets.ensure_can(assets.can_view(_current_user(), asset), "view")
    return ownership.ownership_summary(s, asset_id)


@ownership_bp.get("/assets/<int:asset_id>/history")
@require_login
def ownership_history(asset_id: int):
    s = db_session()
    asset = assets.get_asset(s, asset_id)
    assets.ensure_can(assets.can_view(_current_user(), asset), "view")
    return {"items": [o.to_dict() for o in ownership.ownership_history(s, asset_id)]}


@ownership_bp.put("/assets/<int:asset_id>")
@require_login
def ownership_set(asset_id: int):
    s = db_session()
    _editable_asset(asset_id)
    payload = request_payload(request)
    owners = payload.get("owners")
    if not isinstance(owners, list) or not all(isinstance(o, dict) for o in owners):
        raise ValidationError("owners must be a list of objects")
    rows = ownership.set_asset_ownership(
        s, asset_id, owners, actor=_current_user(), effective=_datetime_field(payload, "effective_date")
    )
    s.commit()
    return {"owners": [o.to_dict() for o in rows]}


@ownership_bp.post("/assets/<int:asset_id>/transfer")
@require_login
def ownership_transfer(asset_id: int):
    s = db_session()
    u = _current_user()
    assets.get_asset(s, asset_id)
    payload = request_payload(request)
    from_user_id = _int_field(payload, "from_user_id", default=u.id)
    if from_user_id != u.id and not _can_manage_disputes(u):
        raise ForbiddenError("You can only transfer your own share")
    result = ownership.transfer_ownership(
        s,
        asset_id,
        from_user_id=from_user_id,
        to_user_id=_int_field(payload, "to_user_id", required=True),
        share_bps=_int_field(payload, "share_bps", required=True),
        actor=u,
        contract_reference=payload.get("contract_reference"),
    )
    s.commit()
    return {
        "from_ownership": result["from_ownership"].to_dict() if result["from_ownership"] else None,
        "to_ownership": result["to_ownership"].to_dict(),
        "transferred_bps": result["transferred_bps"],
    }


@ownership_bp.get("/mine")
@require_login
def ownership_mine():
    rows = ownership.owned_assets(
        db_session(), _current_user().id, include_expired=request.args.get("include_expired") == "1"
    )
    return {"items": [o.to_dict() for o in rows]}


@ownership_bp.post("/<int:ownership_id>/dispute")
@require_login
def ownership_dispute(ownership_id: int):
    s = db_session()
    u = _current_user()
    row = ownership.get_ownership(s, ownership_id)
    if not (ownership.has_ownership(s, u.id, row.ip_asset_id) or _can_manage_disputes(u)):
        raise ForbiddenError("Only owners of this asset can raise a dispute")
    ownership.flag_dispute(s, ownership_id, reason=str(request_payload(request).get("reason") or ""), actor=u)
    s.commit()
    return {"ownership": row.to_dict()}


@ownership_bp.post("/<int:ownership_id>/resolve")
@require_permission("ip_assets.edit_all")
def ownership_resolve(ownership_id: int):
    s = db_session()
    payload = request_payload(request)
    row = ownership.resolve_dispute(
        s,
        ownership_id,
        action=str(payload.get("action") or ""),
        notes=str(payload.get("notes") or ""),
        actor=_current_user(),
        share_bps=_int_field(payload, "share_bps"),
        ownership_type=payload.get("ownership_type"),
    )
    s.commit()
    return {"ownership": row.to_dict()}


@ownership_bp.get("/disputes")
@require_permission("ip_assets.edit_all")
def ownership_disputes():
    return {"items": [o.to_dict() for o in ownership.disputed_ownerships(db_session())]}
