from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.db import paginate
from app.ygops.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.assets.models import IpAsset
from app.ygops.modules.licensing import ownership
from app.ygops.modules.licensing.models import BILLING_FREQUENCIES, LICENSE_STATUSES, LICENSE_TYPES, IpOwnership, License
from app.ygops.rbac import user_has_permission
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

MAX_REV_SHARE_BPS = 10000
# Licenses in these states hold their period on the asset.
BLOCKING_STATUSES = ("ACTIVE", "PENDING_APPROVAL", "DRAFT")
EDITABLE_STATUSES = ("DRAFT", "PENDING_APPROVAL")
EXPIRY_WINDOWS_DAYS = (30, 60, 90)


def get_license(s: Session, license_id: int) -> License:
    lic = s.get(License, license_id)
    if not lic or lic.deleted_at is not None:
        raise NotFoundError("License not found", code="LICENSE_NOT_FOUND")
    return lic


def _validate_terms(start: datetime, end: datetime, fee_cents: int, rev_share_bps: int) -> None:
    if end <= start:
        raise ValidationError("End date must be after start date", code="INVALID_DATES")
    if not isinstance(fee_cents, int) or isinstance(fee_cents, bool) or fee_cents < 0:
        raise ValidationError("Fee cannot be negative", code="INVALID_FEE")
    if not isinstance(rev_share_bps, int) or isinstance(rev_share_bps, bool) or not 0 <= rev_share_bps <= MAX_REV_SHARE_BPS:
        raise ValidationError(
            f"Revenue share must be between 0 and {MAX_REV_SHARE_BPS} basis points", code="INVALID_REV_SHARE"
        )


def _territories(scope: dict | None) -> set[str]:
    geo = (scope or {}).get("geographic") or {}
    return {str(t).upper() for t in geo.get("territories") or []}


def territories_overlap(a: dict | None, b: dict | None) -> bool:
    ta, tb = _territories(a), _territories(b)
    if not ta or not tb:
        return False
    if "GLOBAL" in ta or "GLOBAL" in tb:
        return True
    return bool(ta & tb)


def find_conflicts(
    s: Session,
    *,
    ip_asset_id: int,
    start: datetime,
    end: datetime,
    license_type: str,
    scope: dict | None,
    exclude_license_id: int | None = None,
) -> list[dict]:
    stmt = select(License).where(
        License.ip_asset_id == ip_asset_id,
        License.status.in_(BLOCKING_STATUSES),
        License.deleted_at.is_(None),
        License.start_date <= end,
        License.end_date >= start,
    )
    if exclude_license_id is not None:
        stmt = stmt.where(License.id != exclude_license_id)
    competitors = set(((scope or {}).get("exclusivity") or {}).get("competitors") or [])

    conflicts: list[dict] = []
    for existing in s.execute(stmt.order_by(License.start_date)).scalars():
        if "EXCLUSIVE" in (license_type, existing.license_type):
            conflicts.append({"license_id": existing.id, "reason": "EXCLUSIVE_OVERLAP"})
            continue
        if "EXCLUSIVE_TERRITORY" in (license_type, existing.license_type) and territories_overlap(scope, existing.scope):
            conflicts.append({"license_id": existing.id, "reason": "TERRITORY_OVERLAP"})
        if existing.brand_user_id in competitors:
            conflicts.append({"license_id": existing.id, "reason": "COMPETITOR_BLOCKED"})
    return conflicts


def _ensure_no_conflicts(s: Session, **kwargs) -> None:
    conflicts = find_conflicts(s, **kwargs)
    if conflicts:
        raise ConflictError("License conflicts detected", code="LICENSE_CONFLICT", details={"conflicts": conflicts})


def create_license(
    s: Session,
    *,
    actor: User,
    ip_asset_id: int,
    start_date: datetime,
    end_date: datetime,
    license_type: str = "NON_EXCLUSIVE",
    fee_cents: int = 0,
    rev_share_bps: int = 0,
    brand_user_id: int | None = None,
    project_id: int | None = None,
    scope: dict | None = None,
    payment_terms: str | None = None,
    billing_frequency: str | None = None,
    auto_renew: bool = False,
    metadata: dict | None = None,
) -> License:
    license_type = (license_type or "").upper()
    if license_type not in LICENSE_TYPES:
        raise ValidationError(f"license_type must be one of {', '.join(LICENSE_TYPES)}", code="INVALID_LICENSE_TYPE")
    if billing_frequency is not None and billing_frequency not in BILLING_FREQUENCIES:
        raise ValidationError(
            f"billing_frequency must be one of {', '.join(BILLING_FREQUENCIES)}", code="INVALID_BILLING_FREQUENCY"
        )
    _validate_terms(start_date, end_date, fee_cents, rev_share_bps)

    asset = s.get(IpAsset, ip_asset_id)
    if not asset:
        raise NotFoundError("IP asset not found", code="ASSET_NOT_FOUND")
    if asset.deleted_at is not None:
        raise ValidationError("Cannot license a deleted asset", code="ASSET_DELETED")

    brand_user_id = brand_user_id or actor.id
    if brand_user_id != actor.id and not user_has_permission(actor, "licenses.edit_all", s):
        raise ForbiddenError("You can only request licenses for your own brand")
    if not s.get(User, brand_user_id):
        raise NotFoundError("Brand user not found", code="USER_NOT_FOUND")

    _ensure_no_conflicts(
        s, ip_asset_id=ip_asset_id, start=start_date, end=end_date, license_type=license_type, scope=scope
    )

    lic = License(
        ip_asset_id=ip_asset_id,
        brand_user_id=brand_user_id,
        project_id=project_id,
        license_type=license_type,
        status="DRAFT",
        start_date=start_date,
        end_date=end_date,
        fee_cents=fee_cents,
        rev_share_bps=rev_share_bps,
        payment_terms=payment_terms,
        billing_frequency=billing_frequency,
        scope=scope or {},
        auto_renew=bool(auto_renew),
        metadata_json=metadata or {},
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    s.add(lic)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="license.created",
        entity_type="License",
        entity_id=str(lic.id),
        metadata={"ip_asset_id": ip_asset_id, "license_type": license_type, "brand_user_id": brand_user_id},
    )
    return lic


def can_approve(s: Session, user: User, lic: License) -> bool:
    if user_has_permission(user, "licensing:approve", s):
        return True
    if not user_has_permission(user, "licenses.approve", s):
        return False
    if ownership.has_ownership(s, user.id, lic.ip_asset_id):
        return True
    # Assets without a recorded split belong to their uploader.
    asset = s.get(IpAsset, lic.ip_asset_id)
    return bool(asset) and not ownership.owners_at(s, lic.ip_asset_id) and asset.owner_user_id == user.id


def can_view(s: Session, user: User, lic: License) -> bool:
    if user_has_permission(user, "licenses.view_all", s) or user_has_permission(user, "licensing:view", s):
        return True
    if lic.brand_user_id == user.id:
        return True
    return can_approve(s, user, lic)


def submit_for_approval(s: Session, lic: License, *, actor: User) -> License:
    if lic.status != "DRAFT":
        raise ConflictError("Only draft licenses can be submitted", code="INVALID_STATUS")
    lic.status = "PENDING_APPROVAL"
    lic.updated_by_user_id = actor.id
    record_event(s, actor=actor, action="license.submitted", entity_type="License", entity_id=str(lic.id))
    return lic


def approve_license(s: Session, lic: License, *, actor: User, now: datetime | None = None) -> License:
    if lic.status not in EDITABLE_STATUSES:
        raise ConflictError("License is not pending approval", code="INVALID_STATUS")
    if not can_approve(s, actor, lic):
        raise ForbiddenError("User does not own this asset")
    lic.status = "ACTIVE"
    lic.signed_at = now or utcnow()
    lic.updated_by_user_id = actor.id
    record_event(
        s, actor=actor, action="license.approved", entity_type="License", entity_id=str(lic.id),
        metadata={"brand_user_id": lic.brand_user_id},
    )
    logger.info("License %s approved by user %s", lic.id, actor.id)
    return lic


def update_license(s: Session, lic: License, *, actor: User, changes: dict) -> License:
    if lic.status not in EDITABLE_STATUSES:
        raise ConflictError("Only draft or pending licenses can be edited", code="INVALID_STATUS")
    start = changes.get("start_date", lic.start_date)
    end = changes.get("end_date", lic.end_date)
    fee = changes.get("fee_cents", lic.fee_cents)
    rev_share = changes.get("rev_share_bps", lic.rev_share_bps)
    _validate_terms(start, end, fee, rev_share)
    scope = changes.get("scope", lic.scope)
    if {"start_date", "end_date", "scope"} & changes.keys():
        _ensure_no_conflicts(
            s,
            ip_asset_id=lic.ip_asset_id,
            start=start,
            end=end,
            license_type=lic.license_type,
            scope=scope,
            exclude_license_id=lic.id,
        )
    lic.start_date, lic.end_date, lic.fee_cents, lic.rev_share_bps, lic.scope = start, end, fee, rev_share, scope
    for field in ("payment_terms", "billing_frequency", "auto_renew"):
        if field in changes:
            setattr(lic, field, changes[field])
    lic.updated_by_user_id = actor.id
    record_event(
        s, actor=actor, action="license.updated", entity_type="License", entity_id=str(lic.id),
        metadata={"fields": sorted(changes)},
    )
    return lic


def generate_renewal(
    s: Session,
    lic: License,
    *,
    actor: User,
    duration_days: int | None = None,
    fee_adjustment_percent: float | None = None,
    rev_share_adjustment_bps: int | None = None,
) -> License:
    """New PENDING_APPROVAL license starting the day after `lic` ends."""
    if lic.status not in ("ACTIVE", "EXPIRED"):
        raise ConflictError("Only active or expired licenses can be renewed", code="INVALID_STATUS")
    duration = duration_days if duration_days is not None else (lic.end_date - lic.start_date).days
    if duration < 1:
        raise ValidationError("duration_days must be at least 1", code="INVALID_DURATION")
    start = lic.end_date + timedelta(days=1)
    end = start + timedelta(days=duration)
    fee = round(lic.fee_cents + lic.fee_cents * (fee_adjustment_percent or 0) / 100)
    rev_share = lic.rev_share_bps + (rev_share_adjustment_bps or 0)
    if not 0 <= rev_share <= MAX_REV_SHARE_BPS:
        raise ValidationError(
            f"Adjusted revenue share must be between 0 and {MAX_REV_SHARE_BPS} basis points", code="INVALID_REV_SHARE"
        )
    _ensure_no_conflicts(
        s, ip_asset_id=lic.ip_asset_id, start=start, end=end, license_type=lic.license_type, scope=lic.scope,
        exclude_license_id=lic.id,
    )
    renewal = License(
        ip_asset_id=lic.ip_asset_id,
        brand_user_id=lic.brand_user_id,
        project_id=lic.project_id,
        license_type=lic.license_type,
        status="PENDING_APPROVAL",
        start_date=start,
        end_date=end,
        fee_cents=fee,
        rev_share_bps=rev_share,
        payment_terms=lic.payment_terms,
        billing_frequency=lic.billing_frequency,
        scope=dict(lic.scope or {}),
        auto_renew=lic.auto_renew,
        metadata_json={},
        parent_license_id=lic.id,
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    s.add(renewal)
    s.flush()
    record_event(
        s, actor=actor, action="license.renewal_generated", entity_type="License", entity_id=str(renewal.id),
        metadata={"parent_license_id": lic.id},
    )
    return renewal


def terminate_license(
    s: Session, lic: License, *, actor: User, reason: str, effective: datetime | None = None
) -> License:
    if lic.status != "ACTIVE":
        raise ConflictError("Only active licenses can be terminated", code="INVALID_STATUS")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A termination reason is required", code="REASON_REQUIRED")
    effective = effective or utcnow()
    lic.status = "TERMINATED"
    lic.end_date = effective
    lic.updated_by_user_id = actor.id
    lic.metadata_json = {
        **(lic.metadata_json or {}),
        "termination_reason": reason,
        "terminated_at": effective.isoformat(),
        "terminated_by": actor.id,
    }
    record_event(
        s, actor=actor, action="license.terminated", entity_type="License", entity_id=str(lic.id), reason=reason,
        metadata={"effective_date": effective.isoformat()},
    )
    return lic


def delete_license(s: Session, lic: License, *, actor: User, now: datetime | None = None) -> License:
    if lic.status == "ACTIVE":
        raise ConflictError("Terminate an active license before deleting it", code="INVALID_STATUS")
    lic.deleted_at = now or utcnow()
    lic.updated_by_user_id = actor.id
    record_event(s, actor=actor, action="license.deleted", entity_type="License", entity_id=str(lic.id))
    return lic


def list_licenses(
    s: Session,
    *,
    viewer: User,
    status: str | None = None,
    ip_asset_id: int | None = None,
    brand_user_id: int | None = None,
    license_type: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    stmt = select(License).where(License.deleted_at.is_(None))
    if status:
        if status not in LICENSE_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        stmt = stmt.where(License.status == status)
    if license_type:
        stmt = stmt.where(License.license_type == license_type)
    if ip_asset_id is not None:
        stmt = stmt.where(License.ip_asset_id == ip_asset_id)
    if brand_user_id is not None:
        stmt = stmt.where(License.brand_user_id == brand_user_id)
    if not (user_has_permission(viewer, "licenses.view_all", s) or user_has_permission(viewer, "licensing:view", s)):
        owned = select(IpOwnership.ip_asset_id).where(
            IpOwnership.owner_user_id == viewer.id, IpOwnership.end_date.is_(None)
        )
        uploaded = select(IpAsset.id).where(IpAsset.owner_user_id == viewer.id)
        stmt = stmt.where(
            or_(License.brand_user_id == viewer.id, License.ip_asset_id.in_(owned), License.ip_asset_id.in_(uploaded))
        )
    stmt = stmt.order_by(License.created_at.desc(), License.id.desc())
    return paginate(s, stmt, page=page, per_page=per_page)


def expire_licenses(s: Session, *, now: datetime | None = None) -> list[int]:
    """Move ACTIVE licenses whose end date has passed to EXPIRED."""
    now = now or utcnow()
    due = s.execute(
        select(License).where(License.status == "ACTIVE", License.deleted_at.is_(None), License.end_date < now)
    ).scalars().all()
    for lic in due:
        lic.status = "EXPIRED"
        record_event(s, actor=None, action="license.expired", entity_type="License", entity_id=str(lic.id))
    if due:
        logger.info("Expired %s licenses", len(due))
    return [lic.id for lic in due]


def license_stats(s: Session, *, brand_user_id: int | None = None, now: datetime | None = None) -> dict:
    now = now or utcnow()
    base = [License.deleted_at.is_(None)]
    if brand_user_id is not None:
        base.append(License.brand_user_id == brand_user_id)

    def count(*where) -> int:
        return s.execute(select(func.count(License.id)).where(*base, *where)).scalar_one()

    active = s.execute(select(License).where(*base, License.status == "ACTIVE")).scalars().all()
    total = count()
    renewed = count(License.parent_license_id.is_not(None))
    durations = [(lic.end_date - lic.start_date).days for lic in active]
    out = {
        "total_active": len(active),
        "total_revenue_cents": sum(lic.fee_cents for lic in active),
        "average_license_duration_days": round(sum(durations) / len(durations)) if durations else 0,
        "exclusive_licenses": count(License.license_type == "EXCLUSIVE"),
        "non_exclusive_licenses": count(License.license_type == "NON_EXCLUSIVE"),
        "renewal_rate": round(renewed / total * 100, 2) if total else 0.0,
    }
    for days in EXPIRY_WINDOWS_DAYS:
        out[f"expiring_in_{days}_days"] = sum(1 for lic in active if now <= lic.end_date <= now + timedelta(days=days))
    return out
