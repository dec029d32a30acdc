from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

import redis
from sqlalchemy import event, select
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.cache import CacheBackend, get_cache_backend
from app.ygops.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.admin_roles.models import AdminRole
from app.ygops.modules.admin_roles.permissions import (
    ALL_PERMISSIONS,
    CONTRACTOR_ALLOWED_PERMISSIONS,
    CRITICAL_PERMISSIONS,
    DEPARTMENTS,
    SENIORITIES,
    WILDCARD_ALL,
    grants,
    is_prohibited_for_contractor,
    template_for,
)
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

PERMISSION_CACHE_TTL = 900


class PermissionCache:
    """Per-user aggregated admin permissions with hit/miss counters."""

    PREFIX = "permissions:user:"
    HITS_KEY = "permissions:cache:hits"
    MISSES_KEY = "permissions:cache:misses"

    def __init__(self, backend: CacheBackend, ttl: int = PERMISSION_CACHE_TTL) -> None:
        self.backend = backend
        self.ttl = ttl

    def get(self, user_id: int) -> list[str] | None:
        value = self.backend.get_json(f"{self.PREFIX}{user_id}")
        self.backend.incr_by(self.HITS_KEY if value is not None else self.MISSES_KEY, 1)
        return value

    def set(self, user_id: int, perms: list[str]) -> None:
        self.backend.set_json(f"{self.PREFIX}{user_id}", perms, ttl_seconds=self.ttl)

    def invalidate(self, user_id: int) -> None:
        self.backend.delete(f"{self.PREFIX}{user_id}")

    def invalidate_all(self) -> int:
        keys = self.backend.keys(f"{self.PREFIX}*")
        return self.backend.delete(*keys) if keys else 0

    def stats(self) -> dict:
        hits = int(self.backend.get(self.HITS_KEY) or 0)
        misses = int(self.backend.get(self.MISSES_KEY) or 0)
        total = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / total, 4) if total else 0.0,
            "cached_users": len(self.backend.keys(f"{self.PREFIX}*")),
        }


def permission_cache() -> PermissionCache:
    return PermissionCache(get_cache_backend())


_PENDING_INVALIDATIONS = "admin_roles.pending_permission_invalidations"


def invalidate_after_commit(s: Session, user_id: int) -> None:
    """Drop the cached permissions of `user_id` once `s` commits. A rollback discards the request."""
    s.info.setdefault(_PENDING_INVALIDATIONS, {})[user_id] = permission_cache()


@event.listens_for(Session, "after_commit")
def _flush_pending_invalidations(session: Session) -> None:
    pending = session.info.pop(_PENDING_INVALIDATIONS, None) or {}
    for user_id, cache in pending.items():
        try:
            cache.invalidate(user_id)
        except redis.RedisError as e:
            logger.warning("Permission cache invalidation for user %s failed: %s", user_id, e)


@event.listens_for(Session, "after_rollback")
def _drop_pending_invalidations(session: Session) -> None:
    session.info.pop(_PENDING_INVALIDATIONS, None)


def get_admin_role(s: Session, role_id: int) -> AdminRole:
    role = s.get(AdminRole, role_id)
    if not role or role.deleted_at is not None:
        raise NotFoundError("Admin role not found", code="ADMIN_ROLE_NOT_FOUND")
    return role


def _live_role(s: Session, user_id: int, department: str) -> AdminRole | None:
    return s.execute(
        select(AdminRole).where(
            AdminRole.user_id == user_id,
            AdminRole.department == department,
            AdminRole.deleted_at.is_(None),
        )
    ).scalar_one_or_none()


def _effective_super_admin_count(s: Session, now: datetime) -> int:
    roles = s.execute(
        select(AdminRole).where(
            AdminRole.department == "SUPER_ADMIN",
            AdminRole.deleted_at.is_(None),
            AdminRole.is_active.is_(True),
        )
    ).scalars().all()
    return sum(1 for r in roles if r.is_effective(now))


def _guard_last_super_admin(s: Session, role: AdminRole, now: datetime) -> None:
    if role.department == "SUPER_ADMIN" and role.is_effective(now) and _effective_super_admin_count(s, now) <= 1:
        raise ForbiddenError(
            "Cannot modify or revoke the last active Super Admin role.",
            code="LAST_SUPER_ADMIN",
        )


def _validate_department(department: str, seniority: str) -> None:
    if department not in DEPARTMENTS:
        raise ValidationError(f"Unknown department: {department}", details={"allowed": list(DEPARTMENTS)})
    if seniority not in SENIORITIES:
        raise ValidationError(f"Unknown seniority: {seniority}", details={"allowed": list(SENIORITIES)})


def validate_against_template(department: str, seniority: str, permissions: list[str]) -> None:
    unknown = sorted(p for p in permissions if p not in ALL_PERMISSIONS)
    if unknown:
        raise ValidationError("Unknown permissions", details={"permissions": unknown})
    allowed = set(template_for(department, seniority))
    outside = sorted(p for p in permissions if p not in allowed)
    if outside:
        raise ValidationError(
            f"Permissions not allowed for {department} ({seniority})",
            code="PERMISSION_NOT_IN_TEMPLATE",
            details={"permissions": outside},
        )


def validate_contractor_permissions(permissions: list[str]) -> None:
    prohibited = sorted(p for p in permissions if is_prohibited_for_contractor(p))
    if prohibited:
        raise ValidationError(
            "Contractor roles cannot hold these permissions",
            code="CONTRACTOR_PERMISSION_PROHIBITED",
            details={"permissions": prohibited},
        )
    outside = sorted(p for p in permissions if p not in CONTRACTOR_ALLOWED_PERMISSIONS)
    if outside:
        raise ValidationError(
            "Contractor roles may only hold whitelisted permissions",
            code="CONTRACTOR_PERMISSION_PROHIBITED",
            details={"permissions": outside},
        )


def create_admin_role(
    s: Session,
    *,
    actor: User | None,
    user_id: int,
    department: str,
    seniority: str = "JUNIOR",
    permissions: list[str] | None = None,
    expires_at: datetime | None = None,
    now: datetime | None = None,
) -> AdminRole:
    now = now or utcnow()
    department = (department or "").upper()
    seniority = (seniority or "JUNIOR").upper()
    permissions = sorted(set(permissions or []))
    _validate_department(department, seniority)

    if not s.get(User, user_id):
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    if _live_role(s, user_id, department):
        raise ConflictError(f"User already has a {department} role", code="ADMIN_ROLE_EXISTS")
    if expires_at is not None and expires_at <= now:
        raise ValidationError("Expiration must be in the future", code="INVALID_EXPIRATION")

    if department == "CONTRACTOR":
        if expires_at is None:
            raise ValidationError("Contractor roles require an expiration date", code="INVALID_EXPIRATION")
        validate_contractor_permissions(permissions)
    if permissions:
        validate_against_template(department, seniority, permissions)

    role = AdminRole(
        user_id=user_id,
        department=department,
        seniority=seniority,
        permissions=permissions,
        is_active=True,
        expires_at=expires_at,
        created_by_user_id=actor.id if actor else None,
        created_at=now,
        updated_at=now,
    )
    s.add(role)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="admin_role.create",
        entity_type="AdminRole",
        entity_id=str(role.id),
        metadata={"user_id": user_id, "department": department, "seniority": seniority, "permissions": permissions},
    )
    invalidate_after_commit(s, user_id)
    logger.info("Admin role %s created for user %s (%s)", role.id, user_id, department)
    return role


UNSET = object()


def update_admin_role(
    s: Session,
    role_id: int,
    *,
    actor: User | None,
    seniority: str | None = None,
    permissions: list[str] | None = None,
    is_active: bool | None = None,
    expires_at: datetime | None | object = UNSET,
    now: datetime | None = None,
) -> AdminRole:
    now = now or utcnow()
    role = get_admin_role(s, role_id)
    before = role.to_dict()

    deactivating = is_active is False and role.is_active
    narrowing = permissions is not None and role.department == "SUPER_ADMIN"
    if deactivating or narrowing:
        _guard_last_super_admin(s, role, now)

    new_seniority = (seniority or role.seniority).upper()
    _validate_department(role.department, new_seniority)

    if permissions is not None:
        permissions = sorted(set(permissions))
        current = set(role.permissions or template_for(role.department, role.seniority))
        stripped = [p for p in CRITICAL_PERMISSIONS.get(role.department, ()) if p in current and p not in permissions]
        if stripped:
            raise ValidationError(
                "Critical permissions cannot be removed from this department",
                code="CRITICAL_PERMISSION_REMOVAL",
                details={"permissions": stripped},
            )
        if role.department == "CONTRACTOR":
            validate_contractor_permissions(permissions)
        validate_against_template(role.department, new_seniority, permissions)
        role.permissions = permissions

    if expires_at is not UNSET:
        if expires_at is None and role.department == "CONTRACTOR":
            raise ValidationError("Contractor roles require an expiration date", code="INVALID_EXPIRATION")
        if isinstance(expires_at, datetime) and expires_at <= now:
            raise ValidationError("Expiration must be in the future", code="INVALID_EXPIRATION")
        role.expires_at = expires_at  # type: ignore[assignment]

    role.seniority = new_seniority
    if is_active is not None:
        role.is_active = is_active
    role.updated_at = now

    record_event(
        s,
        actor=actor,
        action="admin_role.update",
        entity_type="AdminRole",
        entity_id=str(role.id),
        metadata={"before": before, "after": role.to_dict()},
    )
    invalidate_after_commit(s, role.user_id)
    return role


def revoke_admin_role(
    s: Session,
    role_id: int,
    *,
    actor: User | None,
    reason: str,
    now: datetime | None = None,
) -> AdminRole:
    now = now or utcnow()
    if not (reason or "").strip():
        raise ValidationError("A reason is required to revoke an admin role")
    role = get_admin_role(s, role_id)
    _guard_last_super_admin(s, role, now)

    role.deleted_at = now
    role.deleted_by_user_id = actor.id if actor else None
    role.deletion_reason = reason.strip()
    role.is_active = False
    role.updated_at = now
    record_event(
        s,
        actor=actor,
        action="admin_role.revoke",
        entity_type="AdminRole",
        entity_id=str(role.id),
        reason=role.deletion_reason,
        metadata={"user_id": role.user_id, "department": role.department},
    )
    invalidate_after_commit(s, role.user_id)
    return role


def list_admin_roles(
    s: Session,
    *,
    department: str | None = None,
    user_id: int | None = None,
    active_only: bool = False,
    include_deleted: bool = False,
    now: datetime | None = None,
) -> list[AdminRole]:
    stmt = select(AdminRole)
    if department:
        stmt = stmt.where(AdminRole.department == department.upper())
    if user_id is not None:
        stmt = stmt.where(AdminRole.user_id == user_id)
    if not include_deleted:
        stmt = stmt.where(AdminRole.deleted_at.is_(None))
    roles = list(s.execute(stmt.order_by(AdminRole.created_at.desc(), AdminRole.id.desc())).scalars().all())
    if active_only:
        now = now or utcnow()
        roles = [r for r in roles if r.is_effective(now)]
    return roles


def compute_user_permissions(s: Session, user_id: int, now: datetime | None = None) -> list[str]:
    now = now or utcnow()
    perms: set[str] = set()
    for role in list_admin_roles(s, user_id=user_id, active_only=True, now=now):
        if role.department == "SUPER_ADMIN":
            return [WILDCARD_ALL]
        perms.update(role.permissions or template_for(role.department, role.seniority))
    return sorted(perms)


def get_user_permissions(s: Session, user_id: int, *, use_cache: bool = True, now: datetime | None = None) -> list[str]:
    cache = permission_cache() if use_cache else None
    if cache:
        cached = cache.get(user_id)
        if cached is not None:
            return cached
    perms = compute_user_permissions(s, user_id, now=now)
    if cache:
        cache.set(user_id, perms)
    return perms


def user_has_admin_permission(s: Session, user_id: int, permission: str) -> bool:
    return grants(get_user_permissions(s, user_id), permission)


def _get_contractor_or_400(s: Session, role_id: int) -> AdminRole:
    role = get_admin_role(s, role_id)
    if role.department != "CONTRACTOR":
        raise ValidationError("Only contractor roles support this operation", code="NOT_A_CONTRACTOR_ROLE")
    return role


def extend_contractor_role(
    s: Session,
    role_id: int,
    *,
    actor: User | None,
    new_expires_at: datetime,
    reason: str | None = None,
    now: datetime | None = None,
) -> AdminRole:
    now = now or utcnow()
    role = _get_contractor_or_400(s, role_id)
    if new_expires_at <= now:
        raise ValidationError("Expiration must be in the future", code="INVALID_EXPIRATION")
    previous = role.expires_at
    role.expires_at = new_expires_at
    role.is_active = True
    role.updated_at = now
    record_event(
        s,
        actor=actor,
        action="admin_role.contractor_extended",
        entity_type="AdminRole",
        entity_id=str(role.id),
        reason=reason,
        metadata={"before": previous.isoformat() if previous else None, "after": new_expires_at.isoformat()},
    )
    invalidate_after_commit(s, role.user_id)
    return role


def convert_contractor_to_permanent(
    s: Session,
    role_id: int,
    *,
    actor: User | None,
    department: str,
    seniority: str = "JUNIOR",
    permissions: list[str] | None = None,
    now: datetime | None = None,
) -> AdminRole:
    """Revoke the contractor grant and create a non-expiring department role in its place."""
    now = now or utcnow()
    contractor = _get_contractor_or_400(s, role_id)
    department = (department or "").upper()
    if department in ("CONTRACTOR", "SUPER_ADMIN"):
        raise ValidationError("Contractors convert to a regular department role", code="INVALID_DEPARTMENT")
    if _live_role(s, contractor.user_id, department):
        raise ConflictError(f"User already has a {department} role", code="ADMIN_ROLE_EXISTS")

    contractor.deleted_at = now
    contractor.deleted_by_user_id = actor.id if actor else None
    contractor.deletion_reason = f"Converted to permanent {department} role"
    contractor.is_active = False
    s.flush()

    role = create_admin_role(
        s,
        actor=actor,
        user_id=contractor.user_id,
        department=department,
        seniority=seniority,
        permissions=permissions,
        expires_at=None,
        now=now,
    )
    record_event(
        s,
        actor=actor,
        action="admin_role.contractor_converted",
        entity_type="AdminRole",
        entity_id=str(role.id),
        metadata={"from_role_id": contractor.id, "department": department},
    )
    return role


def get_expiring_roles(s: Session, *, days: int = 7, now: datetime | None = None) -> list[AdminRole]:
    now = now or utcnow()
    horizon = now + timedelta(days=days)
    stmt = (
        select(AdminRole)
        .where(
            AdminRole.deleted_at.is_(None),
            AdminRole.is_active.is_(True),
            AdminRole.expires_at.is_not(None),
            AdminRole.expires_at > now,
            AdminRole.expires_at <= horizon,
        )
        .order_by(AdminRole.expires_at.asc())
    )
    return list(s.execute(stmt).scalars().all())


def deactivate_expired_roles(s: Session, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    expired = s.execute(
        select(AdminRole).where(
            AdminRole.deleted_at.is_(None),
            AdminRole.is_active.is_(True),
            AdminRole.expires_at.is_not(None),
            AdminRole.expires_at <= now,
        )
    ).scalars().all()
    for role in expired:
        role.is_active = False
        role.updated_at = now
        record_event(
            s,
            actor=None,
            action="admin_role.expired",
            entity_type="AdminRole",
            entity_id=str(role.id),
            metadata={"user_id": role.user_id, "department": role.department},
        )
        invalidate_after_commit(s, role.user_id)
    if expired:
        logger.info("Deactivated %s expired admin roles", len(expired))
    return len(expired)


def get_role_stats(s: Session, *, now: datetime | None = None) -> dict:
    now = now or utcnow()
    roles = list_admin_roles(s, now=now)
    effective = [r for r in roles if r.is_effective(now)]
    return {
        "total": len(roles),
        "active": len(effective),
        "inactive": len(roles) - len(effective),
        "by_department": dict(Counter(r.department for r in effective)),
        "by_seniority": dict(Counter(r.seniority for r in effective)),
        "expiring_7_days": len(get_expiring_roles(s, days=7, now=now)),
        "expiring_30_days": len(get_expiring_roles(s, days=30, now=now)),
        "contractors": sum(1 for r in effective if r.department == "CONTRACTOR"),
        "cache": permission_cache().stats(),
    }
