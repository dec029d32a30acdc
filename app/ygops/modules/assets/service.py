from __future__ import annotations

import hashlib
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.ygops.audit import record_event
from app.ygops.db import paginate
from app.ygops.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.assets.cdn import recommended_cache_control
from app.ygops.modules.assets.models import ASSET_STATUSES, ASSET_TYPES, IpAsset
from app.ygops.modules.assets.relationships import validate_deletion
from app.ygops.modules.assets.validator import asset_type_for, file_extension, validate_file
from app.ygops.rbac import user_has_permission
from app.ygops.storage import Storage
from app.ygops.utils import dump_json, utcnow

logger = logging.getLogger(__name__)


def file_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sanitize_filename(filename: str) -> str:
    return secure_filename(filename or "") or "upload.bin"


def original_key(asset_id: int, filename: str) -> str:
    ext = file_extension(filename) or "bin"
    return f"assets/{asset_id}/original.{ext}"


def get_asset(s: Session, asset_id: int, *, include_deleted: bool = False) -> IpAsset:
    asset = s.get(IpAsset, asset_id)
    if not asset or (asset.deleted_at is not None and not include_deleted):
        raise NotFoundError("Asset not found", code="ASSET_NOT_FOUND")
    return asset


def can_view(user: User, asset: IpAsset) -> bool:
    if asset.owner_user_id == user.id:
        return True
    if asset.status == "PUBLISHED" and user_has_permission(user, "ip_assets.view_public"):
        return True
    return user_has_permission(user, "ip_assets.view_all")


def can_edit(user: User, asset: IpAsset) -> bool:
    if asset.owner_user_id == user.id and user_has_permission(user, "ip_assets.edit_own"):
        return True
    return user_has_permission(user, "ip_assets.edit_all")


def can_delete(user: User, asset: IpAsset) -> bool:
    if asset.owner_user_id == user.id and user_has_permission(user, "ip_assets.delete_own"):
        return True
    return user_has_permission(user, "ip_assets.delete_all")


def ensure_can(allowed: bool, action: str) -> None:
    if not allowed:
        raise ForbiddenError(f"You may not {action} this asset.", code="ASSET_FORBIDDEN")


def upload_asset(
    s: Session,
    storage: Storage,
    *,
    actor: User,
    data: bytes,
    filename: str,
    content_type: str,
    title: str | None = None,
    description: str | None = None,
    metadata: dict | None = None,
) -> tuple[IpAsset, list[str]]:
    """
    Validate, store and register a new root asset. Returns the asset and any validation warnings.
    """
    filename = sanitize_filename(filename)
    check = validate_file(data, filename, content_type)
    if not check.is_valid:
        raise ValidationError("File failed validation", code="INVALID_FILE", details=check.to_dict())

    mime_type = check.detected_mime_type or content_type
    asset = IpAsset(
        owner_user_id=actor.id,
        title=(title or "").strip() or filename,
        description=(description or "").strip() or None,
        type=asset_type_for(mime_type),
        mime_type=mime_type,
        file_size=len(data),
        sha256=file_digest(data),
        status="DRAFT",
        version=1,
        metadata_json=dump_json({**(metadata or {}), "original_filename": filename}),
    )
    s.add(asset)
    s.flush()

    asset.storage_key = original_key(asset.id, filename)
    storage.put_bytes(
        asset.storage_key,
        data,
        content_type=mime_type,
        cache_control=recommended_cache_control(asset.storage_key),
    )
    record_event(
        s,
        actor=actor,
        action="asset.upload",
        entity_type="IpAsset",
        entity_id=str(asset.id),
        metadata={"filename": filename, "sha256": asset.sha256, "size_bytes": asset.file_size, "warnings": check.warnings},
    )
    logger.info("Asset %s uploaded by user %s (%s bytes)", asset.id, actor.id, asset.file_size)
    return asset, check.warnings


def list_assets(
    s: Session,
    *,
    viewer: User,
    owner_user_id: int | None = None,
    status: str | None = None,
    type: str | None = None,
    q: str | None = None,
    roots_only: bool = True,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    stmt = select(IpAsset).where(IpAsset.deleted_at.is_(None))
    if not user_has_permission(viewer, "ip_assets.view_all"):
        stmt = stmt.where((IpAsset.owner_user_id == viewer.id) | (IpAsset.status == "PUBLISHED"))
    if owner_user_id:
        stmt = stmt.where(IpAsset.owner_user_id == owner_user_id)
    if status:
        stmt = stmt.where(IpAsset.status == status.upper())
    if type:
        stmt = stmt.where(IpAsset.type == type.upper())
    if q:
        like = f"%{q.strip()}%"
        stmt = stmt.where(IpAsset.title.ilike(like) | IpAsset.description.ilike(like))
    if roots_only:
        stmt = stmt.where(IpAsset.parent_asset_id.is_(None))
    stmt = stmt.order_by(IpAsset.created_at.desc(), IpAsset.id.desc())
    return paginate(s, stmt, page=page, per_page=per_page)


def update_asset(
    s: Session,
    asset: IpAsset,
    *,
    actor: User,
    title: str | None = None,
    description: str | None = None,
    metadata: dict | None = None,
) -> IpAsset:
    changes: dict = {}
    if title is not None:
        title = title.strip()
        if not title:
            raise ValidationError("Title is required")
        changes["title"] = [asset.title, title]
        asset.title = title
    if description is not None:
        changes["description"] = True
        asset.description = description.strip() or None
    if metadata is not None:
        asset.metadata_json = dump_json({**asset.meta, **metadata})
        changes["metadata"] = sorted(metadata)
    record_event(s, actor=actor, action="asset.update", entity_type="IpAsset", entity_id=str(asset.id), metadata=changes)
    return asset


_STATUS_PERMISSIONS = {"APPROVED": "ip_assets.approve", "PUBLISHED": "ip_assets.publish"}


def change_status(s: Session, asset: IpAsset, new_status: str, *, actor: User, reason: str | None = None) -> IpAsset:
    new_status = (new_status or "").strip().upper()
    if new_status not in ASSET_STATUSES:
        raise ValidationError(f"Unknown status: {new_status}", code="INVALID_STATUS")
    needed = _STATUS_PERMISSIONS.get(new_status)
    if needed and not user_has_permission(actor, needed):
        raise ForbiddenError("You do not have permission to perform this action.", details={"missing_permission": needed})
    old = asset.status
    asset.status = new_status
    record_event(
        s,
        actor=actor,
        action="asset.status_change",
        entity_type="IpAsset",
        entity_id=str(asset.id),
        reason=reason,
        metadata={"from": old, "to": new_status},
    )
    return asset


def soft_delete_asset(s: Session, asset: IpAsset, *, actor: User, now: datetime | None = None) -> IpAsset:
    now = now or utcnow()
    if asset.parent_asset_id is None:
        live_versions = s.execute(
            select(IpAsset.id).where(IpAsset.parent_asset_id == asset.id, IpAsset.deleted_at.is_(None))
        ).first()
        if live_versions:
            raise ConflictError("Cannot delete root version with active derivatives", code="ASSET_HAS_VERSIONS")
    check = validate_deletion(s, asset.id)
    if not check["can_delete"]:
        raise ConflictError("Asset has dependencies that prevent deletion", code="ASSET_HAS_DEPENDENTS", details=check)
    asset.deleted_at = now
    record_event(
        s,
        actor=actor,
        action="asset.delete",
        entity_type="IpAsset",
        entity_id=str(asset.id),
        metadata={"warnings": check["warnings"]},
    )
    return asset


def asset_stats(s: Session) -> dict:
    rows = s.execute(select(IpAsset.type, IpAsset.status, IpAsset.file_size).where(IpAsset.deleted_at.is_(None))).all()
    by_type = {t: 0 for t in ASSET_TYPES}
    by_status = {st: 0 for st in ASSET_STATUSES}
    total_bytes = 0
    for asset_type, status, size in rows:
        by_type[asset_type] = by_type.get(asset_type, 0) + 1
        by_status[status] = by_status.get(status, 0) + 1
        total_bytes += int(size or 0)
    return {"total": len(rows), "total_bytes": total_bytes, "by_type": by_type, "by_status": by_status}


def open_asset_file(storage: Storage, asset: IpAsset):
    return storage.open(asset.storage_key)
