"""
Asset versions.

The first upload is the root asset (version 1). Each later version is a new
IpAsset row whose parent_asset_id is the root; its bytes live under
`assets/{root_id}/v{n}_{filename}`.
"""
from __future__ import annotations

import re
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.errors import ConflictError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.assets.cdn import recommended_cache_control
from app.ygops.modules.assets.models import IpAsset
from app.ygops.modules.assets.service import file_digest, get_asset
from app.ygops.modules.assets.validator import validate_file
from app.ygops.storage import Storage
from app.ygops.utils import dump_json, utcnow

_UNSAFE_CHARS = re.compile(r"[^a-z0-9._-]", re.IGNORECASE)
_VERSION_PREFIX = re.compile(r"^v\d+_")


def version_storage_key(root_id: int, version: int, filename: str) -> str:
    return f"assets/{root_id}/v{version}_{_UNSAFE_CHARS.sub('_', filename or 'file')}"


def filename_from_key(storage_key: str) -> str:
    return _VERSION_PREFIX.sub("", storage_key.rsplit("/", 1)[-1])


def _root_of(s: Session, asset: IpAsset) -> IpAsset:
    if asset.parent_asset_id is None:
        return asset
    return get_asset(s, asset.parent_asset_id, include_deleted=True)


def next_version_number(s: Session, root: IpAsset) -> int:
    latest = s.execute(
        select(func.max(IpAsset.version)).where(IpAsset.parent_asset_id == root.id, IpAsset.deleted_at.is_(None))
    ).scalar_one_or_none()
    return max(root.version, latest or 0) + 1


def version_info(asset: IpAsset, *, is_current: bool = False) -> dict:
    return {
        "id": asset.id,
        "version": asset.version,
        "storage_key": asset.storage_key,
        "file_size": asset.file_size,
        "mime_type": asset.mime_type,
        "sha256": asset.sha256,
        "is_current": is_current,
        "created_at": asset.created_at.isoformat() if asset.created_at else None,
        "created_by": asset.owner_user_id,
        "deleted_at": asset.deleted_at.isoformat() if asset.deleted_at else None,
        "metadata": asset.meta,
    }


def create_version(
    s: Session,
    storage: Storage,
    parent_asset_id: int,
    *,
    actor: User,
    data: bytes,
    filename: str,
    content_type: str,
    reason: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> IpAsset:
    now = now or utcnow()
    root = _root_of(s, get_asset(s, parent_asset_id))
    if root.deleted_at is not None:
        raise NotFoundError("Asset not found", code="ASSET_NOT_FOUND")

    check = validate_file(data, filename, content_type)
    if not check.is_valid:
        raise ValidationError("File failed validation", code="INVALID_FILE", details=check.to_dict())
    mime_type = check.detected_mime_type or content_type

    version = next_version_number(s, root)
    key = version_storage_key(root.id, version, filename)
    storage.put_bytes(key, data, content_type=mime_type, cache_control=recommended_cache_control(key))

    asset = IpAsset(
        owner_user_id=actor.id,
        title=f"{root.title} (v{version})",
        description=root.description,
        type=root.type,
        storage_key=key,
        file_size=len(data),
        mime_type=mime_type,
        sha256=file_digest(data),
        status="DRAFT",
        version=version,
        parent_asset_id=root.id,
        metadata_json=dump_json({**(metadata or {}), "version_reason": reason or "Version update", "version_created_at": now.isoformat()}),
    )
    s.add(asset)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="asset.version_created",
        entity_type="IpAsset",
        entity_id=str(root.id),
        reason=reason,
        metadata={"version": version, "version_asset_id": asset.id},
    )
    return asset


def version_history(s: Session, asset_id: int, *, include_deleted: bool = False, order: str = "desc") -> list[dict]:
    root = _root_of(s, get_asset(s, asset_id, include_deleted=True))
    stmt = select(IpAsset).where(or_(IpAsset.id == root.id, IpAsset.parent_asset_id == root.id))
    if not include_deleted:
        stmt = stmt.where(IpAsset.deleted_at.is_(None))
    stmt = stmt.order_by(IpAsset.version.asc() if order == "asc" else IpAsset.version.desc())
    versions = list(s.execute(stmt).scalars().all())
    current = current_version(s, root.id)
    return [version_info(v, is_current=bool(current and v.id == current.id)) for v in versions]


def current_version(s: Session, asset_id: int) -> IpAsset | None:
    asset = s.get(IpAsset, asset_id)
    if not asset or asset.deleted_at is not None:
        return None
    root = _root_of(s, asset)
    latest = s.execute(
        select(IpAsset)
        .where(IpAsset.parent_asset_id == root.id, IpAsset.deleted_at.is_(None))
        .order_by(IpAsset.version.desc())
        .limit(1)
    ).scalar_one_or_none()
    return latest or root


def restore_version(
    s: Session,
    storage: Storage,
    version_id: int,
    *,
    actor: User,
    reason: str | None = None,
    now: datetime | None = None,
) -> IpAsset:
    """Copy an earlier version's bytes into a new latest version."""
    now = now or utcnow()
    old = get_asset(s, version_id)
    if old.parent_asset_id is None:
        raise ValidationError("Cannot restore root asset", code="CANNOT_RESTORE_ROOT")
    root = get_asset(s, old.parent_asset_id, include_deleted=True)

    version = next_version_number(s, root)
    key = version_storage_key(root.id, version, filename_from_key(old.storage_key))
    storage.copy(old.storage_key, key)

    restored = IpAsset(
        owner_user_id=actor.id,
        title=old.title,
        description=old.description,
        type=old.type,
        storage_key=key,
        file_size=old.file_size,
        mime_type=old.mime_type,
        sha256=old.sha256,
        status="DRAFT",
        version=version,
        parent_asset_id=root.id,
        metadata_json=dump_json(
            {
                **old.meta,
                "restored_from": old.id,
                "restored_from_version": old.version,
                "restore_reason": reason or "Version restored",
                "restored_at": now.isoformat(),
            }
        ),
    )
    s.add(restored)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="asset.version_restored",
        entity_type="IpAsset",
        entity_id=str(root.id),
        reason=reason,
        metadata={"from_version": old.version, "new_version": version},
    )
    return restored


def delete_version(s: Session, version_id: int, *, actor: User, now: datetime | None = None) -> IpAsset:
    version = get_asset(s, version_id)
    if version.parent_asset_id is None:
        live = s.execute(
            select(func.count()).select_from(IpAsset).where(IpAsset.parent_asset_id == version.id, IpAsset.deleted_at.is_(None))
        ).scalar_one()
        if live:
            raise ConflictError("Cannot delete root version with active derivatives", code="ASSET_HAS_VERSIONS")
    version.deleted_at = now or utcnow()
    record_event(
        s,
        actor=actor,
        action="asset.version_deleted",
        entity_type="IpAsset",
        entity_id=str(version.id),
        metadata={"version": version.version},
    )
    return version


def compare_versions(s: Session, first_id: int, second_id: int) -> dict:
    v1 = s.get(IpAsset, first_id)
    v2 = s.get(IpAsset, second_id)
    if not v1 or not v2:
        raise NotFoundError("One or both versions not found", code="ASSET_NOT_FOUND")
    return {
        "version1": version_info(v1),
        "version2": version_info(v2),
        "differences": {
            "file_size": {"v1": v1.file_size, "v2": v2.file_size, "changed": v1.file_size != v2.file_size},
            "mime_type": {"v1": v1.mime_type, "v2": v2.mime_type, "changed": v1.mime_type != v2.mime_type},
            "sha256": {"v1": v1.sha256, "v2": v2.sha256, "changed": v1.sha256 != v2.sha256},
            "metadata": {"changed": v1.meta != v2.meta, "details": {"v1": v1.meta, "v2": v2.meta}},
        },
    }


def cleanup_old_versions(s: Session, asset_id: int, *, keep_last_n: int, actor: User | None = None, now: datetime | None = None) -> int:
    """Soft-delete all but the newest `keep_last_n` live versions. Returns how many were removed."""
    if keep_last_n < 1:
        raise ValidationError("keep_last_n must be at least 1")
    now = now or utcnow()
    root = _root_of(s, get_asset(s, asset_id, include_deleted=True))
    versions = list(
        s.execute(
            select(IpAsset)
            .where(or_(IpAsset.id == root.id, IpAsset.parent_asset_id == root.id), IpAsset.deleted_at.is_(None))
            .order_by(IpAsset.version.desc())
        )
        .scalars()
        .all()
    )
    stale = versions[keep_last_n:]
    for v in stale:
        v.deleted_at = now
        v.metadata_json = dump_json({**v.meta, "deletion_reason": "Retention policy cleanup"})
    if stale:
        record_event(
            s,
            actor=actor,
            action="asset.versions_cleaned",
            entity_type="IpAsset",
            entity_id=str(root.id),
            metadata={"removed_versions": [v.version for v in stale], "keep_last_n": keep_last_n},
        )
    return len(stale)
