"""
Storage usage snapshots, trends and quotas.

`capture_storage_snapshots` runs daily and writes one StorageMetric row for the
platform and one per user. Trends compare the latest snapshot with the latest
one taken at least a period earlier; quotas read live asset sizes.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.ygops.errors import ValidationError
from app.ygops.models import User
from app.ygops.modules.analytics.rollups import growth_percent
from app.ygops.modules.assets.models import IpAsset, StorageMetric
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("platform", "user")
TREND_PERIOD_DAYS = {"day": 1, "week": 7, "month": 30}
TOP_CONSUMERS = 10
DORMANT_DAYS = 30
MAX_DORMANT_FILES = 100


def _scope(entity_type: str, entity_id: int | None) -> list:
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"entity_type must be one of {', '.join(ENTITY_TYPES)}")
    where = [IpAsset.deleted_at.is_(None)]
    if entity_type == "user":
        where.append(IpAsset.owner_user_id == entity_id)
    return where


def usage(s: Session, entity_type: str = "platform", entity_id: int | None = None) -> dict:
    """Live totals straight from ip_assets."""
    where = _scope(entity_type, entity_id)
    total, count, largest = s.execute(
        select(func.coalesce(func.sum(IpAsset.file_size), 0), func.count(IpAsset.id), func.coalesce(func.max(IpAsset.file_size), 0))
        .where(*where)
    ).one()
    largest_id = None
    if count:
        largest_id = s.execute(
            select(IpAsset.id).where(*where).order_by(IpAsset.file_size.desc(), IpAsset.id).limit(1)
        ).scalar_one()
    by_type = {
        asset_type: {"bytes": int(b or 0), "count": n}
        for asset_type, b, n in s.execute(
            select(IpAsset.type, func.sum(IpAsset.file_size), func.count(IpAsset.id)).where(*where).group_by(IpAsset.type)
        )
    }
    return {
        "total_bytes": int(total),
        "file_count": count,
        "average_file_size": int(total) // count if count else 0,
        "largest_file_size": int(largest),
        "largest_file_id": largest_id,
        "breakdown_by_type": by_type,
    }


def _snapshot_row(s: Session, entity_type: str, entity_id: int | None, day: date) -> StorageMetric | None:
    stmt = select(StorageMetric).where(
        StorageMetric.snapshot_date == day,
        StorageMetric.entity_type == entity_type,
        StorageMetric.entity_id.is_(None) if entity_id is None else StorageMetric.entity_id == entity_id,
    )
    return s.execute(stmt).scalar_one_or_none()


def _latest(s: Session, entity_type: str, entity_id: int | None, *, before: date | None = None, on_or_before: date | None = None):
    stmt = select(StorageMetric).where(
        StorageMetric.entity_type == entity_type,
        StorageMetric.entity_id.is_(None) if entity_id is None else StorageMetric.entity_id == entity_id,
    )
    if before is not None:
        stmt = stmt.where(StorageMetric.snapshot_date < before)
    if on_or_before is not None:
        stmt = stmt.where(StorageMetric.snapshot_date <= on_or_before)
    return s.execute(stmt.order_by(StorageMetric.snapshot_date.desc()).limit(1)).scalar_one_or_none()


def capture_snapshot(s: Session, entity_type: str, entity_id: int | None, day: date) -> StorageMetric:
    current = usage(s, entity_type, entity_id)
    previous = _latest(s, entity_type, entity_id, before=day)
    trend_bps = 0
    if previous and previous.total_bytes > 0:
        trend_bps = round((current["total_bytes"] - previous.total_bytes) / previous.total_bytes * 10000)

    row = _snapshot_row(s, entity_type, entity_id, day)
    if row is None:
        row = StorageMetric(snapshot_date=day, entity_type=entity_type, entity_id=entity_id)
        s.add(row)
    for field, value in current.items():
        setattr(row, field, value)
    row.storage_trend_bps = trend_bps
    return row


def capture_storage_snapshots(s: Session, *, day: date | None = None) -> dict[str, int]:
    day = day or utcnow().date()
    capture_snapshot(s, "platform", None, day)
    user_ids = s.execute(select(User.id).where(User.deleted_at.is_(None)).order_by(User.id)).scalars().all()
    for user_id in user_ids:
        capture_snapshot(s, "user", user_id, day)
    s.flush()
    logger.info("Captured storage snapshots for %s on %s", len(user_ids) + 1, day)
    return {"platform": 1, "users": len(user_ids)}


def current_snapshot(s: Session, entity_type: str = "platform", entity_id: int | None = None) -> StorageMetric | None:
    _scope(entity_type, entity_id)
    return _latest(s, entity_type, entity_id)


def storage_trend(
    s: Session,
    entity_type: str = "platform",
    entity_id: int | None = None,
    *,
    period: str = "week",
    today: date | None = None,
) -> dict | None:
    """
    Bytes now versus the newest snapshot at least `period` old.
    growth_rate is None when there is nothing to compare against.
    """
    if period not in TREND_PERIOD_DAYS:
        raise ValidationError(f"period must be one of {', '.join(TREND_PERIOD_DAYS)}")
    current = current_snapshot(s, entity_type, entity_id)
    if current is None:
        return None
    today = today or utcnow().date()
    previous = _latest(s, entity_type, entity_id, on_or_before=today - timedelta(days=TREND_PERIOD_DAYS[period]))
    previous_bytes = previous.total_bytes if previous else 0
    return {
        "period": period,
        "current": current.total_bytes,
        "previous": previous_bytes,
        "growth_bytes": current.total_bytes - previous_bytes,
        "growth_rate": growth_percent(current.total_bytes, previous_bytes) if previous else None,
    }


def check_quota(s: Session, user_id: int, quota_bytes: int) -> dict:
    if quota_bytes <= 0:
        raise ValidationError("quota_bytes must be positive")
    used = usage(s, "user", user_id)["total_bytes"]
    return {
        "entity_type": "user",
        "entity_id": user_id,
        "quota_bytes": quota_bytes,
        "used_bytes": used,
        "remaining_bytes": max(0, quota_bytes - used),
        "percent_used": round(used / quota_bytes * 100, 2),
        "is_exceeded": used > quota_bytes,
    }


def ensure_within_quota(s: Session, user_id: int, incoming_bytes: int, quota_bytes: int) -> None:
    """Raise when storing `incoming_bytes` more would push the user past `quota_bytes`. 0 means unlimited."""
    if quota_bytes <= 0:
        return
    used = usage(s, "user", user_id)["total_bytes"]
    if used + incoming_bytes > quota_bytes:
        raise ValidationError(
            f"Storage quota exceeded: {format_bytes(used)} of {format_bytes(quota_bytes)} used",
            code="STORAGE_QUOTA_EXCEEDED",
            status=413,
            details={"quota_bytes": quota_bytes, "used_bytes": used, "incoming_bytes": incoming_bytes},
        )


def top_consumers(s: Session, *, limit: int = TOP_CONSUMERS) -> list[dict]:
    rows = s.execute(
        select(IpAsset.owner_user_id, User.name, User.email, func.sum(IpAsset.file_size).label("bytes"))
        .join(User, User.id == IpAsset.owner_user_id)
        .where(IpAsset.deleted_at.is_(None))
        .group_by(IpAsset.owner_user_id, User.name, User.email)
        .order_by(func.sum(IpAsset.file_size).desc())
        .limit(limit)
    ).all()
    return [{"id": uid, "name": name or email, "bytes": int(b or 0)} for uid, name, email, b in rows]


def storage_report(s: Session, *, today: date | None = None) -> dict:
    live = usage(s)
    total = live["total_bytes"]
    largest = s.get(IpAsset, live["largest_file_id"]) if live["largest_file_id"] else None
    empty_trend = {"current": 0, "previous": 0, "growth_bytes": 0, "growth_rate": None}
    return {
        "summary": {
            "total_bytes": total,
            "total_files": live["file_count"],
            "average_file_size": live["average_file_size"],
            "largest_file": {"id": largest.id, "size": largest.file_size, "title": largest.title} if largest else None,
        },
        "breakdown_by_type": {
            t: {**v, "percentage": round(v["bytes"] / total * 100, 2) if total else 0.0}
            for t, v in live["breakdown_by_type"].items()
        },
        "top_users": top_consumers(s),
        "trends": {
            period: storage_trend(s, period=period, today=today) or {**empty_trend, "period": period}
            for period in TREND_PERIOD_DAYS
        },
    }


def cleanup_candidates(s: Session, *, now: datetime | None = None) -> dict:
    """Large files untouched for DORMANT_DAYS and byte-identical duplicates."""
    cutoff = (now or utcnow()) - timedelta(days=DORMANT_DAYS)
    dormant = s.execute(
        select(IpAsset)
        .where(IpAsset.deleted_at.is_(None), IpAsset.updated_at < cutoff)
        .order_by(IpAsset.file_size.desc())
        .limit(MAX_DORMANT_FILES)
    ).scalars().all()
    duplicates = s.execute(
        select(IpAsset.sha256, func.count(IpAsset.id), func.sum(IpAsset.file_size))
        .where(IpAsset.deleted_at.is_(None), IpAsset.sha256.is_not(None))
        .group_by(IpAsset.sha256)
        .having(func.count(IpAsset.id) > 1)
        .order_by(func.count(IpAsset.id).desc())
    ).all()
    return {
        "dormant_files": [{"id": a.id, "title": a.title, "file_size": a.file_size, "updated_at": a.updated_at.isoformat()} for a in dormant],
        "duplicate_groups": [{"sha256": sha, "count": n, "bytes": int(b or 0)} for sha, n, b in duplicates],
        "dormant_bytes": sum(a.file_size for a in dormant),
    }


def format_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"
