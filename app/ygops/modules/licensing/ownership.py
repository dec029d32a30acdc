"""
IP ownership splits.

An asset's current owners are the IpOwnership rows whose period covers "now".
Their shares are basis points and must always add up to exactly TOTAL_BPS.
Changing a split never edits rows in place: the current rows are closed
(end_date set) and a fresh set is written, so the history stays queryable.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.errors import ConflictError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.assets.models import IpAsset
from app.ygops.modules.licensing.models import OWNERSHIP_TYPES, IpOwnership
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

TOTAL_BPS = 10000
MIN_BPS = 1
MAX_BPS = 10000

DISPUTE_ACTIONS = ("CONFIRM", "MODIFY", "REMOVE")


def _live_asset(s: Session, asset_id: int) -> IpAsset:
    asset = s.get(IpAsset, asset_id)
    if not asset or asset.deleted_at is not None:
        raise NotFoundError("Asset not found", code="ASSET_NOT_FOUND")
    return asset


def get_ownership(s: Session, ownership_id: int) -> IpOwnership:
    row = s.get(IpOwnership, ownership_id)
    if not row:
        raise NotFoundError("Ownership record not found", code="OWNERSHIP_NOT_FOUND")
    return row


def _active_at(at: datetime):
    return (IpOwnership.start_date <= at, or_(IpOwnership.end_date.is_(None), IpOwnership.end_date > at))


def split_total_details(total_bps: int) -> dict:
    details = {"required_bps": TOTAL_BPS, "provided_bps": total_bps}
    if total_bps < TOTAL_BPS:
        details["missing_bps"] = TOTAL_BPS - total_bps
    elif total_bps > TOTAL_BPS:
        details["excess_bps"] = total_bps - TOTAL_BPS
    return details


def validate_split(splits: list[dict]) -> list[str]:
    """Problems with a proposed split; empty when it can be saved."""
    if not splits:
        return ["At least one owner is required"]
    errors: list[str] = []
    seen: set[int] = set()
    total = 0
    for idx, split in enumerate(splits):
        share = split.get("share_bps")
        if not isinstance(share, int) or isinstance(share, bool):
            errors.append(f"Split {idx}: share_bps must be an integer")
            continue
        total += share
        if share < MIN_BPS:
            errors.append(f"Split {idx}: share must be at least {MIN_BPS} BPS")
        if share > MAX_BPS:
            errors.append(f"Split {idx}: share cannot exceed {MAX_BPS} BPS")
        owner = split.get("owner_user_id")
        if not isinstance(owner, int) or isinstance(owner, bool):
            errors.append(f"Split {idx}: owner_user_id must be an integer")
        elif owner in seen:
            errors.append(f"Split {idx}: owner {owner} appears more than once")
        seen.add(owner)
        ownership_type = split.get("ownership_type", "PRIMARY")
        if ownership_type not in OWNERSHIP_TYPES:
            errors.append(f"Split {idx}: unknown ownership type {ownership_type}")
    if total != TOTAL_BPS:
        errors.append(f"Total must equal {TOTAL_BPS} BPS. Current: {total}")
    return errors


def _ensure_valid_split(splits: list[dict]) -> None:
    errors = validate_split(splits)
    if not errors:
        return
    total = sum(x.get("share_bps") for x in splits if isinstance(x.get("share_bps"), int))
    details = split_total_details(total)
    details["errors"] = errors
    if total != TOTAL_BPS:
        message = f"Ownership split must sum to {TOTAL_BPS} BPS (100%). Current sum: {total}"
    else:
        message = errors[0]
    raise ValidationError(message, code="OWNERSHIP_SPLIT_INVALID", details=details)


def owners_at(s: Session, asset_id: int, at: datetime | None = None) -> list[IpOwnership]:
    at = at or utcnow()
    stmt = (
        select(IpOwnership)
        .where(IpOwnership.ip_asset_id == asset_id, *_active_at(at))
        .order_by(IpOwnership.share_bps.desc(), IpOwnership.id)
    )
    return list(s.execute(stmt).scalars().all())


def owned_assets(s: Session, user_id: int, *, include_expired: bool = False, ownership_type: str | None = None) -> list[IpOwnership]:
    stmt = select(IpOwnership).where(IpOwnership.owner_user_id == user_id)
    if not include_expired:
        stmt = stmt.where(*_active_at(utcnow()))
    if ownership_type:
        stmt = stmt.where(IpOwnership.ownership_type == ownership_type)
    return list(s.execute(stmt.order_by(IpOwnership.start_date.desc(), IpOwnership.id.desc())).scalars().all())


def ownership_history(s: Session, asset_id: int) -> list[IpOwnership]:
    stmt = select(IpOwnership).where(IpOwnership.ip_asset_id == asset_id).order_by(IpOwnership.start_date, IpOwnership.id)
    return list(s.execute(stmt).scalars().all())


def has_ownership(s: Session, user_id: int, asset_id: int, *, at: datetime | None = None) -> bool:
    return any(o.owner_user_id == user_id for o in owners_at(s, asset_id, at))


def ownership_summary(s: Session, asset_id: int) -> dict:
    owners = owners_at(s, asset_id)
    total = sum(o.share_bps for o in owners)
    return {
        "ip_asset_id": asset_id,
        "owners": [o.to_dict() for o in owners],
        "total_bps": total,
        "is_valid": total == TOTAL_BPS,
        "has_disputes": any(o.disputed for o in owners),
    }


def set_asset_ownership(
    s: Session,
    asset_id: int,
    splits: list[dict],
    *,
    actor: User | None,
    effective: datetime | None = None,
) -> list[IpOwnership]:
    """
    Replace the asset's current split with `splits`, each
    {"owner_user_id", "share_bps", "ownership_type"?, "contract_reference"?, "notes"?}.
    """
    _live_asset(s, asset_id)
    _ensure_valid_split(splits)
    for split in splits:
        if not s.get(User, split.get("owner_user_id")):
            raise NotFoundError(f"User {split.get('owner_user_id')} not found", code="USER_NOT_FOUND")

    effective = effective or utcnow()
    previous = owners_at(s, asset_id, effective)
    for row in previous:
        row.end_date = effective

    created = []
    for split in splits:
        row = IpOwnership(
            ip_asset_id=asset_id,
            owner_user_id=split["owner_user_id"],
            share_bps=split["share_bps"],
            ownership_type=split.get("ownership_type", "PRIMARY"),
            start_date=effective,
            contract_reference=split.get("contract_reference"),
            notes=split.get("notes"),
            created_by_user_id=actor.id if actor else None,
        )
        s.add(row)
        created.append(row)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ip_ownership.set",
        entity_type="IpAsset",
        entity_id=str(asset_id),
        metadata={
            "before": [{"owner_user_id": o.owner_user_id, "share_bps": o.share_bps} for o in previous],
            "after": [{"owner_user_id": o.owner_user_id, "share_bps": o.share_bps} for o in created],
        },
    )
    logger.info("Ownership of asset %s set to %s owners", asset_id, len(created))
    return created


def transfer_ownership(
    s: Session,
    asset_id: int,
    *,
    from_user_id: int,
    to_user_id: int,
    share_bps: int,
    actor: User | None,
    contract_reference: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Move `share_bps` from one owner to another. The receiver's row is typed TRANSFERRED."""
    _live_asset(s, asset_id)
    if not isinstance(share_bps, int) or isinstance(share_bps, bool) or share_bps < MIN_BPS:
        raise ValidationError(f"share_bps must be an integer of at least {MIN_BPS}", code="INVALID_SHARE")
    if from_user_id == to_user_id:
        raise ValidationError("Cannot transfer ownership to the same owner", code="INVALID_TRANSFER")
    if not s.get(User, to_user_id):
        raise NotFoundError(f"User {to_user_id} not found", code="USER_NOT_FOUND")

    now = now or utcnow()
    current = owners_at(s, asset_id, now)
    giver = next((o for o in current if o.owner_user_id == from_user_id), None)
    held = giver.share_bps if giver else 0
    if held < share_bps:
        raise ConflictError(
            f"Owner {from_user_id} holds {held} BPS and cannot transfer {share_bps}",
            code="INSUFFICIENT_OWNERSHIP",
            details={"required_bps": share_bps, "available_bps": held},
        )

    receiver = next((o for o in current if o.owner_user_id == to_user_id), None)
    splits = [
        {
            "owner_user_id": o.owner_user_id,
            "share_bps": o.share_bps,
            "ownership_type": o.ownership_type,
            "contract_reference": o.contract_reference,
            "notes": o.notes,
        }
        for o in current
        if o.owner_user_id not in (from_user_id, to_user_id)
    ]
    if held > share_bps:
        splits.append({"owner_user_id": from_user_id, "share_bps": held - share_bps, "ownership_type": giver.ownership_type})
    splits.append(
        {
            "owner_user_id": to_user_id,
            "share_bps": (receiver.share_bps if receiver else 0) + share_bps,
            "ownership_type": "TRANSFERRED",
            "contract_reference": contract_reference,
        }
    )
    created = set_asset_ownership(s, asset_id, splits, actor=actor, effective=now)
    record_event(
        s,
        actor=actor,
        action="ip_ownership.transfer",
        entity_type="IpAsset",
        entity_id=str(asset_id),
        metadata={"from": from_user_id, "to": to_user_id, "share_bps": share_bps},
    )
    by_owner = {o.owner_user_id: o for o in created}
    return {"from_ownership": by_owner.get(from_user_id), "to_ownership": by_owner[to_user_id], "transferred_bps": share_bps}


def flag_dispute(s: Session, ownership_id: int, *, reason: str, actor: User, now: datetime | None = None) -> IpOwnership:
    row = get_ownership(s, ownership_id)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A dispute reason is required", code="REASON_REQUIRED")
    if row.disputed:
        raise ConflictError("Ownership is already disputed", code="ALREADY_DISPUTED")
    now = now or utcnow()
    row.disputed = True
    row.disputed_at = now
    row.dispute_reason = reason[:512]
    row.disputed_by_user_id = actor.id
    row.resolved_at = None
    row.resolved_by_user_id = None
    row.resolution_notes = None
    record_event(s, actor=actor, action="ip_ownership.dispute_flagged", entity_type="IpOwnership", entity_id=str(row.id), reason=reason)
    logger.warning("Ownership %s of asset %s disputed by user %s", row.id, row.ip_asset_id, actor.id)
    return row


def resolve_dispute(
    s: Session,
    ownership_id: int,
    *,
    action: str,
    notes: str,
    actor: User,
    share_bps: int | None = None,
    ownership_type: str | None = None,
    now: datetime | None = None,
) -> IpOwnership:
    """
    CONFIRM keeps the row, MODIFY edits its share or type, REMOVE ends it.
    A modified share must keep the asset's current split at TOTAL_BPS.
    """
    row = get_ownership(s, ownership_id)
    action = (action or "").upper()
    if action not in DISPUTE_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(DISPUTE_ACTIONS)}", code="INVALID_ACTION")
    if not row.disputed:
        raise ConflictError("Ownership is not currently disputed", code="NOT_DISPUTED")
    now = now or utcnow()

    if action == "MODIFY":
        if share_bps is None and ownership_type is None:
            raise ValidationError("share_bps or ownership_type is required to modify", code="MODIFICATION_REQUIRED")
        if ownership_type is not None and ownership_type not in OWNERSHIP_TYPES:
            raise ValidationError(f"Unknown ownership type {ownership_type}", code="INVALID_OWNERSHIP_TYPE")
        if share_bps is not None:
            others = sum(o.share_bps for o in owners_at(s, row.ip_asset_id, now) if o.id != row.id)
            if others + share_bps != TOTAL_BPS:
                raise ValidationError(
                    f"Modified ownership would result in total of {others + share_bps} BPS instead of {TOTAL_BPS}",
                    code="OWNERSHIP_SPLIT_INVALID",
                    details=split_total_details(others + share_bps),
                )
            row.share_bps = share_bps
        if ownership_type is not None:
            row.ownership_type = ownership_type
    elif action == "REMOVE":
        row.end_date = now

    row.disputed = False
    row.resolved_at = now
    row.resolved_by_user_id = actor.id
    row.resolution_notes = notes
    record_event(
        s,
        actor=actor,
        action="ip_ownership.dispute_resolved",
        entity_type="IpOwnership",
        entity_id=str(row.id),
        metadata={"action": action, "share_bps": share_bps, "ownership_type": ownership_type},
        reason=notes,
    )
    return row


def disputed_ownerships(s: Session) -> list[IpOwnership]:
    stmt = select(IpOwnership).where(IpOwnership.disputed.is_(True)).order_by(IpOwnership.disputed_at.desc())
    return list(s.execute(stmt).scalars().all())
