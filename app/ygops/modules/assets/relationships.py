from __future__ import annotations

from collections import deque
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.errors import ConflictError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.assets.models import FileRelationship, IpAsset
from app.ygops.utils import dump_json, load_json, utcnow

RELATIONSHIP_TYPES = (
    "derived_from",
    "cutdown_of",
    "replacement_for",
    "variation_of",
    "component_of",
    "references",
    "transcoded_from",
    "preview_of",
)
# Incoming edges of these types block deletion of the target.
CRITICAL_TYPES = ("component_of", "references")

MAX_TRAVERSAL_DEPTH = 10
GRAPH_DEPTH = 3


def _live_asset(s: Session, asset_id: int, label: str) -> IpAsset:
    asset = s.get(IpAsset, asset_id)
    if not asset or asset.deleted_at is not None:
        raise NotFoundError(f"{label} asset {asset_id} not found", code="ASSET_NOT_FOUND")
    return asset


def query_relationships(
    s: Session,
    asset_id: int,
    *,
    direction: str = "both",
    types: list[str] | tuple[str, ...] | None = None,
    include_deleted: bool = False,
) -> list[FileRelationship]:
    if direction not in ("outgoing", "incoming", "both"):
        raise ValidationError("direction must be outgoing, incoming or both")
    conds = []
    if direction in ("outgoing", "both"):
        conds.append(FileRelationship.source_asset_id == asset_id)
    if direction in ("incoming", "both"):
        conds.append(FileRelationship.target_asset_id == asset_id)
    stmt = select(FileRelationship).where(or_(*conds))
    if types:
        stmt = stmt.where(FileRelationship.relationship_type.in_(list(types)))
    if not include_deleted:
        stmt = stmt.where(FileRelationship.deleted_at.is_(None))
    stmt = stmt.order_by(FileRelationship.created_at.desc(), FileRelationship.id.desc())
    return list(s.execute(stmt).scalars().all())


def would_create_cycle(s: Session, source_id: int, target_id: int) -> bool:
    """True if `source_id` is reachable from `target_id` over outgoing edges."""
    visited: set[int] = set()
    queue = deque([target_id])
    while queue:
        current = queue.popleft()
        if current == source_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        for rel in query_relationships(s, current, direction="outgoing"):
            queue.append(rel.target_asset_id)
    return False


def create_relationship(
    s: Session,
    *,
    actor: User,
    source_asset_id: int,
    target_asset_id: int,
    relationship_type: str,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> FileRelationship:
    relationship_type = (relationship_type or "").strip().lower()
    if relationship_type not in RELATIONSHIP_TYPES:
        raise ValidationError(f"Unknown relationship type: {relationship_type}", code="INVALID_RELATIONSHIP_TYPE")
    _live_asset(s, source_asset_id, "Source")
    _live_asset(s, target_asset_id, "Target")
    if source_asset_id == target_asset_id:
        raise ValidationError("Cannot create relationship from asset to itself", code="SELF_RELATIONSHIP")
    if would_create_cycle(s, source_asset_id, target_asset_id):
        raise ConflictError("Creating this relationship would create a circular dependency", code="CIRCULAR_RELATIONSHIP")
    existing = s.execute(
        select(FileRelationship).where(
            FileRelationship.source_asset_id == source_asset_id,
            FileRelationship.target_asset_id == target_asset_id,
            FileRelationship.relationship_type == relationship_type,
            FileRelationship.deleted_at.is_(None),
        )
    ).scalar_one_or_none()
    if existing:
        raise ConflictError("Relationship already exists", code="RELATIONSHIP_EXISTS")

    rel = FileRelationship(
        source_asset_id=source_asset_id,
        target_asset_id=target_asset_id,
        relationship_type=relationship_type,
        metadata_json=dump_json(metadata or {}),
        created_by_user_id=actor.id,
        created_at=now or utcnow(),
    )
    s.add(rel)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="asset.relationship_created",
        entity_type="FileRelationship",
        entity_id=str(rel.id),
        metadata={"source": source_asset_id, "target": target_asset_id, "type": relationship_type},
    )
    return rel


def delete_relationship(s: Session, relationship_id: int, *, actor: User, now: datetime | None = None) -> FileRelationship:
    rel = s.get(FileRelationship, relationship_id)
    if not rel or rel.deleted_at is not None:
        raise NotFoundError("Relationship not found", code="RELATIONSHIP_NOT_FOUND")
    now = now or utcnow()
    rel.deleted_at = now
    meta = load_json(rel.metadata_json, {}) or {}
    meta.update({"deleted_by": actor.id, "deleted_at": now.isoformat()})
    rel.metadata_json = dump_json(meta)
    record_event(s, actor=actor, action="asset.relationship_deleted", entity_type="FileRelationship", entity_id=str(rel.id))
    return rel


def dependents(s: Session, asset_id: int) -> list[int]:
    return list(dict.fromkeys(r.source_asset_id for r in query_relationships(s, asset_id, direction="incoming")))


def dependencies(s: Session, asset_id: int) -> list[int]:
    return list(dict.fromkeys(r.target_asset_id for r in query_relationships(s, asset_id, direction="outgoing")))


def transitive_dependents(
    s: Session,
    asset_id: int,
    *,
    max_depth: int = MAX_TRAVERSAL_DEPTH,
    types: list[str] | None = None,
) -> list[int]:
    visited: set[int] = set()
    found: list[int] = []

    def walk(current: int, depth: int) -> None:
        if depth > max_depth or current in visited:
            return
        visited.add(current)
        for rel in query_relationships(s, current, direction="incoming", types=types):
            found.append(rel.source_asset_id)
            walk(rel.source_asset_id, depth + 1)

    walk(asset_id, 0)
    return list(dict.fromkeys(found))


def relationship_graph(s: Session, root_asset_id: int, *, depth: int = GRAPH_DEPTH) -> dict:
    visited: set[int] = set()
    nodes: list[dict] = []
    edges: dict[int, dict] = {}

    def walk(asset_id: int, level: int) -> None:
        if level > depth or asset_id in visited:
            return
        visited.add(asset_id)
        asset = s.get(IpAsset, asset_id)
        if not asset:
            return
        rels = query_relationships(s, asset_id)
        nodes.append(
            {
                "id": asset.id,
                "title": asset.title,
                "type": asset.type,
                "storage_key": asset.storage_key,
                "relationships": [
                    {
                        "type": r.relationship_type,
                        "direction": "outgoing" if r.source_asset_id == asset_id else "incoming",
                        "related_asset_id": r.target_asset_id if r.source_asset_id == asset_id else r.source_asset_id,
                    }
                    for r in rels
                ],
            }
        )
        for r in rels:
            edges[r.id] = {"source": r.source_asset_id, "target": r.target_asset_id, "type": r.relationship_type}
            walk(r.target_asset_id if r.source_asset_id == asset_id else r.source_asset_id, level + 1)

    walk(root_asset_id, 0)
    return {"nodes": nodes, "edges": list(edges.values())}


def validate_deletion(s: Session, asset_id: int) -> dict:
    blockers: list[str] = []
    warnings: list[str] = []
    incoming = query_relationships(s, asset_id, direction="incoming")
    critical = [r for r in incoming if r.relationship_type in CRITICAL_TYPES]
    if critical:
        blockers.append(f"Asset has {len(critical)} critical dependencies that prevent deletion")
    direct = dependents(s, asset_id)
    if direct:
        warnings.append(f"{len(direct)} assets directly depend on this asset")
    affected = transitive_dependents(s, asset_id)
    if len(affected) > len(direct):
        warnings.append(f"{len(affected)} total assets will be affected by this deletion")
    return {"can_delete": not blockers, "blockers": blockers, "warnings": warnings}


def relationship_stats(s: Session, asset_id: int) -> dict:
    rels = query_relationships(s, asset_id)
    by_type: dict[str, int] = {}
    outgoing = 0
    for r in rels:
        by_type[r.relationship_type] = by_type.get(r.relationship_type, 0) + 1
        if r.source_asset_id == asset_id:
            outgoing += 1
    return {"total": len(rels), "by_type": by_type, "incoming": len(rels) - outgoing, "outgoing": outgoing}
