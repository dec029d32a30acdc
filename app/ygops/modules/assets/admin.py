from __future__ import annotations

from flask import Blueprint, current_app, g, redirect, request, send_file

from app.ygops.audit import record_event
from app.ygops.cache import CacheService, asset_key, get_cache
from app.ygops.db import db_session
from app.ygops.errors import ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.assets import relationships, service, storage_reporting, versioning
from app.ygops.modules.assets.models import IpAsset
from app.ygops.modules.assets.cdn import cdn_client_from_config, recommended_cache_control
from app.ygops.ratelimit import get_rate_limiter
from app.ygops.rbac import require_login, require_permission, user_has_permission
from app.ygops.storage import StorageError, storage_from_config
from app.ygops.utils import request_payload

bp = Blueprint("assets", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _visible_asset(asset_id: int):
    asset = service.get_asset(db_session(), asset_id)
    service.ensure_can(service.can_view(_current_user(), asset), "view")
    return asset


def _root_id(asset: IpAsset) -> int:
    return asset.parent_asset_id or asset.id


def _forget(asset: IpAsset) -> None:
    """Drop cached version listings for the asset's version chain."""
    get_cache().invalidate_asset(_root_id(asset))


def _uploaded_file():
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Choose a file to upload.", code="FILE_REQUIRED")
    content_type = (f.mimetype or "application/octet-stream").strip()
    return f.filename, content_type, f.read()


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer") from e


# ---------- Assets ----------
@bp.get("")
@require_login
def list_assets():
    page = service.list_assets(
        db_session(),
        viewer=_current_user(),
        owner_user_id=request.args.get("owner_user_id", type=int),
        status=request.args.get("status"),
        type=request.args.get("type"),
        q=request.args.get("q"),
        roots_only=request.args.get("include_versions") != "1",
        page=_int_arg("page", 1),
        per_page=_int_arg("per_page", 20),
    )
    page["items"] = [a.to_dict() for a in page["items"]]
    return page


@bp.post("")
@require_permission("ip_assets.create")
def upload_asset():
    u = _current_user()
    get_rate_limiter().check_or_raise(str(u.id), "upload")
    filename, content_type, data = _uploaded_file()
    s = db_session()
    storage_reporting.ensure_within_quota(s, u.id, len(data), current_app.config.get("STORAGE_QUOTA_BYTES", 0))
    asset, warnings = service.upload_asset(
        s,
        storage_from_config(current_app.config),
        actor=u,
        data=data,
        filename=filename,
        content_type=content_type,
        title=request.form.get("title"),
        description=request.form.get("description"),
    )
    s.commit()
    return {"asset": asset.to_dict(), "warnings": warnings}, 201


@bp.get("/stats")
@require_permission("ip_assets.view_all")
def asset_stats():
    return service.asset_stats(db_session())


# ---------- Storage reporting ----------
@bp.get("/storage/report")
@require_permission("system:monitor")
def storage_report():
    s = db_session()
    report = storage_reporting.storage_report(s)
    report["cleanup"] = storage_reporting.cleanup_candidates(s)
    return report


@bp.get("/storage/quota")
@require_login
def storage_quota():
    s = db_session()
    u = _current_user()
    user_id = request.args.get("user_id", type=int) or u.id
    if user_id != u.id and not user_has_permission(u, "system:monitor", s):
        raise ForbiddenError("You can only view your own quota")
    quota = current_app.config.get("STORAGE_QUOTA_BYTES", 0)
    if quota <= 0:
        return {"quota": None, "usage": storage_reporting.usage(s, "user", user_id)}
    return {"quota": storage_reporting.check_quota(s, user_id, quota)}


@bp.get("/storage/trends")
@require_permission("system:monitor")
def storage_trends():
    s = db_session()
    entity_id = request.args.get("user_id", type=int)
    entity_type = "user" if entity_id else "platform"
    period = request.args.get("period", "week")
    snapshot = storage_reporting.current_snapshot(s, entity_type, entity_id)
    return {
        "current": snapshot.to_dict() if snapshot else None,
        "trend": storage_reporting.storage_trend(s, entity_type, entity_id, period=period),
    }


@bp.post("/storage/snapshots")
@require_permission("system:monitor")
def capture_storage_snapshots():
    s = db_session()
    result = storage_reporting.capture_storage_snapshots(s)
    record_event(s, actor=_current_user(), action="storage.snapshot", metadata=result)
    s.commit()
    return result, 201


@bp.get("/<int:asset_id>")
@require_login
def get_asset(asset_id: int):
    return {"asset": _visible_asset(asset_id).to_dict()}


@bp.patch("/<int:asset_id>")
@require_login
def update_asset(asset_id: int):
    s = db_session()
    u = _current_user()
    asset = service.get_asset(s, asset_id)
    service.ensure_can(service.can_edit(u, asset), "edit")
    payload = request_payload(request)
    metadata = payload.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    service.update_asset(s, asset, actor=u, title=payload.get("title"), description=payload.get("description"), metadata=metadata)
    s.commit()
    _forget(asset)
    return {"asset": asset.to_dict()}


@bp.post("/<int:asset_id>/status")
@require_login
def change_status(asset_id: int):
    s = db_session()
    u = _current_user()
    asset = service.get_asset(s, asset_id)
    service.ensure_can(service.can_edit(u, asset), "edit")
    payload = request_payload(request)
    service.change_status(s, asset, str(payload.get("status") or ""), actor=u, reason=payload.get("reason"))
    s.commit()
    _forget(asset)
    return {"asset": asset.to_dict()}


@bp.delete("/<int:asset_id>")
@require_login
def delete_asset(asset_id: int):
    s = db_session()
    u = _current_user()
    asset = service.get_asset(s, asset_id)
    service.ensure_can(service.can_delete(u, asset), "delete")
    service.soft_delete_asset(s, asset, actor=u)
    s.commit()
    _forget(asset)
    return {"asset": asset.to_dict()}


@bp.get("/<int:asset_id>/download")
@require_login
def download_asset(asset_id: int):
    s = db_session()
    u = _current_user()
    asset = _visible_asset(asset_id)
    storage = storage_from_config(current_app.config)
    download_name = asset.storage_key.rsplit("/", 1)[-1]
    url = storage.signed_url(asset.storage_key, download_name=download_name)
    fobj = None
    if url is None:
        try:
            fobj = service.open_asset_file(storage, asset)
        except StorageError as e:
            raise NotFoundError("Asset file not found", code="ASSET_FILE_NOT_FOUND") from e
    record_event(s, actor=u, action="asset.download", entity_type="IpAsset", entity_id=str(asset.id))
    s.commit()
    if url is not None:
        return redirect(url, code=302)
    resp = send_file(fobj, mimetype=asset.mime_type, as_attachment=True, download_name=download_name)
    resp.headers["Cache-Control"] = recommended_cache_control(asset.storage_key)
    return resp


# ---------- Versions ----------
@bp.get("/<int:asset_id>/versions")
@require_login
def version_history(asset_id: int):
    asset = _visible_asset(asset_id)
    include_deleted = request.args.get("include_deleted") == "1"
    order = "asc" if request.args.get("order") == "asc" else "desc"
    key = asset_key(_root_id(asset), "versions", order, "all" if include_deleted else "live")
    versions = get_cache().get_or_set(
        key,
        lambda: versioning.version_history(db_session(), asset_id, include_deleted=include_deleted, order=order),
        ttl=CacheService.TTL_SHORT,
    )
    return {"versions": versions}


@bp.get("/<int:asset_id>/versions/current")
@require_login
def current_version(asset_id: int):
    _visible_asset(asset_id)
    current = versioning.current_version(db_session(), asset_id)
    if not current:
        raise NotFoundError("Asset not found", code="ASSET_NOT_FOUND")
    return {"version": versioning.version_info(current, is_current=True)}


@bp.post("/<int:asset_id>/versions")
@require_login
def create_version(asset_id: int):
    s = db_session()
    u = _current_user()
    asset = service.get_asset(s, asset_id)
    service.ensure_can(service.can_edit(u, asset), "edit")
    get_rate_limiter().check_or_raise(str(u.id), "upload")
    filename, content_type, data = _uploaded_file()
    storage_reporting.ensure_within_quota(s, u.id, len(data), current_app.config.get("STORAGE_QUOTA_BYTES", 0))
    version = versioning.create_version(
        s,
        storage_from_config(current_app.config),
        asset_id,
        actor=u,
        data=data,
        filename=filename,
        content_type=content_type,
        reason=request.form.get("reason"),
    )
    s.commit()
    _forget(version)
    return {"version": versioning.version_info(version, is_current=True)}, 201


@bp.post("/versions/<int:version_id>/restore")
@require_login
def restore_version(version_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can(service.can_edit(u, service.get_asset(s, version_id)), "edit")
    payload = request_payload(request)
    restored = versioning.restore_version(s, storage_from_config(current_app.config), version_id, actor=u, reason=payload.get("reason"))
    s.commit()
    _forget(restored)
    return {"version": versioning.version_info(restored, is_current=True)}, 201


@bp.delete("/versions/<int:version_id>")
@require_login
def delete_version(version_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can(service.can_delete(u, service.get_asset(s, version_id)), "delete")
    version = versioning.delete_version(s, version_id, actor=u)
    s.commit()
    _forget(version)
    return {"version": versioning.version_info(version)}


@bp.get("/versions/compare")
@require_login
def compare_versions():
    first = request.args.get("a", type=int)
    second = request.args.get("b", type=int)
    if not first or not second:
        raise ValidationError("Query parameters a and b are required")
    _visible_asset(first)
    _visible_asset(second)
    return versioning.compare_versions(db_session(), first, second)


@bp.post("/<int:asset_id>/versions/cleanup")
@require_permission("ip_assets.delete_all")
def cleanup_versions(asset_id: int):
    s = db_session()
    payload = request_payload(request)
    try:
        keep = int(payload.get("keep_last_n") or 5)
    except (TypeError, ValueError) as e:
        raise ValidationError("keep_last_n must be an integer") from e
    removed = versioning.cleanup_old_versions(s, asset_id, keep_last_n=keep, actor=_current_user())
    s.commit()
    _forget(service.get_asset(s, asset_id, include_deleted=True))
    return {"removed": removed}


# ---------- Relationships ----------
@bp.get("/<int:asset_id>/relationships")
@require_login
def list_relationships(asset_id: int):
    _visible_asset(asset_id)
    types = [t for t in request.args.getlist("type") if t]
    rels = relationships.query_relationships(
        db_session(),
        asset_id,
        direction=request.args.get("direction") or "both",
        types=types or None,
        include_deleted=request.args.get("include_deleted") == "1",
    )
    return {"relationships": [r.to_dict() for r in rels]}


@bp.post("/relationships")
@require_login
def create_relationship():
    s = db_session()
    u = _current_user()
    payload = request_payload(request)
    try:
        source_id = int(payload.get("source_asset_id"))
        target_id = int(payload.get("target_asset_id"))
    except (TypeError, ValueError) as e:
        raise ValidationError("source_asset_id and target_asset_id are required") from e
    source = service.get_asset(s, source_id)
    service.ensure_can(service.can_edit(u, source), "edit")
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None
    rel = relationships.create_relationship(
        s,
        actor=u,
        source_asset_id=source_id,
        target_asset_id=target_id,
        relationship_type=str(payload.get("relationship_type") or ""),
        metadata=metadata,
    )
    s.commit()
    return {"relationship": rel.to_dict()}, 201


@bp.delete("/relationships/<int:relationship_id>")
@require_permission("ip_assets.edit_all")
def delete_relationship(relationship_id: int):
    s = db_session()
    rel = relationships.delete_relationship(s, relationship_id, actor=_current_user())
    s.commit()
    return {"relationship": rel.to_dict()}


@bp.get("/<int:asset_id>/dependents")
@require_login
def asset_dependents(asset_id: int):
    _visible_asset(asset_id)
    s = db_session()
    out = {"direct": relationships.dependents(s, asset_id)}
    if request.args.get("transitive") == "1":
        out["all"] = relationships.transitive_dependents(s, asset_id)
    return out


@bp.get("/<int:asset_id>/dependencies")
@require_login
def asset_dependencies(asset_id: int):
    _visible_asset(asset_id)
    return {"dependencies": relationships.dependencies(db_session(), asset_id)}


@bp.get("/<int:asset_id>/graph")
@require_login
def asset_graph(asset_id: int):
    _visible_asset(asset_id)
    depth = max(0, min(_int_arg("depth", relationships.GRAPH_DEPTH), relationships.MAX_TRAVERSAL_DEPTH))
    return relationships.relationship_graph(db_session(), asset_id, depth=depth)


@bp.get("/<int:asset_id>/deletion-check")
@require_login
def deletion_check(asset_id: int):
    _visible_asset(asset_id)
    return relationships.validate_deletion(db_session(), asset_id)


@bp.get("/<int:asset_id>/relationships/stats")
@require_login
def relationship_stats(asset_id: int):
    _visible_asset(asset_id)
    return relationships.relationship_stats(db_session(), asset_id)


# ---------- CDN ----------
@bp.post("/<int:asset_id>/cdn/purge")
@require_permission("system:manage_cache")
def purge_asset_cdn(asset_id: int):
    s = db_session()
    asset = service.get_asset(s, asset_id, include_deleted=True)
    keys = [v["storage_key"] for v in versioning.version_history(s, asset.id, include_deleted=True)]
    result = cdn_client_from_config(current_app.config).purge_asset(asset.id, keys)
    record_event(s, actor=_current_user(), action="cdn.purge_asset", entity_type="IpAsset", entity_id=str(asset.id), metadata=result.to_dict())
    s.commit()
    return result.to_dict()


@bp.post("/cdn/purge")
@require_permission("system:manage_cache")
def purge_cdn():
    payload = request.get_json(silent=True) or {}

    def _list(name: str) -> list[str] | None:
        values = payload.get(name)
        return [str(v) for v in values] if isinstance(values, list) and values else None

    if not any(_list(n) for n in ("files", "tags", "hosts", "prefixes")) and not payload.get("purge_everything"):
        raise ValidationError("Provide files, tags, hosts, prefixes or purge_everything")
    result = cdn_client_from_config(current_app.config).purge(
        files=_list("files"), tags=_list("tags"), hosts=_list("hosts"), prefixes=_list("prefixes")
    )
    s = db_session()
    record_event(s, actor=_current_user(), action="cdn.purge", entity_type="Cdn", metadata={**result.to_dict(), "request": payload})
    s.commit()
    return result.to_dict()


@bp.get("/cdn/status")
@require_permission("system:manage_cache")
def cdn_status():
    url = (request.args.get("url") or "").strip()
    if not url.startswith(("http://", "https://")):
        raise ValidationError("url must be an absolute http(s) URL")
    return cdn_client_from_config(current_app.config).cache_status(url)


@bp.post("/<int:asset_id>/cdn/warm")
@require_permission("system:manage_cache")
def warm_asset_cdn(asset_id: int):
    service.get_asset(db_session(), asset_id)
    return cdn_client_from_config(current_app.config).warm_asset(asset_id)
