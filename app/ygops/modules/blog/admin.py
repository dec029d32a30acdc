from __future__ import annotations

from datetime import datetime

from flask import Blueprint, g, request

from app.ygops.db import db_session
from app.ygops.errors import ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.blog import service
from app.ygops.rbac import require_login, require_permission, user_has_permission
from app.ygops.utils import parse_datetime, request_payload

bp = Blueprint("blog", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _datetime_field(payload: dict, name: str) -> datetime | None:
    try:
        return parse_datetime(payload.get(name))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an ISO-8601 datetime") from e


def _optional_int(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("Expected an integer id") from e


def _can_read_drafts() -> bool:
    u = getattr(g, "current_user", None)
    return bool(u and user_has_permission(u, "content:read"))


# ---------- Categories ----------
@bp.get("/categories")
def list_categories():
    active_only = request.args.get("active_only", "1") == "1" or not _can_read_drafts()
    return {"categories": service.list_categories(db_session(), active_only=active_only, parent_id=request.args.get("parent_id", type=int))}


@bp.post("/categories")
@require_permission("content:edit")
def create_category():
    s = db_session()
    payload = request_payload(request)
    c = service.create_category(
        s,
        actor=_current_user(),
        name=str(payload.get("name") or ""),
        slug=payload.get("slug"),
        description=payload.get("description"),
        parent_category_id=_optional_int(payload.get("parent_category_id")),
        display_order=_optional_int(payload.get("display_order")) or 0,
        is_active=payload.get("is_active", True) not in (False, "0", "false"),
    )
    s.commit()
    return {"category": c.to_dict()}, 201


@bp.patch("/categories/<int:category_id>")
@require_permission("content:edit")
def update_category(category_id: int):
    s = db_session()
    payload = request_payload(request)
    allowed = ("name", "slug", "description", "parent_category_id", "display_order", "is_active")
    fields = {k: payload[k] for k in allowed if k in payload}
    if "parent_category_id" in fields:
        fields["parent_category_id"] = _optional_int(fields["parent_category_id"])
    c = service.update_category(s, category_id, actor=_current_user(), **fields)
    s.commit()
    return {"category": c.to_dict()}


@bp.delete("/categories/<int:category_id>")
@require_permission("content:delete")
def delete_category(category_id: int):
    s = db_session()
    service.delete_category(s, category_id, actor=_current_user(), reassign_to=request.args.get("reassign_to", type=int))
    s.commit()
    return {"deleted": True}


# ---------- Posts ----------
@bp.get("/posts")
def list_posts():
    drafts = _can_read_drafts()
    page = service.list_posts(
        db_session(),
        status=request.args.get("status") if drafts else None,
        category_id=request.args.get("category_id", type=int),
        author_id=request.args.get("author_id", type=int),
        tag=request.args.get("tag"),
        q=request.args.get("q"),
        published_only=not drafts,
        include_deleted=drafts and request.args.get("include_deleted") == "1",
        sort=request.args.get("sort") or "created_at",
        order=request.args.get("order") or "desc",
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 20, type=int),
    )
    page["items"] = [p.to_dict(include_content=False) for p in page["items"]]
    return page


@bp.get("/posts/slug/<slug>")
def get_post_by_slug(slug: str):
    s = db_session()
    post = service.get_post_by_slug(s, slug)
    if post.status != "PUBLISHED" and not _can_read_drafts():
        raise NotFoundError("Post not found", code="POST_NOT_FOUND")
    s.commit()
    return {"post": post.to_dict()}


@bp.get("/stats")
@require_permission("content:read")
def post_stats():
    return service.post_stats(db_session())


@bp.post("/posts")
@require_permission("content:create")
def create_post():
    s = db_session()
    u = _current_user()
    payload = request_payload(request)
    status = str(payload.get("status") or "DRAFT").upper()
    if status in ("PUBLISHED", "SCHEDULED") and not user_has_permission(u, "content:approve"):
        raise ForbiddenError("Publishing requires content approval rights", details={"missing_permission": "content:approve"})
    tags = payload.get("tags")
    post = service.create_post(
        s,
        actor=u,
        title=str(payload.get("title") or ""),
        content=str(payload.get("content") or ""),
        excerpt=payload.get("excerpt"),
        slug=payload.get("slug"),
        category_id=_optional_int(payload.get("category_id")),
        featured_image_url=payload.get("featured_image_url"),
        status=status,
        scheduled_for=_datetime_field(payload, "scheduled_for"),
        tags=tags if isinstance(tags, list) else None,
        seo_title=payload.get("seo_title"),
        seo_description=payload.get("seo_description"),
        seo_keywords=payload.get("seo_keywords"),
    )
    s.commit()
    return {"post": post.to_dict()}, 201


@bp.get("/posts/<int:post_id>")
@require_login
def get_post(post_id: int):
    u = _current_user()
    post = service.get_post(db_session(), post_id, include_deleted=_can_read_drafts())
    if post.status != "PUBLISHED" and post.author_id != u.id and not _can_read_drafts():
        raise NotFoundError("Post not found", code="POST_NOT_FOUND")
    return {"post": post.to_dict()}


@bp.patch("/posts/<int:post_id>")
@require_login
def update_post(post_id: int):
    s = db_session()
    u = _current_user()
    post = service.get_post(s, post_id)
    payload = request_payload(request)
    status = str(payload.get("status") or "").upper()
    service.ensure_can_modify(u, post, "content:approve" if status in ("PUBLISHED", "SCHEDULED") else "content:edit")

    fields = {k: payload[k] for k in service.POST_FIELDS if k in payload}
    if "category_id" in fields:
        fields["category_id"] = _optional_int(fields["category_id"])
    if status:
        fields["status"] = status
        fields["scheduled_for"] = _datetime_field(payload, "scheduled_for")
    service.update_post(s, post.id, actor=u, fields=fields, revision_note=payload.get("revision_note"))
    s.commit()
    return {"post": post.to_dict()}


@bp.delete("/posts/<int:post_id>")
@require_login
def delete_post(post_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can_modify(u, service.get_post(s, post_id), "content:delete")
    post = service.soft_delete_post(s, post_id, actor=u)
    s.commit()
    return {"post": post.to_dict(include_content=False)}


@bp.post("/posts/<int:post_id>/restore")
@require_login
def restore_post(post_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can_modify(u, service.get_post(s, post_id, include_deleted=True), "content:delete")
    post = service.restore_post(s, post_id, actor=u)
    s.commit()
    return {"post": post.to_dict()}


@bp.post("/posts/<int:post_id>/duplicate")
@require_permission("content:create")
def duplicate_post(post_id: int):
    s = db_session()
    payload = request_payload(request)
    copy = service.duplicate_post(s, post_id, actor=_current_user(), overrides=payload)
    s.commit()
    return {"post": copy.to_dict()}, 201


@bp.post("/posts/<int:post_id>/publish")
@require_login
def publish_post(post_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can_modify(u, service.get_post(s, post_id), "content:approve")
    payload = request_payload(request)
    post = service.publish_post(s, post_id, actor=u, published_at=_datetime_field(payload, "published_at"))
    s.commit()
    return {"post": post.to_dict()}


@bp.post("/posts/<int:post_id>/schedule")
@require_login
def schedule_post(post_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can_modify(u, service.get_post(s, post_id), "content:approve")
    payload = request_payload(request)
    post = service.schedule_post(s, post_id, _datetime_field(payload, "scheduled_for"), actor=u)
    s.commit()
    return {"post": post.to_dict()}


@bp.post("/posts/<int:post_id>/unschedule")
@require_login
def unschedule_post(post_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can_modify(u, service.get_post(s, post_id), "content:approve")
    post = service.unschedule_post(s, post_id, actor=u)
    s.commit()
    return {"post": post.to_dict()}


@bp.post("/posts/<int:post_id>/archive")
@require_login
def archive_post(post_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can_modify(u, service.get_post(s, post_id), "content:edit")
    post = service.archive_post(s, post_id, actor=u)
    s.commit()
    return {"post": post.to_dict()}


# ---------- Revisions ----------
@bp.get("/posts/<int:post_id>/revisions")
@require_login
def list_revisions(post_id: int):
    s = db_session()
    service.ensure_can_modify(_current_user(), service.get_post(s, post_id, include_deleted=True), "content:read")
    page = service.list_revisions(
        s, post_id, page=request.args.get("page", 1, type=int), per_page=request.args.get("per_page", 20, type=int)
    )
    page["items"] = [r.to_dict() for r in page["items"]]
    return page


@bp.get("/revisions/<int:revision_id>")
@require_login
def get_revision(revision_id: int):
    s = db_session()
    rev = service.get_revision(s, revision_id)
    service.ensure_can_modify(_current_user(), service.get_post(s, rev.post_id, include_deleted=True), "content:read")
    return {"revision": rev.to_dict()}


@bp.post("/posts/<int:post_id>/revisions/<int:revision_id>/restore")
@require_login
def restore_revision(post_id: int, revision_id: int):
    s = db_session()
    u = _current_user()
    service.ensure_can_modify(u, service.get_post(s, post_id), "content:edit")
    post = service.restore_revision(s, post_id, revision_id, actor=u)
    s.commit()
    return {"post": post.to_dict()}
