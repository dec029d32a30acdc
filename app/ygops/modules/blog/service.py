from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.db import paginate
from app.ygops.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.blog.models import POST_STATUSES, Category, Post, PostRevision
from app.ygops.modules.blog.utils import make_excerpt, normalize_tags, read_time_minutes, sanitize_html, slugify
from app.ygops.rbac import user_has_permission
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "DRAFT": ("PUBLISHED", "SCHEDULED", "ARCHIVED"),
    "PUBLISHED": ("ARCHIVED",),
    "SCHEDULED": ("DRAFT", "PUBLISHED", "ARCHIVED"),
    "ARCHIVED": ("DRAFT", "PUBLISHED", "SCHEDULED"),
}

POST_FIELDS = (
    "title",
    "slug",
    "content",
    "excerpt",
    "category_id",
    "featured_image_url",
    "tags",
    "seo_title",
    "seo_description",
    "seo_keywords",
)


def validate_transition(current: str, new: str, *, post_id: int | None = None) -> None:
    if new not in POST_STATUSES:
        raise ValidationError(f"Unknown status: {new}", code="INVALID_STATUS")
    if new not in STATUS_TRANSITIONS.get(current, ()):
        raise ValidationError(
            f"Cannot change post status from {current} to {new}",
            code="INVALID_STATUS_TRANSITION",
            details={"from": current, "to": new, "post_id": post_id},
        )


def ensure_can_modify(user: User, post: Post, permission: str = "content:edit") -> None:
    if post.author_id == user.id or user_has_permission(user, permission):
        return
    raise ForbiddenError("You do not have permission to perform this action.", details={"missing_permission": permission})


# ---------- Categories ----------
def get_category(s: Session, category_id: int) -> Category:
    c = s.get(Category, category_id)
    if not c:
        raise NotFoundError("Category not found", code="CATEGORY_NOT_FOUND")
    return c


def _category_slugs(s: Session, *, exclude_id: int | None = None) -> set[str]:
    stmt = select(Category.slug)
    if exclude_id is not None:
        stmt = stmt.where(Category.id != exclude_id)
    return set(s.execute(stmt).scalars().all())


def _check_category_parent(s: Session, category_id: int | None, parent_id: int) -> None:
    seen: set[int] = set()
    current: int | None = parent_id
    while current is not None:
        if current == category_id:
            raise ConflictError("Category cannot be its own ancestor", code="CIRCULAR_CATEGORY_REFERENCE")
        if current in seen:
            break
        seen.add(current)
        current = get_category(s, current).parent_category_id


def create_category(
    s: Session,
    *,
    actor: User,
    name: str,
    slug: str | None = None,
    description: str | None = None,
    parent_category_id: int | None = None,
    display_order: int = 0,
    is_active: bool = True,
) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Category name is required")
    existing = _category_slugs(s)
    if slug:
        slug = slugify(slug)
        if slug in existing:
            raise ConflictError(f"Slug '{slug}' is already used by another category", code="DUPLICATE_SLUG")
    else:
        slug = slugify(name, existing=existing)
    if parent_category_id is not None:
        get_category(s, parent_category_id)

    c = Category(
        name=name,
        slug=slug,
        description=(description or "").strip() or None,
        parent_category_id=parent_category_id,
        display_order=int(display_order or 0),
        is_active=bool(is_active),
    )
    s.add(c)
    s.flush()
    record_event(s, actor=actor, action="blog.category_create", entity_type="Category", entity_id=str(c.id), metadata={"slug": slug})
    return c


def update_category(s: Session, category_id: int, *, actor: User, **fields: Any) -> Category:
    c = get_category(s, category_id)
    if "name" in fields and fields["name"] is not None:
        name = str(fields["name"]).strip()
        if not name:
            raise ValidationError("Category name is required")
        c.name = name
    if fields.get("slug"):
        slug = slugify(str(fields["slug"]))
        if slug != c.slug and slug in _category_slugs(s, exclude_id=c.id):
            raise ConflictError(f"Slug '{slug}' is already used by another category", code="DUPLICATE_SLUG")
        c.slug = slug
    if "description" in fields:
        c.description = (fields["description"] or "").strip() or None
    if "parent_category_id" in fields:
        parent_id = fields["parent_category_id"]
        if parent_id is not None:
            parent_id = int(parent_id)
            _check_category_parent(s, c.id, parent_id)
        c.parent_category_id = parent_id
    if "display_order" in fields and fields["display_order"] is not None:
        c.display_order = int(fields["display_order"])
    if "is_active" in fields and fields["is_active"] is not None:
        c.is_active = bool(fields["is_active"])
    record_event(s, actor=actor, action="blog.category_update", entity_type="Category", entity_id=str(c.id), metadata={"fields": sorted(fields)})
    return c


def list_categories(s: Session, *, active_only: bool = False, parent_id: int | None = None) -> list[dict]:
    stmt = select(Category)
    if active_only:
        stmt = stmt.where(Category.is_active.is_(True))
    if parent_id is not None:
        stmt = stmt.where(Category.parent_category_id == parent_id)
    categories = list(s.execute(stmt.order_by(Category.display_order.asc(), Category.name.asc())).scalars().all())
    counts = dict(
        s.execute(
            select(Post.category_id, func.count(Post.id))
            .where(Post.deleted_at.is_(None), Post.category_id.is_not(None))
            .group_by(Post.category_id)
        ).all()
    )
    return [{**c.to_dict(), "post_count": int(counts.get(c.id, 0))} for c in categories]


def delete_category(s: Session, category_id: int, *, actor: User, reassign_to: int | None = None) -> None:
    c = get_category(s, category_id)
    posts = list(s.execute(select(Post).where(Post.category_id == c.id)).scalars().all())
    if posts:
        if reassign_to is None:
            raise ConflictError(
                f"Category has {len(posts)} posts assigned",
                code="CATEGORY_IN_USE",
                details={"post_count": len(posts)},
            )
        target = get_category(s, reassign_to)
        for p in posts:
            p.category_id = target.id
    for child in s.execute(select(Category).where(Category.parent_category_id == c.id)).scalars().all():
        child.parent_category_id = None
    record_event(
        s,
        actor=actor,
        action="blog.category_delete",
        entity_type="Category",
        entity_id=str(c.id),
        metadata={"slug": c.slug, "reassigned_posts": len(posts), "reassign_to": reassign_to},
    )
    s.delete(c)


# ---------- Posts ----------
def get_post(s: Session, post_id: int, *, include_deleted: bool = False) -> Post:
    p = s.get(Post, post_id)
    if not p or (p.deleted_at is not None and not include_deleted):
        raise NotFoundError("Post not found", code="POST_NOT_FOUND")
    return p


def get_post_by_slug(s: Session, slug: str, *, count_view: bool = True) -> Post:
    p = s.execute(select(Post).where(Post.slug == slug, Post.deleted_at.is_(None))).scalar_one_or_none()
    if not p:
        raise NotFoundError("Post not found", code="POST_NOT_FOUND")
    if count_view and p.status == "PUBLISHED":
        p.view_count = (p.view_count or 0) + 1
    return p


def _post_slugs(s: Session, *, exclude_id: int | None = None) -> set[str]:
    stmt = select(Post.slug)
    if exclude_id is not None:
        stmt = stmt.where(Post.id != exclude_id)
    return set(s.execute(stmt).scalars().all())


def _add_revision(s: Session, post: Post, *, author: User | None, note: str) -> PostRevision:
    rev = PostRevision(post_id=post.id, content=post.content, author_id=author.id if author else None, revision_note=note)
    s.add(rev)
    return rev


def _require_future(when: datetime | None, now: datetime) -> datetime:
    if when is None:
        raise ValidationError("Scheduled date is required when status is SCHEDULED", code="SCHEDULED_DATE_REQUIRED")
    if when <= now:
        raise ValidationError("Scheduled date must be in the future", code="SCHEDULED_DATE_IN_PAST", details={"scheduled_for": when.isoformat()})
    return when


def create_post(
    s: Session,
    *,
    actor: User,
    title: str,
    content: str,
    excerpt: str | None = None,
    slug: str | None = None,
    category_id: int | None = None,
    featured_image_url: str | None = None,
    status: str = "DRAFT",
    scheduled_for: datetime | None = None,
    tags: list[str] | None = None,
    seo_title: str | None = None,
    seo_description: str | None = None,
    seo_keywords: str | None = None,
    now: datetime | None = None,
) -> Post:
    now = now or utcnow()
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    status = (status or "DRAFT").upper()
    if status not in POST_STATUSES:
        raise ValidationError(f"Unknown status: {status}", code="INVALID_STATUS")

    existing = _post_slugs(s)
    if slug:
        slug = slugify(slug)
        if slug in existing:
            raise ConflictError(f"Slug '{slug}' is already used by another post", code="DUPLICATE_SLUG")
    else:
        slug = slugify(title, existing=existing)
    if category_id is not None:
        get_category(s, category_id)

    clean = sanitize_html(content)
    post = Post(
        title=title,
        slug=slug,
        content=clean,
        excerpt=(excerpt or "").strip() or make_excerpt(clean),
        author_id=actor.id,
        category_id=category_id,
        featured_image_url=featured_image_url,
        status=status,
        read_time_minutes=read_time_minutes(clean),
        tags=normalize_tags(tags),
        seo_title=seo_title,
        seo_description=seo_description,
        seo_keywords=seo_keywords,
    )
    if status == "PUBLISHED":
        post.published_at = now
    elif status == "SCHEDULED":
        post.scheduled_for = _require_future(scheduled_for, now)
    s.add(post)
    s.flush()
    _add_revision(s, post, author=actor, note="Initial version")
    record_event(s, actor=actor, action="blog.post_create", entity_type="Post", entity_id=str(post.id), metadata={"slug": slug, "status": status})
    return post


def update_post(
    s: Session,
    post_id: int,
    *,
    actor: User,
    fields: dict[str, Any],
    revision_note: str | None = None,
    now: datetime | None = None,
) -> Post:
    now = now or utcnow()
    post = get_post(s, post_id)
    changed: list[str] = []

    if "title" in fields and fields["title"] is not None:
        title = str(fields["title"]).strip()
        if not title:
            raise ValidationError("Title is required")
        post.title = title
        changed.append("title")
    if fields.get("slug"):
        slug = slugify(str(fields["slug"]))
        if slug != post.slug:
            if slug in _post_slugs(s, exclude_id=post.id):
                raise ConflictError(f"Slug '{slug}' is already used by another post", code="DUPLICATE_SLUG")
            post.slug = slug
            changed.append("slug")
    if "category_id" in fields:
        cid = fields["category_id"]
        if cid is not None:
            cid = get_category(s, int(cid)).id
        post.category_id = cid
        changed.append("category_id")
    if "tags" in fields:
        post.tags = normalize_tags(fields["tags"])
        changed.append("tags")
    for name in ("featured_image_url", "seo_title", "seo_description", "seo_keywords"):
        if name in fields:
            setattr(post, name, fields[name] or None)
            changed.append(name)

    if "content" in fields and fields["content"] is not None:
        clean = sanitize_html(str(fields["content"]))
        if clean != post.content:
            post.content = clean
            post.read_time_minutes = read_time_minutes(clean)
            if "excerpt" not in fields:
                post.excerpt = make_excerpt(clean)
            _add_revision(s, post, author=actor, note=revision_note or "Content updated")
            changed.append("content")
    if "excerpt" in fields:
        post.excerpt = (fields["excerpt"] or "").strip() or make_excerpt(post.content)
        changed.append("excerpt")

    new_status = (fields.get("status") or "").upper()
    if new_status and new_status != post.status:
        if new_status == "PUBLISHED":
            publish_post(s, post.id, actor=actor, now=now)
        elif new_status == "SCHEDULED":
            schedule_post(s, post.id, _scheduled_from(fields), actor=actor, now=now)
        else:
            _transition(s, post, new_status, actor=actor)
        changed.append("status")

    record_event(s, actor=actor, action="blog.post_update", entity_type="Post", entity_id=str(post.id), metadata={"fields": changed})
    return post


def _scheduled_from(fields: dict[str, Any]) -> datetime | None:
    value = fields.get("scheduled_for")
    return value if isinstance(value, datetime) or value is None else None


def _transition(s: Session, post: Post, new_status: str, *, actor: User) -> None:
    validate_transition(post.status, new_status, post_id=post.id)
    _add_revision(s, post, author=actor, note=f"Status changed from {post.status} to {new_status}")
    old = post.status
    post.status = new_status
    if new_status != "SCHEDULED":
        post.scheduled_for = None
    record_event(
        s,
        actor=actor,
        action="blog.post_status_change",
        entity_type="Post",
        entity_id=str(post.id),
        metadata={"from": old, "to": new_status},
    )


def publish_post(s: Session, post_id: int, *, actor: User, published_at: datetime | None = None, now: datetime | None = None) -> Post:
    now = now or utcnow()
    post = get_post(s, post_id)
    if post.status == "PUBLISHED":
        raise ConflictError(
            "Post is already published",
            code="POST_ALREADY_PUBLISHED",
            details={"published_at": post.published_at.isoformat() if post.published_at else None},
        )
    _transition(s, post, "PUBLISHED", actor=actor)
    post.published_at = published_at or now
    post.scheduled_for = None
    logger.info("Post %s published by user %s", post.id, actor.id)
    return post


def schedule_post(s: Session, post_id: int, scheduled_for: datetime | None, *, actor: User, now: datetime | None = None) -> Post:
    now = now or utcnow()
    when = _require_future(scheduled_for, now)
    post = get_post(s, post_id)
    if post.status == "PUBLISHED":
        raise ConflictError(
            "Post is already published",
            code="POST_ALREADY_PUBLISHED",
            details={"published_at": post.published_at.isoformat() if post.published_at else None},
        )
    if post.status == "SCHEDULED":
        post.scheduled_for = when
    else:
        _transition(s, post, "SCHEDULED", actor=actor)
        post.scheduled_for = when
    post.published_at = None
    return post


def unschedule_post(s: Session, post_id: int, *, actor: User) -> Post:
    post = get_post(s, post_id)
    if post.status != "SCHEDULED":
        raise ValidationError("Post is not scheduled", code="POST_NOT_SCHEDULED")
    _transition(s, post, "DRAFT", actor=actor)
    return post


def archive_post(s: Session, post_id: int, *, actor: User) -> Post:
    post = get_post(s, post_id)
    _transition(s, post, "ARCHIVED", actor=actor)
    return post


def publish_scheduled_posts(s: Session, *, now: datetime | None = None) -> list[int]:
    """Publish every scheduled post that is due. Returns the ids published."""
    now = now or utcnow()
    due = list(
        s.execute(
            select(Post).where(
                Post.status == "SCHEDULED",
                Post.scheduled_for.is_not(None),
                Post.scheduled_for <= now,
                Post.deleted_at.is_(None),
            )
        )
        .scalars()
        .all()
    )
    for post in due:
        _add_revision(s, post, author=None, note="Published on schedule")
        post.status = "PUBLISHED"
        post.published_at = post.scheduled_for
        post.scheduled_for = None
        record_event(s, actor=None, action="blog.post_auto_published", entity_type="Post", entity_id=str(post.id))
    if due:
        logger.info("Published %s scheduled posts", len(due))
    return [p.id for p in due]


def list_posts(
    s: Session,
    *,
    status: str | None = None,
    category_id: int | None = None,
    author_id: int | None = None,
    tag: str | None = None,
    q: str | None = None,
    published_only: bool = False,
    include_deleted: bool = False,
    sort: str = "created_at",
    order: str = "desc",
    page: int = 1,
    per_page: int = 20,
) -> dict:
    stmt = select(Post)
    if not include_deleted:
        stmt = stmt.where(Post.deleted_at.is_(None))
    if published_only:
        stmt = stmt.where(Post.status == "PUBLISHED")
    elif status:
        stmt = stmt.where(Post.status == status.upper())
    if category_id:
        stmt = stmt.where(Post.category_id == category_id)
    if author_id:
        stmt = stmt.where(Post.author_id == author_id)
    if tag:
        stmt = stmt.where(cast(Post.tags, String).like(f'%"{tag.strip().lower()}"%'))
    if q:
        like = f"%{q.strip()}%"
        stmt = stmt.where(or_(Post.title.ilike(like), Post.excerpt.ilike(like), Post.content.ilike(like)))

    columns = {
        "created_at": Post.created_at,
        "updated_at": Post.updated_at,
        "published_at": Post.published_at,
        "title": Post.title,
        "view_count": Post.view_count,
    }
    col = columns.get(sort, Post.created_at)
    stmt = stmt.order_by(col.asc() if order == "asc" else col.desc(), Post.id.desc())
    return paginate(s, stmt, page=page, per_page=per_page)


def soft_delete_post(s: Session, post_id: int, *, actor: User, now: datetime | None = None) -> Post:
    post = get_post(s, post_id)
    post.deleted_at = now or utcnow()
    record_event(s, actor=actor, action="blog.post_delete", entity_type="Post", entity_id=str(post.id))
    return post


def restore_post(s: Session, post_id: int, *, actor: User) -> Post:
    post = get_post(s, post_id, include_deleted=True)
    if post.deleted_at is None:
        raise ValidationError("Post is not deleted", code="POST_NOT_DELETED")
    post.deleted_at = None
    record_event(s, actor=actor, action="blog.post_restore", entity_type="Post", entity_id=str(post.id))
    return post


def duplicate_post(s: Session, post_id: int, *, actor: User, overrides: dict[str, Any] | None = None) -> Post:
    src = get_post(s, post_id)
    overrides = {k: v for k, v in (overrides or {}).items() if k in POST_FIELDS and v is not None}
    copy = create_post(
        s,
        actor=actor,
        title=overrides.get("title") or f"{src.title} (Copy)",
        content=overrides.get("content") or src.content,
        excerpt=overrides.get("excerpt"),
        category_id=overrides.get("category_id", src.category_id),
        featured_image_url=overrides.get("featured_image_url") or src.featured_image_url,
        tags=overrides.get("tags") or list(src.tags or []),
        seo_title=overrides.get("seo_title") or src.seo_title,
        seo_description=overrides.get("seo_description") or src.seo_description,
        seo_keywords=overrides.get("seo_keywords") or src.seo_keywords,
    )
    record_event(s, actor=actor, action="blog.post_duplicate", entity_type="Post", entity_id=str(copy.id), metadata={"source_post_id": src.id})
    return copy


# ---------- Revisions ----------
def list_revisions(s: Session, post_id: int, *, page: int = 1, per_page: int = 20) -> dict:
    get_post(s, post_id, include_deleted=True)
    stmt = select(PostRevision).where(PostRevision.post_id == post_id).order_by(PostRevision.created_at.desc(), PostRevision.id.desc())
    return paginate(s, stmt, page=page, per_page=per_page)


def get_revision(s: Session, revision_id: int) -> PostRevision:
    rev = s.get(PostRevision, revision_id)
    if not rev:
        raise NotFoundError("Revision not found", code="REVISION_NOT_FOUND")
    return rev


def restore_revision(s: Session, post_id: int, revision_id: int, *, actor: User) -> Post:
    post = get_post(s, post_id)
    rev = get_revision(s, revision_id)
    if rev.post_id != post.id:
        raise NotFoundError("Revision not found", code="REVISION_NOT_FOUND")
    post.content = rev.content
    post.read_time_minutes = read_time_minutes(rev.content)
    post.excerpt = make_excerpt(rev.content)
    _add_revision(s, post, author=actor, note=f"Restored from revision {rev.id}")
    record_event(s, actor=actor, action="blog.post_revision_restore", entity_type="Post", entity_id=str(post.id), metadata={"revision_id": rev.id})
    return post


def post_stats(s: Session) -> dict:
    rows = s.execute(select(Post.status, func.count(Post.id)).where(Post.deleted_at.is_(None)).group_by(Post.status)).all()
    by_status = {st: 0 for st in POST_STATUSES}
    by_status.update({st: int(n) for st, n in rows})
    views = s.execute(select(func.coalesce(func.sum(Post.view_count), 0)).where(Post.deleted_at.is_(None))).scalar_one()
    return {"total": sum(by_status.values()), "by_status": by_status, "total_views": int(views)}
