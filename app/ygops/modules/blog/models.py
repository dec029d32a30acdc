from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.ygops.models import Base, User
from app.ygops.utils import utcnow

POST_STATUSES = ("DRAFT", "PUBLISHED", "SCHEDULED", "ARCHIVED")


class Category(Base):
    __tablename__ = "blog_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_category_id: Mapped[int | None] = mapped_column(
        ForeignKey("blog_categories.id", ondelete="SET NULL"), nullable=True
    )
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "parent_category_id": self.parent_category_id,
            "display_order": self.display_order,
            "is_active": self.is_active,
        }


class Post(Base):
    __tablename__ = "blog_posts"
    __table_args__ = (
        Index("idx_blog_posts_status", "status"),
        Index("idx_blog_posts_author", "author_id"),
        Index("idx_blog_posts_category", "category_id"),
        Index("idx_blog_posts_scheduled_for", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    excerpt: Mapped[str | None] = mapped_column(String(500), nullable=True)

    author_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("blog_categories.id", ondelete="SET NULL"), nullable=True)
    featured_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    read_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    seo_title: Mapped[str | None] = mapped_column(String(70), nullable=True)
    seo_description: Mapped[str | None] = mapped_column(String(160), nullable=True)
    seo_keywords: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    author: Mapped[User] = relationship(User, foreign_keys=[author_id], lazy="selectin")
    category: Mapped[Category | None] = relationship(Category, lazy="selectin")

    def to_dict(self, *, include_content: bool = True) -> dict:
        out = {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "excerpt": self.excerpt,
            "author_id": self.author_id,
            "author_name": self.author.name if self.author else None,
            "category_id": self.category_id,
            "category": self.category.to_dict() if self.category else None,
            "featured_image_url": self.featured_image_url,
            "status": self.status,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "read_time_minutes": self.read_time_minutes,
            "view_count": self.view_count,
            "tags": list(self.tags or []),
            "seo_title": self.seo_title,
            "seo_description": self.seo_description,
            "seo_keywords": self.seo_keywords,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }
        if include_content:
            out["content"] = self.content
        return out


class PostRevision(Base):
    __tablename__ = "blog_post_revisions"
    __table_args__ = (Index("idx_blog_post_revisions_post", "post_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    post_id: Mapped[int] = mapped_column(ForeignKey("blog_posts.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    revision_note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "post_id": self.post_id,
            "content": self.content,
            "author_id": self.author_id,
            "revision_note": self.revision_note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
