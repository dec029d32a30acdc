from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, BigInteger, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.ygops.models import Base, User
from app.ygops.utils import load_json, utcnow

ASSET_TYPES = ("IMAGE", "VIDEO", "AUDIO", "DOCUMENT", "OTHER")
ASSET_STATUSES = ("DRAFT", "PROCESSING", "REVIEW", "APPROVED", "PUBLISHED", "ARCHIVED")


class IpAsset(Base):
    """
    An uploaded creative asset. Versions are rows whose parent_asset_id points at the root asset.
    """

    __tablename__ = "ip_assets"
    __table_args__ = (
        Index("idx_ip_assets_owner", "owner_user_id"),
        Index("idx_ip_assets_parent", "parent_asset_id"),
        Index("idx_ip_assets_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="OTHER")

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    parent_asset_id: Mapped[int | None] = mapped_column(ForeignKey("ip_assets.id", ondelete="SET NULL"), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    owner: Mapped[User | None] = relationship(User, foreign_keys=[owner_user_id], lazy="selectin")

    @property
    def meta(self) -> dict:
        return load_json(self.metadata_json, {}) or {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_user_id": self.owner_user_id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "storage_key": self.storage_key,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "sha256": self.sha256,
            "status": self.status,
            "version": self.version,
            "parent_asset_id": self.parent_asset_id,
            "metadata": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }


class FileRelationship(Base):
    __tablename__ = "file_relationships"
    __table_args__ = (
        Index("idx_file_relationships_source", "source_asset_id"),
        Index("idx_file_relationships_target", "target_asset_id"),
        Index("idx_file_relationships_type", "relationship_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_asset_id: Mapped[int] = mapped_column(ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False)
    target_asset_id: Mapped[int] = mapped_column(ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False)
    relationship_type: Mapped[str] = mapped_column(String(32), nullable=False)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_asset_id": self.source_asset_id,
            "target_asset_id": self.target_asset_id,
            "relationship_type": self.relationship_type,
            "metadata": load_json(self.metadata_json, {}) or {},
            "created_by_user_id": self.created_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }


class StorageMetric(Base):
    """
    Daily storage snapshot for the whole platform (entity_id NULL) or one owner.
    One row per (snapshot_date, entity_type, entity_id); recapturing a day overwrites it.
    """

    __tablename__ = "storage_metrics"
    __table_args__ = (Index("idx_storage_metrics_entity", "entity_type", "entity_id", "snapshot_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    total_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    largest_file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    largest_file_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Growth against the previous snapshot of the same entity, in basis points.
    storage_trend_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    breakdown_by_type: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "snapshot_date": self.snapshot_date.isoformat(),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "total_bytes": self.total_bytes,
            "file_count": self.file_count,
            "average_file_size": self.average_file_size,
            "largest_file_size": self.largest_file_size,
            "largest_file_id": self.largest_file_id,
            "storage_trend_bps": self.storage_trend_bps,
            "breakdown_by_type": self.breakdown_by_type or {},
        }
