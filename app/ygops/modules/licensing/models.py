from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.ygops.models import Base
from app.ygops.utils import isoformat, utcnow

LICENSE_TYPES = ("EXCLUSIVE", "NON_EXCLUSIVE", "EXCLUSIVE_TERRITORY")
LICENSE_STATUSES = ("DRAFT", "PENDING_APPROVAL", "ACTIVE", "EXPIRED", "TERMINATED")
BILLING_FREQUENCIES = ("ONE_TIME", "MONTHLY", "QUARTERLY", "ANNUALLY")

OWNERSHIP_TYPES = ("PRIMARY", "SECONDARY", "DERIVATIVE", "TRANSFERRED")


class License(Base):
    """
    Permission for a brand to use an IP asset for a period. Renewals are new rows
    pointing at the license they renew through parent_license_id.
    """

    __tablename__ = "licenses"
    __table_args__ = (
        Index("idx_licenses_asset", "ip_asset_id", "status"),
        Index("idx_licenses_brand", "brand_user_id"),
        Index("idx_licenses_end_date", "end_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ip_asset_id: Mapped[int] = mapped_column(ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False)
    brand_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    license_type: Mapped[str] = mapped_column(String(32), nullable=False, default="NON_EXCLUSIVE")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rev_share_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # {"media": [...], "geographic": {"territories": [...]}, "exclusivity": {"competitors": [...]}}
    scope: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    parent_license_id: Mapped[int | None] = mapped_column(ForeignKey("licenses.id", ondelete="SET NULL"), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ip_asset_id": self.ip_asset_id,
            "brand_user_id": self.brand_user_id,
            "project_id": self.project_id,
            "license_type": self.license_type,
            "status": self.status,
            "start_date": isoformat(self.start_date),
            "end_date": isoformat(self.end_date),
            "fee_cents": self.fee_cents,
            "rev_share_bps": self.rev_share_bps,
            "payment_terms": self.payment_terms,
            "billing_frequency": self.billing_frequency,
            "scope": self.scope or {},
            "auto_renew": self.auto_renew,
            "metadata": self.metadata_json or {},
            "parent_license_id": self.parent_license_id,
            "signed_at": isoformat(self.signed_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class IpOwnership(Base):
    """
    One owner's share of an asset over a period, in basis points.
    Rows with end_date NULL (or in the future) are the current split.
    """

    __tablename__ = "ip_ownerships"
    __table_args__ = (
        Index("idx_ip_ownerships_asset", "ip_asset_id", "end_date"),
        Index("idx_ip_ownerships_owner", "owner_user_id"),
        Index("idx_ip_ownerships_disputed", "disputed"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ip_asset_id: Mapped[int] = mapped_column(ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False)
    owner_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    share_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    ownership_type: Mapped[str] = mapped_column(String(16), nullable=False, default="PRIMARY")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    contract_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    disputed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    disputed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ip_asset_id": self.ip_asset_id,
            "owner_user_id": self.owner_user_id,
            "share_bps": self.share_bps,
            "share_percent": self.share_bps / 100,
            "ownership_type": self.ownership_type,
            "start_date": isoformat(self.start_date),
            "end_date": isoformat(self.end_date),
            "contract_reference": self.contract_reference,
            "notes": self.notes,
            "disputed": self.disputed,
            "disputed_at": isoformat(self.disputed_at),
            "dispute_reason": self.dispute_reason,
            "resolved_at": isoformat(self.resolved_at),
            "resolution_notes": self.resolution_notes,
        }
