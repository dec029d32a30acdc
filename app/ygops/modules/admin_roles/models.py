from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.ygops.models import Base, User
from app.ygops.utils import utcnow


class AdminRole(Base):
    """
    A department-scoped admin grant. Soft-deleted on revoke; one live row per
    (user, department) is enforced in the service layer.
    """

    __tablename__ = "admin_roles"
    __table_args__ = (
        Index("idx_admin_roles_user", "user_id"),
        Index("idx_admin_roles_department", "department"),
        Index("idx_admin_roles_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    department: Mapped[str] = mapped_column(String(32), nullable=False)
    seniority: Mapped[str] = mapped_column(String(16), nullable=False, default="JUNIOR")
    # Empty list means "use the department template".
    permissions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    user: Mapped[User] = relationship(User, foreign_keys=[user_id], lazy="selectin")

    def is_effective(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.is_active and self.deleted_at is None and (self.expires_at is None or self.expires_at > now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_email": self.user.email if self.user else None,
            "department": self.department,
            "seniority": self.seniority,
            "permissions": list(self.permissions or []),
            "is_active": self.is_active,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "created_by_user_id": self.created_by_user_id,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "deletion_reason": self.deletion_reason,
        }
