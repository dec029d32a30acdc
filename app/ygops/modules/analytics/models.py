from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.ygops.models import Base
from app.ygops.utils import load_json, utcnow


class Event(Base):
    """
    Raw analytics event (view, click, conversion, ...). Append-only.
    """

    __tablename__ = "analytics_events"
    __table_args__ = (
        Index("idx_analytics_events_occurred_at", "occurred_at"),
        Index("idx_analytics_events_type", "event_type", "occurred_at"),
        Index("idx_analytics_events_asset", "ip_asset_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="web")

    actor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip_asset_id: Mapped[int | None] = mapped_column(ForeignKey("ip_assets.id", ondelete="SET NULL"), nullable=True)
    license_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    value_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    engagement_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    props_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "event_type": self.event_type,
            "source": self.source,
            "actor_id": self.actor_id,
            "project_id": self.project_id,
            "ip_asset_id": self.ip_asset_id,
            "license_id": self.license_id,
            "session_id": self.session_id,
            "value_cents": self.value_cents,
            "engagement_seconds": self.engagement_seconds,
            "props": load_json(self.props_json, {}) or {},
        }


class DailyMetric(Base):
    __tablename__ = "daily_metrics"
    __table_args__ = (Index("idx_daily_metrics_scope", "date", "project_id", "ip_asset_id", "license_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip_asset_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    license_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    engagement_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "project_id": self.project_id,
            "ip_asset_id": self.ip_asset_id,
            "license_id": self.license_id,
            "views": self.views,
            "clicks": self.clicks,
            "conversions": self.conversions,
            "revenue_cents": self.revenue_cents,
            "unique_visitors": self.unique_visitors,
            "engagement_time": self.engagement_time,
        }


class _RollupColumns:
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip_asset_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    license_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    total_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_revenue_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_engagement_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    avg_daily_views: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_daily_clicks: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_daily_conversions: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_daily_revenue_cents: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    views_growth_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    clicks_growth_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    conversions_growth_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    revenue_growth_percent: Mapped[float | None] = mapped_column(Float, nullable=True)

    days_in_period: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def totals_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "ip_asset_id": self.ip_asset_id,
            "license_id": self.license_id,
            "total_views": self.total_views,
            "total_clicks": self.total_clicks,
            "total_conversions": self.total_conversions,
            "total_revenue_cents": self.total_revenue_cents,
            "unique_visitors": self.unique_visitors,
            "total_engagement_time": self.total_engagement_time,
            "avg_daily_views": self.avg_daily_views,
            "avg_daily_clicks": self.avg_daily_clicks,
            "avg_daily_conversions": self.avg_daily_conversions,
            "avg_daily_revenue_cents": self.avg_daily_revenue_cents,
            "views_growth_percent": self.views_growth_percent,
            "clicks_growth_percent": self.clicks_growth_percent,
            "conversions_growth_percent": self.conversions_growth_percent,
            "revenue_growth_percent": self.revenue_growth_percent,
            "days_in_period": self.days_in_period,
        }


class WeeklyMetric(_RollupColumns, Base):
    __tablename__ = "weekly_metrics"
    __table_args__ = (Index("idx_weekly_metrics_scope", "week_start_date", "project_id", "ip_asset_id", "license_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)

    def to_dict(self) -> dict:
        return {
            "week_start_date": self.week_start_date.isoformat(),
            "week_end_date": self.week_end_date.isoformat(),
            **self.totals_dict(),
        }


class MonthlyMetric(_RollupColumns, Base):
    __tablename__ = "monthly_metrics"
    __table_args__ = (Index("idx_monthly_metrics_scope", "month_start_date", "project_id", "ip_asset_id", "license_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    month_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    weeks_in_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weekly_breakdown: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def to_dict(self) -> dict:
        return {
            "month_start_date": self.month_start_date.isoformat(),
            "month_end_date": self.month_end_date.isoformat(),
            "year": self.year,
            "month": self.month,
            "weeks_in_month": self.weeks_in_month,
            "weekly_breakdown": list(self.weekly_breakdown or []),
            **self.totals_dict(),
        }


class RealtimeMetric(Base):
    __tablename__ = "realtime_metrics"
    __table_args__ = (Index("idx_realtime_metrics_expires_at", "expires_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    metric_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    metric_type: Mapped[str] = mapped_column(String(16), nullable=False)  # counter / gauge / histogram / rate
    current_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    dimensions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "metric_key": self.metric_key,
            "metric_type": self.metric_type,
            "value": self.current_value,
            "dimensions": dict(self.dimensions or {}),
            "unit": self.unit,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class CustomMetricDefinition(Base):
    __tablename__ = "custom_metric_definitions"
    __table_args__ = (
        Index("idx_custom_metric_definitions_creator", "created_by_user_id"),
        Index("idx_custom_metric_definitions_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metric_type: Mapped[str] = mapped_column(String(32), nullable=False, default="CUSTOM")
    data_source: Mapped[str] = mapped_column(String(32), nullable=False)
    calculation_formula: Mapped[str] = mapped_column(Text, nullable=False)
    dimensions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    filters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    aggregation_method: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="PRIVATE")
    allowed_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validation_errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    estimated_cost: Mapped[str] = mapped_column(String(8), nullable=False, default="low")
    query_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    parent_metric_id: Mapped[int | None] = mapped_column(
        ForeignKey("custom_metric_definitions.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "metric_type": self.metric_type,
            "data_source": self.data_source,
            "calculation_formula": self.calculation_formula,
            "dimensions": list(self.dimensions or []),
            "filters": dict(self.filters or {}),
            "aggregation_method": self.aggregation_method,
            "created_by_user_id": self.created_by_user_id,
            "visibility": self.visibility,
            "allowed_roles": list(self.allowed_roles or []),
            "is_validated": self.is_validated,
            "validation_errors": self.validation_errors,
            "estimated_cost": self.estimated_cost,
            "query_timeout_seconds": self.query_timeout_seconds,
            "version": self.version,
            "parent_metric_id": self.parent_metric_id,
            "is_active": self.is_active,
            "usage_count": self.usage_count,
            "last_calculated_at": self.last_calculated_at.isoformat() if self.last_calculated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CustomMetricValue(Base):
    __tablename__ = "custom_metric_values"
    __table_args__ = (Index("idx_custom_metric_values_period", "metric_definition_id", "period_start_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    metric_definition_id: Mapped[int] = mapped_column(
        ForeignKey("custom_metric_definitions.id", ondelete="CASCADE"), nullable=False
    )
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    period_end_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    dimension_values: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    metric_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    metric_value_string: Mapped[str | None] = mapped_column(String(255), nullable=True)
    calculation_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "metric_definition_id": self.metric_definition_id,
            "period_type": self.period_type,
            "period_start_date": self.period_start_date.isoformat(),
            "period_end_date": self.period_end_date.isoformat(),
            "dimension_values": dict(self.dimension_values or {}),
            "metric_value": self.metric_value,
            "metric_value_string": self.metric_value_string,
            "calculation_duration_ms": self.calculation_duration_ms,
            "record_count": self.record_count,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }
