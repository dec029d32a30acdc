from __future__ import annotations

import calendar
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.ygops.modules.analytics.metrics_cache import MetricsCache, scope_tags
from app.ygops.modules.analytics.models import DailyMetric, Event, MonthlyMetric, WeeklyMetric

logger = logging.getLogger(__name__)

VIEW_EVENTS = ("view",)
CLICK_EVENTS = ("click",)
CONVERSION_EVENTS = ("conversion",)

Scope = tuple[int | None, int | None, int | None]


def week_bounds(day: date) -> tuple[date, date]:
    """Monday and Sunday of the week containing `day`."""
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def previous_month(year: int, month: int) -> tuple[int, int]:
    return (year - 1, 12) if month == 1 else (year, month - 1)


def growth_percent(current: float, previous: float | None) -> float | None:
    if previous is None:
        return None
    if previous == 0:
        return 100.0 if current > 0 else None
    return round((current - previous) / previous * 100.0, 2)


def _scope_of(row) -> Scope:
    return (row.project_id, row.ip_asset_id, row.license_id)


def _scope_where(model, scope: Scope) -> list:
    clauses = []
    for column, value in zip((model.project_id, model.ip_asset_id, model.license_id), scope):
        clauses.append(column.is_(None) if value is None else column == value)
    return clauses


def _invalidate(cache: MetricsCache | None, tag: str, scopes: list[Scope]) -> None:
    if cache is None:
        return
    tags = {tag, "dashboard"}
    for project_id, ip_asset_id, license_id in scopes:
        tags.update(scope_tags(project_id=project_id, ip_asset_id=ip_asset_id, license_id=license_id))
    cache.invalidate_tags(sorted(tags))


# ---------- Daily ----------
def aggregate_daily(s: Session, day: date, *, cache: MetricsCache | None = None) -> int:
    """
    Build one `DailyMetric` per (project, asset, license) scope from the
    day's raw events. Re-running for the same day overwrites the rows.
    """
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    events = s.scalars(select(Event).where(Event.occurred_at >= start, Event.occurred_at < end)).all()

    buckets: dict[Scope, dict[str, Any]] = defaultdict(
        lambda: {"views": 0, "clicks": 0, "conversions": 0, "revenue_cents": 0, "engagement_time": 0, "visitors": set()}
    )
    for e in events:
        b = buckets[_scope_of(e)]
        if e.event_type in VIEW_EVENTS:
            b["views"] += 1
        elif e.event_type in CLICK_EVENTS:
            b["clicks"] += 1
        elif e.event_type in CONVERSION_EVENTS:
            b["conversions"] += 1
            b["revenue_cents"] += int(e.value_cents or 0)
        b["engagement_time"] += int(e.engagement_seconds or 0)
        visitor = f"u{e.actor_id}" if e.actor_id else (f"s{e.session_id}" if e.session_id else None)
        if visitor:
            b["visitors"].add(visitor)

    for scope, b in buckets.items():
        row = s.scalar(select(DailyMetric).where(DailyMetric.date == day, *_scope_where(DailyMetric, scope)))
        if row is None:
            row = DailyMetric(date=day, project_id=scope[0], ip_asset_id=scope[1], license_id=scope[2])
            s.add(row)
        row.views = b["views"]
        row.clicks = b["clicks"]
        row.conversions = b["conversions"]
        row.revenue_cents = b["revenue_cents"]
        row.engagement_time = b["engagement_time"]
        row.unique_visitors = len(b["visitors"])
    s.flush()

    _invalidate(cache, "daily", list(buckets))
    logger.info("Daily aggregation for %s: %s scopes from %s events", day.isoformat(), len(buckets), len(events))
    return len(buckets)


def daily_metrics(
    s: Session,
    start: date,
    end: date,
    *,
    project_id: int | None = None,
    ip_asset_id: int | None = None,
    license_id: int | None = None,
) -> list[DailyMetric]:
    stmt = select(DailyMetric).where(DailyMetric.date >= start, DailyMetric.date <= end)
    if project_id is not None:
        stmt = stmt.where(DailyMetric.project_id == project_id)
    if ip_asset_id is not None:
        stmt = stmt.where(DailyMetric.ip_asset_id == ip_asset_id)
    if license_id is not None:
        stmt = stmt.where(DailyMetric.license_id == license_id)
    return list(s.scalars(stmt.order_by(DailyMetric.date.asc(), DailyMetric.id.asc())))


def _grouped_daily(s: Session, start: date, end: date) -> dict[Scope, list[DailyMetric]]:
    grouped: dict[Scope, list[DailyMetric]] = defaultdict(list)
    for row in daily_metrics(s, start, end):
        grouped[_scope_of(row)].append(row)
    return grouped


def _apply_totals(row, rows: list[DailyMetric], previous) -> None:
    row.total_views = sum(r.views for r in rows)
    row.total_clicks = sum(r.clicks for r in rows)
    row.total_conversions = sum(r.conversions for r in rows)
    row.total_revenue_cents = sum(r.revenue_cents for r in rows)
    # Daily visitor sets are not stored, so the busiest day is the best lower bound.
    row.unique_visitors = max((r.unique_visitors for r in rows), default=0)
    row.total_engagement_time = sum(r.engagement_time for r in rows)
    row.days_in_period = len(rows)

    days = row.days_in_period or 1
    row.avg_daily_views = round(row.total_views / days, 2)
    row.avg_daily_clicks = round(row.total_clicks / days, 2)
    row.avg_daily_conversions = round(row.total_conversions / days, 2)
    row.avg_daily_revenue_cents = round(row.total_revenue_cents / days, 2)

    row.views_growth_percent = growth_percent(row.total_views, previous.total_views if previous else None)
    row.clicks_growth_percent = growth_percent(row.total_clicks, previous.total_clicks if previous else None)
    row.conversions_growth_percent = growth_percent(
        row.total_conversions, previous.total_conversions if previous else None
    )
    row.revenue_growth_percent = growth_percent(
        row.total_revenue_cents, previous.total_revenue_cents if previous else None
    )


# ---------- Weekly ----------
def aggregate_weekly(s: Session, week_of: date, *, cache: MetricsCache | None = None) -> int:
    week_start, week_end = week_bounds(week_of)
    grouped = _grouped_daily(s, week_start, week_end)
    if not grouped:
        logger.info("Weekly aggregation for %s: no daily metrics", week_start.isoformat())
        return 0

    prev_start = week_start - timedelta(days=7)
    previous = {_scope_of(m): m for m in s.scalars(select(WeeklyMetric).where(WeeklyMetric.week_start_date == prev_start))}

    for scope, rows in grouped.items():
        row = s.scalar(
            select(WeeklyMetric).where(WeeklyMetric.week_start_date == week_start, *_scope_where(WeeklyMetric, scope))
        )
        if row is None:
            row = WeeklyMetric(
                week_start_date=week_start,
                week_end_date=week_end,
                project_id=scope[0],
                ip_asset_id=scope[1],
                license_id=scope[2],
            )
            s.add(row)
        _apply_totals(row, rows, previous.get(scope))
    s.flush()

    _invalidate(cache, "weekly", list(grouped))
    logger.info("Weekly aggregation for %s: %s scopes", week_start.isoformat(), len(grouped))
    return len(grouped)


def backfill_weekly(s: Session, start: date, end: date, *, cache: MetricsCache | None = None) -> int:
    current, _ = week_bounds(start)
    last, _ = week_bounds(end)
    weeks = 0
    while current <= last:
        aggregate_weekly(s, current, cache=cache)
        current += timedelta(days=7)
        weeks += 1
    return weeks


def weekly_summary(s: Session, start: date, end: date) -> dict[str, Any]:
    first, _ = week_bounds(start)
    last, _ = week_bounds(end)
    rows = list(
        s.scalars(
            select(WeeklyMetric)
            .where(WeeklyMetric.week_start_date >= first, WeeklyMetric.week_start_date <= last)
            .order_by(WeeklyMetric.week_start_date.asc())
        )
    )
    weeks: dict[str, dict[str, int]] = {}
    for r in rows:
        w = weeks.setdefault(
            r.week_start_date.isoformat(), {"views": 0, "clicks": 0, "conversions": 0, "revenue_cents": 0}
        )
        w["views"] += r.total_views
        w["clicks"] += r.total_clicks
        w["conversions"] += r.total_conversions
        w["revenue_cents"] += r.total_revenue_cents
    return {
        "start": first.isoformat(),
        "end": last.isoformat(),
        "total_views": sum(r.total_views for r in rows),
        "total_clicks": sum(r.total_clicks for r in rows),
        "total_conversions": sum(r.total_conversions for r in rows),
        "total_revenue_cents": sum(r.total_revenue_cents for r in rows),
        "weeks": [{"week_start_date": k, **v} for k, v in weeks.items()],
    }


# ---------- Monthly ----------
def aggregate_monthly(s: Session, year: int, month: int, *, cache: MetricsCache | None = None) -> int:
    month_start, month_end = month_bounds(year, month)
    grouped = _grouped_daily(s, month_start, month_end)
    if not grouped:
        logger.info("Monthly aggregation for %04d-%02d: no daily metrics", year, month)
        return 0

    prev_year, prev_month = previous_month(year, month)
    previous = {
        _scope_of(m): m
        for m in s.scalars(select(MonthlyMetric).where(MonthlyMetric.year == prev_year, MonthlyMetric.month == prev_month))
    }
    weeks = list(
        s.scalars(
            select(WeeklyMetric)
            .where(WeeklyMetric.week_start_date >= month_start, WeeklyMetric.week_start_date <= month_end)
            .order_by(WeeklyMetric.week_start_date.asc())
        )
    )

    for scope, rows in grouped.items():
        row = s.scalar(
            select(MonthlyMetric).where(
                MonthlyMetric.year == year, MonthlyMetric.month == month, *_scope_where(MonthlyMetric, scope)
            )
        )
        if row is None:
            row = MonthlyMetric(
                month_start_date=month_start,
                month_end_date=month_end,
                year=year,
                month=month,
                project_id=scope[0],
                ip_asset_id=scope[1],
                license_id=scope[2],
            )
            s.add(row)
        _apply_totals(row, rows, previous.get(scope))
        breakdown = [
            {
                "week_start_date": w.week_start_date.isoformat(),
                "week_end_date": w.week_end_date.isoformat(),
                "total_views": w.total_views,
                "total_clicks": w.total_clicks,
                "total_conversions": w.total_conversions,
                "total_revenue_cents": w.total_revenue_cents,
            }
            for w in weeks
            if _scope_of(w) == scope
        ]
        row.weekly_breakdown = breakdown
        row.weeks_in_month = len(breakdown)
    s.flush()

    _invalidate(cache, "monthly", list(grouped))
    logger.info("Monthly aggregation for %04d-%02d: %s scopes", year, month, len(grouped))
    return len(grouped)


def backfill_monthly(s: Session, start: date, end: date, *, cache: MetricsCache | None = None) -> int:
    year, month = start.year, start.month
    months = 0
    while (year, month) <= (end.year, end.month):
        aggregate_monthly(s, year, month, cache=cache)
        months += 1
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


def backfill_daily(s: Session, start: date, end: date, *, cache: MetricsCache | None = None) -> int:
    day = start
    days = 0
    while day <= end:
        aggregate_daily(s, day, cache=cache)
        day += timedelta(days=1)
        days += 1
    return days


def monthly_summary(s: Session, year: int) -> dict[str, Any]:
    rows = list(s.scalars(select(MonthlyMetric).where(MonthlyMetric.year == year).order_by(MonthlyMetric.month.asc())))
    months: dict[int, dict[str, int]] = {}
    for r in rows:
        m = months.setdefault(r.month, {"views": 0, "clicks": 0, "conversions": 0, "revenue_cents": 0})
        m["views"] += r.total_views
        m["clicks"] += r.total_clicks
        m["conversions"] += r.total_conversions
        m["revenue_cents"] += r.total_revenue_cents
    return {
        "year": year,
        "total_views": sum(m["views"] for m in months.values()),
        "total_clicks": sum(m["clicks"] for m in months.values()),
        "total_conversions": sum(m["conversions"] for m in months.values()),
        "total_revenue_cents": sum(m["revenue_cents"] for m in months.values()),
        "months": [{"month": k, **v} for k, v in sorted(months.items())],
    }


def year_over_year(s: Session, current_year: int, previous_year: int) -> dict[str, Any]:
    current = monthly_summary(s, current_year)
    previous = monthly_summary(s, previous_year)
    has_previous = bool(previous["months"])
    return {
        "current_year": current,
        "previous_year": previous,
        "growth": {
            field: growth_percent(current[field], previous[field] if has_previous else None)
            for field in ("total_views", "total_clicks", "total_conversions", "total_revenue_cents")
        },
    }
