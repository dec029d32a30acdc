from __future__ import annotations

from datetime import date, timedelta

from flask import Blueprint, g, request
from sqlalchemy import select

from app.ygops.audit import client_ip
from app.ygops.cache import get_cache, get_cache_backend
from app.ygops.db import db_session
from app.ygops.errors import ValidationError
from app.ygops.models import User
from app.ygops.modules.analytics import custom_metrics, metrics_cache, rollups
from app.ygops.modules.analytics.events import EventIngestor
from app.ygops.modules.analytics.metrics_cache import MetricsCache
from app.ygops.modules.analytics.models import MonthlyMetric, WeeklyMetric
from app.ygops.modules.analytics.realtime import RealtimeMetrics
from app.ygops.ratelimit import get_rate_limiter
from app.ygops.rbac import require_permission
from app.ygops.utils import parse_date, request_payload, utcnow

bp = Blueprint("analytics", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _metrics_cache() -> MetricsCache:
    return MetricsCache(get_cache())


def _date(raw, name: str, default: date | None = None) -> date:
    try:
        value = parse_date(raw if isinstance(raw, str) else None)
    except ValueError as e:
        raise ValidationError(f"{name} must be an ISO date (YYYY-MM-DD)") from e
    if value is None:
        if default is None:
            raise ValidationError(f"{name} is required")
        return default
    return value


def _range_args(default_days: int = 30) -> tuple[date, date]:
    today = utcnow().date()
    end = _date(request.args.get("end"), "end", today)
    start = _date(request.args.get("start"), "start", end - timedelta(days=default_days - 1))
    if start > end:
        raise ValidationError("start must not be after end", code="INVALID_DATE_RANGE")
    return start, end


def _scope_args() -> dict:
    return {
        "project_id": request.args.get("project_id", type=int),
        "ip_asset_id": request.args.get("ip_asset_id", type=int),
        "license_id": request.args.get("license_id", type=int),
    }


# ---------- Ingestion ----------
@bp.post("/events")
def ingest_events():
    u = getattr(g, "current_user", None)
    get_rate_limiter().check_or_raise(str(u.id) if u else f"ip:{client_ip()}", "events")
    payload = request.get_json(silent=True)
    if isinstance(payload, dict) and isinstance(payload.get("events"), list):
        items = payload["events"]
    elif isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = [payload]
    else:
        raise ValidationError("Expected a JSON event or a list of events", code="INVALID_EVENT")

    s = db_session()
    result = EventIngestor(s, get_cache_backend()).ingest(items, actor=u)
    s.commit()
    return {
        "accepted": result["accepted"],
        "duplicates": result["duplicates"],
        "event_ids": [e.id for e in result["events"]],
    }, 202


# ---------- Realtime ----------
@bp.get("/realtime")
@require_permission("analytics.view_platform")
def list_realtime():
    rt = RealtimeMetrics(db_session(), get_cache_backend())
    rows = rt.list_metrics(metric_type=request.args.get("type"), prefix=request.args.get("prefix"))
    return {"metrics": [r.to_dict() for r in rows]}


@bp.get("/realtime/<name>")
@require_permission("analytics.view_platform")
def realtime_value(name: str):
    dims = {k[4:]: v for k, v in request.args.items() if k.startswith("dim.")}
    rt = RealtimeMetrics(db_session(), get_cache_backend())
    return {"name": name, "dimensions": dims, "value": rt.get_value(name, dims or None)}


# ---------- Rollups ----------
@bp.get("/daily")
@require_permission("analytics.view_platform")
def daily():
    start, end = _range_args()
    scope = _scope_args()
    s = db_session()
    data = _metrics_cache().get_or_compute(
        metrics_cache.daily_range_key(start, end, **scope),
        lambda: [m.to_dict() for m in rollups.daily_metrics(s, start, end, **scope)],
        ttl=metrics_cache.TTL_SHORT,
        tags=["daily", *metrics_cache.scope_tags(**scope)],
    )
    return {"start": start.isoformat(), "end": end.isoformat(), "items": data}


@bp.get("/weekly")
@require_permission("analytics.view_platform")
def weekly():
    start, end = _range_args(default_days=84)
    s = db_session()
    return _metrics_cache().get_or_compute(
        metrics_cache.dashboard_key("weekly_summary", {"start": start, "end": end}),
        lambda: rollups.weekly_summary(s, start, end),
        tags=["weekly", "dashboard"],
    )


@bp.get("/weekly/<week_of>")
@require_permission("analytics.view_platform")
def weekly_rows(week_of: str):
    week_start, _ = rollups.week_bounds(_date(week_of, "week"))
    s = db_session()
    rows = s.scalars(select(WeeklyMetric).where(WeeklyMetric.week_start_date == week_start).order_by(WeeklyMetric.id.asc()))
    return {"week_start_date": week_start.isoformat(), "items": [r.to_dict() for r in rows]}


@bp.get("/monthly/<int:year>")
@require_permission("analytics.view_platform")
def monthly_summary(year: int):
    s = db_session()
    return _metrics_cache().get_or_compute(
        metrics_cache.dashboard_key("monthly_summary", {"year": year}),
        lambda: rollups.monthly_summary(s, year),
        ttl=metrics_cache.TTL_LONG if year < utcnow().year else metrics_cache.TTL_DEFAULT,
        tags=["monthly", "dashboard"],
    )


@bp.get("/monthly/<int:year>/<int:month>")
@require_permission("analytics.view_platform")
def monthly_rows(year: int, month: int):
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12")
    s = db_session()
    rows = s.scalars(
        select(MonthlyMetric).where(MonthlyMetric.year == year, MonthlyMetric.month == month).order_by(MonthlyMetric.id.asc())
    )
    return {"year": year, "month": month, "items": [r.to_dict() for r in rows]}


@bp.get("/year-over-year")
@require_permission("analytics.view_platform")
def year_over_year():
    current = request.args.get("current", utcnow().year, type=int)
    previous = request.args.get("previous", current - 1, type=int)
    return rollups.year_over_year(db_session(), current, previous)


@bp.post("/aggregate")
@require_permission("analytics.view_platform")
def aggregate():
    payload = request_payload(request)
    kind = str(payload.get("kind") or "daily").lower()
    today = utcnow().date()
    start = _date(payload.get("start"), "start", today - timedelta(days=1))
    end = _date(payload.get("end"), "end", start)
    if start > end:
        raise ValidationError("start must not be after end", code="INVALID_DATE_RANGE")

    s = db_session()
    cache = _metrics_cache()
    if kind == "daily":
        periods = rollups.backfill_daily(s, start, end, cache=cache)
    elif kind == "weekly":
        periods = rollups.backfill_weekly(s, start, end, cache=cache)
    elif kind == "monthly":
        periods = rollups.backfill_monthly(s, start, end, cache=cache)
    else:
        raise ValidationError("kind must be daily, weekly or monthly")
    s.commit()
    return {"kind": kind, "start": start.isoformat(), "end": end.isoformat(), "periods": periods}


@bp.post("/cache/invalidate")
@require_permission("analytics.view_platform")
def invalidate_cache():
    payload = request_payload(request)
    tags = payload.get("tags")
    cache = _metrics_cache()
    if isinstance(tags, list) and tags:
        removed = cache.invalidate_tags(str(t) for t in tags)
    else:
        removed = cache.invalidate_all()
    return {"removed": removed}


# ---------- Custom metrics ----------
def _definition_kwargs(payload: dict) -> dict:
    out = {k: payload[k] for k in custom_metrics.DEFINITION_FIELDS if k in payload}
    if "formula" in payload and "calculation_formula" not in out:
        out["calculation_formula"] = payload["formula"]
    for name in ("dimensions", "allowed_roles"):
        if name in out and not isinstance(out[name], list):
            raise ValidationError(f"{name} must be a list")
    if "filters" in out and not isinstance(out["filters"], dict):
        raise ValidationError("filters must be an object")
    return out


@bp.get("/custom-metrics")
@require_permission("analytics.view_own")
def list_custom_metrics():
    page = custom_metrics.list_definitions(
        db_session(),
        _current_user(),
        data_source=request.args.get("data_source"),
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 20, type=int),
    )
    page["items"] = [d.to_dict() for d in page["items"]]
    return page


@bp.post("/custom-metrics/validate")
@require_permission("analytics.view_own")
def validate_custom_metric():
    payload = request_payload(request)
    return custom_metrics.validate_definition(
        data_source=str(payload.get("data_source") or ""),
        formula=str(payload.get("formula") or payload.get("calculation_formula") or ""),
        dimensions=payload.get("dimensions") if isinstance(payload.get("dimensions"), list) else None,
        filters=payload.get("filters") if isinstance(payload.get("filters"), dict) else None,
    )


@bp.post("/custom-metrics")
@require_permission("analytics.view_own")
def create_custom_metric():
    s = db_session()
    fields = _definition_kwargs(request_payload(request))
    d = custom_metrics.create_definition(
        s,
        actor=_current_user(),
        name=str(fields.get("name") or ""),
        data_source=str(fields.get("data_source") or ""),
        formula=str(fields.get("calculation_formula") or ""),
        metric_type=str(fields.get("metric_type") or "CUSTOM"),
        description=fields.get("description"),
        dimensions=fields.get("dimensions"),
        filters=fields.get("filters"),
        aggregation_method=fields.get("aggregation_method"),
        visibility=str(fields.get("visibility") or "PRIVATE"),
        allowed_roles=fields.get("allowed_roles"),
        query_timeout_seconds=int(fields.get("query_timeout_seconds") or 30),
    )
    s.commit()
    return {"metric": d.to_dict()}, 201


@bp.get("/custom-metrics/<int:metric_id>")
@require_permission("analytics.view_own")
def get_custom_metric(metric_id: int):
    d = custom_metrics.get_visible_definition(db_session(), _current_user(), metric_id)
    return {"metric": d.to_dict()}


@bp.patch("/custom-metrics/<int:metric_id>")
@require_permission("analytics.view_own")
def update_custom_metric(metric_id: int):
    s = db_session()
    d = custom_metrics.update_definition(
        s, metric_id, actor=_current_user(), fields=_definition_kwargs(request_payload(request))
    )
    s.commit()
    _metrics_cache().invalidate_tag(f"custom:{metric_id}")
    return {"metric": d.to_dict()}


@bp.delete("/custom-metrics/<int:metric_id>")
@require_permission("analytics.view_own")
def delete_custom_metric(metric_id: int):
    s = db_session()
    custom_metrics.delete_definition(s, metric_id, actor=_current_user())
    s.commit()
    _metrics_cache().invalidate_tag(f"custom:{metric_id}")
    return {"deleted": True}


@bp.get("/custom-metrics/<int:metric_id>/versions")
@require_permission("analytics.view_own")
def custom_metric_versions(metric_id: int):
    s = db_session()
    custom_metrics.get_visible_definition(s, _current_user(), metric_id)
    return {"versions": [d.to_dict() for d in custom_metrics.version_history(s, metric_id)]}


@bp.post("/custom-metrics/<int:metric_id>/calculate")
@require_permission("analytics.view_own")
def calculate_custom_metric(metric_id: int):
    s = db_session()
    custom_metrics.get_visible_definition(s, _current_user(), metric_id)
    payload = request_payload(request)
    today = utcnow().date()
    start = _date(payload.get("start"), "start", today)
    end = _date(payload.get("end"), "end", start)
    if start > end:
        raise ValidationError("start must not be after end", code="INVALID_DATE_RANGE")
    period_type = str(payload.get("period_type") or "DAILY")
    values = custom_metrics.calculate(s, metric_id, start=start, end=end, period_type=period_type)
    s.commit()
    _metrics_cache().invalidate_tag(f"custom:{metric_id}")
    return {"values": [v.to_dict() for v in values]}


@bp.post("/custom-metrics/<int:metric_id>/backfill")
@require_permission("analytics.view_own")
def backfill_custom_metric(metric_id: int):
    s = db_session()
    custom_metrics.get_visible_definition(s, _current_user(), metric_id)
    payload = request_payload(request)
    start = _date(payload.get("start"), "start")
    end = _date(payload.get("end"), "end")
    periods = custom_metrics.backfill(s, metric_id, start=start, end=end, period_type=str(payload.get("period_type") or "DAILY"))
    s.commit()
    _metrics_cache().invalidate_tag(f"custom:{metric_id}")
    return {"periods": periods}


@bp.get("/custom-metrics/<int:metric_id>/values")
@require_permission("analytics.view_own")
def custom_metric_values(metric_id: int):
    s = db_session()
    custom_metrics.get_visible_definition(s, _current_user(), metric_id)
    start, end = _range_args()
    period_type = (request.args.get("period_type") or "DAILY").upper()
    data = _metrics_cache().get_or_compute(
        metrics_cache.custom_key(metric_id, period_type, start, end),
        lambda: [
            v.to_dict()
            for v in custom_metrics.get_values(s, metric_id, start=start, end=end, period_type=period_type)
        ],
        ttl=metrics_cache.TTL_SHORT,
        tags=[f"custom:{metric_id}"],
    )
    return {"metric_id": metric_id, "values": data}
