from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.ygops import create_app
from app.ygops.cache import MemoryCacheBackend
from app.ygops.db import session_scope
from app.ygops.errors import ValidationError
from app.ygops.models import Base, User
from app.ygops.modules.analytics import rollups
from app.ygops.modules.analytics.custom_metrics import evaluate_formula, iter_periods, parse_formula, validate_definition
from app.ygops.modules.analytics.events import MAX_BATCH, EventIngestor
from app.ygops.modules.analytics.models import DailyMetric, Event, MonthlyMetric, RealtimeMetric, WeeklyMetric
from app.ygops.modules.analytics.realtime import RealtimeMetrics, clear_expired, metric_key, percentile
from app.ygops.utils import utcnow


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.delenv("REDIS_URL", raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(User(email="analyst@example.com", password_hash=generate_password_hash("pw"), role="ADMIN"))
        s.add(User(email="creator@example.com", password_hash=generate_password_hash("pw"), role="CREATOR"))
        s.add(User(email="creator2@example.com", password_hash=generate_password_hash("pw"), role="CREATOR"))
        s.add(User(email="viewer@example.com", password_hash=generate_password_hash("pw"), role="VIEWER"))
    return app


def _client(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"}, headers={"X-Forwarded-For": email})
    assert r.status_code == 200
    return c


def _event(s, when, event_type="view", session_id="s1", project_id=1, **kw):
    s.add(Event(occurred_at=when, event_type=event_type, session_id=session_id, project_id=project_id, **kw))


def _seed_march(s):
    d1 = datetime(2024, 3, 4, 10, 0)
    _event(s, d1, session_id="s1")
    _event(s, d1 + timedelta(minutes=1), session_id="s2")
    _event(s, d1 + timedelta(minutes=2), "click", session_id="s1", engagement_seconds=30)
    _event(s, d1 + timedelta(minutes=3), "conversion", session_id="s1", value_cents=500)
    _event(s, d1, session_id="s9", project_id=2)
    for i in range(4):
        _event(s, datetime(2024, 3, 5, 9, i), session_id="s3")
    for i in range(3):
        _event(s, datetime(2024, 2, 28, 9, i), session_id="s4")
    s.flush()


def _row(s, model, **where):
    stmt = select(model).where(*(getattr(model, k) == v for k, v in where.items()))
    return s.execute(stmt).scalar_one()


# ---------- ingestion ----------
def test_ingest_dedupes_within_window(app):
    backend = MemoryCacheBackend()
    now = utcnow()
    with session_scope(app) as s:
        ingestor = EventIngestor(s, backend)
        r = ingestor.ingest(
            [
                {"event_type": "view", "session_id": "a"},
                {"event_type": "view", "session_id": "a"},
                {"event_type": "view", "session_id": "b"},
            ],
            actor=None,
            now=now,
        )
        assert (r["accepted"], r["duplicates"]) == (2, 1)

        r = ingestor.ingest(
            [
                {"event_type": "click", "session_id": "c", "idempotency_key": "k1"},
                {"event_type": "click", "session_id": "d", "idempotency_key": "k1"},
            ],
            actor=None,
            now=now,
        )
        assert (r["accepted"], r["duplicates"]) == (1, 1)
        assert RealtimeMetrics(s, backend).get_value("events.view") == 2.0


def test_ingest_rejects_bad_events(app):
    now = utcnow()
    with session_scope(app) as s:
        ingestor = EventIngestor(s, MemoryCacheBackend())
        bad = [
            {"event_type": "hover"},
            {"event_type": "view", "source": "fax"},
            {"event_type": "view", "occurred_at": (now + timedelta(hours=1)).isoformat()},
            {"event_type": "view", "occurred_at": (now - timedelta(days=31)).isoformat()},
            {"event_type": "view", "occurred_at": 1700000000},
            {"event_type": "conversion", "value_cents": -5},
            {"event_type": "view", "props": ["x"]},
            {"event_type": "view", "project_id": "abc"},
        ]
        for payload in bad:
            with pytest.raises(ValidationError) as exc:
                ingestor.ingest([payload], actor=None, now=now)
            assert exc.value.code == "INVALID_EVENT"

        with pytest.raises(ValidationError) as exc:
            ingestor.ingest([{"event_type": "view"}] * (MAX_BATCH + 1), actor=None, now=now)
        assert exc.value.code == "BATCH_TOO_LARGE"
        assert s.execute(select(Event)).first() is None


def test_events_endpoint_accepts_batches(app):
    c = app.test_client()
    r = c.post("/analytics/events", json={"events": [{"event_type": "view", "session_id": "x"}, {"event_type": "view", "session_id": "y"}]})
    assert r.status_code == 202
    assert r.json["accepted"] == 2
    assert len(r.json["event_ids"]) == 2

    r = c.post("/analytics/events", json={"event_type": "nope"})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "INVALID_EVENT"

    analyst = _client(app, "analyst@example.com")
    assert analyst.get("/analytics/realtime/events.view").json["value"] == 2.0
    keys = [m["metric_key"] for m in analyst.get("/analytics/realtime?type=counter").json["metrics"]]
    assert "realtime:metric:events.view" in keys


# ---------- realtime ----------
def test_metric_key_and_percentile():
    assert metric_key("x") == "realtime:metric:x"
    assert metric_key("x", {"b": "2", "a": "1"}) == "realtime:metric:x:a:1|b:2"
    assert percentile([], 50) == 0.0
    assert percentile([1, 2, 3, 4], 50) == 2
    assert percentile(list(range(1, 101)), 95) == 95


def test_realtime_counter_falls_back_to_database(app):
    with session_scope(app) as s:
        rt = RealtimeMetrics(s, MemoryCacheBackend())
        rt.increment_counter("signups")
        assert rt.increment_counter("signups", 2) == 3.0
        assert rt.get_value("signups") == 3.0
        rt.set_gauge("queue.depth", 7, unit="jobs")

        cold = RealtimeMetrics(s, MemoryCacheBackend())
        assert cold.get_value("signups") == 3.0
        assert cold.get_value("queue.depth") == 7.0
        assert cold.get_value("missing") is None
        assert cold.get_bulk([("signups", None), ("missing", None)]) == {"realtime:metric:signups": 3.0}


def test_realtime_counter_survives_cache_flush(app):
    backend = MemoryCacheBackend()
    with session_scope(app) as s:
        rt = RealtimeMetrics(s, backend)
        rt.increment_counter("uploads", 5)
        backend.delete(metric_key("uploads"))

        assert rt.increment_counter("uploads") == 6.0
        assert backend.get(metric_key("uploads")) is not None
        assert rt.get_value("uploads") == 6.0
        assert rt.increment_counter("uploads") == 7.0
        assert rt.get_value("uploads") == 7.0


def test_realtime_histogram_and_rate(app):
    with session_scope(app) as s:
        rt = RealtimeMetrics(s, MemoryCacheBackend())
        for v in range(1, 101):
            stats = rt.record_histogram("latency", float(v))
        assert stats["count"] == 100
        assert stats["p50"] == 50.0
        assert stats["p95"] == 95.0
        row = _row(s, RealtimeMetric, metric_key="realtime:metric:latency")
        assert row.dimensions["p99"] == "99.0"

        for _ in range(3):
            rate = rt.record_rate("logins", window_seconds=60)
        assert rate == pytest.approx(3 / 60)


def test_clear_expired_realtime_rows(app):
    with session_scope(app) as s:
        RealtimeMetrics(s, MemoryCacheBackend()).increment_counter("x")
    with session_scope(app) as s:
        assert clear_expired(s) == 0
        assert clear_expired(s, now=utcnow() + timedelta(hours=2)) == 1


# ---------- rollups ----------
def test_growth_and_period_helpers():
    assert rollups.growth_percent(10, None) is None
    assert rollups.growth_percent(10, 0) == 100.0
    assert rollups.growth_percent(0, 0) is None
    assert rollups.growth_percent(15, 10) == 50.0
    assert rollups.growth_percent(5, 10) == -50.0
    assert rollups.week_bounds(date(2024, 3, 6)) == (date(2024, 3, 4), date(2024, 3, 10))
    assert rollups.month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))
    assert rollups.previous_month(2024, 1) == (2023, 12)


def test_aggregate_daily_per_scope(app):
    with session_scope(app) as s:
        _seed_march(s)
        assert rollups.aggregate_daily(s, date(2024, 3, 4)) == 2
        # re-running overwrites
        assert rollups.aggregate_daily(s, date(2024, 3, 4)) == 2
        assert rollups.aggregate_daily(s, date(2024, 3, 6)) == 0

        row = _row(s, DailyMetric, date=date(2024, 3, 4), project_id=1)
        assert (row.views, row.clicks, row.conversions) == (2, 1, 1)
        assert row.revenue_cents == 500
        assert row.unique_visitors == 2
        assert row.engagement_time == 30
        assert len(s.execute(select(DailyMetric)).scalars().all()) == 2


def test_weekly_and_monthly_rollups(app):
    with session_scope(app) as s:
        _seed_march(s)
        rollups.backfill_daily(s, date(2024, 2, 26), date(2024, 3, 10))

        rollups.aggregate_weekly(s, date(2024, 2, 28))
        assert rollups.aggregate_weekly(s, date(2024, 3, 6)) == 2
        week = _row(s, WeeklyMetric, week_start_date=date(2024, 3, 4), project_id=1)
        assert week.total_views == 6
        assert week.days_in_period == 2
        assert week.avg_daily_views == 3.0
        assert week.unique_visitors == 2
        assert week.views_growth_percent == 100.0
        assert _row(s, WeeklyMetric, week_start_date=date(2024, 3, 4), project_id=2).views_growth_percent is None

        rollups.aggregate_monthly(s, 2024, 2)
        rollups.aggregate_monthly(s, 2024, 3)
        march = _row(s, MonthlyMetric, year=2024, month=3, project_id=1)
        assert march.total_views == 6
        assert march.total_revenue_cents == 500
        assert march.views_growth_percent == 100.0
        assert march.revenue_growth_percent == 100.0
        assert [w["week_start_date"] for w in march.weekly_breakdown] == ["2024-03-04"]
        assert march.weeks_in_month == 1

        summary = rollups.monthly_summary(s, 2024)
        assert summary["total_views"] == 10
        assert [m["month"] for m in summary["months"]] == [2, 3]

        yoy = rollups.year_over_year(s, 2024, 2023)
        assert yoy["growth"]["total_views"] is None


def test_aggregate_endpoint_invalidates_cached_daily(app):
    c = app.test_client()
    c.post("/analytics/events", json=[{"event_type": "view", "session_id": "a"}, {"event_type": "view", "session_id": "b"}])
    analyst = _client(app, "analyst@example.com")
    today = utcnow().date().isoformat()

    assert analyst.get(f"/analytics/daily?start={today}&end={today}").json["items"] == []
    r = analyst.post("/analytics/aggregate", json={"kind": "daily", "start": today, "end": today})
    assert r.json["periods"] == 1
    items = analyst.get(f"/analytics/daily?start={today}&end={today}").json["items"]
    assert len(items) == 1
    assert items[0]["views"] == 2
    assert items[0]["unique_visitors"] == 2


def test_analytics_route_validation(app):
    analyst = _client(app, "analyst@example.com")
    r = analyst.get("/analytics/daily?start=2024-03-05&end=2024-03-01")
    assert r.status_code == 400
    assert r.json["error"]["code"] == "INVALID_DATE_RANGE"
    assert analyst.get("/analytics/monthly/2024/13").status_code == 400
    assert analyst.post("/analytics/aggregate", json={"kind": "hourly"}).status_code == 400

    creator = _client(app, "creator@example.com")
    r = creator.get("/analytics/daily")
    assert r.status_code == 403
    assert r.json["error"]["details"]["missing_permission"] == "analytics.view_platform"


# ---------- custom metrics ----------
def test_validate_definition_rules():
    ok = validate_definition(data_source="daily_metrics", formula="sum(views) / count()")
    assert ok == {"is_valid": True, "errors": [], "estimated_cost": "low"}

    assert validate_definition(data_source="events", formula="count()")["estimated_cost"] == "medium"
    assert validate_definition(data_source="daily_metrics", formula="count_distinct(project_id)")["estimated_cost"] == "medium"

    cases = {
        "sum(event_type)": "numeric field",
        "__import__('os')": "Unknown function",
        "views + 1": "Bare field",
        "2 ** 3": "not allowed",
        "sum(nope)": "Unknown field",
        "1 + 2": "at least one aggregate",
        "": "required",
    }
    for formula, fragment in cases.items():
        result = validate_definition(data_source="events", formula=formula)
        assert not result["is_valid"]
        assert any(fragment in e for e in result["errors"]), (formula, result["errors"])

    bad = validate_definition(data_source="daily_metrics", formula="count()", dimensions=["views"], filters={"nope": 1})
    assert "Invalid dimension 'views'" in bad["errors"]
    assert "Invalid filter field 'nope'" in bad["errors"]
    assert not validate_definition(data_source="ledger", formula="count()")["is_valid"]


def test_evaluate_formula():
    rows = [SimpleNamespace(views=4, clicks=0), SimpleNamespace(views=6, clicks=0)]
    assert evaluate_formula(parse_formula("sum(views) / count()"), rows) == 5.0
    assert evaluate_formula(parse_formula("sum(views) / sum(clicks)"), rows) == 0.0
    assert evaluate_formula(parse_formula("-max(views) + 2 * min(views)"), rows) == 2.0
    assert evaluate_formula(parse_formula("avg(views)"), []) == 0.0
    with pytest.raises(ValidationError) as exc:
        parse_formula("sum(")
    assert exc.value.code == "INVALID_FORMULA"


def test_deeply_nested_formulas_are_rejected():
    for formula in ("-" * 990 + "count()", "count()" + " + count()" * 80):
        result = validate_definition(data_source="events", formula=formula)
        assert not result["is_valid"]
        assert any("nesting" in e for e in result["errors"]), result["errors"]

    with pytest.raises(ValidationError) as exc:
        parse_formula("-" * 990 + "count()")
    assert exc.value.code == "INVALID_FORMULA"

    # moderate nesting is still fine
    assert validate_definition(data_source="daily_metrics", formula="((sum(views) + 1) * 2) / (count() - 1)")["is_valid"]


def test_deep_formula_is_a_validation_error_over_http(app):
    creator = _client(app, "creator@example.com")
    formula = "-" * 990 + "count()"

    r = creator.post("/analytics/custom-metrics/validate", json={"data_source": "events", "formula": formula})
    assert r.status_code == 200
    assert r.json["is_valid"] is False

    r = creator.post("/analytics/custom-metrics", json={"name": "Deep", "data_source": "events", "formula": formula})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "INVALID_METRIC_DEFINITION"


def test_iter_periods_clamps_last_period():
    weeks = list(iter_periods(date(2024, 3, 4), date(2024, 3, 14), "WEEKLY"))
    assert weeks == [(date(2024, 3, 4), date(2024, 3, 10)), (date(2024, 3, 11), date(2024, 3, 14))]
    months = list(iter_periods(date(2024, 1, 15), date(2024, 2, 10), "MONTHLY"))
    assert months == [(date(2024, 1, 15), date(2024, 1, 31)), (date(2024, 2, 1), date(2024, 2, 10))]


def _seed_daily(app):
    with session_scope(app) as s:
        s.add(DailyMetric(date=date(2024, 3, 4), project_id=1, views=2))
        s.add(DailyMetric(date=date(2024, 3, 5), project_id=1, views=4))
        s.add(DailyMetric(date=date(2024, 3, 4), project_id=2, views=1))


def test_custom_metric_lifecycle(app):
    _seed_daily(app)
    creator = _client(app, "creator@example.com")

    r = creator.post("/analytics/custom-metrics", json={"name": "Avg views", "data_source": "daily_metrics", "formula": "count_distinct(nope)"})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "INVALID_METRIC_DEFINITION"
    assert r.json["error"]["details"]["errors"]

    r = creator.post(
        "/analytics/custom-metrics",
        json={"name": "Avg views", "data_source": "daily_metrics", "formula": "sum(views) / count()", "dimensions": ["project_id"]},
    )
    assert r.status_code == 201
    metric = r.json["metric"]
    assert metric["version"] == 1
    assert metric["is_validated"] is True

    r = creator.post(f"/analytics/custom-metrics/{metric['id']}/calculate", json={"start": "2024-03-04", "end": "2024-03-05"})
    values = sorted(r.json["values"], key=lambda v: v["dimension_values"]["project_id"])
    assert [(v["dimension_values"]["project_id"], v["metric_value"]) for v in values] == [("1", 3.0), ("2", 1.0)]
    assert values[0]["record_count"] == 2

    stored = creator.get(f"/analytics/custom-metrics/{metric['id']}/values?start=2024-03-04&end=2024-03-05").json["values"]
    assert len(stored) == 2

    r = creator.post(f"/analytics/custom-metrics/{metric['id']}/backfill", json={"start": "2024-03-04", "end": "2024-03-05"})
    assert r.json["periods"] == 2


def test_custom_metric_versions_and_ownership(app):
    creator = _client(app, "creator@example.com")
    metric = creator.post(
        "/analytics/custom-metrics", json={"name": "Views", "data_source": "daily_metrics", "formula": "sum(views)"}
    ).json["metric"]

    r = creator.patch(f"/analytics/custom-metrics/{metric['id']}", json={"formula": "sum(views) + sum(clicks)"})
    v2 = r.json["metric"]
    assert v2["version"] == 2
    assert v2["parent_metric_id"] == metric["id"]
    assert v2["calculation_formula"] == "sum(views) + sum(clicks)"

    r = creator.patch(f"/analytics/custom-metrics/{metric['id']}", json={"name": "again"})
    assert r.json["error"]["code"] == "METRIC_INACTIVE"

    versions = creator.get(f"/analytics/custom-metrics/{v2['id']}/versions").json["versions"]
    assert [v["version"] for v in versions] == [2, 1]
    assert creator.get("/analytics/custom-metrics").json["total"] == 1

    analyst = _client(app, "analyst@example.com")
    assert analyst.get(f"/analytics/custom-metrics/{v2['id']}").status_code == 404
    r = analyst.patch(f"/analytics/custom-metrics/{v2['id']}", json={"name": "mine now"})
    assert r.status_code == 403
    assert r.json["error"]["code"] == "METRIC_FORBIDDEN"

    assert creator.delete(f"/analytics/custom-metrics/{v2['id']}").json["deleted"] is True
    assert creator.get(f"/analytics/custom-metrics/{v2['id']}").status_code == 404


def test_team_visibility_uses_roles(app):
    creator = _client(app, "creator@example.com")
    creator.post(
        "/analytics/custom-metrics",
        json={"name": "Team", "data_source": "daily_metrics", "formula": "count()", "visibility": "TEAM", "allowed_roles": ["CREATOR"]},
    )
    creator.post("/analytics/custom-metrics", json={"name": "Private", "data_source": "daily_metrics", "formula": "count()"})

    other = _client(app, "creator2@example.com")
    names = [m["name"] for m in other.get("/analytics/custom-metrics").json["items"]]
    assert names == ["Team"]

    viewer = _client(app, "viewer@example.com")
    assert viewer.get("/analytics/custom-metrics").status_code == 403
