from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.ygops import create_app, tasks
from app.ygops.cache import asset_key, get_cache, user_key
from app.ygops.db import session_scope
from app.ygops.models import Base, User
from app.ygops.modules.analytics.models import DailyMetric, Event
from app.ygops.modules.assets.models import IpAsset, StorageMetric
from app.ygops.modules.blog.models import Post
from app.ygops.modules.blog.service import create_post
from app.ygops.modules.licensing.models import License
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
    monkeypatch.setattr(tasks, "_flask_app", app)

    with session_scope(app) as s:
        s.add(User(email="ops@example.com", password_hash=generate_password_hash("pw"), role="ADMIN"))
    return app


def _user(s):
    return s.execute(select(User).where(User.email == "ops@example.com")).scalar_one()


def test_unknown_job_raises(app):
    with pytest.raises(KeyError):
        tasks.run_job("reticulate_splines", app)


def test_every_job_has_a_schedule():
    scheduled = {entry["task"] for entry in tasks.celery_app.conf.beat_schedule.values()}
    assert scheduled == {f"ygops.{name}" for name in tasks.JOBS}


def test_aggregate_daily_job(app):
    with session_scope(app) as s:
        s.add(Event(occurred_at=datetime(2024, 3, 4, 12), event_type="view", session_id="a", project_id=1))
        s.add(Event(occurred_at=datetime(2024, 3, 4, 13), event_type="view", session_id="b", project_id=1))

    assert tasks.run_job("aggregate_daily", app, day=date(2024, 3, 4)) == {"date": "2024-03-04", "scopes": 1}
    with session_scope(app) as s:
        assert s.execute(select(DailyMetric.views)).scalar_one() == 2

    weekly = tasks.run_job("aggregate_weekly", app, day=date(2024, 3, 6))
    assert weekly == {"week_start_date": "2024-03-04", "scopes": 1}
    monthly = tasks.run_job("aggregate_monthly", app, day=date(2024, 3, 20))
    assert monthly == {"year": 2024, "month": 3, "scopes": 1}


def test_unlock_expired_accounts_job(app):
    with session_scope(app) as s:
        u = _user(s)
        u.locked_until = utcnow() - timedelta(minutes=1)
        u.failed_login_count = 5

    assert tasks.run_job("unlock_expired_accounts", app) == {"unlocked": 1}
    with session_scope(app) as s:
        u = _user(s)
        assert u.locked_until is None
        assert u.failed_login_count == 0


def test_publish_scheduled_posts_job(app):
    with session_scope(app) as s:
        post = create_post(
            s,
            actor=_user(s),
            title="Due",
            content="<p>x</p>",
            status="SCHEDULED",
            scheduled_for=utcnow() + timedelta(minutes=5),
        )
        post.scheduled_for = utcnow() - timedelta(minutes=1)
        post_id = post.id

    # default app comes from the module-level factory
    assert tasks.run_job("publish_scheduled_posts") == {"published": [post_id]}
    with session_scope(app) as s:
        assert s.get(Post, post_id).status == "PUBLISHED"
    assert tasks.run_job("publish_scheduled_posts") == {"published": []}


def test_cleanup_jobs_are_noops_on_empty_tables(app):
    assert tasks.run_job("cleanup_sms_codes", app) == {"removed": 0}
    assert tasks.run_job("clear_realtime_metrics", app) == {"removed": 0}
    assert tasks.run_job("deactivate_expired_roles", app) == {"deactivated": 0}


def test_celery_task_runs_eagerly(app):
    result = tasks.clear_realtime_metrics_task.apply()
    assert result.get() == {"removed": 0}


def test_warm_caches_job_fills_profiles_and_version_lists(app):
    with session_scope(app) as s:
        ops = _user(s)
        ops.last_login_at = utcnow() - timedelta(days=1)
        s.add(User(email="idle@example.com", password_hash="x", role="VIEWER", last_login_at=utcnow() - timedelta(days=30)))
        live = IpAsset(owner_user_id=ops.id, title="Logo")
        gone = IpAsset(owner_user_id=ops.id, title="Old", deleted_at=utcnow())
        s.add_all([live, gone])
        s.flush()
        uid, live_id, gone_id = ops.id, live.id, gone.id

    assert tasks.run_job("warm_caches", app) == {"user_profiles": 1, "asset_versions": 1}
    cache = get_cache(app)
    assert cache.get(user_key(uid, "profile"))["email"] == "ops@example.com"
    assert [v["id"] for v in cache.get(asset_key(live_id, "versions", "desc", "live"))] == [live_id]
    assert cache.get(asset_key(gone_id, "versions", "desc", "live")) is None


def test_last_runs_are_recorded(app):
    assert tasks.last_runs(app)["cleanup_sms_codes"] is None
    tasks.run_job("cleanup_sms_codes", app)

    runs = tasks.last_runs(app)
    assert set(runs) == set(tasks.JOBS)
    assert runs["cleanup_sms_codes"]["result"] == {"removed": 0}
    assert datetime.fromisoformat(runs["cleanup_sms_codes"]["finished_at"]) <= utcnow()
    assert runs["aggregate_daily"] is None

    client = app.test_client()
    assert client.get("/jobs").status_code == 401
    client.post("/auth/login", json={"email": "ops@example.com", "password": "pw"})
    body = client.get("/jobs").json
    assert body["jobs"]["cleanup_sms_codes"]["result"] == {"removed": 0}


def test_expire_licenses_job(app):
    with session_scope(app) as s:
        ops = _user(s)
        asset = IpAsset(owner_user_id=ops.id, title="Logo")
        s.add(asset)
        s.flush()
        past = License(
            ip_asset_id=asset.id,
            brand_user_id=ops.id,
            status="ACTIVE",
            start_date=utcnow() - timedelta(days=60),
            end_date=utcnow() - timedelta(days=1),
        )
        running = License(
            ip_asset_id=asset.id,
            brand_user_id=ops.id,
            status="ACTIVE",
            start_date=utcnow() - timedelta(days=1),
            end_date=utcnow() + timedelta(days=30),
        )
        s.add_all([past, running])
        s.flush()
        past_id, running_id = past.id, running.id

    assert tasks.run_job("expire_licenses", app) == {"expired": [past_id]}
    with session_scope(app) as s:
        assert s.get(License, past_id).status == "EXPIRED"
        assert s.get(License, running_id).status == "ACTIVE"
    assert tasks.run_job("expire_licenses", app) == {"expired": []}


def test_capture_storage_metrics_job(app):
    with session_scope(app) as s:
        s.add(IpAsset(owner_user_id=_user(s).id, title="Clip", type="VIDEO", file_size=2048))

    assert tasks.run_job("capture_storage_metrics", app, day=date(2024, 5, 1)) == {"platform": 1, "users": 1}
    with session_scope(app) as s:
        rows = s.execute(select(StorageMetric).order_by(StorageMetric.entity_type)).scalars().all()
        assert [(r.entity_type, r.total_bytes) for r in rows] == [("platform", 2048), ("user", 2048)]
