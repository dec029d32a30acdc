import io
from datetime import date, datetime

import pytest
from sqlalchemy import func, select
from werkzeug.security import generate_password_hash

from app.ygops import create_app
from app.ygops.db import session_scope
from app.ygops.errors import ValidationError
from app.ygops.models import Base, User
from app.ygops.modules.assets import storage_reporting
from app.ygops.modules.assets.models import IpAsset, StorageMetric

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PNG_2 = b"\x89PNG\r\n\x1a\n" + b"\x01" * 80


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("STORAGE_QUOTA_BYTES", raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        for email, role in (("creator@example.com", "CREATOR"), ("admin@example.com", "ADMIN")):
            s.add(User(email=email, password_hash=generate_password_hash("pw"), role=role))
    return app


def _client(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"}, headers={"X-Forwarded-For": email})
    assert r.status_code == 200
    return c


def _creator_id(s):
    return s.execute(select(User.id).where(User.email == "creator@example.com")).scalar_one()


def _upload(client, data=PNG, name="logo.png"):
    return client.post("/assets", data={"file": (io.BytesIO(data), name, "image/png")}, content_type="multipart/form-data")


def test_snapshots_and_trends(app):
    day1, day8 = date(2024, 5, 1), date(2024, 5, 8)
    with session_scope(app) as s:
        uid = _creator_id(s)
        s.add_all(
            [
                IpAsset(owner_user_id=uid, title="a", type="IMAGE", file_size=1000),
                IpAsset(owner_user_id=uid, title="b", type="VIDEO", file_size=3000),
                IpAsset(owner_user_id=None, title="c", type="IMAGE", file_size=500, deleted_at=datetime(2024, 4, 1)),
            ]
        )
        s.flush()
        assert storage_reporting.storage_trend(s, today=day1) is None
        assert storage_reporting.capture_storage_snapshots(s, day=day1) == {"platform": 1, "users": 2}

        first = storage_reporting.current_snapshot(s)
        assert first.total_bytes == 4000
        assert first.file_count == 2
        assert first.average_file_size == 2000
        assert first.largest_file_size == 3000
        assert first.breakdown_by_type == {"IMAGE": {"bytes": 1000, "count": 1}, "VIDEO": {"bytes": 3000, "count": 1}}
        assert first.storage_trend_bps == 0

        trend = storage_reporting.storage_trend(s, period="week", today=day1)
        assert trend["previous"] == 0
        assert trend["growth_rate"] is None

        s.add(IpAsset(owner_user_id=uid, title="d", type="AUDIO", file_size=1000))
        s.flush()
        storage_reporting.capture_storage_snapshots(s, day=day8)
        # recapturing a day overwrites its rows
        storage_reporting.capture_storage_snapshots(s, day=day8)
        assert s.execute(select(func.count(StorageMetric.id))).scalar_one() == 6

        latest = storage_reporting.current_snapshot(s, "user", uid)
        assert latest.snapshot_date == day8
        assert latest.total_bytes == 5000
        assert latest.storage_trend_bps == 2500

        week = storage_reporting.storage_trend(s, "user", uid, period="week", today=day8)
        assert week == {"period": "week", "current": 5000, "previous": 4000, "growth_bytes": 1000, "growth_rate": 25.0}
        # no snapshot is a month old yet
        month = storage_reporting.storage_trend(s, period="month", today=day8)
        assert month["previous"] == 0 and month["growth_rate"] is None

        with pytest.raises(ValidationError):
            storage_reporting.storage_trend(s, period="fortnight")
        with pytest.raises(ValidationError):
            storage_reporting.current_snapshot(s, "project", 1)


def test_quota_and_report_helpers(app):
    with session_scope(app) as s:
        uid = _creator_id(s)
        s.add_all(
            [
                IpAsset(owner_user_id=uid, title="a", type="IMAGE", file_size=1000, sha256="f" * 64),
                IpAsset(owner_user_id=uid, title="b", type="IMAGE", file_size=1000, sha256="f" * 64),
                IpAsset(owner_user_id=uid, title="c", type="VIDEO", file_size=1000, updated_at=datetime(2020, 1, 1)),
            ]
        )
        s.flush()

        quota = storage_reporting.check_quota(s, uid, 4000)
        assert quota["used_bytes"] == 3000
        assert quota["remaining_bytes"] == 1000
        assert quota["percent_used"] == 75.0
        assert quota["is_exceeded"] is False
        assert storage_reporting.check_quota(s, uid, 2000)["is_exceeded"] is True
        with pytest.raises(ValidationError):
            storage_reporting.check_quota(s, uid, 0)

        storage_reporting.ensure_within_quota(s, uid, 10**9, 0)
        storage_reporting.ensure_within_quota(s, uid, 1000, 4000)
        with pytest.raises(ValidationError) as exc:
            storage_reporting.ensure_within_quota(s, uid, 1001, 4000)
        assert exc.value.status == 413
        assert exc.value.code == "STORAGE_QUOTA_EXCEEDED"

        report = storage_reporting.storage_report(s, today=date(2024, 5, 1))
        assert report["summary"]["total_bytes"] == 3000
        assert report["breakdown_by_type"]["IMAGE"]["percentage"] == 66.67
        assert report["top_users"] == [{"id": uid, "name": "creator@example.com", "bytes": 3000}]
        assert report["trends"]["day"]["growth_rate"] is None

        cleanup = storage_reporting.cleanup_candidates(s, now=datetime(2024, 5, 1))
        assert [f["title"] for f in cleanup["dormant_files"]] == ["c"]
        assert cleanup["duplicate_groups"] == [{"sha256": "f" * 64, "count": 2, "bytes": 2000}]

    assert storage_reporting.format_bytes(512) == "512.00 B"
    assert storage_reporting.format_bytes(1536) == "1.50 KB"
    assert storage_reporting.format_bytes(5 * 1024**4) == "5.00 TB"


def test_upload_quota_is_enforced(app):
    app.config["STORAGE_QUOTA_BYTES"] = 100
    creator = _client(app, "creator@example.com")

    assert _upload(creator).status_code == 201
    r = _upload(creator, PNG_2, "other.png")
    assert r.status_code == 413
    assert r.json["error"]["code"] == "STORAGE_QUOTA_EXCEEDED"
    assert r.json["error"]["details"]["used_bytes"] == len(PNG)

    quota = creator.get("/assets/storage/quota").json["quota"]
    assert quota["used_bytes"] == len(PNG)
    assert quota["percent_used"] == 72.0

    app.config["STORAGE_QUOTA_BYTES"] = 0
    assert creator.get("/assets/storage/quota").json == {
        "quota": None,
        "usage": {
            "total_bytes": len(PNG),
            "file_count": 1,
            "average_file_size": len(PNG),
            "largest_file_size": len(PNG),
            "largest_file_id": 1,
            "breakdown_by_type": {"IMAGE": {"bytes": len(PNG), "count": 1}},
        },
    }
    assert _upload(creator, PNG_2, "other.png").status_code == 201


def test_storage_endpoints_require_monitor_permission(app):
    creator = _client(app, "creator@example.com")
    _upload(creator)
    assert creator.get("/assets/storage/report").status_code == 403
    assert creator.post("/assets/storage/snapshots").status_code == 403
    assert creator.get("/assets/storage/quota", query_string={"user_id": 2}).status_code == 403

    admin = _client(app, "admin@example.com")
    assert admin.get("/assets/storage/trends").json == {"current": None, "trend": None}
    assert admin.post("/assets/storage/snapshots").json == {"platform": 1, "users": 2}

    report = admin.get("/assets/storage/report").json
    assert report["summary"]["total_files"] == 1
    assert report["breakdown_by_type"]["IMAGE"]["percentage"] == 100.0
    assert report["cleanup"]["dormant_files"] == []

    trends = admin.get("/assets/storage/trends", query_string={"period": "day"}).json
    assert trends["current"]["total_bytes"] == len(PNG)
    assert trends["trend"]["growth_rate"] is None
    assert admin.get("/assets/storage/trends", query_string={"period": "year"}).status_code == 400
