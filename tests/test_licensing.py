from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.ygops import create_app
from app.ygops.db import session_scope
from app.ygops.errors import ValidationError
from app.ygops.models import Base, User
from app.ygops.modules.assets.models import IpAsset
from app.ygops.modules.licensing import ownership
from app.ygops.modules.licensing.models import IpOwnership, License
from app.ygops.modules.licensing.service import license_stats

START = datetime(2030, 1, 1)


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
        for email, role in (
            ("creator@example.com", "CREATOR"),
            ("co@example.com", "CREATOR"),
            ("brand@example.com", "BRAND"),
            ("rival@example.com", "BRAND"),
            ("admin@example.com", "ADMIN"),
            ("viewer@example.com", "VIEWER"),
        ):
            s.add(User(email=email, password_hash=generate_password_hash("pw"), role=role))
        s.flush()
        creator = s.execute(select(User).where(User.email == "creator@example.com")).scalar_one()
        s.add(IpAsset(owner_user_id=creator.id, title="Hero shot", type="IMAGE", file_size=100))
    return app


def _client(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"}, headers={"X-Forwarded-For": email})
    assert r.status_code == 200
    return c


def _ids(app):
    with session_scope(app) as s:
        users = {u.email.split("@")[0]: u.id for u in s.execute(select(User)).scalars()}
        users["asset"] = s.execute(select(IpAsset.id)).scalar_one()
    return users


def _iso(dt):
    return dt.isoformat()


def _license_payload(asset_id, *, start=START, days=90, **extra):
    return {
        "ip_asset_id": asset_id,
        "start_date": _iso(start),
        "end_date": _iso(start + timedelta(days=days)),
        "fee_cents": 50000,
        "rev_share_bps": 500,
        **extra,
    }


# ---------- Ownership ----------
def test_split_must_total_exactly_10000_bps(app):
    ids = _ids(app)
    with session_scope(app) as s:
        for shares, key, gap in (((6000, 3999), "missing_bps", 1), ((6000, 4001), "excess_bps", 1)):
            splits = [
                {"owner_user_id": ids["creator"], "share_bps": shares[0]},
                {"owner_user_id": ids["co"], "share_bps": shares[1]},
            ]
            with pytest.raises(ValidationError) as exc:
                ownership.set_asset_ownership(s, ids["asset"], splits, actor=None)
            assert exc.value.code == "OWNERSHIP_SPLIT_INVALID"
            assert exc.value.details["required_bps"] == 10000
            assert exc.value.details["provided_bps"] == sum(shares)
            assert exc.value.details[key] == gap
        assert s.execute(select(IpOwnership)).first() is None

    assert ownership.validate_split([]) == ["At least one owner is required"]
    assert any("at least 1 BPS" in e for e in ownership.validate_split(
        [{"owner_user_id": 1, "share_bps": 10000}, {"owner_user_id": 2, "share_bps": 0}]
    ))
    assert any("more than once" in e for e in ownership.validate_split(
        [{"owner_user_id": 1, "share_bps": 5000}, {"owner_user_id": 1, "share_bps": 5000}]
    ))
    assert any("must be an integer" in e for e in ownership.validate_split([{"owner_user_id": 1, "share_bps": "10000"}]))
    assert any("owner_user_id must be an integer" in e for e in ownership.validate_split([{"share_bps": 10000}]))
    assert ownership.validate_split([{"owner_user_id": 1, "share_bps": 10000}]) == []


def test_set_ownership_over_http(app):
    ids = _ids(app)
    creator = _client(app, "creator@example.com")
    url = f"/ownership/assets/{ids['asset']}"

    r = creator.put(url, json={"owners": [{"owner_user_id": ids["creator"], "share_bps": 9999}]})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "OWNERSHIP_SPLIT_INVALID"
    assert r.json["error"]["details"]["missing_bps"] == 1

    r = creator.put(url, json={"owners": [{"owner_user_id": ids["creator"], "share_bps": 10001}]})
    assert r.status_code == 400
    assert r.json["error"]["details"]["excess_bps"] == 1

    r = creator.put(
        url,
        json={
            "owners": [
                {"owner_user_id": ids["co"], "share_bps": 3000, "ownership_type": "SECONDARY"},
                {"owner_user_id": ids["creator"], "share_bps": 7000},
            ]
        },
    )
    assert r.status_code == 200

    summary = creator.get(url).json
    assert summary["total_bps"] == 10000
    assert summary["is_valid"] is True
    assert [(o["owner_user_id"], o["share_bps"]) for o in summary["owners"]] == [(ids["creator"], 7000), (ids["co"], 3000)]
    assert summary["owners"][0]["share_percent"] == 70.0

    viewer = _client(app, "viewer@example.com")
    assert viewer.put(url, json={"owners": [{"owner_user_id": ids["viewer"], "share_bps": 10000}]}).status_code == 403

    co = _client(app, "co@example.com")
    mine = co.get("/ownership/mine").json["items"]
    assert [(o["ip_asset_id"], o["share_bps"]) for o in mine] == [(ids["asset"], 3000)]


def test_transfer_moves_share_and_keeps_history(app):
    ids = _ids(app)
    creator = _client(app, "creator@example.com")
    url = f"/ownership/assets/{ids['asset']}"
    creator.put(url, json={"owners": [{"owner_user_id": ids["creator"], "share_bps": 10000}]})

    r = creator.post(f"{url}/transfer", json={"to_user_id": ids["co"], "share_bps": 12000})
    assert r.status_code == 409
    assert r.json["error"]["code"] == "INSUFFICIENT_OWNERSHIP"
    assert r.json["error"]["details"] == {"required_bps": 12000, "available_bps": 10000}

    r = creator.post(f"{url}/transfer", json={"to_user_id": ids["co"], "share_bps": 2500, "contract_reference": "C-1"})
    assert r.status_code == 200
    assert r.json["from_ownership"]["share_bps"] == 7500
    assert r.json["to_ownership"]["share_bps"] == 2500
    assert r.json["to_ownership"]["ownership_type"] == "TRANSFERRED"
    assert r.json["to_ownership"]["contract_reference"] == "C-1"

    summary = creator.get(url).json
    assert summary["total_bps"] == 10000
    history = creator.get(f"{url}/history").json["items"]
    assert len(history) == 3
    assert history[0]["share_bps"] == 10000 and history[0]["end_date"] is not None

    co = _client(app, "co@example.com")
    r = co.post(f"{url}/transfer", json={"from_user_id": ids["creator"], "to_user_id": ids["co"], "share_bps": 100})
    assert r.status_code == 403

    # whole share: the giver drops out of the split
    r = co.post(f"{url}/transfer", json={"to_user_id": ids["creator"], "share_bps": 2500})
    assert r.status_code == 200
    assert r.json["from_ownership"] is None
    assert r.json["to_ownership"]["share_bps"] == 10000


def test_dispute_flag_and_resolution(app):
    ids = _ids(app)
    with session_scope(app) as s:
        rows = ownership.set_asset_ownership(
            s,
            ids["asset"],
            [{"owner_user_id": ids["creator"], "share_bps": 7500}, {"owner_user_id": ids["co"], "share_bps": 2500}],
            actor=None,
        )
        target = next(r.id for r in rows if r.owner_user_id == ids["creator"])

    viewer = _client(app, "viewer@example.com")
    assert viewer.post(f"/ownership/{target}/dispute", json={"reason": "mine"}).status_code == 403

    co = _client(app, "co@example.com")
    assert co.post(f"/ownership/{target}/dispute", json={}).json["error"]["code"] == "REASON_REQUIRED"
    r = co.post(f"/ownership/{target}/dispute", json={"reason": "Contract says 50/50"})
    assert r.status_code == 200
    assert r.json["ownership"]["disputed"] is True
    assert co.post(f"/ownership/{target}/dispute", json={"reason": "again"}).status_code == 409
    assert co.post(f"/ownership/{target}/resolve", json={"action": "CONFIRM"}).status_code == 403

    admin = _client(app, "admin@example.com")
    assert [o["id"] for o in admin.get("/ownership/disputes").json["items"]] == [target]

    r = admin.post(f"/ownership/{target}/resolve", json={"action": "MODIFY", "share_bps": 5000, "notes": "x"})
    assert r.status_code == 400
    assert r.json["error"]["details"]["missing_bps"] == 2500

    r = admin.post(f"/ownership/{target}/resolve", json={"action": "CONFIRM", "notes": "Contract checked"})
    assert r.status_code == 200
    assert r.json["ownership"]["disputed"] is False
    assert r.json["ownership"]["resolution_notes"] == "Contract checked"
    assert admin.post(f"/ownership/{target}/resolve", json={"action": "CONFIRM"}).json["error"]["code"] == "NOT_DISPUTED"


# ---------- Licenses ----------
def test_license_terms_are_validated(app):
    ids = _ids(app)
    brand = _client(app, "brand@example.com")

    bad = (
        ({"end_date": _iso(START)}, "INVALID_DATES"),
        ({"fee_cents": -1}, "INVALID_FEE"),
        ({"rev_share_bps": 10001}, "INVALID_REV_SHARE"),
        ({"license_type": "FOREVER"}, "INVALID_LICENSE_TYPE"),
        ({"start_date": 1700000000}, "VALIDATION_ERROR"),
    )
    for override, code in bad:
        r = brand.post("/licenses", json={**_license_payload(ids["asset"]), **override})
        assert r.status_code == 400, override
        assert r.json["error"]["code"] == code

    assert brand.post("/licenses", json=_license_payload(9999)).status_code == 404

    creator = _client(app, "creator@example.com")
    assert creator.post("/licenses", json=_license_payload(ids["asset"])).status_code == 403

    r = brand.post("/licenses", json=_license_payload(ids["asset"]))
    assert r.status_code == 201
    assert r.json["license"]["status"] == "DRAFT"
    assert r.json["license"]["brand_user_id"] == ids["brand"]

    with session_scope(app) as s:
        s.get(IpAsset, ids["asset"]).deleted_at = datetime(2024, 1, 1)
    r = brand.post("/licenses", json=_license_payload(ids["asset"], start=START + timedelta(days=400)))
    assert r.json["error"]["code"] == "ASSET_DELETED"


def test_overlapping_licenses_conflict(app):
    ids = _ids(app)
    brand = _client(app, "brand@example.com")
    rival = _client(app, "rival@example.com")

    assert brand.post("/licenses", json=_license_payload(ids["asset"], license_type="EXCLUSIVE")).status_code == 201
    r = rival.post("/licenses", json=_license_payload(ids["asset"], start=START + timedelta(days=30)))
    assert r.status_code == 409
    assert r.json["error"]["code"] == "LICENSE_CONFLICT"
    assert r.json["error"]["details"]["conflicts"][0]["reason"] == "EXCLUSIVE_OVERLAP"
    # after the exclusive window there is no clash
    assert rival.post("/licenses", json=_license_payload(ids["asset"], start=START + timedelta(days=120))).status_code == 201

    later = START + timedelta(days=365)
    us_only = {"geographic": {"territories": ["US"]}}
    r = brand.post("/licenses", json=_license_payload(ids["asset"], start=later, license_type="EXCLUSIVE_TERRITORY", scope=us_only))
    assert r.status_code == 201
    r = rival.post("/licenses", json=_license_payload(ids["asset"], start=later, scope={"geographic": {"territories": ["us", "CA"]}}))
    assert r.json["error"]["details"]["conflicts"][0]["reason"] == "TERRITORY_OVERLAP"
    r = rival.post("/licenses", json=_license_payload(ids["asset"], start=later, scope={"geographic": {"territories": ["FR"]}}))
    assert r.status_code == 201

    preview = rival.post(
        "/licenses/conflicts",
        json=_license_payload(ids["asset"], start=later, scope={"exclusivity": {"competitors": [ids["brand"]]}}),
    ).json
    assert preview["has_conflicts"] is True
    assert {"license_id": r.json["license"]["id"], "reason": "COMPETITOR_BLOCKED"} not in preview["conflicts"]
    assert "COMPETITOR_BLOCKED" in {c["reason"] for c in preview["conflicts"]}


def test_approval_requires_asset_ownership(app):
    ids = _ids(app)
    brand = _client(app, "brand@example.com")
    lic_id = brand.post("/licenses", json=_license_payload(ids["asset"])).json["license"]["id"]
    assert brand.post(f"/licenses/{lic_id}/submit").json["license"]["status"] == "PENDING_APPROVAL"
    assert brand.post(f"/licenses/{lic_id}/submit").status_code == 409

    assert brand.post(f"/licenses/{lic_id}/approve").status_code == 403
    co = _client(app, "co@example.com")
    assert co.post(f"/licenses/{lic_id}/approve").status_code == 403

    # once co holds a share of the asset they may approve
    with session_scope(app) as s:
        ownership.set_asset_ownership(
            s,
            ids["asset"],
            [{"owner_user_id": ids["creator"], "share_bps": 5000}, {"owner_user_id": ids["co"], "share_bps": 5000}],
            actor=None,
        )
    r = co.post(f"/licenses/{lic_id}/approve")
    assert r.status_code == 200
    assert r.json["license"]["status"] == "ACTIVE"
    assert r.json["license"]["signed_at"] is not None
    assert co.post(f"/licenses/{lic_id}/approve").status_code == 409


def test_uploader_approves_when_no_split_is_recorded(app):
    ids = _ids(app)
    brand = _client(app, "brand@example.com")
    lic_id = brand.post("/licenses", json=_license_payload(ids["asset"])).json["license"]["id"]
    creator = _client(app, "creator@example.com")
    assert creator.get(f"/licenses/{lic_id}").status_code == 200
    assert creator.post(f"/licenses/{lic_id}/approve").json["license"]["status"] == "ACTIVE"

    viewer = _client(app, "viewer@example.com")
    assert viewer.get(f"/licenses/{lic_id}").status_code == 403
    assert viewer.get("/licenses").json["total"] == 0
    assert creator.get("/licenses").json["total"] == 1
    assert _client(app, "rival@example.com").get("/licenses").json["total"] == 0


def test_renew_and_terminate(app):
    ids = _ids(app)
    brand = _client(app, "brand@example.com")
    admin = _client(app, "admin@example.com")
    lic_id = brand.post("/licenses", json=_license_payload(ids["asset"], days=30)).json["license"]["id"]

    assert brand.post(f"/licenses/{lic_id}/renew", json={}).status_code == 409
    assert brand.post(f"/licenses/{lic_id}/terminate", json={"reason": "x"}).status_code == 409
    admin.post(f"/licenses/{lic_id}/approve")

    r = brand.post(f"/licenses/{lic_id}/renew", json={"rev_share_adjustment_bps": 9600})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "INVALID_REV_SHARE"

    r = brand.post(f"/licenses/{lic_id}/renew", json={"fee_adjustment_percent": 10})
    assert r.status_code == 201
    renewal = r.json["license"]
    assert renewal["status"] == "PENDING_APPROVAL"
    assert renewal["parent_license_id"] == lic_id
    assert renewal["fee_cents"] == 55000
    assert renewal["start_date"] == _iso(START + timedelta(days=31))
    assert renewal["end_date"] == _iso(START + timedelta(days=61))

    r = brand.post(f"/licenses/{lic_id}/terminate", json={})
    assert r.json["error"]["code"] == "REASON_REQUIRED"
    effective = START + timedelta(days=10)
    r = brand.post(f"/licenses/{lic_id}/terminate", json={"reason": "Campaign cancelled", "effective_date": _iso(effective)})
    assert r.status_code == 200
    assert r.json["license"]["status"] == "TERMINATED"
    assert r.json["license"]["end_date"] == _iso(effective)
    assert r.json["license"]["metadata"]["termination_reason"] == "Campaign cancelled"

    assert brand.delete(f"/licenses/{lic_id}").status_code == 200
    assert brand.get(f"/licenses/{lic_id}").status_code == 404


def test_update_rechecks_terms_and_conflicts(app):
    ids = _ids(app)
    brand = _client(app, "brand@example.com")
    rival = _client(app, "rival@example.com")
    first = brand.post("/licenses", json=_license_payload(ids["asset"], license_type="EXCLUSIVE")).json["license"]["id"]
    second = rival.post("/licenses", json=_license_payload(ids["asset"], start=START + timedelta(days=200))).json["license"]["id"]

    assert rival.patch(f"/licenses/{first}", json={"fee_cents": 1}).status_code == 403
    assert brand.patch(f"/licenses/{first}", json={"fee_cents": -5}).status_code == 400
    r = brand.patch(f"/licenses/{first}", json={"end_date": _iso(START + timedelta(days=250))})
    assert r.status_code == 409
    assert r.json["error"]["details"]["conflicts"] == [{"license_id": second, "reason": "EXCLUSIVE_OVERLAP"}]

    r = brand.patch(f"/licenses/{first}", json={"fee_cents": 1000, "auto_renew": True})
    assert r.status_code == 200
    assert r.json["license"]["fee_cents"] == 1000
    assert r.json["license"]["auto_renew"] is True


def test_license_stats(app):
    ids = _ids(app)
    with session_scope(app) as s:
        now = datetime(2030, 1, 1)
        s.add_all(
            [
                License(ip_asset_id=ids["asset"], brand_user_id=ids["brand"], status="ACTIVE", license_type="EXCLUSIVE",
                        fee_cents=1000, start_date=now - timedelta(days=10), end_date=now + timedelta(days=20)),
                License(ip_asset_id=ids["asset"], brand_user_id=ids["rival"], status="ACTIVE", fee_cents=500,
                        start_date=now - timedelta(days=10), end_date=now + timedelta(days=80)),
                License(ip_asset_id=ids["asset"], brand_user_id=ids["brand"], status="DRAFT", parent_license_id=None,
                        start_date=now, end_date=now + timedelta(days=5)),
            ]
        )

    with session_scope(app) as s:
        stats = license_stats(s, now=datetime(2030, 1, 1))
        assert stats["total_active"] == 2
        assert stats["total_revenue_cents"] == 1500
        assert stats["expiring_in_30_days"] == 1
        assert stats["expiring_in_90_days"] == 2
        assert stats["exclusive_licenses"] == 1
        assert stats["non_exclusive_licenses"] == 2
        assert stats["average_license_duration_days"] == 60
        assert stats["renewal_rate"] == 0.0

    brand = _client(app, "brand@example.com")
    own = brand.get("/licenses/stats", query_string={"brand_user_id": ids["rival"]}).json
    assert own["total_active"] == 1
    assert own["total_revenue_cents"] == 1000
