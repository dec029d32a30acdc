import io

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.ygops import create_app
from app.ygops.cache import asset_key, get_cache
from app.ygops.db import session_scope
from app.ygops.models import AuditEvent, Base, User
from app.ygops.modules.assets import cdn
from app.ygops.modules.assets.cdn import CACHE_CONTROL_PRESETS, recommended_cache_control
from app.ygops.modules.assets.validator import asset_type_for, detect_mime_type, validate_file

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PNG_2 = b"\x89PNG\r\n\x1a\n" + b"\x01" * 80
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("CLOUDFLARE_API_TOKEN", raising=False)
    monkeypatch.delenv("CDN_BASE_URL", raising=False)
    for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        for email, role in (
            ("creator@example.com", "CREATOR"),
            ("other@example.com", "CREATOR"),
            ("admin@example.com", "ADMIN"),
            ("viewer@example.com", "VIEWER"),
        ):
            s.add(User(email=email, password_hash=generate_password_hash("pw"), role=role))
    return app


def _client(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"}, headers={"X-Forwarded-For": email})
    assert r.status_code == 200
    return c


@pytest.fixture()
def creator(app):
    return _client(app, "creator@example.com")


@pytest.fixture()
def admin(app):
    return _client(app, "admin@example.com")


def _upload(client, data=PNG, name="logo.png", mime="image/png", **form):
    return client.post(
        "/assets",
        data={"file": (io.BytesIO(data), name, mime), **form},
        content_type="multipart/form-data",
    )


def _new_version(client, asset_id, data=PNG_2, name="logo.png"):
    return client.post(
        f"/assets/{asset_id}/versions",
        data={"file": (io.BytesIO(data), name, "image/png"), "reason": "retouch"},
        content_type="multipart/form-data",
    )


# ---------- validator ----------
def test_detects_signatures():
    assert detect_mime_type(PNG) == "image/png"
    assert detect_mime_type(JPEG) == "image/jpeg"
    assert detect_mime_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert detect_mime_type(b"RIFF\x00\x00\x00\x00WAVEfmt ") == "audio/wav"
    assert detect_mime_type(b"\x00\x00\x00\x18ftypqt  ") == "video/quicktime"
    assert detect_mime_type(b"plain text") is None


def test_content_must_match_declared_type():
    result = validate_file(JPEG, "photo.png", "image/png")
    assert not result.is_valid
    assert "does not match declared type" in result.errors[0]


def test_disallowed_type_short_circuits():
    result = validate_file(b"hello", "notes.txt", "text/plain")
    assert not result.is_valid
    assert result.errors == ["File type text/plain is not allowed"]


def test_alias_and_extension_warnings():
    result = validate_file(JPEG, "photo.gif", "image/jpg")
    assert result.is_valid
    assert any("normalized" in w for w in result.warnings)
    assert any(".gif" in w for w in result.warnings)


def test_svg_with_script_rejected():
    svg = b'<svg xmlns="http://www.w3.org/2000/svg"><script>alert(1)</script></svg>'
    result = validate_file(svg, "x.svg", "image/svg+xml")
    assert not result.is_valid


def test_size_limit():
    result = validate_file(PNG, "logo.png", "image/png", max_size=10)
    assert not result.is_valid
    assert "maximum size" in result.errors[0]


def test_asset_type_mapping():
    assert asset_type_for("image/webp") == "IMAGE"
    assert asset_type_for("application/pdf") == "DOCUMENT"
    assert asset_type_for("application/zip") == "OTHER"


def test_cache_control_presets():
    assert recommended_cache_control("assets/1/original.png") == CACHE_CONTROL_PRESETS["immutable"]
    assert recommended_cache_control("assets/1/thumbnail_small.jpg") == CACHE_CONTROL_PRESETS["long_term"]
    assert recommended_cache_control("temp/upload.bin") == CACHE_CONTROL_PRESETS["no_cache"]


# ---------- upload / download ----------
def test_upload_and_download(app, creator, tmp_path):
    r = _upload(creator, title="Brand logo")
    assert r.status_code == 201
    asset = r.json["asset"]
    assert asset["type"] == "IMAGE"
    assert asset["status"] == "DRAFT"
    assert asset["storage_key"] == f"assets/{asset['id']}/original.png"
    assert (tmp_path / "storage" / asset["storage_key"]).read_bytes() == PNG

    r = creator.get(f"/assets/{asset['id']}/download")
    assert r.status_code == 200
    assert r.data == PNG
    assert "immutable" in r.headers["Cache-Control"]

    with session_scope(app) as s:
        actions = s.execute(select(AuditEvent.action)).scalars().all()
        assert "asset.upload" in actions
        assert "asset.download" in actions


def test_upload_rejects_mismatched_content(creator):
    r = _upload(creator, data=JPEG, name="logo.png", mime="image/png")
    assert r.status_code == 400
    assert r.json["error"]["code"] == "INVALID_FILE"
    assert r.json["error"]["details"]["detected_mime_type"] == "image/jpeg"


def test_upload_requires_file(creator):
    r = creator.post("/assets", data={"title": "nothing"}, content_type="multipart/form-data")
    assert r.status_code == 400
    assert r.json["error"]["code"] == "FILE_REQUIRED"


def test_viewer_cannot_upload(app):
    viewer = _client(app, "viewer@example.com")
    assert _upload(viewer).status_code == 403


def test_drafts_are_private_until_published(app, creator, admin):
    asset_id = _upload(creator).json["asset"]["id"]
    other = _client(app, "other@example.com")
    r = other.get(f"/assets/{asset_id}")
    assert r.status_code == 403
    assert r.json["error"]["code"] == "ASSET_FORBIDDEN"
    assert other.get("/assets").json["total"] == 0

    # creators cannot publish their own work
    assert creator.post(f"/assets/{asset_id}/status", json={"status": "PUBLISHED"}).status_code == 403
    assert admin.post(f"/assets/{asset_id}/status", json={"status": "PUBLISHED"}).status_code == 200

    assert other.get(f"/assets/{asset_id}").status_code == 200
    assert other.get("/assets").json["total"] == 1


def test_update_merges_metadata(creator):
    asset_id = _upload(creator).json["asset"]["id"]
    r = creator.patch(f"/assets/{asset_id}", json={"title": "Renamed", "metadata": {"campaign": "spring"}})
    assert r.status_code == 200
    assert r.json["asset"]["title"] == "Renamed"
    assert r.json["asset"]["metadata"] == {"campaign": "spring", "original_filename": "logo.png"}


# ---------- versions ----------
def test_versions_history_restore_and_compare(creator):
    root_id = _upload(creator).json["asset"]["id"]

    v2 = _new_version(creator, root_id).json["version"]
    assert v2["version"] == 2
    assert v2["storage_key"] == f"assets/{root_id}/v2_logo.png"
    v3 = _new_version(creator, root_id, data=PNG + b"\x02").json["version"]
    assert v3["version"] == 3

    history = creator.get(f"/assets/{root_id}/versions").json["versions"]
    assert [v["version"] for v in history] == [3, 2, 1]
    assert [v["is_current"] for v in history] == [True, False, False]

    r = creator.post(f"/assets/versions/{v2['id']}/restore", json={"reason": "client preferred v2"})
    assert r.status_code == 201
    v4 = r.json["version"]
    assert v4["version"] == 4
    assert v4["sha256"] == v2["sha256"]
    assert v4["metadata"]["restored_from_version"] == 2
    assert creator.get(f"/assets/{root_id}/versions/current").json["version"]["id"] == v4["id"]

    diff = creator.get(f"/assets/versions/compare?a={v2['id']}&b={v3['id']}").json["differences"]
    assert diff["sha256"]["changed"] is True
    assert diff["mime_type"]["changed"] is False


def test_root_cannot_be_restored(creator):
    root_id = _upload(creator).json["asset"]["id"]
    r = creator.post(f"/assets/versions/{root_id}/restore")
    assert r.json["error"]["code"] == "CANNOT_RESTORE_ROOT"


def test_root_with_versions_cannot_be_deleted(creator):
    root_id = _upload(creator).json["asset"]["id"]
    v2 = _new_version(creator, root_id).json["version"]
    r = creator.delete(f"/assets/{root_id}")
    assert r.status_code == 409
    assert r.json["error"]["code"] == "ASSET_HAS_VERSIONS"

    assert creator.delete(f"/assets/versions/{v2['id']}").status_code == 200
    assert creator.delete(f"/assets/{root_id}").status_code == 200
    assert creator.get(f"/assets/{root_id}").status_code == 404


def test_cleanup_keeps_newest_versions(creator, admin):
    root_id = _upload(creator).json["asset"]["id"]
    for i in range(3):
        latest = _new_version(creator, root_id, data=PNG + bytes([i])).json["version"]
    r = admin.post(f"/assets/{root_id}/versions/cleanup", json={"keep_last_n": 2})
    assert r.json["removed"] == 2
    # the root itself was retired, so look the history up through the newest version
    history = creator.get(f"/assets/{latest['id']}/versions").json["versions"]
    assert [v["version"] for v in history] == [4, 3]


def test_version_history_cache_follows_changes(app, creator):
    root_id = _upload(creator).json["asset"]["id"]
    assert [v["version"] for v in creator.get(f"/assets/{root_id}/versions").json["versions"]] == [1]
    with app.app_context():
        assert get_cache().get(asset_key(root_id, "versions", "desc", "live")) is not None

    v2 = _new_version(creator, root_id).json["version"]
    # listed through the child, served from the same chain
    assert [v["version"] for v in creator.get(f"/assets/{v2['id']}/versions").json["versions"]] == [2, 1]

    creator.delete(f"/assets/versions/{v2['id']}")
    assert [v["version"] for v in creator.get(f"/assets/{root_id}/versions").json["versions"]] == [1]
    history = creator.get(f"/assets/{root_id}/versions?include_deleted=1&order=asc").json["versions"]
    assert [v["version"] for v in history] == [1, 2]
    assert history[1]["deleted_at"] is not None

    creator.patch(f"/assets/{root_id}", json={"title": "Renamed"})
    with app.app_context():
        assert get_cache().get(asset_key(root_id, "versions", "desc", "live")) is None


# ---------- relationships ----------
def test_relationship_rules(creator):
    a = _upload(creator).json["asset"]["id"]
    b = _upload(creator, data=PNG_2).json["asset"]["id"]
    c = _upload(creator, data=PNG + b"c").json["asset"]["id"]

    def link(src, dst, kind="derived_from"):
        return creator.post(
            "/assets/relationships",
            json={"source_asset_id": src, "target_asset_id": dst, "relationship_type": kind},
        )

    assert link(a, b).status_code == 201
    assert link(a, b).json["error"]["code"] == "RELATIONSHIP_EXISTS"
    assert link(a, a).json["error"]["code"] == "SELF_RELATIONSHIP"
    assert link(a, b, "likes").json["error"]["code"] == "INVALID_RELATIONSHIP_TYPE"
    assert link(b, c).status_code == 201
    r = link(c, a)
    assert r.status_code == 409
    assert r.json["error"]["code"] == "CIRCULAR_RELATIONSHIP"

    assert creator.get(f"/assets/{c}/dependents?transitive=1").json == {"direct": [b], "all": [b, a]}
    assert creator.get(f"/assets/{a}/dependencies").json["dependencies"] == [b]

    graph = creator.get(f"/assets/{a}/graph").json
    assert {n["id"] for n in graph["nodes"]} == {a, b, c}
    assert len(graph["edges"]) == 2

    stats = creator.get(f"/assets/{b}/relationships/stats").json
    assert stats == {"total": 2, "by_type": {"derived_from": 2}, "incoming": 1, "outgoing": 1}


def test_critical_dependents_block_deletion(creator):
    part = _upload(creator).json["asset"]["id"]
    whole = _upload(creator, data=PNG_2).json["asset"]["id"]
    creator.post(
        "/assets/relationships",
        json={"source_asset_id": whole, "target_asset_id": part, "relationship_type": "component_of"},
    )
    check = creator.get(f"/assets/{part}/deletion-check").json
    assert check["can_delete"] is False

    r = creator.delete(f"/assets/{part}")
    assert r.status_code == 409
    assert r.json["error"]["code"] == "ASSET_HAS_DEPENDENTS"


# ---------- CDN ----------
def test_cdn_purge_skipped_without_credentials(creator, admin):
    asset_id = _upload(creator).json["asset"]["id"]
    r = admin.post(f"/assets/{asset_id}/cdn/purge")
    assert r.status_code == 200
    assert r.json["skipped"] is True
    assert admin.post("/assets/cdn/purge", json={}).status_code == 400


class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


def test_cdn_purge_calls_cloudflare(app, creator, admin, monkeypatch):
    app.config.update(CLOUDFLARE_API_TOKEN="cf-token", CLOUDFLARE_ZONE_ID="zone123", CDN_BASE_URL="https://cdn.example.com/")
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return _FakeResponse({"success": True, "errors": []})

    monkeypatch.setattr(cdn.requests, "post", fake_post)
    asset = _upload(creator).json["asset"]

    r = admin.post(f"/assets/{asset['id']}/cdn/purge")
    assert r.json == {"success": True, "purged": 4, "skipped": False, "errors": []}
    assert calls[0]["url"] == "https://api.cloudflare.com/client/v4/zones/zone123/purge_cache"
    assert calls[0]["headers"]["Authorization"] == "Bearer cf-token"
    assert calls[0]["timeout"] == 15
    files = calls[0]["json"]["files"]
    assert files[0] == f"https://cdn.example.com/{asset['storage_key']}"
    assert f"https://cdn.example.com/assets/{asset['id']}/thumbnail_small.jpg" in files

    r = admin.post("/assets/cdn/purge", json={"purge_everything": True})
    assert calls[-1]["json"] == {"purge_everything": True}
    assert r.json["purged"] == 1

    monkeypatch.setattr(
        cdn.requests, "post", lambda *a, **kw: _FakeResponse({"success": False, "errors": [{"message": "Invalid zone"}]})
    )
    r = admin.post("/assets/cdn/purge", json={"tags": ["logo"]})
    assert r.json["success"] is False
    assert r.json["errors"] == ["Invalid zone"]

    def broken_post(*a, **kw):
        raise cdn.requests.ConnectionError("connection refused")

    monkeypatch.setattr(cdn.requests, "post", broken_post)
    r = admin.post("/assets/cdn/purge", json={"hosts": ["cdn.example.com"]})
    assert r.json["success"] is False
    assert "connection refused" in r.json["errors"][0]

    with session_scope(app) as s:
        actions = s.execute(select(AuditEvent.action)).scalars().all()
    assert actions.count("cdn.purge") == 3
    assert "cdn.purge_asset" in actions
