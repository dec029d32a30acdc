from datetime import timedelta

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.ygops import create_app
from app.ygops.db import session_scope
from app.ygops.errors import ValidationError
from app.ygops.models import Base, Permission, Role, User
from app.ygops.modules.blog.models import Post
from app.ygops.modules.blog.service import publish_scheduled_posts, validate_transition
from app.ygops.modules.blog.utils import make_excerpt, normalize_tags, read_time_minutes, sanitize_html, slugify
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
        p = Permission(key="content:create", name="Content: create")
        r = Role(key="writer", name="Writer")
        r.permissions.append(p)
        writer = User(email="writer@example.com", password_hash=generate_password_hash("pw"), role="VIEWER")
        writer.roles.append(r)
        other = User(email="other@example.com", password_hash=generate_password_hash("pw"), role="VIEWER")
        other.roles.append(r)
        s.add_all([p, r, writer, other])
        s.add(User(email="editor@example.com", password_hash=generate_password_hash("pw"), role="ADMIN"))
    return app


def _client(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"}, headers={"X-Forwarded-For": email})
    assert r.status_code == 200
    return c


@pytest.fixture()
def editor(app):
    return _client(app, "editor@example.com")


@pytest.fixture()
def writer(app):
    return _client(app, "writer@example.com")


def _future(minutes=60):
    return (utcnow() + timedelta(minutes=minutes)).isoformat()


# ---------- utils ----------
def test_slugify_folds_and_dedupes():
    assert slugify("Hello, World!") == "hello-world"
    assert slugify("Café Déjà Vu") == "cafe-deja-vu"
    assert slugify("Hello World", existing={"hello-world"}) == "hello-world-1"
    assert slugify("Hello World", existing={"hello-world", "hello-world-1"}) == "hello-world-2"
    assert slugify("!!!") == "untitled"


def test_slugify_truncates_on_word_boundary():
    slug = slugify("word " * 100)
    assert len(slug) <= 150
    assert not slug.endswith("-")
    assert slug.endswith("word")


def test_read_time_and_excerpt():
    assert read_time_minutes("") == 1
    assert read_time_minutes("<p>" + "word " * 450 + "</p>") == 3

    assert make_excerpt("<p>Short post.</p>") == "Short post."
    long = make_excerpt("word " * 100)
    assert long.endswith("...")
    assert len(long) <= 163


def test_sanitize_and_tags():
    clean = sanitize_html('<p onclick="x()">Hi</p><script>alert(1)</script><a href="javascript:x">l</a>')
    assert "<script" not in clean
    assert "onclick" not in clean
    assert "javascript:" not in clean
    assert clean.startswith("<p>Hi</p>")

    assert normalize_tags([" Python ", "python", "", "Flask", 3]) == ["flask", "python"]


def test_status_transitions():
    validate_transition("DRAFT", "PUBLISHED")
    validate_transition("ARCHIVED", "DRAFT")
    with pytest.raises(ValidationError) as exc:
        validate_transition("PUBLISHED", "DRAFT")
    assert exc.value.code == "INVALID_STATUS_TRANSITION"
    with pytest.raises(ValidationError) as exc:
        validate_transition("DRAFT", "LIVE")
    assert exc.value.code == "INVALID_STATUS"


# ---------- categories ----------
def test_category_crud_and_in_use(editor):
    r = editor.post("/blog/categories", json={"name": "Product News"})
    assert r.status_code == 201
    news = r.json["category"]
    assert news["slug"] == "product-news"

    dup = editor.post("/blog/categories", json={"name": "Other", "slug": "product-news"})
    assert dup.status_code == 409
    assert dup.json["error"]["code"] == "DUPLICATE_SLUG"

    child = editor.post("/blog/categories", json={"name": "Releases", "parent_category_id": news["id"]}).json["category"]
    r = editor.patch(f"/blog/categories/{news['id']}", json={"parent_category_id": child["id"]})
    assert r.status_code == 409
    assert r.json["error"]["code"] == "CIRCULAR_CATEGORY_REFERENCE"

    editor.post("/blog/posts", json={"title": "Launch", "content": "<p>x</p>", "category_id": news["id"]})
    r = editor.delete(f"/blog/categories/{news['id']}")
    assert r.status_code == 409
    assert r.json["error"]["details"]["post_count"] == 1

    assert editor.delete(f"/blog/categories/{news['id']}?reassign_to={child['id']}").status_code == 200
    cats = editor.get("/blog/categories").json["categories"]
    assert [(c["slug"], c["post_count"]) for c in cats] == [("releases", 1)]


# ---------- posts ----------
def test_create_post_derives_fields(writer):
    r = writer.post(
        "/blog/posts",
        json={"title": "My First Post", "content": "<p>Hello there.</p><script>x</script>", "tags": ["News", "news"]},
    )
    assert r.status_code == 201
    post = r.json["post"]
    assert post["slug"] == "my-first-post"
    assert post["status"] == "DRAFT"
    assert post["excerpt"].startswith("Hello there.")
    assert post["tags"] == ["news"]
    assert "<script" not in post["content"]

    again = writer.post("/blog/posts", json={"title": "My First Post", "content": "x"}).json["post"]
    assert again["slug"] == "my-first-post-1"


def test_publishing_on_create_requires_approval(writer, editor):
    r = writer.post("/blog/posts", json={"title": "Now", "content": "x", "status": "PUBLISHED"})
    assert r.status_code == 403
    assert r.json["error"]["details"]["missing_permission"] == "content:approve"

    r = editor.post("/blog/posts", json={"title": "Now", "content": "x", "status": "PUBLISHED"})
    assert r.status_code == 201
    assert r.json["post"]["published_at"] is not None


def test_drafts_hidden_from_public(app, writer, editor):
    post = writer.post("/blog/posts", json={"title": "Secret", "content": "x"}).json["post"]
    anon = app.test_client()
    assert anon.get("/blog/posts").json["total"] == 0
    assert anon.get("/blog/posts/slug/secret").status_code == 404

    assert editor.post(f"/blog/posts/{post['id']}/publish", json={}).status_code == 200
    assert anon.get("/blog/posts").json["total"] == 1
    r = anon.get("/blog/posts/slug/secret")
    assert r.status_code == 200
    assert "content" in r.json["post"]
    assert anon.get("/blog/posts/slug/secret").json["post"]["view_count"] == 2

    again = editor.post(f"/blog/posts/{post['id']}/publish", json={})
    assert again.status_code == 409
    assert again.json["error"]["code"] == "POST_ALREADY_PUBLISHED"


def test_only_author_or_editor_can_modify(app, writer):
    post = writer.post("/blog/posts", json={"title": "Mine", "content": "x"}).json["post"]
    other = _client(app, "other@example.com")
    r = other.patch(f"/blog/posts/{post['id']}", json={"title": "Theirs"})
    assert r.status_code == 403
    assert r.json["error"]["details"]["missing_permission"] == "content:edit"

    r = writer.patch(f"/blog/posts/{post['id']}", json={"title": "Still mine"})
    assert r.json["post"]["title"] == "Still mine"


def test_invalid_transition_is_rejected(editor):
    post = editor.post("/blog/posts", json={"title": "P", "content": "x", "status": "PUBLISHED"}).json["post"]
    r = editor.patch(f"/blog/posts/{post['id']}", json={"status": "DRAFT"})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "INVALID_STATUS_TRANSITION"

    assert editor.post(f"/blog/posts/{post['id']}/archive").json["post"]["status"] == "ARCHIVED"
    r = editor.patch(f"/blog/posts/{post['id']}", json={"status": "DRAFT"})
    assert r.json["post"]["status"] == "DRAFT"


def test_schedule_and_auto_publish(app, editor):
    post = editor.post("/blog/posts", json={"title": "Later", "content": "x"}).json["post"]

    r = editor.post(f"/blog/posts/{post['id']}/schedule", json={"scheduled_for": (utcnow() - timedelta(minutes=5)).isoformat()})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "SCHEDULED_DATE_IN_PAST"

    for bad in (1700000000, ["2030-01-01"], "next tuesday"):
        r = editor.post(f"/blog/posts/{post['id']}/schedule", json={"scheduled_for": bad})
        assert r.status_code == 400
        assert r.json["error"]["code"] == "VALIDATION_ERROR"
    r = editor.patch(f"/blog/posts/{post['id']}", json={"status": "SCHEDULED", "scheduled_for": {"at": "soon"}})
    assert r.status_code == 400

    r = editor.post(f"/blog/posts/{post['id']}/schedule", json={"scheduled_for": _future(30)})
    assert r.json["post"]["status"] == "SCHEDULED"

    with session_scope(app) as s:
        assert publish_scheduled_posts(s) == []
    with session_scope(app) as s:
        assert publish_scheduled_posts(s, now=utcnow() + timedelta(hours=1)) == [post["id"]]
    with session_scope(app) as s:
        p = s.execute(select(Post).where(Post.id == post["id"])).scalar_one()
        assert p.status == "PUBLISHED"
        assert p.scheduled_for is None
        assert p.published_at is not None


def test_unschedule_requires_scheduled_post(editor):
    post = editor.post("/blog/posts", json={"title": "Draft", "content": "x"}).json["post"]
    r = editor.post(f"/blog/posts/{post['id']}/unschedule")
    assert r.json["error"]["code"] == "POST_NOT_SCHEDULED"

    r = editor.post("/blog/posts", json={"title": "S", "content": "x", "status": "SCHEDULED"})
    assert r.json["error"]["code"] == "SCHEDULED_DATE_REQUIRED"

    post = editor.post("/blog/posts", json={"title": "S", "content": "x", "status": "SCHEDULED", "scheduled_for": _future()}).json["post"]
    r = editor.post(f"/blog/posts/{post['id']}/unschedule")
    assert r.json["post"]["status"] == "DRAFT"
    assert r.json["post"]["scheduled_for"] is None


def test_revisions_and_restore(editor):
    post = editor.post("/blog/posts", json={"title": "Rev", "content": "<p>one</p>"}).json["post"]
    editor.patch(f"/blog/posts/{post['id']}", json={"content": "<p>two</p>", "revision_note": "second draft"})
    # same content does not add a revision
    editor.patch(f"/blog/posts/{post['id']}", json={"content": "<p>two</p>"})

    revs = editor.get(f"/blog/posts/{post['id']}/revisions").json
    assert revs["total"] == 2
    assert revs["items"][0]["revision_note"] == "second draft"
    first = revs["items"][-1]
    assert editor.get(f"/blog/revisions/{first['id']}").json["revision"]["content"] == "<p>one</p>"

    r = editor.post(f"/blog/posts/{post['id']}/revisions/{first['id']}/restore")
    assert r.json["post"]["content"] == "<p>one</p>"
    assert editor.get(f"/blog/posts/{post['id']}/revisions").json["total"] == 3


def test_soft_delete_restore_and_duplicate(editor):
    post = editor.post("/blog/posts", json={"title": "Keep", "content": "x", "tags": ["a"]}).json["post"]
    copy = editor.post(f"/blog/posts/{post['id']}/duplicate", json={}).json["post"]
    assert copy["title"] == "Keep (Copy)"
    assert copy["slug"] == "keep-copy"
    assert copy["status"] == "DRAFT"
    assert copy["tags"] == ["a"]

    assert editor.delete(f"/blog/posts/{post['id']}").json["post"]["deleted_at"] is not None
    assert editor.get("/blog/posts").json["total"] == 1
    assert editor.get("/blog/posts?include_deleted=1").json["total"] == 2

    assert editor.post(f"/blog/posts/{post['id']}/restore").status_code == 200
    r = editor.post(f"/blog/posts/{post['id']}/restore")
    assert r.json["error"]["code"] == "POST_NOT_DELETED"


def test_list_filters_and_stats(editor):
    editor.post("/blog/posts", json={"title": "Flask tips", "content": "x", "tags": ["python"], "status": "PUBLISHED"})
    editor.post("/blog/posts", json={"title": "Go tips", "content": "y", "tags": ["go"]})

    assert editor.get("/blog/posts?tag=python").json["total"] == 1
    assert editor.get("/blog/posts?q=tips").json["total"] == 2
    assert editor.get("/blog/posts?status=draft").json["total"] == 1
    titles = [p["title"] for p in editor.get("/blog/posts?sort=title&order=asc").json["items"]]
    assert titles == ["Flask tips", "Go tips"]

    stats = editor.get("/blog/stats").json
    assert stats["total"] == 2
    assert stats["by_status"]["PUBLISHED"] == 1
    assert stats["by_status"]["SCHEDULED"] == 0
