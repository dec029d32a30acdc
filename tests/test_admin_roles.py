from datetime import timedelta

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.ygops import create_app
from app.ygops.cache import get_cache_backend
from app.ygops.db import session_scope
from app.ygops.models import Base, User
from app.ygops.modules.admin_roles import permissions as perms
from app.ygops.modules.admin_roles.models import AdminRole
from app.ygops.modules.admin_roles.service import (
    PermissionCache,
    create_admin_role,
    deactivate_expired_roles,
    get_user_permissions,
    revoke_admin_role,
)
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
        s.add(User(email="admin@example.com", password_hash=generate_password_hash("pw"), role="ADMIN"))
        s.add(User(email="staff@example.com", password_hash=generate_password_hash("pw"), role="VIEWER"))
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    return c


@pytest.fixture()
def staff_id(app):
    with session_scope(app) as s:
        return s.execute(select(User.id).where(User.email == "staff@example.com")).scalar_one()


def _future(days=30):
    return (utcnow() + timedelta(days=days)).isoformat()


def test_expand_permissions_is_transitive():
    out = perms.expand_permissions(["content:delete"])
    assert {"content:delete", "content:edit", "content:read"} <= out


def test_junior_templates_drop_approvals():
    junior = perms.template_for("CONTENT_MANAGER", "JUNIOR")
    assert "content:read" in junior
    assert "content:approve" not in junior
    assert "content:approve" in perms.template_for("CONTENT_MANAGER", "SENIOR")


def test_wildcard_grants_everything():
    assert perms.grants([perms.WILDCARD_ALL], "system:settings")
    assert not perms.grants(["content:read"], "content:edit")


def test_create_role_grants_template_permissions(app, client, staff_id):
    r = client.post("/admin/roles", json={"user_id": staff_id, "department": "CONTENT_MANAGER", "seniority": "SENIOR"})
    assert r.status_code == 201
    assert r.json["department"] == "CONTENT_MANAGER"

    staff = app.test_client()
    staff.post("/auth/login", json={"email": "staff@example.com", "password": "pw"})
    me = staff.get("/auth/me").json
    assert "content:approve" in me["permissions"]
    assert "system:settings" not in me["permissions"]


def test_duplicate_department_conflicts(client, staff_id):
    body = {"user_id": staff_id, "department": "OPERATIONS"}
    assert client.post("/admin/roles", json=body).status_code == 201
    r = client.post("/admin/roles", json=body)
    assert r.status_code == 409
    assert r.json["error"]["code"] == "ADMIN_ROLE_EXISTS"


def test_unknown_department_rejected(client, staff_id):
    r = client.post("/admin/roles", json={"user_id": staff_id, "department": "MARKETING"})
    assert r.status_code == 400
    assert "CONTRACTOR" in r.json["error"]["details"]["allowed"]


def test_contractor_requires_expiry_and_safe_permissions(client, staff_id):
    r = client.post("/admin/roles", json={"user_id": staff_id, "department": "CONTRACTOR"})
    assert r.json["error"]["code"] == "INVALID_EXPIRATION"

    r = client.post(
        "/admin/roles",
        json={
            "user_id": staff_id,
            "department": "CONTRACTOR",
            "expires_at": _future(),
            "permissions": ["content:read", "system:settings"],
        },
    )
    assert r.status_code == 400
    assert r.json["error"]["code"] == "CONTRACTOR_PERMISSION_PROHIBITED"


def test_permissions_must_fit_template(client, staff_id):
    r = client.post(
        "/admin/roles",
        json={"user_id": staff_id, "department": "CONTENT_MANAGER", "seniority": "JUNIOR", "permissions": ["content:delete"]},
    )
    assert r.status_code == 400
    assert r.json["error"]["code"] == "PERMISSION_NOT_IN_TEMPLATE"


def test_critical_permissions_cannot_be_stripped(client, staff_id):
    role = client.post("/admin/roles", json={"user_id": staff_id, "department": "CONTENT_MANAGER", "seniority": "SENIOR"}).json
    r = client.patch(f"/admin/roles/{role['id']}", json={"permissions": ["content:read"]})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "CRITICAL_PERMISSION_REMOVAL"
    assert r.json["error"]["details"]["permissions"] == ["content:edit"]


def test_last_super_admin_cannot_be_revoked(client, staff_id):
    role = client.post("/admin/roles", json={"user_id": staff_id, "department": "SUPER_ADMIN"}).json
    r = client.delete(f"/admin/roles/{role['id']}", json={"reason": "cleanup"})
    assert r.status_code == 403
    assert r.json["error"]["code"] == "LAST_SUPER_ADMIN"


def test_revoke_requires_reason_and_soft_deletes(client, staff_id):
    role = client.post("/admin/roles", json={"user_id": staff_id, "department": "OPERATIONS"}).json
    assert client.delete(f"/admin/roles/{role['id']}", json={}).status_code == 400
    r = client.delete(f"/admin/roles/{role['id']}", json={"reason": "left the team"})
    assert r.json["deletion_reason"] == "left the team"
    assert client.get(f"/admin/roles/{role['id']}").status_code == 404
    listed = client.get("/admin/roles?include_deleted=1").json
    assert listed["total"] == 1


def test_permission_cache_invalidated_on_revoke(app, client, staff_id):
    role = client.post("/admin/roles", json={"user_id": staff_id, "department": "OPERATIONS"}).json
    assert "system:monitor" in client.get(f"/admin/roles/users/{staff_id}/permissions").json["permissions"]
    client.delete(f"/admin/roles/{role['id']}", json={"reason": "done"})
    assert client.get(f"/admin/roles/users/{staff_id}/permissions").json["permissions"] == []


def test_contractor_extend_and_convert(client, staff_id):
    role = client.post(
        "/admin/roles",
        json={"user_id": staff_id, "department": "CONTRACTOR", "expires_at": _future(3), "permissions": ["content:read"]},
    ).json
    assert client.get("/admin/roles/expiring?days=7").json["items"][0]["id"] == role["id"]

    r = client.post(f"/admin/roles/{role['id']}/extend", json={"expires_at": _future(60), "reason": "project extended"})
    assert r.status_code == 200
    assert client.get("/admin/roles/expiring?days=7").json["items"] == []

    r = client.post(f"/admin/roles/{role['id']}/convert", json={"department": "CUSTOMER_SERVICE"})
    assert r.status_code == 201
    assert r.json["expires_at"] is None
    assert client.get(f"/admin/roles/{role['id']}").status_code == 404


def test_deactivate_expired_roles(app, client, staff_id):
    client.post(
        "/admin/roles",
        json={"user_id": staff_id, "department": "CONTRACTOR", "expires_at": _future(1), "permissions": ["content:read"]},
    )
    later = utcnow() + timedelta(days=2)
    with app.app_context(), session_scope(app) as s:
        assert deactivate_expired_roles(s, now=later) == 1
    with app.app_context(), session_scope(app) as s:
        role = s.execute(select(AdminRole)).scalar_one()
        assert role.is_active is False
        assert get_user_permissions(s, staff_id, use_cache=False) == []


def test_stats_and_catalogue(client, staff_id):
    client.post("/admin/roles", json={"user_id": staff_id, "department": "OPERATIONS"})
    stats = client.get("/admin/roles/stats").json
    assert stats["active"] == 1
    assert stats["by_department"] == {"OPERATIONS": 1}

    cat = client.get("/admin/roles/catalogue").json
    assert "CONTRACTOR:JUNIOR" in cat["templates"]


def test_viewer_cannot_manage_roles(app, staff_id):
    staff = app.test_client()
    staff.post("/auth/login", json={"email": "staff@example.com", "password": "pw"})
    r = staff.post("/admin/roles", json={"user_id": staff_id, "department": "OPERATIONS"})
    assert r.status_code == 403


def test_permission_cache_cleared_only_after_commit(app, staff_id):
    key = f"{PermissionCache.PREFIX}{staff_id}"
    with app.app_context():
        backend = get_cache_backend()
        with session_scope(app) as s:
            role = create_admin_role(s, actor=None, user_id=staff_id, department="OPERATIONS")
            role_id = role.id
            # a reader between flush and commit still sees the old grants
            backend.set_json(key, ["stale"])
            assert backend.exists(key)
        assert not backend.exists(key)

        with session_scope(app) as s:
            assert "system:monitor" in get_user_permissions(s, staff_id)
        assert backend.exists(key)

        s = app.extensions["sqlalchemy_sessionmaker"]()
        try:
            revoke_admin_role(s, role_id, actor=None, reason="rolled back")
            s.rollback()
        finally:
            s.close()
        assert backend.exists(key)
        with session_scope(app) as s:
            assert "system:monitor" in get_user_permissions(s, staff_id)
