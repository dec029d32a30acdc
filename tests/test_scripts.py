import pytest
from alembic import command
from sqlalchemy import inspect, select

from app.ygops.db import create_db_engine, url_session_scope
from app.ygops.models import Base, Role, User
from app.ygops.modules.admin_roles.permissions import PERMISSIONS
from scripts import init_db, release, start


@pytest.fixture()
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path/'release.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("ADMIN_EMAIL", "Ops@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "first-password")
    return url


def test_release_migrates_and_seeds(db_url, monkeypatch):
    release.run_release()

    engine = create_db_engine(db_url)
    tables = set(inspect(engine).get_table_names())
    engine.dispose()
    assert {"users", "blog_posts", "daily_metrics", "licenses", "ip_ownerships", "storage_metrics", "alembic_version"} <= tables

    with url_session_scope(db_url) as s:
        admin = s.execute(select(User).where(User.email == "ops@example.com")).scalar_one()
        role = s.execute(select(Role).where(Role.key == "admin")).scalar_one()
        assert role in admin.roles
        assert len(role.permissions) == len(PERMISSIONS)
        original_hash = admin.password_hash

    # a second run changes nothing, including the password
    monkeypatch.setenv("ADMIN_PASSWORD", "second-password")
    assert init_db.seed_only(database_url=db_url) == {"permissions_created": 0, "admin_created": False}
    with url_session_scope(db_url) as s:
        admin = s.execute(select(User).where(User.email == "ops@example.com")).scalar_one()
        assert admin.password_hash == original_hash


def test_release_requires_postgres_in_production(monkeypatch, tmp_path):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(release.ReleaseError):
        release.run_release()

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(release.ReleaseError):
        release.run_release()


def test_start_commands(monkeypatch):
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    assert "--bind=0.0.0.0:9000" in start.web_argv()
    assert start.celery_argv("beat") == ["celery", "-A", "app.ygops.tasks:celery_app", "beat", "--loglevel=debug"]
    assert start.celery_argv("worker")[-1].startswith("--concurrency=")

    monkeypatch.setenv("PORT", "70000")
    with pytest.raises(SystemExit):
        start.web_argv()


def test_start_execs_worker(monkeypatch):
    calls = []
    monkeypatch.setattr(start.os, "execvp", lambda file, argv: calls.append((file, argv)))
    start.main(["worker"])
    assert calls[0][0] == "celery"
    assert "worker" in calls[0][1]


def test_migrations_match_models_and_downgrade(db_url):
    release.run_release()

    engine = create_db_engine(db_url)
    inspector = inspect(engine)
    for table in Base.metadata.sorted_tables:
        migrated = {c["name"] for c in inspector.get_columns(table.name)}
        assert migrated == set(table.columns.keys()), table.name
        migrated_indexes = {i["name"] for i in inspector.get_indexes(table.name)}
        assert {i.name for i in table.indexes} <= migrated_indexes, table.name
    engine.dispose()

    command.downgrade(release.alembic_config(db_url), "base")
    engine = create_db_engine(db_url)
    assert set(inspect(engine).get_table_names()) == {"alembic_version"}
    engine.dispose()
