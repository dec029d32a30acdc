from __future__ import annotations

import logging
import time
from collections.abc import Generator
from contextlib import contextmanager

from flask import Flask, g
from sqlalchemy import Engine, Select, create_engine, event, func, select
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def engine_options(db_url: str) -> dict[str, object]:
    opts: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        opts.update({"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30})
    elif db_url.startswith("sqlite"):
        # Celery threads and the dev server share one file database
        opts["connect_args"] = {"check_same_thread": False}
    return opts


def create_db_engine(db_url: str, *, slow_query_ms: int = 0) -> Engine:
    engine = create_engine(db_url, **engine_options(db_url))
    if slow_query_ms > 0:
        _log_slow_queries(engine, slow_query_ms)
    return engine


def _log_slow_queries(engine: Engine, threshold_ms: int) -> None:
    @event.listens_for(engine, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_started", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _finish(conn, cursor, statement, parameters, context, executemany):
        elapsed_ms = (time.perf_counter() - conn.info["query_started"].pop()) * 1000
        if elapsed_ms >= threshold_ms:
            logger.warning("Slow query (%.0f ms): %s", elapsed_ms, " ".join(statement.split())[:500])


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


def init_db(app: Flask) -> None:
    engine = create_db_engine(app.config["DATABASE_URL"], slow_query_ms=int(app.config.get("SLOW_QUERY_MS") or 0))
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session, closed by `teardown_db_session`.
    """
    s = getattr(g, "db_session", None)
    if s is not None:
        return s
    if app is None:
        from flask import current_app

        app = current_app
    g.db_session = app.extensions["sqlalchemy_sessionmaker"]()
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        s.close()
        g.db_session = None


def paginate(s: Session, stmt: Select, *, page: int = 1, per_page: int = 20, max_per_page: int = 100) -> dict:
    """
    Run `stmt` one page at a time. Returns {"items", "page", "per_page", "total", "pages"}.
    """
    page = max(1, int(page or 1))
    per_page = max(1, min(int(per_page or 20), max_per_page))
    total = s.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    items = s.execute(stmt.limit(per_page).offset((page - 1) * per_page)).scalars().all()
    pages = (total + per_page - 1) // per_page if total else 0
    return {"items": list(items), "page": page, "per_page": per_page, "total": total, "pages": pages}


@contextmanager
def _scope(sm: sessionmaker) -> Generator[Session, None, None]:
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for jobs and tests: yields a session and commits/rolls back.
    """
    with _scope(app.extensions["sqlalchemy_sessionmaker"]) as s:
        yield s


@contextmanager
def url_session_scope(db_url: str) -> Generator[Session, None, None]:
    """Same as `session_scope` without an app, for release-phase scripts."""
    engine = create_db_engine(db_url)
    try:
        with _scope(make_sessionmaker(engine)) as s:
            yield s
    finally:
        engine.dispose()
