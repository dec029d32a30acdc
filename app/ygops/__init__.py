import logging
import os
import uuid
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request, session

from app.ygops.cache import init_cache
from app.ygops.config import load_config
from app.ygops.db import init_db, teardown_db_session
from app.ygops.errors import error_response, register_error_handlers
from app.ygops.routes import bp as routes_bp
from app.ygops.auth import bp as auth_bp, load_current_user
from app.ygops.modules.two_factor.admin import bp as two_factor_bp, webhooks_bp as twilio_webhooks_bp
from app.ygops.modules.admin_roles.admin import bp as admin_roles_bp
from app.ygops.modules.assets.admin import bp as assets_bp
from app.ygops.modules.blog.admin import bp as blog_bp
from app.ygops.modules.analytics.admin import bp as analytics_bp
from app.ygops.modules.licensing.admin import bp as licensing_bp, ownership_bp

_CSRF_EXEMPT_ENDPOINTS = ("twilio_webhooks.twilio_status",)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL") or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

    from app.ygops.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _request_id():
        g.request_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or uuid.uuid4().hex
        return None

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        session.permanent = True
        if not app.config.get("CSRF_ENABLED"):
            return None
        ensure_csrf_token()
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            endpoint = request.endpoint or ""
            # Sign-in and 2FA challenge endpoints run before a session exists
            if endpoint.startswith("auth.") or endpoint.startswith("two_factor.challenge_"):
                return None
            if endpoint in _CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                return error_response("CSRF_FAILED", "CSRF token missing or invalid.", 400)
        return None

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("REDIS_URL"):
            app.logger.warning("REDIS_URL not set in production; rate limits and 2FA challenges are per-process.")

    init_db(app)
    init_cache(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(two_factor_bp, url_prefix="/auth/2fa")
    app.register_blueprint(twilio_webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(admin_roles_bp, url_prefix="/admin/roles")
    app.register_blueprint(assets_bp, url_prefix="/assets")
    app.register_blueprint(blog_bp, url_prefix="/blog")
    app.register_blueprint(analytics_bp, url_prefix="/analytics")
    app.register_blueprint(licensing_bp, url_prefix="/licenses")
    app.register_blueprint(ownership_bp, url_prefix="/ownership")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)
    register_error_handlers(app)

    @app.after_request
    def _request_id_header(resp):
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
