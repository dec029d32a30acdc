import redis
from flask import Blueprint, current_app

from app.ygops.cache import get_cache_backend
from app.ygops.rbac import require_permission

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"service": "ygops", "env": current_app.config.get("ENV")}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including whether the cache answers."""
    backend = get_cache_backend()
    try:
        cache_ok = backend.ping()
    except redis.RedisError as e:
        current_app.logger.warning("Health check: cache ping failed: %s", e)
        cache_ok = False
    return {"ok": True, "cache": {"backend": backend.backend, "ok": cache_ok}}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for probes. No DB or cache access.
    """
    return "ok", 200


@bp.get("/jobs")
@require_permission("system:monitor")
def job_status():
    """Last finish time and result of each background job."""
    from app.ygops.tasks import last_runs

    return {"jobs": last_runs(current_app)}
