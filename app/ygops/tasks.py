"""
Background jobs.

Each job is a plain function taking the Flask app so it can run from the
Celery worker, from beat, or directly via ``scripts/run_job.py``.

Worker:  celery -A app.ygops.tasks worker --loglevel=INFO
Beat:    celery -A app.ygops.tasks beat --loglevel=INFO
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

from celery import Celery
from celery.schedules import crontab
from celery.utils.log import get_task_logger
from dotenv import load_dotenv
from flask import Flask

from app.ygops.cache import get_cache
from app.ygops.config import load_config
from app.ygops.db import session_scope
from app.ygops.modules.admin_roles.service import deactivate_expired_roles
from app.ygops.modules.analytics import realtime, rollups
from app.ygops.modules.analytics.metrics_cache import MetricsCache
from app.ygops.modules.assets.storage_reporting import capture_storage_snapshots
from app.ygops.modules.blog.service import publish_scheduled_posts
from app.ygops.modules.licensing.service import expire_licenses
from app.ygops.modules.two_factor.lockout import unlock_expired_accounts
from app.ygops.modules.two_factor.sms import cleanup_expired_codes
from app.ygops.utils import utcnow
from app.ygops.warming import warm_critical_caches

logger = get_task_logger(__name__)

load_dotenv()
_config = load_config()

celery_app = Celery("ygops")
celery_app.conf.update(
    broker_url=_config["CELERY_BROKER_URL"],
    result_backend=_config["CELERY_RESULT_BACKEND"],
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=3600,
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_hijack_root_logger=False,
)

_flask_app: Flask | None = None


def flask_app() -> Flask:
    global _flask_app
    if _flask_app is None:
        from app.ygops import create_app

        _flask_app = create_app()
    return _flask_app


# ---------- Jobs ----------
def job_publish_scheduled_posts(app: Flask) -> dict[str, Any]:
    with session_scope(app) as s:
        ids = publish_scheduled_posts(s, now=utcnow())
    return {"published": ids}


def job_aggregate_daily(app: Flask, day: date | None = None) -> dict[str, Any]:
    day = day or (utcnow().date() - timedelta(days=1))
    with app.app_context(), session_scope(app) as s:
        scopes = rollups.aggregate_daily(s, day, cache=MetricsCache(get_cache(app)))
    return {"date": day.isoformat(), "scopes": scopes}


def job_aggregate_weekly(app: Flask, day: date | None = None) -> dict[str, Any]:
    # Runs on Monday for the week that just ended.
    day = day or (utcnow().date() - timedelta(days=7))
    with app.app_context(), session_scope(app) as s:
        scopes = rollups.aggregate_weekly(s, day, cache=MetricsCache(get_cache(app)))
    return {"week_start_date": rollups.week_bounds(day)[0].isoformat(), "scopes": scopes}


def job_aggregate_monthly(app: Flask, day: date | None = None) -> dict[str, Any]:
    if day is None:
        year, month = rollups.previous_month(utcnow().year, utcnow().month)
    else:
        year, month = day.year, day.month
    with app.app_context(), session_scope(app) as s:
        scopes = rollups.aggregate_monthly(s, year, month, cache=MetricsCache(get_cache(app)))
    return {"year": year, "month": month, "scopes": scopes}


def job_unlock_expired_accounts(app: Flask) -> dict[str, Any]:
    with session_scope(app) as s:
        return {"unlocked": unlock_expired_accounts(s)}


def job_cleanup_sms_codes(app: Flask) -> dict[str, Any]:
    with session_scope(app) as s:
        return {"removed": cleanup_expired_codes(s)}


def job_deactivate_expired_roles(app: Flask) -> dict[str, Any]:
    with app.app_context(), session_scope(app) as s:
        return {"deactivated": deactivate_expired_roles(s)}


def job_clear_realtime_metrics(app: Flask) -> dict[str, Any]:
    with session_scope(app) as s:
        return {"removed": realtime.clear_expired(s)}


def job_warm_caches(app: Flask) -> dict[str, Any]:
    with app.app_context(), session_scope(app) as s:
        return warm_critical_caches(s, get_cache(app))


def job_expire_licenses(app: Flask) -> dict[str, Any]:
    with session_scope(app) as s:
        return {"expired": expire_licenses(s)}


def job_capture_storage_metrics(app: Flask, day: date | None = None) -> dict[str, Any]:
    with session_scope(app) as s:
        return capture_storage_snapshots(s, day=day)


JOBS: dict[str, Callable[..., dict[str, Any]]] = {
    "publish_scheduled_posts": job_publish_scheduled_posts,
    "aggregate_daily": job_aggregate_daily,
    "aggregate_weekly": job_aggregate_weekly,
    "aggregate_monthly": job_aggregate_monthly,
    "unlock_expired_accounts": job_unlock_expired_accounts,
    "cleanup_sms_codes": job_cleanup_sms_codes,
    "deactivate_expired_roles": job_deactivate_expired_roles,
    "clear_realtime_metrics": job_clear_realtime_metrics,
    "warm_caches": job_warm_caches,
    "expire_licenses": job_expire_licenses,
    "capture_storage_metrics": job_capture_storage_metrics,
}


def last_run_key(name: str) -> str:
    return f"jobs:last_run:{name}"


def run_job(name: str, app: Flask | None = None, **kwargs: Any) -> dict[str, Any]:
    job = JOBS.get(name)
    if job is None:
        raise KeyError(f"Unknown job {name!r}; expected one of {', '.join(sorted(JOBS))}")
    app = app or flask_app()
    result = job(app, **kwargs)
    logger.info("Job %s finished: %s", name, result)
    get_cache(app).set_permanent(last_run_key(name), {"finished_at": utcnow().isoformat(), "result": result})
    return result


def last_runs(app: Flask) -> dict[str, dict | None]:
    """Most recent finish time and result per job; None for jobs that never ran."""
    found = get_cache(app).get_many(last_run_key(name) for name in JOBS)
    return {name: found.get(last_run_key(name)) for name in sorted(JOBS)}


# ---------- Celery tasks ----------
@celery_app.task(name="ygops.publish_scheduled_posts")
def publish_scheduled_posts_task() -> dict[str, Any]:
    return run_job("publish_scheduled_posts")


@celery_app.task(name="ygops.aggregate_daily", bind=True, max_retries=3, default_retry_delay=300)
def aggregate_daily_task(self, day: str | None = None) -> dict[str, Any]:
    try:
        return run_job("aggregate_daily", day=date.fromisoformat(day) if day else None)
    except Exception as e:
        logger.exception("Daily aggregation failed")
        raise self.retry(exc=e)


@celery_app.task(name="ygops.aggregate_weekly", bind=True, max_retries=3, default_retry_delay=600)
def aggregate_weekly_task(self, day: str | None = None) -> dict[str, Any]:
    try:
        return run_job("aggregate_weekly", day=date.fromisoformat(day) if day else None)
    except Exception as e:
        logger.exception("Weekly aggregation failed")
        raise self.retry(exc=e)


@celery_app.task(name="ygops.aggregate_monthly", bind=True, max_retries=3, default_retry_delay=600)
def aggregate_monthly_task(self, day: str | None = None) -> dict[str, Any]:
    try:
        return run_job("aggregate_monthly", day=date.fromisoformat(day) if day else None)
    except Exception as e:
        logger.exception("Monthly aggregation failed")
        raise self.retry(exc=e)


@celery_app.task(name="ygops.unlock_expired_accounts")
def unlock_expired_accounts_task() -> dict[str, Any]:
    return run_job("unlock_expired_accounts")


@celery_app.task(name="ygops.cleanup_sms_codes")
def cleanup_sms_codes_task() -> dict[str, Any]:
    return run_job("cleanup_sms_codes")


@celery_app.task(name="ygops.deactivate_expired_roles")
def deactivate_expired_roles_task() -> dict[str, Any]:
    return run_job("deactivate_expired_roles")


@celery_app.task(name="ygops.clear_realtime_metrics")
def clear_realtime_metrics_task() -> dict[str, Any]:
    return run_job("clear_realtime_metrics")


@celery_app.task(name="ygops.warm_caches")
def warm_caches_task() -> dict[str, Any]:
    return run_job("warm_caches")


@celery_app.task(name="ygops.expire_licenses")
def expire_licenses_task() -> dict[str, Any]:
    return run_job("expire_licenses")


@celery_app.task(name="ygops.capture_storage_metrics")
def capture_storage_metrics_task() -> dict[str, Any]:
    return run_job("capture_storage_metrics")


celery_app.conf.beat_schedule = {
    "publish-scheduled-posts": {"task": "ygops.publish_scheduled_posts", "schedule": crontab()},
    "aggregate-daily-metrics": {"task": "ygops.aggregate_daily", "schedule": crontab(hour=1, minute=0)},
    "aggregate-weekly-metrics": {
        "task": "ygops.aggregate_weekly",
        "schedule": crontab(hour=2, minute=0, day_of_week="mon"),
    },
    "aggregate-monthly-metrics": {
        "task": "ygops.aggregate_monthly",
        "schedule": crontab(hour=3, minute=0, day_of_month="1"),
    },
    "unlock-expired-accounts": {"task": "ygops.unlock_expired_accounts", "schedule": crontab(minute="*/5")},
    "cleanup-sms-codes": {"task": "ygops.cleanup_sms_codes", "schedule": crontab(minute=15)},
    "deactivate-expired-roles": {"task": "ygops.deactivate_expired_roles", "schedule": crontab(minute=30)},
    "clear-realtime-metrics": {"task": "ygops.clear_realtime_metrics", "schedule": crontab(minute=45)},
    "warm-caches": {"task": "ygops.warm_caches", "schedule": crontab(minute="*/30")},
    "expire-licenses": {"task": "ygops.expire_licenses", "schedule": crontab(hour=0, minute=10)},
    "capture-storage-metrics": {"task": "ygops.capture_storage_metrics", "schedule": crontab(hour=4, minute=0)},
}
