from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from datetime import date
from typing import Any

from app.ygops.cache import CacheService

logger = logging.getLogger(__name__)

PREFIX = "metrics:"
TAG_PREFIX = "metrics:tag:"

TTL_DEFAULT = 3600
TTL_SHORT = 300
TTL_LONG = 86400
# Tag sets outlive their members so invalidation never misses a live key.
TAG_TTL_PADDING = 3600


def _scope(project_id: int | None, ip_asset_id: int | None, license_id: int | None) -> str:
    return f"p{project_id or '-'}:a{ip_asset_id or '-'}:l{license_id or '-'}"


def daily_key(day: date, *, project_id=None, ip_asset_id=None, license_id=None) -> str:
    return f"{PREFIX}daily:{day.isoformat()}:{_scope(project_id, ip_asset_id, license_id)}"


def daily_range_key(start: date, end: date, *, project_id=None, ip_asset_id=None, license_id=None) -> str:
    return f"{PREFIX}daily:{start.isoformat()}:{end.isoformat()}:{_scope(project_id, ip_asset_id, license_id)}"


def weekly_key(week_start: date, *, project_id=None, ip_asset_id=None, license_id=None) -> str:
    return f"{PREFIX}weekly:{week_start.isoformat()}:{_scope(project_id, ip_asset_id, license_id)}"


def monthly_key(year: int, month: int, *, project_id=None, ip_asset_id=None, license_id=None) -> str:
    return f"{PREFIX}monthly:{year:04d}-{month:02d}:{_scope(project_id, ip_asset_id, license_id)}"


def custom_key(metric_id: int, period_type: str, start: date, end: date) -> str:
    return f"{PREFIX}custom:{metric_id}:{period_type.lower()}:{start.isoformat()}:{end.isoformat()}"


def dashboard_key(name: str, params: dict[str, Any] | None = None) -> str:
    if not params:
        return f"{PREFIX}dashboard:{name}"
    digest = hashlib.md5(json.dumps(params, sort_keys=True, default=str).encode("utf-8")).hexdigest()[:12]
    return f"{PREFIX}dashboard:{name}:{digest}"


class MetricsCache:
    """
    Tag-aware wrapper around the shared cache for analytics read models.

    Every cached value may carry tags (``daily``, ``asset:12``, ``custom:3`` ...);
    each tag is a set at ``metrics:tag:{tag}`` listing the keys to drop when
    the tag is invalidated.
    """

    def __init__(self, cache: CacheService) -> None:
        self.cache = cache

    @property
    def backend(self):
        return self.cache.backend

    def get(self, key: str) -> Any | None:
        return self.cache.get(key)

    def set(self, key: str, value: Any, *, ttl: int = TTL_DEFAULT, tags: Iterable[str] = ()) -> None:
        self.cache.set(key, value, ttl=ttl)
        for tag in tags:
            tag_key = f"{TAG_PREFIX}{tag}"
            self.backend.sadd(tag_key, key)
            self.backend.expire(tag_key, ttl + TAG_TTL_PADDING)

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        *,
        ttl: int = TTL_DEFAULT,
        tags: Iterable[str] = (),
    ) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        if value is not None:
            self.set(key, value, ttl=ttl, tags=tags)
        return value

    def invalidate_tag(self, tag: str) -> int:
        tag_key = f"{TAG_PREFIX}{tag}"
        keys = sorted(self.backend.smembers(tag_key))
        removed = self.backend.delete(*keys) if keys else 0
        self.backend.delete(tag_key)
        logger.debug("Invalidated metrics tag %s (%s keys)", tag, removed)
        return removed

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        return sum(self.invalidate_tag(t) for t in tags)

    def invalidate_key(self, key: str) -> None:
        self.cache.delete(key)

    def invalidate_all(self) -> int:
        return self.cache.invalidate_analytics()

    def invalidate_for_scope(self, *, project_id=None, ip_asset_id=None, license_id=None) -> int:
        return self.invalidate_tags(scope_tags(project_id=project_id, ip_asset_id=ip_asset_id, license_id=license_id))


def scope_tags(*, project_id=None, ip_asset_id=None, license_id=None) -> list[str]:
    tags = []
    if project_id:
        tags.append(f"project:{project_id}")
    if ip_asset_id:
        tags.append(f"asset:{ip_asset_id}")
    if license_id:
        tags.append(f"license:{license_id}")
    return tags
