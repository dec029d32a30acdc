from __future__ import annotations

import logging
import math
import time
import uuid
from datetime import datetime, timedelta

import redis
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.ygops.cache import CacheBackend
from app.ygops.modules.analytics.models import RealtimeMetric
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

PREFIX = "realtime:metric:"
TTL_SECONDS = 3600
HISTOGRAM_MAX_POINTS = 1000
METRIC_TYPES = ("counter", "gauge", "histogram", "rate")


def metric_key(name: str, dimensions: dict[str, str] | None = None) -> str:
    """
    ``realtime:metric:{name}`` plus ``:k:v|k:v`` with dimensions sorted by key.
    """
    if not dimensions:
        return f"{PREFIX}{name}"
    dims = "|".join(f"{k}:{v}" for k, v in sorted(dimensions.items()))
    return f"{PREFIX}{name}:{dims}"


def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile over an ascending list."""
    if not sorted_values:
        return 0.0
    index = math.ceil((p / 100.0) * len(sorted_values)) - 1
    return sorted_values[max(0, min(index, len(sorted_values) - 1))]


def histogram_stats(values: list[float]) -> dict[str, float]:
    ordered = sorted(values)
    if not ordered:
        return {"count": 0, "mean": 0.0, "median": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0}
    return {
        "count": len(ordered),
        "mean": sum(ordered) / len(ordered),
        "median": percentile(ordered, 50),
        "p50": percentile(ordered, 50),
        "p95": percentile(ordered, 95),
        "p99": percentile(ordered, 99),
    }


class RealtimeMetrics:
    """
    Live counters, gauges, histograms and rates.

    The cache holds the hot value; every update is mirrored to a
    ``RealtimeMetric`` row so reads survive a cache flush. Cache failures are
    logged and the database copy is still written.
    """

    def __init__(self, s: Session, backend: CacheBackend, *, ttl_seconds: int = TTL_SECONDS) -> None:
        self.s = s
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def increment_counter(self, name: str, value: float = 1, dimensions: dict[str, str] | None = None) -> float:
        key = metric_key(name, dimensions)
        row = self._upsert(key, "counter", float(value), dimensions, accumulate=True)
        try:
            if self.backend.exists(key):
                self.backend.incr_float(key, float(value))
                self.backend.expire(key, self.ttl_seconds)
            else:
                # cold cache: start from the running total, not from zero
                self.backend.set(key, repr(row.current_value), ttl_seconds=self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning("Realtime counter %s cache update failed: %s", key, e)
        return row.current_value

    def set_gauge(
        self, name: str, value: float, dimensions: dict[str, str] | None = None, *, unit: str | None = None
    ) -> float:
        key = metric_key(name, dimensions)
        try:
            self.backend.set(key, repr(float(value)), ttl_seconds=self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning("Realtime gauge %s cache update failed: %s", key, e)
        return self._upsert(key, "gauge", float(value), dimensions, unit=unit).current_value

    def record_histogram(self, name: str, value: float, dimensions: dict[str, str] | None = None) -> dict[str, float]:
        key = metric_key(name, dimensions)
        now_ms = time.time() * 1000
        points: list[float] = []
        try:
            self.backend.zadd(key, f"{now_ms:.3f}:{float(value)!r}", now_ms)
            self.backend.zremrangebyrank(key, 0, -(HISTOGRAM_MAX_POINTS + 1))
            self.backend.expire(key, self.ttl_seconds)
            points = [float(member.split(":", 1)[1]) for member, _ in self.backend.zrange_with_scores(key)]
        except redis.RedisError as e:
            logger.warning("Realtime histogram %s cache update failed: %s", key, e)
            points = [float(value)]

        stats = histogram_stats(points)
        dims = dict(dimensions or {})
        dims.update({k: str(stats[k]) for k in ("mean", "p50", "p95", "p99")})
        self._upsert(key, "histogram", stats["median"], dims)
        return stats

    def record_rate(self, name: str, window_seconds: int = 60, dimensions: dict[str, str] | None = None) -> float:
        key = metric_key(name, dimensions)
        now_ms = time.time() * 1000
        window_start = now_ms - window_seconds * 1000
        try:
            self.backend.zadd(key, f"{now_ms:.3f}:{uuid.uuid4().hex[:8]}", now_ms)
            self.backend.zremrangebyscore(key, float("-inf"), window_start)
            self.backend.expire(key, self.ttl_seconds)
            count = self.backend.zcount(key, window_start, float("inf"))
        except redis.RedisError as e:
            logger.warning("Realtime rate %s cache update failed: %s", key, e)
            count = 1
        rate = count / float(window_seconds)
        self._upsert(key, "rate", rate, dimensions, unit="per_second")
        return rate

    def get_value(self, name: str, dimensions: dict[str, str] | None = None) -> float | None:
        key = metric_key(name, dimensions)
        try:
            cached = self.backend.get(key)
        except redis.RedisError as e:
            logger.warning("Realtime read %s failed, using database: %s", key, e)
            cached = None
        if cached is not None:
            return float(cached)
        row = self.s.scalar(select(RealtimeMetric).where(RealtimeMetric.metric_key == key))
        return row.current_value if row else None

    def get_bulk(self, requests: list[tuple[str, dict[str, str] | None]]) -> dict[str, float]:
        out: dict[str, float] = {}
        for name, dimensions in requests:
            value = self.get_value(name, dimensions)
            if value is not None:
                out[metric_key(name, dimensions)] = value
        return out

    def list_metrics(self, *, metric_type: str | None = None, prefix: str | None = None) -> list[RealtimeMetric]:
        stmt = select(RealtimeMetric)
        if metric_type:
            stmt = stmt.where(RealtimeMetric.metric_type == metric_type)
        if prefix:
            stmt = stmt.where(RealtimeMetric.metric_key.like(f"{metric_key(prefix)}%"))
        return list(self.s.scalars(stmt.order_by(RealtimeMetric.metric_key.asc())))

    def _upsert(
        self,
        key: str,
        metric_type: str,
        value: float,
        dimensions: dict[str, str] | None,
        *,
        unit: str | None = None,
        accumulate: bool = False,
    ) -> RealtimeMetric:
        now = utcnow()
        row = self.s.scalar(select(RealtimeMetric).where(RealtimeMetric.metric_key == key))
        if row is None:
            row = RealtimeMetric(
                metric_key=key,
                metric_type=metric_type,
                current_value=value,
                dimensions=dict(dimensions or {}),
                unit=unit,
                last_updated=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
            self.s.add(row)
        else:
            row.current_value = (row.current_value or 0.0) + value if accumulate else value
            row.dimensions = dict(dimensions or {})
            row.unit = unit or row.unit
            row.last_updated = now
            row.expires_at = now + timedelta(seconds=self.ttl_seconds)
        self.s.flush()
        return row


def clear_expired(s: Session, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = s.execute(delete(RealtimeMetric).where(RealtimeMetric.expires_at.is_not(None), RealtimeMetric.expires_at < now))
    removed = result.rowcount or 0
    logger.info("Cleared %s expired realtime metrics", removed)
    return removed
