"""
Shared cache backend (Redis when REDIS_URL is set, in-memory otherwise) and the
JSON cache service the modules build on.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

import redis
from flask import Flask, current_app

logger = logging.getLogger(__name__)


class CacheBackend:
    backend: str = "none"

    def ping(self) -> bool:
        raise NotImplementedError

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError

    def delete(self, *keys: str) -> int:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def ttl(self, key: str) -> int:
        """Seconds to live; -1 when the key never expires, -2 when it is missing."""
        raise NotImplementedError

    def expire(self, key: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        """Increment by one; the TTL is applied only when the key is created."""
        raise NotImplementedError

    def incr_by(self, key: str, amount: int) -> int:
        raise NotImplementedError

    def incr_float(self, key: str, amount: float) -> float:
        raise NotImplementedError

    def keys(self, pattern: str) -> list[str]:
        raise NotImplementedError

    # sorted sets
    def zadd(self, key: str, member: str, score: float) -> None:
        raise NotImplementedError

    def zrange_with_scores(self, key: str) -> list[tuple[str, float]]:
        raise NotImplementedError

    def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        raise NotImplementedError

    def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        raise NotImplementedError

    def zcount(self, key: str, min_score: float, max_score: float) -> int:
        raise NotImplementedError

    # lists
    def lpush(self, key: str, value: str) -> None:
        raise NotImplementedError

    def lrange(self, key: str, start: int, stop: int) -> list[str]:
        raise NotImplementedError

    # sets
    def sadd(self, key: str, *members: str) -> None:
        raise NotImplementedError

    def smembers(self, key: str) -> set[str]:
        raise NotImplementedError

    def get_json(self, key: str) -> Any | None:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    def set_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self.set(key, json.dumps(value, default=str), ttl_seconds=ttl_seconds)


def _rank_slice(n: int, start: int, stop: int) -> tuple[int, int]:
    if start < 0:
        start += n
    if stop < 0:
        stop += n
    return max(0, start), min(n - 1, stop)


class MemoryCacheBackend(CacheBackend):
    backend = "memory"

    def __init__(self) -> None:
        self._store: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Any | None:
        hit = self._store.get(key)
        if not hit:
            return None
        value, expires_at = hit
        if expires_at is not None and time.time() > expires_at:
            self._store.pop(key, None)
            return None
        return value

    def _put(self, key: str, value: Any, *, keep_ttl: bool = False, ttl_seconds: int | None = None) -> None:
        expires_at = None
        if keep_ttl and key in self._store:
            expires_at = self._store[key][1]
        elif ttl_seconds is not None:
            expires_at = time.time() + max(1, int(ttl_seconds))
        self._store[key] = (value, expires_at)

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._live(key)
            return value if isinstance(value, str) else None

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._lock:
            self._put(key, str(value), ttl_seconds=ttl_seconds)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._store.pop(key, None)
        return removed

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -2
            expires_at = self._store[key][1]
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - time.time())))

    def expire(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            value = self._live(key)
            if value is not None:
                self._put(key, value, ttl_seconds=ttl_seconds)

    def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        with self._lock:
            current = self._live(key)
            created = current is None
            value = int(float(current or 0)) + 1
            if created:
                self._put(key, str(value), ttl_seconds=ttl_seconds)
            else:
                self._put(key, str(value), keep_ttl=True)
            return value

    def incr_by(self, key: str, amount: int) -> int:
        with self._lock:
            value = int(float(self._live(key) or 0)) + int(amount)
            self._put(key, str(value), keep_ttl=True)
            return value

    def incr_float(self, key: str, amount: float) -> float:
        with self._lock:
            value = float(self._live(key) or 0) + float(amount)
            self._put(key, repr(value), keep_ttl=True)
            return value

    def keys(self, pattern: str) -> list[str]:
        with self._lock:
            return [k for k in list(self._store) if fnmatch.fnmatchcase(k, pattern) and self._live(k) is not None]

    def _zset(self, key: str) -> dict[str, float]:
        value = self._live(key)
        if value is None:
            value = {}
            self._put(key, value, keep_ttl=True)
        return value

    def zadd(self, key: str, member: str, score: float) -> None:
        with self._lock:
            self._zset(key)[member] = float(score)

    def zrange_with_scores(self, key: str) -> list[tuple[str, float]]:
        with self._lock:
            value = self._live(key) or {}
            return sorted(value.items(), key=lambda kv: (kv[1], kv[0]))

    def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        with self._lock:
            zset = self._zset(key)
            doomed = [m for m, sc in zset.items() if min_score <= sc <= max_score]
            for m in doomed:
                zset.pop(m, None)
            return len(doomed)

    def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        with self._lock:
            zset = self._zset(key)
            ordered = sorted(zset.items(), key=lambda kv: (kv[1], kv[0]))
            lo, hi = _rank_slice(len(ordered), start, stop)
            if lo > hi:
                return 0
            for m, _ in ordered[lo : hi + 1]:
                zset.pop(m, None)
            return hi - lo + 1

    def zcount(self, key: str, min_score: float, max_score: float) -> int:
        with self._lock:
            value = self._live(key) or {}
            return sum(1 for sc in value.values() if min_score <= sc <= max_score)

    def lpush(self, key: str, value: str) -> None:
        with self._lock:
            items = self._live(key)
            if items is None:
                items = []
                self._put(key, items)
            items.insert(0, value)

    def lrange(self, key: str, start: int, stop: int) -> list[str]:
        with self._lock:
            items = self._live(key) or []
            lo, hi = _rank_slice(len(items), start, stop)
            return list(items[lo : hi + 1]) if lo <= hi else []

    def sadd(self, key: str, *members: str) -> None:
        with self._lock:
            items = self._live(key)
            if items is None:
                items = set()
                self._put(key, items)
            items.update(members)

    def smembers(self, key: str) -> set[str]:
        with self._lock:
            return set(self._live(key) or set())


class RedisCacheBackend(CacheBackend):
    backend = "redis"

    def __init__(self, url: str) -> None:
        self._client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=1,
            retry_on_timeout=False,
        )
        self._client.ping()

    def ping(self) -> bool:
        return bool(self._client.ping())

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if ttl_seconds:
            self._client.setex(key, max(1, int(ttl_seconds)), value)
        else:
            self._client.set(key, value)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._client.delete(*keys))

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def ttl(self, key: str) -> int:
        return int(self._client.ttl(key))

    def expire(self, key: str, ttl_seconds: int) -> None:
        self._client.expire(key, max(1, int(ttl_seconds)))

    def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        value = int(self._client.incr(key))
        if value == 1 and ttl_seconds:
            self._client.expire(key, max(1, int(ttl_seconds)))
        return value

    def incr_by(self, key: str, amount: int) -> int:
        return int(self._client.incrby(key, int(amount)))

    def incr_float(self, key: str, amount: float) -> float:
        return float(self._client.incrbyfloat(key, float(amount)))

    def keys(self, pattern: str) -> list[str]:
        return list(self._client.scan_iter(match=pattern, count=500))

    def zadd(self, key: str, member: str, score: float) -> None:
        self._client.zadd(key, {member: float(score)})

    def zrange_with_scores(self, key: str) -> list[tuple[str, float]]:
        return [(m, float(sc)) for m, sc in self._client.zrange(key, 0, -1, withscores=True)]

    def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return int(self._client.zremrangebyscore(key, min_score, max_score))

    def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        return int(self._client.zremrangebyrank(key, start, stop))

    def zcount(self, key: str, min_score: float, max_score: float) -> int:
        return int(self._client.zcount(key, min_score, max_score))

    def lpush(self, key: str, value: str) -> None:
        self._client.lpush(key, value)

    def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(self._client.lrange(key, start, stop))

    def sadd(self, key: str, *members: str) -> None:
        if members:
            self._client.sadd(key, *members)

    def smembers(self, key: str) -> set[str]:
        return set(self._client.smembers(key))


def backend_from_config(config: dict) -> CacheBackend:
    url = (config.get("REDIS_URL") or "").strip()
    if url:
        return RedisCacheBackend(url)
    return MemoryCacheBackend()


def user_key(user_id: int, *parts: object) -> str:
    return ":".join(["user", str(user_id), *map(str, parts)])


def asset_key(asset_id: int, *parts: object) -> str:
    return ":".join(["asset", str(asset_id), *map(str, parts)])


class CacheService:
    """
    JSON read-through cache with TTL presets. Read failures count as misses so
    callers fall back to the database.
    """

    TTL_SHORT = 300
    TTL_MEDIUM = 1800
    TTL_DEFAULT = 3600
    TTL_LONG = 86400

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend
        self._hits = 0
        self._misses = 0
        self._errors = 0

    def get(self, key: str) -> Any | None:
        try:
            value = self.backend.get_json(key)
        except redis.RedisError as e:
            self._errors += 1
            logger.warning("Cache get failed for %s: %s", key, e)
            value = None
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    def set(self, key: str, value: Any, ttl: int | None = TTL_DEFAULT) -> None:
        try:
            self.backend.set_json(key, value, ttl_seconds=ttl)
        except redis.RedisError as e:
            self._errors += 1
            logger.warning("Cache set failed for %s: %s", key, e)

    def set_permanent(self, key: str, value: Any) -> None:
        self.set(key, value, ttl=None)

    def delete(self, key: str) -> None:
        self.backend.delete(key)

    def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        return self.backend.delete(*keys) if keys else 0

    def delete_pattern(self, pattern: str) -> int:
        return self.delete_many(self.backend.keys(pattern))

    def exists(self, key: str) -> bool:
        return self.backend.exists(key)

    def get_ttl(self, key: str) -> int:
        return self.backend.ttl(key)

    def increment(self, key: str, amount: int = 1) -> int:
        return self.backend.incr_by(key, amount)

    def decrement(self, key: str, amount: int = 1) -> int:
        return self.backend.incr_by(key, -amount)

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                out[key] = value
        return out

    def set_many(self, items: dict[str, Any], ttl: int | None = TTL_DEFAULT) -> None:
        for key, value in items.items():
            self.set(key, value, ttl=ttl)

    def get_or_set(self, key: str, loader: Callable[[], Any], ttl: int | None = TTL_DEFAULT) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value, ttl=ttl)
        return value

    def warm(self, loaders: dict[str, Callable[[], Any]], ttl: int | None = TTL_DEFAULT) -> int:
        values = {}
        for key, loader in loaders.items():
            value = loader()
            if value is not None:
                values[key] = value
        self.set_many(values, ttl=ttl)
        logger.info("Cache warmed %s/%s keys", len(values), len(loaders))
        return len(values)

    def _invalidate_entity(self, base: str) -> int:
        # the entity key itself plus its children; "user:1" must not match "user:10"
        return self.delete_many([base, *self.backend.keys(f"{base}:*")])

    def invalidate_user(self, user_id: int) -> int:
        return self._invalidate_entity(user_key(user_id)) + self.delete_many([f"permissions:user:{user_id}"])

    def invalidate_asset(self, asset_id: int) -> int:
        return self._invalidate_entity(asset_key(asset_id))

    def invalidate_analytics(self) -> int:
        # computed metrics only; ingestion dedup keys under "analytics:" stay
        return self.delete_pattern("metrics:*")

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": self.backend.backend,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
        }


def init_cache(app: Flask) -> None:
    backend = backend_from_config(app.config)
    app.extensions["cache_backend"] = backend
    app.extensions["cache_service"] = CacheService(backend)
    app.logger.info("Cache backend: %s", backend.backend)


def get_cache_backend(app: Flask | None = None) -> CacheBackend:
    return (app or current_app).extensions["cache_backend"]


def get_cache(app: Flask | None = None) -> CacheService:
    return (app or current_app).extensions["cache_service"]
