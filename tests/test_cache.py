from datetime import date

import pytest

from app.ygops.cache import CacheService, MemoryCacheBackend, asset_key, backend_from_config, user_key
from app.ygops.errors import RateLimitError
from app.ygops.modules.analytics.metrics_cache import (
    MetricsCache,
    daily_key,
    dashboard_key,
    scope_tags,
)
from app.ygops.ratelimit import RateLimiter, RateLimitRule


@pytest.fixture()
def backend():
    return MemoryCacheBackend()


def test_backend_from_config_defaults_to_memory():
    assert backend_from_config({}).backend == "memory"
    assert backend_from_config({"REDIS_URL": "  "}).backend == "memory"


def test_memory_backend_ttl_and_incr(backend):
    assert backend.ttl("missing") == -2
    backend.set("k", "v")
    assert backend.ttl("k") == -1

    assert backend.incr("n", ttl_seconds=60) == 1
    assert backend.incr("n", ttl_seconds=5) == 2
    # TTL is only applied on creation
    assert 55 <= backend.ttl("n") <= 60


def test_memory_backend_sorted_set(backend):
    for i, score in enumerate([5.0, 1.0, 3.0]):
        backend.zadd("z", f"m{i}", score)
    assert [m for m, _ in backend.zrange_with_scores("z")] == ["m1", "m2", "m0"]
    assert backend.zcount("z", 2, 10) == 2
    # keep only the newest two
    assert backend.zremrangebyrank("z", 0, -3) == 1
    assert [m for m, _ in backend.zrange_with_scores("z")] == ["m2", "m0"]


def test_memory_backend_keys_pattern(backend):
    backend.set("user:1:profile", "a")
    backend.set("user:2:profile", "b")
    backend.set("asset:1", "c")
    assert sorted(backend.keys("user:*")) == ["user:1:profile", "user:2:profile"]


def test_cache_service_get_or_set_and_stats(backend):
    cache = CacheService(backend)
    calls = []

    def loader():
        calls.append(1)
        return {"n": 1}

    assert cache.get_or_set("x", loader) == {"n": 1}
    assert cache.get_or_set("x", loader) == {"n": 1}
    assert len(calls) == 1

    stats = cache.stats()
    assert stats["backend"] == "memory"
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_cache_service_invalidate_user(backend):
    cache = CacheService(backend)
    cache.set("user:7:profile", {"a": 1})
    cache.set("permissions:user:7", ["x"])
    cache.set("user:8:profile", {"a": 2})
    assert cache.invalidate_user(7) == 2
    assert cache.get("user:8:profile") == {"a": 2}


def test_entity_invalidation_leaves_longer_ids_alone(backend):
    cache = CacheService(backend)
    cache.set_many(
        {
            user_key(1): {"id": 1},
            user_key(1, "profile"): {"id": 1},
            user_key(10, "profile"): {"id": 10},
            user_key(12): {"id": 12},
            "permissions:user:1": ["a"],
            "permissions:user:10": ["b"],
        }
    )
    assert cache.invalidate_user(1) == 3
    survivors = [user_key(10, "profile"), user_key(12), "permissions:user:10"]
    assert set(cache.get_many([user_key(1), user_key(1, "profile"), *survivors])) == set(survivors)

    cache.set(asset_key(3, "versions", "desc", "live"), [1])
    cache.set(asset_key(30, "versions", "desc", "live"), [2])
    assert cache.invalidate_asset(3) == 1
    assert cache.get(asset_key(30, "versions", "desc", "live")) == [2]


def test_warm_skips_missing_values(backend):
    cache = CacheService(backend)
    assert cache.warm({"a": lambda: {"n": 1}, "b": lambda: None}, ttl=60) == 1
    assert cache.get_many(["a", "b"]) == {"a": {"n": 1}}
    assert backend.ttl("a") > 0


def test_rate_limiter_blocks_after_limit(backend):
    limiter = RateLimiter(backend, {"api": RateLimitRule(2, 60)})
    assert limiter.check("1.2.3.4").allowed
    assert limiter.check("1.2.3.4").remaining == 0
    with pytest.raises(RateLimitError) as exc:
        limiter.check_or_raise("1.2.3.4")
    assert exc.value.status == 429
    assert exc.value.details["limit"] == 2

    limiter.reset("1.2.3.4")
    assert limiter.peek("1.2.3.4") == 0
    assert limiter.check("1.2.3.4").allowed


def test_metrics_cache_tag_invalidation(backend):
    mc = MetricsCache(CacheService(backend))
    k1 = daily_key(date(2024, 3, 1), ip_asset_id=12)
    k2 = dashboard_key("overview", {"range": "7d"})
    mc.set(k1, {"views": 3}, tags=["daily", *scope_tags(ip_asset_id=12)])
    mc.set(k2, {"views": 9}, tags=["dashboard"])

    assert mc.invalidate_for_scope(ip_asset_id=12) == 1
    assert mc.get(k1) is None
    assert mc.get(k2) == {"views": 9}

    assert mc.invalidate_all() >= 1
    assert mc.get(k2) is None


def test_metrics_cache_get_or_compute_skips_none(backend):
    mc = MetricsCache(CacheService(backend))
    assert mc.get_or_compute("metrics:x", lambda: None) is None
    assert not backend.exists("metrics:x")
    assert mc.get_or_compute("metrics:x", lambda: [1, 2], tags=["t"]) == [1, 2]
    assert "metrics:x" in backend.smembers("metrics:tag:t")


def test_dashboard_key_is_stable():
    assert dashboard_key("a", {"x": 1, "y": 2}) == dashboard_key("a", {"y": 2, "x": 1})
    assert dashboard_key("a") == "metrics:dashboard:a"
