from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import redis

from app.ygops.cache import CacheBackend, get_cache_backend
from app.ygops.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


RATE_LIMITS: dict[str, RateLimitRule] = {
    "api": RateLimitRule(100, 3600),
    "upload": RateLimitRule(20, 3600),
    "message": RateLimitRule(10, 60),
    "login": RateLimitRule(5, 900),
    "password_reset": RateLimitRule(3, 3600),
    "webhook": RateLimitRule(1000, 3600),
    "events": RateLimitRule(600, 60),
    # login two-factor challenge, per user
    "2fa_challenge": RateLimitRule(10, 900),
    "2fa_verify": RateLimitRule(5, 900),
    "2fa_resend": RateLimitRule(3, 900),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds

    @property
    def retry_after(self) -> int:
        return max(0, int(self.reset_at - time.time()))


class RateLimiter:
    """
    Fixed-window counter per (action, identifier). Every call counts as a hit.
    Backend failures let the request through.
    """

    def __init__(self, backend: CacheBackend, rules: dict[str, RateLimitRule] | None = None) -> None:
        self.backend = backend
        self.rules = dict(rules or RATE_LIMITS)

    def _rule(self, action: str, limit: int | None, window_seconds: int | None) -> RateLimitRule:
        base = self.rules.get(action) or self.rules["api"]
        return RateLimitRule(limit or base.limit, window_seconds or base.window_seconds)

    @staticmethod
    def key(action: str, identifier: str) -> str:
        return f"ratelimit:{action}:{identifier}"

    def check(
        self,
        identifier: str,
        action: str = "api",
        *,
        limit: int | None = None,
        window_seconds: int | None = None,
    ) -> RateLimitResult:
        rule = self._rule(action, limit, window_seconds)
        key = self.key(action, identifier)
        try:
            count = self.backend.incr(key, ttl_seconds=rule.window_seconds)
            ttl = self.backend.ttl(key)
        except redis.RedisError as e:
            logger.error("Rate limiter backend error for %s (failing open): %s", key, e)
            return RateLimitResult(True, rule.limit, rule.limit, time.time() + rule.window_seconds)
        if ttl < 0:
            self.backend.expire(key, rule.window_seconds)
            ttl = rule.window_seconds
        return RateLimitResult(
            allowed=count <= rule.limit,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            reset_at=time.time() + ttl,
        )

    def check_or_raise(self, identifier: str, action: str = "api", **kwargs) -> RateLimitResult:
        result = self.check(identifier, action, **kwargs)
        if not result.allowed:
            raise RateLimitError(
                f"Rate limit exceeded. Try again in {result.retry_after} seconds.",
                retry_after=result.retry_after,
                details={"limit": result.limit, "action": action},
            )
        return result

    def peek(self, identifier: str, action: str = "api") -> int:
        raw = self.backend.get(self.key(action, identifier))
        return int(raw) if raw else 0

    def reset(self, identifier: str, action: str = "api") -> None:
        self.backend.delete(self.key(action, identifier))


def get_rate_limiter() -> RateLimiter:
    return RateLimiter(get_cache_backend())
