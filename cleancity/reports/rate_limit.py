"""
CleanCity - Request Rate Limiting
Fixed-window per-client counters kept in a shared cache.

Counters live under ``rl:{scope}:{identity}`` and expire with the window,
so every API process sees the same counts.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError

from cleancity.core.config import Settings, settings as default_settings
from cleancity.core.constants import RATE_LIMIT_PREFIX
from cleancity.core.errors import RateLimitError

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    """Atomic increment-with-expiry key/value contract."""

    def incr(self, key: str, window_seconds: int) -> Optional[Tuple[int, int]]:
        """
        Increment ``key``; start its expiry if it has none.

        Returns:
            (count after increment, seconds until reset), or None when the
            store is unavailable
        """
        ...


class RedisCounterStore:
    """CounterStore backed by redis-py."""

    def __init__(self, client: Optional[Redis] = None, url: Optional[str] = None):
        self.client = client or Redis.from_url(url or default_settings.redis_url)

    def incr(self, key: str, window_seconds: int) -> Optional[Tuple[int, int]]:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = pipe.execute()
            # No expiry yet: this increment opened the window
            if ttl is None or ttl < 0:
                self.client.expire(key, window_seconds)
                ttl = window_seconds
        except RedisError as e:
            logger.warning(f"Rate limit store unavailable, allowing request: {e}")
            return None

        return int(count), int(ttl)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            return False


@dataclass(frozen=True)
class RateLimit:
    """Allowed requests per window."""
    requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitStatus:
    """Counter state after an allowed request."""
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }


class RateLimiter:
    """
    Per-scope request limiter.

    Scopes: ``api`` for every endpoint, ``report`` for report submission.
    """

    def __init__(
        self,
        store: CounterStore,
        limits: Optional[Dict[str, RateLimit]] = None,
        settings: Optional[Settings] = None
    ):
        self.store = store
        self.limits = limits or self.limits_from_settings(settings or default_settings)

    @staticmethod
    def limits_from_settings(settings: Settings) -> Dict[str, RateLimit]:
        return {
            "api": RateLimit(
                settings.rate_limit_api_requests,
                settings.rate_limit_api_window_seconds,
            ),
            "report": RateLimit(
                settings.rate_limit_report_requests,
                settings.rate_limit_report_window_seconds,
            ),
        }

    @staticmethod
    def key(scope: str, identity: str) -> str:
        return f"{RATE_LIMIT_PREFIX}:{scope}:{identity}"

    def check(self, scope: str, identity: str) -> Optional[RateLimitStatus]:
        """
        Count one request for ``identity`` in ``scope``.

        Returns:
            Counter state, or None if the store could not be reached

        Raises:
            RateLimitError: Limit exceeded; carries seconds until reset
        """
        limit = self.limits[scope]
        counted = self.store.incr(self.key(scope, identity), limit.window_seconds)
        if counted is None:
            return None

        count, ttl = counted
        if count > limit.requests:
            logger.warning(f"Rate limit exceeded: scope={scope} client={identity}")
            raise RateLimitError(retry_after=max(1, ttl), scope=scope)

        return RateLimitStatus(
            limit=limit.requests,
            remaining=max(0, limit.requests - count),
            reset_seconds=ttl,
        )


def client_ip(headers, fallback: Optional[str] = None) -> str:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return fallback or "unknown"
