"""Key-value cache layer.

The cache is advisory: callers go through ``BestEffortCache``, which never
lets a backend failure escape. Redis is the production backend; ``NullCache``
is the explicit variant used when no cache is configured.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from functools import lru_cache

import redis
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketplace.core.config import get_settings

logger = logging.getLogger(__name__)

TAG_PREFIX = "tag:"


def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
        retry=retry_if_exception_type(RedisError),
    )


class CacheBackend(ABC):
    """Raw cache protocol. Implementations may raise."""

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    def expire(self, key: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    def delete(self, *keys: str) -> int: ...

    @abstractmethod
    def tag(self, tag: str, key: str, ttl_seconds: int) -> None:
        """Register ``key`` as a member of ``tag``."""

    @abstractmethod
    def tag_members(self, tag: str) -> set[str]: ...

    @abstractmethod
    def ping(self) -> bool: ...


class RedisCache(CacheBackend):
    """Redis-backed cache with tenacity retries on transient Redis errors."""

    def __init__(self, client: redis.Redis) -> None:
        self.redis = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 0.5) -> "RedisCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    @redis_retry()
    def get(self, key: str) -> str | None:
        return self.redis.get(key)

    @redis_retry()
    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.redis.set(name=key, value=value, ex=ttl_seconds)

    @redis_retry()
    def expire(self, key: str, ttl_seconds: int) -> None:
        self.redis.expire(key, ttl_seconds)

    @redis_retry()
    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.redis.delete(*keys))

    @redis_retry()
    def tag(self, tag: str, key: str, ttl_seconds: int) -> None:
        tag_key = f"{TAG_PREFIX}{tag}"
        pipe = self.redis.pipeline()
        pipe.sadd(tag_key, key)
        # tag sets outlive their members by one TTL so stale members are still reachable
        pipe.expire(tag_key, ttl_seconds * 2)
        pipe.execute()

    @redis_retry()
    def tag_members(self, tag: str) -> set[str]:
        return set(self.redis.smembers(f"{TAG_PREFIX}{tag}"))

    def ping(self) -> bool:
        return bool(self.redis.ping())


class NullCache(CacheBackend):
    """Cache that stores nothing. Every read is a miss."""

    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    def expire(self, key: str, ttl_seconds: int) -> None:
        return None

    def delete(self, *keys: str) -> int:
        return 0

    def tag(self, tag: str, key: str, ttl_seconds: int) -> None:
        return None

    def tag_members(self, tag: str) -> set[str]:
        return set()

    def ping(self) -> bool:
        return True


class BestEffortCache:
    """Non-throwing façade over a cache backend.

    Every failure is logged at warning level and converted to a neutral
    result (a miss, or a no-op), so callers stay correct with the cache
    entirely unavailable.
    """

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend

    def get(self, key: str) -> str | None:
        try:
            return self.backend.get(key)
        except Exception as e:
            logger.warning("Cache GET failed for %s: %s", key, e)
            return None

    def set(self, key: str, value: str, ttl_seconds: int, tags: list[str] | None = None) -> None:
        try:
            self.backend.set(key, value, ttl_seconds)
            for tag in tags or []:
                self.backend.tag(tag, key, ttl_seconds)
        except Exception as e:
            logger.warning("Cache SET failed for %s: %s", key, e)

    def expire(self, key: str, ttl_seconds: int) -> None:
        try:
            self.backend.expire(key, ttl_seconds)
        except Exception as e:
            logger.warning("Cache EXPIRE failed for %s: %s", key, e)

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self.backend.delete(*keys)
            logger.debug("Invalidated cache keys: %s", ", ".join(keys))
        except Exception as e:
            logger.warning("Cache DEL failed for %s: %s", ", ".join(keys), e)

    def invalidate_tag(self, tag: str) -> None:
        """Delete every key registered under ``tag`` and the tag set itself."""
        try:
            members = self.backend.tag_members(tag)
            self.backend.delete(*members, f"{TAG_PREFIX}{tag}")
            logger.debug("Invalidated %d cache keys tagged %s", len(members), tag)
        except Exception as e:
            logger.warning("Cache tag invalidation failed for %s: %s", tag, e)

    def check_connection(self) -> dict:
        """Check if the cache backend answers.

        Returns:
            dict: Connection status with 'healthy' boolean and optional 'error' message.
        """
        try:
            return {"healthy": bool(self.backend.ping())}
        except Exception as e:
            return {"healthy": False, "error": str(e)}


def build_cache(redis_url: str, socket_timeout: float = 0.5) -> BestEffortCache:
    """Build the cache façade: Redis when a URL is configured, NullCache otherwise."""
    if not redis_url:
        logger.warning("REDIS_URL not configured. Cache layer disabled.")
        return BestEffortCache(NullCache())
    return BestEffortCache(RedisCache.from_url(redis_url, socket_timeout=socket_timeout))


@lru_cache
def get_cache() -> BestEffortCache:
    """Get cached cache façade built from settings."""
    settings = get_settings()
    return build_cache(settings.redis_url, settings.redis_socket_timeout)
