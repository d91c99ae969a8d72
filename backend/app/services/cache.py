"""Key/value cache holding member sessions and socket resume tokens."""

from __future__ import annotations

import logging
import threading
import time
from functools import lru_cache
from typing import Protocol

from redis import Redis
from redis.exceptions import RedisError

from app.config import get_settings

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Protocol describing cache operations we rely on."""

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a key/value pair with a time-to-live in seconds."""

    def get(self, key: str) -> str | None:
        """Retrieve a cached value if it exists and has not expired."""

    def delete(self, key: str) -> None:
        """Remove a cached entry, ignoring missing values."""

    def pop(self, key: str) -> str | None:
        """Read and remove an entry in one step."""


class _InMemoryCache:
    """Process-local cache used when no Redis URL is configured."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at: float | None = None
        if ttl_seconds > 0:
            expires_at = time.time() + ttl_seconds
        with self._lock:
            self._store[key] = (value, expires_at)

    def _read(self, key: str, *, remove: bool) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= time.time():
                self._store.pop(key, None)
                return None
            if remove:
                self._store.pop(key, None)
            return value

    def get(self, key: str) -> str | None:
        return self._read(key, remove=False)

    def pop(self, key: str) -> str | None:
        return self._read(key, remove=True)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class _RedisCache:
    """Thin Redis wrapper adhering to :class:`CacheBackend`."""

    def __init__(self, url: str) -> None:
        self._client = Redis.from_url(url, decode_responses=True)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._client.setex(key, ttl_seconds, value)
        else:
            self._client.set(key, value)

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def pop(self, key: str) -> str | None:
        return self._client.getdel(key)

    def delete(self, key: str) -> None:
        self._client.delete(key)


@lru_cache(maxsize=1)
def get_cache() -> CacheBackend:
    """Return the configured cache backend, defaulting to Redis when a URL is set."""

    settings = get_settings()
    cache_url = settings.auth_cache_url or settings.realtime_redis_url
    if cache_url:
        try:
            return _RedisCache(cache_url)
        except (RedisError, ValueError):
            logger.warning("Invalid cache URL, using in-process cache", exc_info=True)
    return _InMemoryCache()
