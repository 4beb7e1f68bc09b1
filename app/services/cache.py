import threading
import time
from abc import ABC, abstractmethod

import redis


class Cache(ABC):
    """Minimal TTL key-value store shared by background components."""

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store value only when key is absent. Returns True when stored."""

    @abstractmethod
    def delete(self, key: str) -> None: ...


class InMemoryCache(Cache):
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._items: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live_value(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._items[key]
            return None
        return value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live_value(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._items[key] = (value, self._clock() + ttl_seconds)

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._items[key] = (value, self._clock() + ttl_seconds)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class RedisCache(Cache):
    def __init__(self, url: str, prefix: str = "topup:"):
        self._client = redis.Redis.from_url(url, encoding="utf-8", decode_responses=True)
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> str | None:
        return self._client.get(self._key(key))

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._client.setex(self._key(key), ttl_seconds, value)

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self._client.set(self._key(key), value, ex=ttl_seconds, nx=True))

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))


_default_cache: Cache | None = None
_default_cache_lock = threading.Lock()


def build_cache(url: str) -> Cache:
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisCache(url)
    if url:
        raise ValueError(f"Unsupported CACHE_URL scheme: {url.split(':', 1)[0]}")
    return InMemoryCache()


def get_cache() -> Cache:
    """Process-wide cache built from CACHE_URL on first use."""
    global _default_cache
    from app.config import settings

    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = build_cache(settings.CACHE_URL)
        return _default_cache
