"""Cache backends.

The cache is advisory: callers must survive a backend that is slow, empty or
down. Tag support is optional; ``flush_tags`` on a backend without it is a
no-op rather than a full flush, which would evict unrelated entries.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set, Tuple

logger = logging.getLogger(__name__)

_MISS = object()


class CacheBackend:
    name = 'base'
    supports_tags = False

    async def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, tags: Iterable[str] = ()) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def ping(self) -> None:
        """Raise when the backend is unusable."""
        await self.get('__berrycrud_ping__')

    async def remember(
        self,
        key: str,
        ttl: Optional[int],
        factory: Callable[[], Awaitable[Any]],
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value for ``key`` or compute, store and return it."""
        hit = await self.get(key, _MISS)
        if hit is not _MISS:
            return hit
        value = await factory()
        await self.set(key, value, ttl, tags if self.supports_tags else ())
        return value

    async def flush_tags(self, tags: Iterable[str]) -> bool:
        """Drop every entry stored under any of ``tags``; False when unsupported."""
        tags = [t for t in tags if t]
        if not self.supports_tags:
            logger.debug(f"Cache backend '{self.name}' has no tag support; skipping flush of {tags}")
            return False
        await self._flush_tags(tags)
        return True

    async def _flush_tags(self, tags) -> None:
        raise NotImplementedError


class MemoryCache(CacheBackend):
    """In-process TTL cache, safe to share between concurrent requests."""
    name = 'memory'

    def __init__(self, *, supports_tags: bool = True, default_ttl: Optional[int] = None):
        self.supports_tags = supports_tags
        self.default_ttl = default_ttl
        self._data: Dict[str, Tuple[Optional[float], Any]] = {}
        self._tags: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def _expires_at(self, ttl: Optional[int]) -> Optional[float]:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl is None or ttl <= 0:
            return None
        return time.monotonic() + ttl

    async def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if expires_at is not None and expires_at <= time.monotonic():
                self._data.pop(key, None)
                return default
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, tags: Iterable[str] = ()) -> None:
        with self._lock:
            self._data[key] = (self._expires_at(ttl), value)
            if self.supports_tags:
                for tag in tags:
                    self._tags.setdefault(tag, set()).add(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def _flush_tags(self, tags) -> None:
        with self._lock:
            for tag in tags:
                for key in self._tags.pop(tag, set()):
                    self._data.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._tags.clear()

    def __len__(self) -> int:
        return len(self._data)


class RedisCache(CacheBackend):
    """Redis-backed cache; values are stored as JSON, tags as Redis sets."""
    name = 'redis'
    supports_tags = True

    def __init__(self, client=None, *, url: str = '', prefix: str = 'berrycrud:'):
        if client is None:
            import redis.asyncio as aioredis
            client = aioredis.Redis.from_url(url, decode_responses=True)
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}tag:{tag}"

    async def ping(self) -> None:
        await self.client.ping()

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return default
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, tags: Iterable[str] = ()) -> None:
        payload = json.dumps(value, default=str)
        full_key = self._key(key)
        if ttl and ttl > 0:
            await self.client.set(full_key, payload, ex=int(ttl))
        else:
            await self.client.set(full_key, payload)
        for tag in tags:
            await self.client.sadd(self._tag_key(tag), full_key)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def _flush_tags(self, tags) -> None:
        for tag in tags:
            tag_key = self._tag_key(tag)
            members = await self.client.smembers(tag_key)
            if members:
                await self.client.delete(*members)
            await self.client.delete(tag_key)


def cache_from_settings(settings) -> Optional[CacheBackend]:
    """Build the configured backend, or None when caching is disabled."""
    cfg = settings.cache
    if not cfg.enabled:
        return None
    if cfg.url:
        return RedisCache(url=cfg.url)
    return MemoryCache(default_ttl=cfg.ttl)


__all__ = ['CacheBackend', 'MemoryCache', 'RedisCache', 'cache_from_settings']
