"""
Result cache.

Search result pages, filter facets, suggestion lists and popular-query
aggregates are cached as JSON under a TTL class. The backend is pluggable
(in-process LRU, Redis, or nothing). A backend that fails degrades to a miss:
search keeps working without the cache.

Entries are never invalidated on listing writes; they expire.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from redis.exceptions import RedisError

from core.clock import to_db, utcnow
from core.config import Settings
from core.errors import CacheUnavailable
from core.models import QueryDescriptor, ResultPage

log = logging.getLogger(__name__)


class NullBackend:
    """Always a miss."""

    name = "none"

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str, ttl: int) -> None:
        return None


class MemoryLRUBackend:
    """
    Thread-safe in-process LRU with per-entry expiry.

    Concurrent computations of the same key simply overwrite each other.
    """

    name = "memory"

    def __init__(self, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._data: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl, value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisBackend:
    name = "redis"

    def __init__(self, url: str, client: Optional[redis.Redis] = None, prefix: str = "bazar:"):
        self.prefix = prefix
        self.client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=False,
        )

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self.prefix + key)
        except (RedisError, OSError) as exc:
            raise CacheUnavailable(str(exc)) from exc

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self.client.setex(self.prefix + key, ttl, value)
        except (RedisError, OSError) as exc:
            raise CacheUnavailable(str(exc)) from exc


class ResultCache:
    def __init__(self, backend, settings: Settings):
        self.backend = backend
        self.settings = settings

    @staticmethod
    def search_key(descriptor: QueryDescriptor) -> str:
        return f"search:{descriptor.cache_key()}"

    def get(self, descriptor: QueryDescriptor) -> Optional[ResultPage]:
        payload = self.get_json(self.search_key(descriptor))
        if payload is None:
            return None
        try:
            return ResultPage.from_dict(payload["value"])
        except (KeyError, TypeError, ValueError):
            log.warning("Discarding malformed cache entry", extra={"key": self.search_key(descriptor)})
            return None

    def put(self, descriptor: QueryDescriptor, page: ResultPage, ttl_class: str = "search") -> None:
        self.set_json(self.search_key(descriptor), page.to_dict(), ttl_class)

    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Return the stored envelope `{"value", "computed_at", "ttl_class"}`,
        or None on a miss or a backend failure.
        """
        try:
            raw = self.backend.get(key)
        except CacheUnavailable as exc:
            log.warning("Cache get failed, treating as miss: %s", exc, extra={"key": key})
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def set_json(self, key: str, value: Any, ttl_class: str) -> None:
        envelope = {"value": value, "computed_at": to_db(utcnow()), "ttl_class": ttl_class}
        try:
            self.backend.set(key, json.dumps(envelope, default=str), self.settings.ttl_for(ttl_class))
        except CacheUnavailable as exc:
            log.warning("Cache set failed, skipping: %s", exc, extra={"key": key})

    def cached_json(self, key: str, ttl_class: str, compute: Callable[[], Any]) -> Any:
        """Return the cached value for `key` or compute, store and return it."""
        hit = self.get_json(key)
        if hit is not None and "value" in hit:
            return hit["value"]
        value = compute()
        self.set_json(key, value, ttl_class)
        return value


def build_cache(settings: Settings) -> ResultCache:
    if settings.cache_backend == "redis":
        backend = RedisBackend(settings.redis_url)
    elif settings.cache_backend == "none":
        backend = NullBackend()
    else:
        backend = MemoryLRUBackend(settings.cache_max_entries)
    log.info("Result cache backend: %s", backend.name)
    return ResultCache(backend, settings)


__all__ = ["NullBackend", "MemoryLRUBackend", "RedisBackend", "ResultCache", "build_cache"]
