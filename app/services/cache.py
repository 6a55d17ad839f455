"""Bounded, TTL-limited lookup cache.

Holds values that are read often and written rarely (tenant display names,
contact emails). Callers always fall back to the loader on a miss, so the
cache can be empty, stale within its TTL, or disabled with ``max_size=0``.
"""
from __future__ import annotations

from collections.abc import Callable, Hashable
from threading import Lock
from typing import Any

from cachetools import TTLCache

from app.config import settings


class LookupCache:
    def __init__(self, max_size: int, ttl_seconds: float) -> None:
        self.enabled = max_size > 0 and ttl_seconds > 0
        self._cache: TTLCache[Hashable, Any] | None = (
            TTLCache(maxsize=max_size, ttl=ttl_seconds) if self.enabled else None
        )
        self._lock = Lock()

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        if self._cache is None:
            return loader()
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        value = loader()
        if value is not None:
            with self._lock:
                self._cache[key] = value
        return value

    def __len__(self) -> int:
        if self._cache is None:
            return 0
        with self._lock:
            return len(self._cache)


def build_lookup_cache() -> LookupCache:
    return LookupCache(
        max_size=settings.lookup_cache_max_size,
        ttl_seconds=settings.lookup_cache_ttl_seconds,
    )
