"""
Process-local cache for read-mostly catalogs (jobs, evaluation parameters).

Nothing with booking or attempt state goes through here: capacity and round
progress are always read live inside the transaction that acts on them.
"""
from __future__ import annotations

import hashlib
import json
import os
import threading
from typing import Any, Callable

from cachetools import TTLCache


def make_cache_key(namespace: str, *, scope: list[str] | None = None, params: dict[str, Any] | None = None) -> str:
    ns = str(namespace or "").strip().upper()
    parts = [ns] + [str(s).strip() for s in (scope or []) if str(s or "").strip()]
    if params:
        blob = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
        parts.append(hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16])
    return ":".join(parts)


class CatalogCache:
    def __init__(self, ttl_seconds: int | None = None, max_items: int | None = None):
        ttl = int(ttl_seconds if ttl_seconds is not None else (os.getenv("CACHE_TTL_SECONDS", "60") or "60"))
        size = int(max_items if max_items is not None else (os.getenv("CACHE_MAX_ITEMS", "5000") or "5000"))
        self._cache: TTLCache = TTLCache(maxsize=max(100, size), ttl=max(1, min(3600, ttl)))
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            val = self._cache.get(key)
            if val is not None:
                self._hits += 1
                return val
            self._misses += 1
        # Built outside the lock; a concurrent builder for the same key just loses.
        computed = factory()
        if computed is not None:
            with self._lock:
                self._cache.setdefault(key, computed)
        return computed

    def invalidate_prefix(self, prefix: str) -> int:
        pfx = str(prefix or "").upper()
        if not pfx:
            return 0
        with self._lock:
            keys = [k for k in list(self._cache.keys()) if str(k).startswith(pfx)]
            for k in keys:
                self._cache.pop(k, None)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits * 100.0 / total, 2) if total else 0.0,
            }


_cache = CatalogCache()


def cache_get_or_set(key: str, factory: Callable[[], Any]) -> Any:
    return _cache.get_or_set(key, factory)


def cache_invalidate_prefix(prefix: str) -> int:
    return _cache.invalidate_prefix(prefix)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
