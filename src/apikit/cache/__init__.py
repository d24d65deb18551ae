"""Expiring response cache for apikit.

This package provides :class:`ApiCache`, a bounded in-memory cache of
time-limited entries with an optional durable mirror written through the
:class:`~apikit.cache.storage.Storage` protocol (:class:`MemoryStorage` or
the :mod:`diskcache`-backed :class:`DiskCacheStorage`).

The cache is independent of the request pipeline: callers consult it
before or after a call with a key from :func:`create_cache_key`, or wrap
a fetch function with :func:`cached`.
"""

from apikit.cache.cache import ApiCache, CacheStats
from apikit.cache.keys import cached, create_cache_key
from apikit.cache.storage import DiskCacheStorage, MemoryStorage, Storage

__all__ = [
    "ApiCache",
    "CacheStats",
    "DiskCacheStorage",
    "MemoryStorage",
    "Storage",
    "cached",
    "create_cache_key",
]
