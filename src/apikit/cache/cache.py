"""Bounded, time-expiring key/value cache with an optional durable mirror.

:class:`ApiCache` keeps entries in memory and, when
:attr:`~apikit.models.CacheConfig.persistent` is set, mirrors every write to
a :class:`~apikit.cache.storage.Storage` backend as a JSON-encoded
:class:`~apikit.models.CacheEntry` under ``<storage_prefix><key>``.

Guarantees:

* never more than ``max_entries`` entries are held -- eviction runs inside
  :meth:`ApiCache.set` before the insertion;
* a value returned by :meth:`ApiCache.get` is never expired -- an expired
  entry is deleted as a side effect of the read;
* values are deep-copied on the way in and on the way out;
* the durable mirror never raises to the caller.  A full medium triggers a
  recovery ladder (purge expired records, drop the oldest quarter, wipe the
  namespace) with one retry after each step; if every step fails the write
  is logged and abandoned while the in-memory entry stands.

All public operations hold a re-entrant lock, so the read-check-evict-write
sequence of ``set`` and the durable retry ladder stay atomic when the cache
is shared between threads.  Concurrent writes to one key are last-write-wins.

See Also:
    :mod:`apikit.cache.keys` -- key derivation and the :func:`cached` wrapper.
"""

from __future__ import annotations

import copy
import logging
import math
import re
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from apikit.cache.storage import Storage
from apikit.exceptions import StorageError, StorageQuotaExceededError
from apikit.models import CacheConfig, CacheEntry

logger = logging.getLogger(__name__)

Matcher = Union[str, re.Pattern, Callable[[str], bool]]

_STORAGE_EVICT_FRACTION = 0.25


@dataclass
class CacheStats:
    """Live counters owned by an :class:`ApiCache`.

    The cache mutates this object in place, so a reference obtained from
    :meth:`ApiCache.get_stats` always reflects the current state.

    Attributes:
        hits: ``get`` calls that returned a stored value.
        misses: ``get`` calls on an absent or expired key.
        entries: Entries currently held in memory.
        size: Records in the durable mirror under this cache's prefix
            (``0`` without persistence).
    """

    hits: int = 0
    misses: int = 0
    entries: int = 0
    size: int = 0

    def as_dict(self) -> dict[str, int]:
        """Return a frozen snapshot of the counters."""
        return asdict(self)


class ApiCache:
    """In-memory expiring cache with capacity eviction and durable mirroring.

    Args:
        config: Cache settings.  Defaults to :class:`~apikit.models.CacheConfig`.
        storage: Durable backend used when ``config.persistent`` is set.  When
            omitted, a :class:`~apikit.cache.storage.DiskCacheStorage` under
            the user cache directory is opened.
        clock: Source of the current time in seconds.  Injectable so tests
            can simulate the passage of time.

    Example::

        cache = ApiCache(CacheConfig(default_ttl=60, max_entries=500))
        cache.set("GET /users?page=1", users, etag='"abc"')
        users = cache.get("GET /users?page=1")
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        storage: Optional[Storage] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._stats = CacheStats()
        self._lock = threading.RLock()
        self._storage: Optional[Storage] = None

        if self._config.persistent:
            self._storage = storage if storage is not None else _open_default_storage()
            if self._storage is not None:
                self._load_from_storage()

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def storage(self) -> Optional[Storage]:
        """The durable backend, or ``None`` when persistence is off."""
        return self._storage

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    def get(self, key: str, default: Any = None) -> Any:
        """Return a copy of the value stored under *key*.

        Counts a hit, or a miss when the key is absent or expired (an
        expired entry is deleted).

        Args:
            key: Cache key.
            default: Returned on a miss.

        Returns:
            A deep copy of the cached value, or *default*.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return default

            if entry.is_expired(self._clock()):
                self.delete(key)
                self._stats.misses += 1
                return default

            if self._config.eviction_policy == "lru":
                self._entries.move_to_end(key)
            self._stats.hits += 1
            return copy.deepcopy(entry.value)

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        etag: Optional[str] = None,
    ) -> None:
        """Store *value* under *key* for *ttl* seconds.

        When the cache is full and *key* is new, exactly one entry is evicted
        first.  A zero TTL expires at the current instant and a negative TTL
        is already expired.

        Args:
            key: Cache key.
            value: Value to store (deep-copied).
            ttl: Lifetime in seconds; ``None`` uses ``default_ttl``.
            etag: Optional validator for conditional revalidation.
        """
        with self._lock:
            if self._config.max_entries == 0:
                logger.debug("Cache capacity is 0, not storing '%s'", key)
                return

            now = self._clock()
            lifetime = self._config.default_ttl if ttl is None else ttl
            entry = CacheEntry(
                value=copy.deepcopy(value),
                created_at=now,
                expires_at=now + lifetime,
                etag=etag,
            )

            if key not in self._entries and len(self._entries) >= self._config.max_entries:
                self._evict_one()

            # Re-inserting keeps the OrderedDict in write order.
            self._entries.pop(key, None)
            self._entries[key] = entry
            self._stats.entries = len(self._entries)

            if self._storage is not None:
                self._save_to_storage(key, entry)
                self._refresh_size()

    def has(self, key: str) -> bool:
        """Whether *key* holds an unexpired entry.  Does not count hits or misses."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self.delete(key)
                return False
            return True

    def delete(self, key: str) -> bool:
        """Remove *key* from memory and from the durable mirror.

        Returns:
            ``True`` if an in-memory entry was removed.
        """
        with self._lock:
            if self._entries.pop(key, None) is None:
                return False
            self._stats.entries = len(self._entries)
            if self._storage is not None:
                self._remove_from_storage(key)
                self._refresh_size()
            return True

    def clear(self) -> None:
        """Remove every entry, wipe the durable namespace and reset all counters."""
        with self._lock:
            self._entries.clear()
            self._stats.hits = 0
            self._stats.misses = 0
            self._stats.entries = 0
            if self._storage is not None:
                self._clear_storage()
                self._refresh_size()

    def clear_expired(self) -> int:
        """Sweep expired entries from memory and the durable mirror.

        Returns:
            The number of in-memory entries removed.
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
                if self._storage is not None:
                    self._remove_from_storage(key)
            self._stats.entries = len(self._entries)
            if self._storage is not None and expired:
                self._refresh_size()
            return len(expired)

    def invalidate_pattern(self, matcher: Matcher) -> int:
        """Delete every key accepted by *matcher*.

        Args:
            matcher: A predicate over keys, a regular expression string, or a
                compiled pattern (``search`` semantics).

        Returns:
            The number of entries removed.
        """
        predicate = _as_predicate(matcher)
        with self._lock:
            targets = [k for k in self._entries if predicate(k)]
            for key in targets:
                self.delete(key)
            return len(targets)

    def invalidate_prefix(self, prefix: str) -> int:
        """Delete every key starting with *prefix* (matched literally)."""
        return self.invalidate_pattern(re.compile("^" + re.escape(prefix)))

    def get_etag(self, key: str) -> Optional[str]:
        """Return the ETag stored with *key*, even if the entry has expired."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.etag if entry is not None else None

    def get_stats(self) -> CacheStats:
        """Return the live :class:`CacheStats` object."""
        return self._stats

    def keys(self) -> list[str]:
        """Keys of unexpired entries, oldest write first.  No side effects."""
        with self._lock:
            now = self._clock()
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def close(self) -> None:
        """Close the durable backend if it supports closing."""
        close = getattr(self._storage, "close", None)
        if callable(close):
            close()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __len__(self) -> int:
        return len(self._entries)

    def __enter__(self) -> ApiCache:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Eviction
    # ------------------------------------------------------------------ #

    def _evict_one(self) -> None:
        """Drop the single entry chosen by the eviction policy."""
        if not self._entries:
            return
        if self._config.eviction_policy == "lru":
            victim = next(iter(self._entries))
        else:
            # Ties keep write order: min() returns the first smallest.
            victim = min(self._entries, key=lambda k: self._entries[k].created_at)
        logger.debug("Evicting '%s' (%s)", victim, self._config.eviction_policy)
        self.delete(victim)

    # ------------------------------------------------------------------ #
    # Durable mirror
    # ------------------------------------------------------------------ #

    def _storage_key(self, key: str) -> str:
        return self._config.storage_prefix + key

    def _prefixed_keys(self) -> list[str]:
        assert self._storage is not None
        prefix = self._config.storage_prefix
        return [k for k in self._storage.keys() if k.startswith(prefix)]

    def _read_record(self, storage_key: str) -> Optional[CacheEntry]:
        """Decode one durable record; corrupt records are removed."""
        assert self._storage is not None
        raw = self._storage.get(storage_key)
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding corrupt cache record '%s'", storage_key)
            self._storage.delete(storage_key)
            return None

    def _load_from_storage(self) -> None:
        """Populate memory from the durable namespace, newest ``max_entries`` kept."""
        assert self._storage is not None
        prefix = self._config.storage_prefix
        now = self._clock()
        loaded: list[tuple[str, CacheEntry]] = []
        try:
            for storage_key in self._prefixed_keys():
                entry = self._read_record(storage_key)
                if entry is None:
                    continue
                if entry.is_expired(now):
                    self._storage.delete(storage_key)
                    continue
                loaded.append((storage_key[len(prefix):], entry))
        except (StorageError, OSError) as exc:
            logger.warning("Failed to load cache from storage: %s", exc)

        loaded.sort(key=lambda item: item[1].created_at)
        overflow = len(loaded) - self._config.max_entries
        if overflow > 0:
            for key, _ in loaded[:overflow]:
                self._remove_from_storage(key)
            loaded = loaded[overflow:]

        self._entries.update(loaded)
        self._stats.entries = len(self._entries)
        self._refresh_size()

    def _save_to_storage(self, key: str, entry: CacheEntry) -> None:
        assert self._storage is not None
        try:
            data = entry.model_dump_json()
        except PydanticSerializationError as exc:
            logger.warning("Cannot encode cache entry '%s' for storage: %s", key, exc)
            return

        storage_key = self._storage_key(key)
        try:
            self._storage.set(storage_key, data)
        except StorageQuotaExceededError:
            logger.warning("Storage quota exceeded, attempting cleanup...")
            self._recover_and_save(key, storage_key, data)
        except (StorageError, OSError) as exc:
            logger.warning("Failed to save cache entry '%s' to storage: %s", key, exc)

    def _recover_and_save(self, key: str, storage_key: str, data: str) -> None:
        """Free durable space step by step, retrying the write after each step."""
        assert self._storage is not None
        steps: list[tuple[str, Callable[[], int]]] = [
            ("expired", lambda: self._clear_expired_from_storage(keep=key)),
            ("oldest", lambda: self._evict_oldest_from_storage(_STORAGE_EVICT_FRACTION, keep=key)),
            ("all", self._clear_storage),
        ]
        for name, step in steps:
            if name == "all":
                logger.warning("Storage still full, clearing all cache entries")
            freed = step()
            logger.debug("Storage cleanup (%s) freed %d record(s)", name, freed)
            try:
                self._storage.set(storage_key, data)
                return
            except StorageQuotaExceededError:
                continue
            except (StorageError, OSError) as exc:
                logger.warning("Failed to save cache entry '%s' to storage: %s", key, exc)
                return
        logger.error("Storage quota exceeded, cache entry '%s' will not persist", key)

    def _clear_expired_from_storage(self, keep: Optional[str] = None) -> int:
        """Remove expired durable records and their in-memory entries.

        The in-memory entry for *keep* survives; its durable record is stale
        and about to be rewritten.
        """
        assert self._storage is not None
        prefix = self._config.storage_prefix
        now = self._clock()
        cleared = 0
        try:
            for storage_key in self._prefixed_keys():
                entry = self._read_record(storage_key)
                if entry is None:
                    continue
                if entry.is_expired(now):
                    self._storage.delete(storage_key)
                    key = storage_key[len(prefix):]
                    if key != keep:
                        self._entries.pop(key, None)
                    cleared += 1
        except (StorageError, OSError) as exc:
            logger.warning("Failed to clear expired entries from storage: %s", exc)
        self._stats.entries = len(self._entries)
        return cleared

    def _evict_oldest_from_storage(self, fraction: float, keep: Optional[str] = None) -> int:
        """Remove the oldest *fraction* (at least one) of durable records.

        The matching in-memory entries go too, except *keep* -- the key whose
        write is being retried.
        """
        assert self._storage is not None
        prefix = self._config.storage_prefix
        try:
            records: list[tuple[str, float]] = []
            for storage_key in self._prefixed_keys():
                raw = self._storage.get(storage_key)
                if raw is None:
                    continue
                try:
                    created_at = CacheEntry.model_validate_json(raw).created_at
                except ValidationError:
                    created_at = 0.0
                records.append((storage_key, created_at))

            records.sort(key=lambda item: item[1])
            count = min(len(records), max(1, math.floor(len(records) * fraction)))
            for storage_key, _ in records[:count]:
                self._storage.delete(storage_key)
                key = storage_key[len(prefix):]
                if key != keep:
                    self._entries.pop(key, None)
        except (StorageError, OSError) as exc:
            logger.warning("Failed to evict entries from storage: %s", exc)
            return 0
        self._stats.entries = len(self._entries)
        return count

    def _remove_from_storage(self, key: str) -> None:
        assert self._storage is not None
        try:
            self._storage.delete(self._storage_key(key))
        except (StorageError, OSError) as exc:
            logger.warning("Failed to remove cache entry '%s' from storage: %s", key, exc)

    def _clear_storage(self) -> int:
        assert self._storage is not None
        try:
            keys = self._prefixed_keys()
            for storage_key in keys:
                self._storage.delete(storage_key)
        except (StorageError, OSError) as exc:
            logger.warning("Failed to clear cache storage: %s", exc)
            return 0
        return len(keys)

    def _refresh_size(self) -> None:
        if self._storage is None:
            self._stats.size = 0
            return
        try:
            self._stats.size = len(self._prefixed_keys())
        except (StorageError, OSError) as exc:
            logger.debug("Cannot count storage records: %s", exc)


def _as_predicate(matcher: Matcher) -> Callable[[str], bool]:
    if isinstance(matcher, str):
        return re.compile(matcher).search  # type: ignore[return-value]
    if isinstance(matcher, re.Pattern):
        return matcher.search  # type: ignore[return-value]
    if callable(matcher):
        return matcher
    raise TypeError(f"Unsupported matcher type: {type(matcher).__name__}")


def _open_default_storage() -> Optional[Storage]:
    """Open the user-level disk store; ``None`` (persistence off) if it fails."""
    from apikit.cache.storage import DiskCacheStorage
    from apikit.config import get_cache_store_dir

    try:
        return DiskCacheStorage(get_cache_store_dir())
    except (StorageError, OSError) as exc:
        logger.warning("Persistent cache unavailable, continuing in memory: %s", exc)
        return None
