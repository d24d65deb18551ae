"""Durable key-value backends for the cache's persistence mirror.

:class:`~apikit.cache.cache.ApiCache` never talks to a concrete medium; it
writes JSON strings through the minimal :class:`Storage` protocol
(``get``/``set``/``delete``/``keys``).  Two backends ship with apikit:

* :class:`MemoryStorage` -- a ``dict`` with an optional byte quota.  Useful
  in tests and for processes that only want the quota/recovery behaviour.
* :class:`DiskCacheStorage` -- a :class:`diskcache.Cache` directory that
  survives process restarts.

Backends signal a full medium with
:class:`~apikit.exceptions.StorageQuotaExceededError` (which triggers the
cache's recovery ladder) and any other failure of the medium with
:class:`~apikit.exceptions.StorageError`.
"""

from __future__ import annotations

import errno
import sqlite3
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol, runtime_checkable

import diskcache

from apikit.exceptions import StorageError, StorageQuotaExceededError

DEFAULT_DISK_SIZE_LIMIT = 2**30
"""Default :class:`DiskCacheStorage` size limit (1 GiB, diskcache's default)."""

_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


@runtime_checkable
class Storage(Protocol):
    """Minimal durable key-value interface used by the persistence mirror."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> Iterable[str]: ...


class MemoryStorage:
    """In-process storage with an optional quota on the total encoded size.

    The size of a record is ``len(key) + len(value)`` in UTF-8 bytes.  A
    write that would push the total above ``quota_bytes`` raises
    :class:`~apikit.exceptions.StorageQuotaExceededError` and leaves the
    store unchanged.

    Args:
        quota_bytes: Maximum total size, or ``None`` for no limit.
    """

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: dict[str, str] = {}
        self._quota = quota_bytes

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._quota is not None:
            current = self.used_bytes() - self._record_size(key, self._data.get(key))
            if current + self._record_size(key, value) > self._quota:
                raise StorageQuotaExceededError(
                    f"Storage quota of {self._quota} bytes exceeded writing '{key}'"
                )
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def used_bytes(self) -> int:
        """Total encoded size of all records."""
        return sum(self._record_size(k, v) for k, v in self._data.items())

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    @staticmethod
    def _record_size(key: str, value: Optional[str]) -> int:
        if value is None:
            return 0
        return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class DiskCacheStorage:
    """Filesystem storage backed by a :class:`diskcache.Cache` directory.

    Records never expire on the diskcache side and culling is disabled, so
    the only way a write can fail for lack of space is an actual full disk
    or database, which is reported as
    :class:`~apikit.exceptions.StorageQuotaExceededError`.

    Args:
        directory: Directory holding the diskcache database.
        size_limit: Soft size limit handed to diskcache (bytes).

    Example::

        storage = DiskCacheStorage(get_cache_store_dir())
        cache = ApiCache(CacheConfig(persistent=True), storage=storage)
    """

    def __init__(
        self,
        directory: str | Path,
        size_limit: int = DEFAULT_DISK_SIZE_LIMIT,
    ) -> None:
        self._directory = Path(directory)
        try:
            self._cache: Optional[diskcache.Cache] = diskcache.Cache(
                str(self._directory),
                size_limit=size_limit,
                eviction_policy="none",
            )
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Cannot open cache store at {self._directory}: {exc}") from exc

    @property
    def directory(self) -> Path:
        return self._directory

    def get(self, key: str) -> Optional[str]:
        try:
            return self._open().get(key)
        except (OSError, sqlite3.Error) as exc:
            raise _translate(exc) from exc

    def set(self, key: str, value: str) -> None:
        try:
            self._open().set(key, value)
        except (OSError, sqlite3.Error) as exc:
            raise _translate(exc) from exc

    def delete(self, key: str) -> None:
        try:
            self._open().delete(key)
        except (OSError, sqlite3.Error) as exc:
            raise _translate(exc) from exc

    def keys(self) -> list[str]:
        try:
            return [k for k in self._open().iterkeys() if isinstance(k, str)]
        except (OSError, sqlite3.Error) as exc:
            raise _translate(exc) from exc

    def volume(self) -> int:
        """Estimated size of the store on disk, in bytes."""
        return self._open().volume()

    def close(self) -> None:
        """Close the underlying :class:`diskcache.Cache`.  Safe to call twice."""
        if self._cache is not None:
            self._cache.close()
            self._cache = None

    def _open(self) -> diskcache.Cache:
        if self._cache is None:
            raise StorageError(f"Cache store at {self._directory} is closed")
        return self._cache


def _translate(exc: Exception) -> StorageError:
    """Map a low-level medium failure onto the storage exception hierarchy."""
    if isinstance(exc, OSError) and exc.errno in _FULL_ERRNOS:
        return StorageQuotaExceededError(f"Storage medium is full: {exc}")
    if isinstance(exc, sqlite3.OperationalError) and "full" in str(exc).lower():
        return StorageQuotaExceededError(f"Storage medium is full: {exc}")
    return StorageError(f"Storage medium failed: {exc}")
