"""Cache key derivation and transparent function-result caching.

Keys are kept human-readable (``GET /users?page=1&sort="name"``) rather than
hashed so that :meth:`~apikit.cache.ApiCache.invalidate_prefix` can drop a
whole resource family (``invalidate_prefix("GET /users")``).
"""

from __future__ import annotations

import functools
import inspect
import json
from typing import Any, Callable, Optional

from apikit.cache.cache import ApiCache
from apikit.models import CacheConfig

_MISSING = object()


def create_cache_key(
    url: str,
    params: Optional[dict[str, Any]] = None,
    method: Optional[str] = None,
) -> str:
    """Build a deterministic cache key from a request's identity.

    Parameters are sorted by name and their values JSON-encoded, so the same
    logical request always yields the same key regardless of parameter
    order.  ``None`` values are skipped, matching how the request pipeline
    builds query strings.

    Args:
        url: Request path or full URL.
        params: Query parameters.
        method: Optional HTTP method, upper-cased into the key prefix.

    Returns:
        The cache key.
    """
    key = f"{method.upper()} {url}" if method else url
    if params:
        parts = [
            f"{name}={json.dumps(params[name], sort_keys=True, default=str)}"
            for name in sorted(params)
            if params[name] is not None
        ]
        if parts:
            key += "?" + "&".join(parts)
    return key


def cached(
    func: Callable[..., Any],
    key_func: Optional[Callable[..., str]] = None,
    *,
    cache: Optional[ApiCache] = None,
    ttl: Optional[float] = None,
) -> Callable[..., Any]:
    """Wrap *func* so its results are cached per call signature.

    Works for plain and ``async`` functions.  On a hit the cached value is
    returned without calling *func*; on a miss *func* runs and its result,
    ``None`` included, is stored.  Exceptions are not cached.

    Args:
        func: The function to wrap.
        key_func: Derives the cache key from the call arguments.  Defaults to
            ``"<qualname>:<json(args, kwargs)>"``.
        cache: Cache to store results in.  Each wrapper gets its own isolated
            :class:`~apikit.cache.ApiCache` when omitted.
        ttl: Lifetime of cached results in seconds.

    Returns:
        The wrapped function, with the backing cache exposed as ``.cache``.

    Example::

        async def fetch_user(user_id: int) -> dict: ...

        fetch_user = cached(fetch_user, lambda user_id: f"user:{user_id}", ttl=60)
    """
    store = cache
    if store is None:
        store = ApiCache(CacheConfig(default_ttl=ttl) if ttl is not None else None)
    make_key = key_func or _signature_key(func)

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            key = make_key(*args, **kwargs)
            hit = store.get(key, _MISSING)
            if hit is not _MISSING:
                return hit
            result = await func(*args, **kwargs)
            store.set(key, result, ttl)
            return result

        async_wrapper.cache = store  # type: ignore[attr-defined]
        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        key = make_key(*args, **kwargs)
        hit = store.get(key, _MISSING)
        if hit is not _MISSING:
            return hit
        result = func(*args, **kwargs)
        store.set(key, result, ttl)
        return result

    wrapper.cache = store  # type: ignore[attr-defined]
    return wrapper


def _signature_key(func: Callable[..., Any]) -> Callable[..., str]:
    name = getattr(func, "__qualname__", repr(func))

    def make_key(*args: Any, **kwargs: Any) -> str:
        return f"{name}:{json.dumps([args, kwargs], sort_keys=True, default=repr)}"

    return make_key
