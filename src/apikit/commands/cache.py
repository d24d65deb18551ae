"""Cache commands -- inspect and maintain a durable cache store.

Provides the ``apikit cache`` sub-command group.  Every command opens the
store as a persistent :class:`~apikit.cache.ApiCache` over a
:class:`~apikit.cache.DiskCacheStorage`, so the same load rules apply as
in an application: expired and corrupt records are dropped and the
configured ``max_entries`` is enforced.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from apikit.cache import ApiCache, DiskCacheStorage
from apikit.exceptions import StorageError
from apikit.exit_codes import EXIT_GENERIC_FAILURE, EXIT_NOT_FOUND
from apikit.models import CacheConfig
from apikit.output import error, get_output, info, success

cache_app = typer.Typer(no_args_is_help=True)

_MISSING = object()


def _dir_option() -> Optional[Path]:
    return typer.Option(
        None, "--dir", help="Store directory (default: <cache dir>/store)."
    )


def _prefix_option() -> Optional[str]:
    return typer.Option(
        None, "--prefix", help="Storage key prefix (default: from config)."
    )


def _cache_config(prefix: Optional[str]) -> CacheConfig:
    from apikit.config import resolve_config

    updates: dict[str, object] = {"persistent": True}
    if prefix is not None:
        updates["storage_prefix"] = prefix
    return resolve_config().cache.model_copy(update=updates)


def _open_store(directory: Optional[Path]) -> DiskCacheStorage:
    """Open the disk store at *directory*.

    Raises:
        typer.Exit: With code 1 if the store cannot be opened.
    """
    from apikit.config import get_cache_store_dir

    try:
        return DiskCacheStorage(directory or get_cache_store_dir())
    except StorageError as exc:
        error(str(exc))
        raise typer.Exit(code=EXIT_GENERIC_FAILURE) from None


def _open_cache(directory: Optional[Path], prefix: Optional[str]) -> ApiCache:
    """Open the store at *directory* as a persistent cache."""
    config = _cache_config(prefix)
    return ApiCache(config, storage=_open_store(directory))


@cache_app.command("stats")
def cache_stats(
    directory: Optional[Path] = _dir_option(),
    prefix: Optional[str] = _prefix_option(),
) -> None:
    """Show entry and record counts of the store.

    Example::

        apikit cache stats --json
    """
    with _open_cache(directory, prefix) as cache:
        stats = cache.get_stats().as_dict()
        storage = cache.storage
        if isinstance(storage, DiskCacheStorage):
            info(f"Store: {storage.directory}")
    get_output().print_table(
        ["metric", "value"],
        [[name, str(value)] for name, value in stats.items()],
        title="Cache statistics",
    )


@cache_app.command("keys")
def cache_keys(
    directory: Optional[Path] = _dir_option(),
    prefix: Optional[str] = _prefix_option(),
) -> None:
    """List the keys of live entries, one per line."""
    with _open_cache(directory, prefix) as cache:
        keys = sorted(cache.keys())
    output = get_output()
    for key in keys:
        output.print_data(key)
    info(f"{len(keys)} live entr{'y' if len(keys) == 1 else 'ies'}")


@cache_app.command("get")
def cache_get(
    key: str = typer.Argument(help="Cache key."),
    directory: Optional[Path] = _dir_option(),
    prefix: Optional[str] = _prefix_option(),
) -> None:
    """Print the value stored under KEY.

    Raises:
        typer.Exit: With code 4 if the key is absent or expired.
    """
    with _open_cache(directory, prefix) as cache:
        value = cache.get(key, _MISSING)
        etag = cache.get_etag(key)
    if value is _MISSING:
        error(f"No live entry for '{key}'")
        raise typer.Exit(code=EXIT_NOT_FOUND)
    if etag:
        info(f"ETag: {etag}")
    get_output().format_response(value)


@cache_app.command("delete")
def cache_delete(
    key: str = typer.Argument(help="Cache key."),
    directory: Optional[Path] = _dir_option(),
    prefix: Optional[str] = _prefix_option(),
) -> None:
    """Delete the entry stored under KEY.

    Raises:
        typer.Exit: With code 4 if the key is not present.
    """
    with _open_cache(directory, prefix) as cache:
        removed = cache.delete(key)
    if not removed:
        error(f"No entry for '{key}'")
        raise typer.Exit(code=EXIT_NOT_FOUND)
    success(f"Deleted '{key}'")


@cache_app.command("purge")
def cache_purge(
    directory: Optional[Path] = _dir_option(),
    prefix: Optional[str] = _prefix_option(),
) -> None:
    """Remove expired, corrupt and over-capacity records from the store."""
    config = _cache_config(prefix)
    storage = _open_store(directory)
    before = sum(1 for k in storage.keys() if k.startswith(config.storage_prefix))
    # Loading the cache already drops stale records; the sweep catches the rest.
    with ApiCache(config, storage=storage) as cache:
        cache.clear_expired()
        removed = before - cache.get_stats().size
    success(f"Removed {removed} stale record{'' if removed == 1 else 's'}")


@cache_app.command("invalidate")
def cache_invalidate(
    key_prefix: str = typer.Argument(help="Remove every entry whose key starts with this."),
    directory: Optional[Path] = _dir_option(),
    prefix: Optional[str] = _prefix_option(),
) -> None:
    """Remove all entries whose key starts with KEY_PREFIX.

    Example::

        apikit cache invalidate "GET /users"
    """
    with _open_cache(directory, prefix) as cache:
        removed = cache.invalidate_prefix(key_prefix)
    success(f"Invalidated {removed} entr{'y' if removed == 1 else 'ies'}")


@cache_app.command("clear")
def cache_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    directory: Optional[Path] = _dir_option(),
    prefix: Optional[str] = _prefix_option(),
) -> None:
    """Remove every entry under the prefix from the store."""
    if not yes:
        confirmed = typer.confirm("Remove all cached entries?")
        if not confirmed:
            info("Aborted.")
            raise typer.Exit()
    with _open_cache(directory, prefix) as cache:
        cache.clear()
    success("Cache cleared")
