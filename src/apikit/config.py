"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles the persistent configuration of apikit:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.apikit/`` on macOS and Windows.  See :func:`get_config_dir`,
  :func:`get_cache_dir` and :func:`get_data_dir`.
* **Global config** -- a single :class:`~apikit.models.GlobalConfig` JSON
  file holding the default client settings and cache settings.
* **Precedence resolution** -- :func:`resolve_config` merges CLI flags,
  environment variables and the global config file into the effective
  configuration, and :func:`build_client_config` turns the resulting
  :class:`~apikit.models.ClientSettings` into a
  :class:`~apikit.models.ClientConfig`.

File writes go through :func:`_atomic_write` (temp file, then rename) so a
crash never leaves a truncated config behind.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from apikit.exceptions import ConfigError
from apikit.models import ClientConfig, ClientSettings, GlobalConfig

_APP_NAME = "apikit"
_CONFIG_FILENAME = "config.json"

ENV_BASE_URL = "APIKIT_BASE_URL"
ENV_TIMEOUT = "APIKIT_TIMEOUT"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    system = platform.system()
    return system == "Linux" or system.endswith("BSD")


def _app_dir(env_var: str, xdg_default: tuple[str, ...], fallback: tuple[str, ...]) -> Path:
    """Resolve and create one of the per-user apikit directories.

    On XDG platforms the directory is ``$<env_var>/apikit`` (or
    ``~/<xdg_default>/apikit`` when the variable is unset); elsewhere it is
    ``~/.apikit/<fallback>``.
    """
    if _is_xdg_platform():
        env_value = os.environ.get(env_var, "")
        base = Path(env_value) if env_value else Path.home().joinpath(*xdg_default)
        path = base / _APP_NAME
    else:
        path = Path.home().joinpath(f".{_APP_NAME}", *fallback)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/apikit/`` (default ``~/.config/apikit/``).
    On macOS/Windows: ``~/.apikit/``.
    """
    return _app_dir("XDG_CONFIG_HOME", (".config",), ())


def get_cache_dir() -> Path:
    """Return the cache directory, creating it if necessary.

    Holds the default durable cache store (``<cache_dir>/store``).  Its
    contents can be deleted at any time.

    On Linux/BSD: ``$XDG_CACHE_HOME/apikit/`` (default ``~/.cache/apikit/``).
    On macOS/Windows: ``~/.apikit/cache/``.
    """
    return _app_dir("XDG_CACHE_HOME", (".cache",), ("cache",))


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/apikit/`` (default ``~/.local/share/apikit/``).
    On macOS/Windows: ``~/.apikit/logs/``.
    """
    return _app_dir("XDG_DATA_HOME", (".local", "share"), ("logs",))


def get_cache_store_dir() -> Path:
    """Directory of the default :class:`~apikit.cache.DiskCacheStorage` store."""
    return get_cache_dir() / "store"


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write *data* to *path* via a sibling temp file and :func:`os.replace`.

    The temp file is removed if anything fails before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile(
        mode="w",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
        encoding="utf-8",
    )
    try:
        with tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, path)
    except BaseException:
        try:
            os.unlink(tmp.name)
        except OSError:
            pass
        raise


# --- Global config ---


def global_config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_global_config() -> GlobalConfig:
    """Load the global configuration from the config directory.

    Returns:
        The deserialised :class:`~apikit.models.GlobalConfig`, or a default
        instance when no file exists yet.

    Raises:
        ConfigError: If the file contains invalid JSON or fails validation.
    """
    path = global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        return GlobalConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Persist *config* atomically to the config directory."""
    data = config.model_dump(mode="json")
    _atomic_write(global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Precedence resolution ---


def resolve_config(
    cli_base_url: Optional[str] = None,
    cli_timeout: Optional[float] = None,
) -> GlobalConfig:
    """Resolve the effective configuration.

    Precedence (high to low):
        1. CLI flags (``cli_base_url``, ``cli_timeout``)
        2. Environment variables (``APIKIT_BASE_URL``, ``APIKIT_TIMEOUT``)
        3. User config (``~/.config/apikit/config.json``)
        4. Defaults

    Returns:
        A :class:`~apikit.models.GlobalConfig` with the overrides applied.
        The file on disk is not modified.

    Raises:
        ConfigError: If the config file is invalid or ``APIKIT_TIMEOUT`` is
            not a positive number.
    """
    config = load_global_config()
    updates: dict[str, Any] = {}

    env_base_url = os.environ.get(ENV_BASE_URL)
    if cli_base_url is not None:
        updates["base_url"] = cli_base_url
    elif env_base_url:
        updates["base_url"] = env_base_url

    env_timeout = os.environ.get(ENV_TIMEOUT)
    if cli_timeout is not None:
        updates["timeout"] = cli_timeout
    elif env_timeout:
        updates["timeout"] = _parse_timeout(env_timeout)

    if updates:
        config = config.model_copy(
            update={"client": config.client.model_copy(update=updates)}
        )
    return config


def build_client_config(settings: ClientSettings, **hooks: Any) -> ClientConfig:
    """Create a :class:`~apikit.models.ClientConfig` from persisted settings.

    Args:
        settings: The serialisable client settings.
        **hooks: Non-serialisable fields such as ``on_request``,
            ``on_response``, ``on_error`` or ``running_on_server``.
    """
    return ClientConfig(**settings.model_dump(), **hooks)


def _parse_timeout(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{ENV_TIMEOUT} must be a number of seconds, got '{raw}'") from None
    if value <= 0:
        raise ConfigError(f"{ENV_TIMEOUT} must be positive, got '{raw}'")
    return value
