"""Canonical Pydantic models shared across all apikit modules.

This is the single source of truth for data shapes in the project.  The
models fall into three groups:

**Cache models** -- :class:`CacheConfig` and :class:`CacheEntry`, the latter
also being the JSON record written to durable storage.

**Request pipeline models** -- :class:`HTTPMethod`, :class:`RequestContext`,
:class:`RequestConfig`, :class:`ApiResponse` and :class:`ClientConfig`.

**Persisted configuration** -- :class:`ClientSettings` and
:class:`GlobalConfig`, serialised as JSON in the user's config directory
(see :mod:`apikit.config`).

All durations are seconds.
"""

from __future__ import annotations

import enum
from typing import Any, Awaitable, Callable, Literal, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from apikit.cancellation import CancellationToken

DEFAULT_TIMEOUT = 30.0
"""Timeout budget (seconds) used when neither the call nor the client sets one."""

ParamValue = Union[str, int, float, bool, None]


# --- Cache ---


class CacheConfig(BaseModel):
    """Settings that define the invariants of one :class:`~apikit.cache.ApiCache`.

    Immutable after construction.  ``eviction_policy`` selects what happens
    when ``max_entries`` is reached: ``"fifo"`` drops the entry created
    first (reads do not refresh it), ``"lru"`` drops the entry read or
    written least recently.
    """

    model_config = ConfigDict(frozen=True)

    default_ttl: float = Field(default=300.0, description="Default TTL in seconds")
    max_entries: int = Field(default=100, ge=0, description="Maximum live entries")
    storage_prefix: str = Field(
        default="api_cache_", description="Namespace prefix for durable keys"
    )
    persistent: bool = Field(
        default=False, description="Mirror entries to durable storage"
    )
    eviction_policy: Literal["fifo", "lru"] = Field(
        default="fifo", description="Capacity eviction policy: fifo or lru"
    )


class CacheEntry(BaseModel):
    """A single cached value with its timestamps and optional ETag.

    Also the durable encoding: :meth:`model_dump_json` produces the record
    stored under ``<storage_prefix><key>``.
    """

    value: Any = None
    created_at: float
    expires_at: float
    etag: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


# --- Request pipeline ---


class HTTPMethod(str, enum.Enum):
    """HTTP methods supported by the request pipeline."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class RequestContext(BaseModel):
    """Read-only description of the call handed to the pre-request interceptor."""

    model_config = ConfigDict(frozen=True)

    method: HTTPMethod
    path: str


class RequestConfig(BaseModel):
    """Per-call request options.

    ``retries``, ``cache`` and ``cache_ttl`` are carried for callers and
    interceptors; the pipeline itself does not act on them.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, ParamValue] = Field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = Field(default=None, description="Timeout in seconds")
    retries: Optional[int] = None
    cache: bool = False
    cache_ttl: Optional[float] = None
    cancel_token: Optional[CancellationToken] = None


class ApiResponse(BaseModel):
    """A completed, successful call.  Immutable."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Any = None
    status: int
    headers: httpx.Headers = Field(default_factory=httpx.Headers)
    ok: bool = True


RequestInterceptor = Callable[
    [RequestConfig, RequestContext], Union[RequestConfig, Awaitable[RequestConfig]]
]
ResponseInterceptor = Callable[[ApiResponse], Union[ApiResponse, Awaitable[ApiResponse]]]
ErrorHandler = Callable[[Any], None]


class ClientConfig(BaseModel):
    """Configuration of one :class:`~apikit.client.HttpClient`.

    ``server_base_url`` replaces ``base_url`` when ``running_on_server`` is
    set, for hosts that cannot resolve the client-relative base.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    base_url: str = ""
    server_base_url: Optional[str] = None
    default_headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=DEFAULT_TIMEOUT, description="Timeout in seconds")
    retries: int = 0
    on_request: Optional[RequestInterceptor] = None
    on_response: Optional[ResponseInterceptor] = None
    on_error: Optional[ErrorHandler] = None
    running_on_server: bool = False


# --- Persisted configuration ---


class ClientSettings(BaseModel):
    """The serialisable part of :class:`ClientConfig`, stored in :class:`GlobalConfig`."""

    base_url: str = Field(default="", description="Base URL for requests")
    server_base_url: Optional[str] = None
    default_headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=DEFAULT_TIMEOUT, description="Timeout in seconds")
    retries: int = Field(default=0, ge=0, description="Advisory retry count")


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/apikit/config.json``.

    Loaded and saved by :func:`~apikit.config.load_global_config` and
    :func:`~apikit.config.save_global_config`.  See
    :func:`~apikit.config.resolve_config` for the precedence chain.
    """

    client: ClientSettings = Field(default_factory=ClientSettings)
    cache: CacheConfig = Field(default_factory=CacheConfig)
