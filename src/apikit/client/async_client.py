"""Asynchronous HTTP client -- the request pipeline.

This module provides :class:`HttpClient`, a thin layer over
:class:`httpx.AsyncClient` that runs every call through the same sequence:

1. build the :class:`~apikit.models.RequestContext`;
2. run the ``on_request`` interceptor, whose result replaces the config;
3. resolve the URL against ``base_url`` (or ``server_base_url`` when
   running on a server) and append the query parameters;
4. merge default and per-call headers (per-call wins);
5. race the network call against the timeout budget and the caller's
   :class:`~apikit.cancellation.CancellationToken`;
6. decode the body by content type;
7. map non-2xx statuses and transport failures onto
   :class:`~apikit.exceptions.ApiError`, notifying ``on_error`` once;
8. run the ``on_response`` interceptor on success.

Caller cancellation raises :class:`~apikit.exceptions.RequestCancelledError`
and bypasses ``on_error``.

See Also:
    :mod:`apikit.client.response` for body decoding and error messages.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Union

import httpx
from pydantic import TypeAdapter

from apikit.cancellation import CancellationToken
from apikit.client.interceptors import InterceptorChain
from apikit.client.response import decode_body, error_details
from apikit.client.state import RequestState
from apikit.exceptions import NETWORK_ERROR, TIMEOUT, ApiError, RequestCancelledError
from apikit.models import (
    ApiResponse,
    ClientConfig,
    HTTPMethod,
    ParamValue,
    RequestConfig,
    RequestContext,
)
from apikit.output import get_output

DEFAULT_HEADERS: dict[str, str] = {"Content-Type": "application/json"}
"""Headers every client sends unless overridden."""

AUTH_SCHEMES = ("Bearer", "Basic")

_json_body = TypeAdapter(Any)


class HttpClient:
    """Asynchronous HTTP client for API calls.

    Can be used as an async context manager, or created directly and
    released with :meth:`aclose`.  The underlying :class:`httpx.AsyncClient`
    is created on first use unless one is supplied, in which case the
    caller keeps ownership of it.

    Args:
        config: Client configuration.  Defaults to an empty base URL and a
            30 second timeout.
        http_client: Optional pre-built :class:`httpx.AsyncClient` (for
            example one with an :class:`httpx.MockTransport`).

    Example::

        async with HttpClient(ClientConfig(base_url="https://api.example.com")) as api:
            users = (await api.get("/users", RequestConfig(params={"page": 1}))).data
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = (config or ClientConfig()).model_copy()
        self._default_headers = httpx.Headers(DEFAULT_HEADERS)
        self._default_headers.update(self._config.default_headers)
        self._interceptors = InterceptorChain(
            self._config.on_request,
            self._config.on_response,
            self._config.on_error,
        )
        self._client = http_client
        self._owns_client = http_client is None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> HttpClient:
        self._http()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying :class:`httpx.AsyncClient` if this client created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def default_headers(self) -> dict[str, str]:
        """A copy of the headers sent with every request."""
        return dict(self._default_headers.items())

    @property
    def base_url(self) -> str:
        """The base URL requests are resolved against in this environment."""
        if self._config.running_on_server and self._config.server_base_url:
            return self._config.server_base_url
        return self._config.base_url

    def set_base_url(self, url: str) -> None:
        self._config.base_url = url

    def set_default_headers(self, headers: dict[str, str]) -> None:
        """Merge *headers* into the default headers (case-insensitive)."""
        self._default_headers.update(headers)

    def set_auth_token(self, token: str, scheme: str = "Bearer") -> None:
        """Send ``Authorization: <scheme> <token>`` with every request.

        Args:
            token: The credential.
            scheme: ``"Bearer"`` or ``"Basic"``.

        Raises:
            ValueError: If *scheme* is not supported.
        """
        if scheme not in AUTH_SCHEMES:
            raise ValueError(f"Unsupported auth scheme '{scheme}', expected one of {AUTH_SCHEMES}")
        self.set_default_headers({"Authorization": f"{scheme} {token}"})

    def clear_auth_token(self) -> None:
        self._default_headers.pop("Authorization", None)

    # ------------------------------------------------------------------ #
    # Public request methods
    # ------------------------------------------------------------------ #

    async def get(self, path: str, config: Optional[RequestConfig] = None) -> ApiResponse:
        return await self.request(HTTPMethod.GET, path, config)

    async def post(
        self, path: str, body: Any = None, config: Optional[RequestConfig] = None
    ) -> ApiResponse:
        return await self.request(HTTPMethod.POST, path, _with_body(config, body))

    async def put(
        self, path: str, body: Any = None, config: Optional[RequestConfig] = None
    ) -> ApiResponse:
        return await self.request(HTTPMethod.PUT, path, _with_body(config, body))

    async def patch(
        self, path: str, body: Any = None, config: Optional[RequestConfig] = None
    ) -> ApiResponse:
        return await self.request(HTTPMethod.PATCH, path, _with_body(config, body))

    async def delete(self, path: str, config: Optional[RequestConfig] = None) -> ApiResponse:
        return await self.request(HTTPMethod.DELETE, path, config)

    async def request(
        self,
        method: Union[HTTPMethod, str],
        path: str,
        config: Optional[RequestConfig] = None,
    ) -> ApiResponse:
        """Run one call through the pipeline.

        Args:
            method: HTTP method, as :class:`~apikit.models.HTTPMethod` or a
                case-insensitive string.
            path: Path appended to the base URL.
            config: Per-call options.

        Returns:
            The :class:`~apikit.models.ApiResponse`, as transformed by the
            ``on_response`` interceptor.

        Raises:
            ApiError: On a non-2xx status, timeout, transport failure or an
                undecodable body.
            RequestCancelledError: When the caller's token was cancelled.
        """
        verb = method if isinstance(method, HTTPMethod) else HTTPMethod(method.upper())
        context = RequestContext(method=verb, path=path)
        call = await self._interceptors.run_request(config or RequestConfig(), context)

        url = self.build_url(path, call.params)
        headers = httpx.Headers(self._default_headers)
        headers.update(call.headers)
        timeout = call.timeout if call.timeout is not None else self._config.timeout
        content = serialize_body(call.body)

        get_output().debug(f"{verb.value} {url}")
        try:
            request = self._http().build_request(
                verb.value, url, headers=headers, content=content, timeout=timeout
            )
        except httpx.InvalidURL as exc:
            raise await self._fail(ApiError(str(exc), 0, NETWORK_ERROR))

        response = await self._send(request, timeout, call.cancel_token)

        try:
            data = decode_body(response)
        except ValueError as exc:
            raise await self._fail(
                ApiError(f"Could not decode response body: {exc}", 0, NETWORK_ERROR)
            )

        if not response.is_success:
            message, code = error_details(response.status_code, data)
            raise await self._fail(
                ApiError(message, response.status_code, code, details=data)
            )

        result = ApiResponse(
            data=data, status=response.status_code, headers=response.headers, ok=True
        )
        return await self._interceptors.run_response(result)

    def create_request(
        self,
        method: Union[HTTPMethod, str],
        path: str,
        config: Optional[RequestConfig] = None,
    ) -> RequestState:
        """Wrap a call in a :class:`~apikit.client.state.RequestState`.

        Nothing is sent until :meth:`RequestState.execute` is awaited.
        """
        return RequestState(lambda: self.request(method, path, config))

    def build_url(self, path: str, params: Optional[dict[str, ParamValue]] = None) -> str:
        """Resolve *path* and *params* against the active base URL.

        One trailing ``/`` is stripped from the base, one leading ``/`` is
        ensured on the path and ``None`` parameters are skipped.
        """
        base = self.base_url
        if base.endswith("/"):
            base = base[:-1]
        url = base + (path if path.startswith("/") else f"/{path}")
        if params:
            query = httpx.QueryParams(
                [(name, value) for name, value in params.items() if value is not None]
            )
            if query:
                url += f"?{query}"
        return url

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
            self._owns_client = True
        return self._client

    async def _send(
        self,
        request: httpx.Request,
        timeout: float,
        cancel_token: Optional[CancellationToken],
    ) -> httpx.Response:
        """Send *request*, racing it against the timeout and the caller's token."""
        if cancel_token is not None and cancel_token.cancelled:
            raise _cancelled(cancel_token)

        budget = CancellationToken.after(timeout, reason=TIMEOUT)
        sending = asyncio.ensure_future(self._http().send(request))
        waiters = [asyncio.ensure_future(budget.wait())]
        if cancel_token is not None:
            waiters.append(asyncio.ensure_future(cancel_token.wait()))

        try:
            await asyncio.wait([sending, *waiters], return_when=asyncio.FIRST_COMPLETED)
        finally:
            budget.dispose()
            pending = [task for task in (sending, *waiters) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # The caller's token is checked first so that a cancellation racing
        # the timeout is reported as a cancellation.
        if cancel_token is not None and cancel_token.cancelled:
            raise _cancelled(cancel_token)
        if sending.cancelled():
            get_output().debug(f"Request timed out after {timeout:g}s: {request.url}")
            raise await self._fail(_timeout_error(timeout))

        try:
            return sending.result()
        except httpx.TimeoutException:
            raise await self._fail(_timeout_error(timeout))
        except httpx.RequestError as exc:
            raise await self._fail(ApiError(str(exc) or "Network error", 0, NETWORK_ERROR))

    async def _fail(self, error: ApiError) -> ApiError:
        await self._interceptors.run_error(error)
        return error


def create_http_client(
    config: Optional[ClientConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> HttpClient:
    """Create a new :class:`HttpClient`."""
    return HttpClient(config, http_client=http_client)


def serialize_body(body: Any) -> Optional[bytes]:
    """Encode a request body for the wire.

    ``None`` sends no body, ``str`` and ``bytes`` are sent as-is and
    everything else, pydantic models included, is encoded as JSON.
    """
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return _json_body.dump_json(body)


def _with_body(config: Optional[RequestConfig], body: Any) -> RequestConfig:
    if config is None:
        return RequestConfig(body=body)
    if body is None:
        return config
    return config.model_copy(update={"body": body})


def _cancelled(token: CancellationToken) -> RequestCancelledError:
    reason = token.reason
    message = f"Request cancelled: {reason}" if reason is not None else "Request cancelled"
    return RequestCancelledError(message, reason=reason)


def _timeout_error(timeout: float) -> ApiError:
    return ApiError(f"Request timed out after {timeout:g}s", 408, TIMEOUT)
