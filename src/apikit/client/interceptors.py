"""Interceptor chain for the request lifecycle.

:class:`InterceptorChain` runs the three optional stages configured on a
:class:`~apikit.models.ClientConfig`:

* ``on_request`` -- receives the :class:`~apikit.models.RequestConfig` and
  the :class:`~apikit.models.RequestContext`; its return value replaces the
  config for the rest of the call.
* ``on_response`` -- receives the successful
  :class:`~apikit.models.ApiResponse`; its return value is what the caller
  gets.
* ``on_error`` -- notified once with the normalized error before it is
  raised.

Each stage may be a plain function or a coroutine function; awaitable
results are awaited.  Exceptions raised by the interceptors themselves are
not caught: they propagate to the caller unchanged.
"""

from __future__ import annotations

import inspect
from typing import Any, Optional

from apikit.models import (
    ApiResponse,
    ErrorHandler,
    RequestConfig,
    RequestContext,
    RequestInterceptor,
    ResponseInterceptor,
)


class InterceptorChain:
    """Runs the configured interceptors for one client.

    The chain reads the interceptors at call time, so swapping them on the
    owning client takes effect on the next request.

    Args:
        on_request: Pre-request interceptor.
        on_response: Post-response interceptor.
        on_error: Error side-channel.
    """

    def __init__(
        self,
        on_request: Optional[RequestInterceptor] = None,
        on_response: Optional[ResponseInterceptor] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        self.on_request = on_request
        self.on_response = on_response
        self.on_error = on_error

    async def run_request(
        self, config: RequestConfig, context: RequestContext
    ) -> RequestConfig:
        """Run ``on_request`` against a private copy of *config*.

        The interceptor may mutate the copy's ``headers`` and ``params`` in
        place or return a new :class:`~apikit.models.RequestConfig`.

        Returns:
            The config to use for the call.
        """
        if self.on_request is None:
            return config
        working = config.model_copy(
            update={"headers": dict(config.headers), "params": dict(config.params)}
        )
        result = await _resolve(self.on_request(working, context))
        return result if result is not None else working

    async def run_response(self, response: ApiResponse) -> ApiResponse:
        """Run ``on_response`` and return its result."""
        if self.on_response is None:
            return response
        return await _resolve(self.on_response(response))

    async def run_error(self, error: Any) -> None:
        """Notify ``on_error`` of *error*."""
        if self.on_error is None:
            return
        await _resolve(self.on_error(error))


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
