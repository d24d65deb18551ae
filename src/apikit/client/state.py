"""Observable state wrapper around a single request.

:class:`RequestState` tracks the ``data``, ``loading`` and ``error`` of a
call so that a consumer (a UI binding, a progress display) does not have to
manage those flags by hand.  Listeners registered with
:meth:`RequestState.subscribe` are notified after every transition.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from apikit.exceptions import ApiError
from apikit.models import ApiResponse

Listener = Callable[["RequestState"], None]


class RequestState:
    """Reactive state of one request.

    Args:
        send: Zero-argument coroutine factory performing the call, usually
            supplied by :meth:`~apikit.client.HttpClient.create_request`.
    """

    def __init__(self, send: Callable[[], Awaitable[ApiResponse]]) -> None:
        self._send = send
        self._listeners: list[Listener] = []
        self.data: Any = None
        self.loading = False
        self.error: Optional[ApiError] = None

    async def execute(self) -> Any:
        """Perform the call and return its decoded data.

        ``loading`` is set for the duration of the call.  An
        :class:`~apikit.exceptions.ApiError` is stored on :attr:`error` and
        re-raised; any other exception is re-raised with :attr:`error` left
        clear.
        """
        self.loading = True
        self.error = None
        self._notify()
        try:
            response = await self._send()
            self.data = response.data
            return response.data
        except ApiError as exc:
            self.error = exc
            raise
        finally:
            self.loading = False
            self._notify()

    def reset(self) -> None:
        self.data = None
        self.loading = False
        self.error = None
        self._notify()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* and return a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def __repr__(self) -> str:
        return f"<RequestState loading={self.loading} error={self.error!r}>"
