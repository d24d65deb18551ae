"""Cooperative cancellation tokens for in-flight requests.

A :class:`CancellationToken` is a one-shot signal: once :meth:`cancel` is
called it stays cancelled, and every coroutine awaiting :meth:`wait` is
released.  The request pipeline races the network call against these
tokens; whichever completes first decides the outcome.

Two kinds of token take part in a call:

* the **caller's token**, passed through
  :attr:`~apikit.models.RequestConfig.cancel_token`, which the caller fires
  to abandon a request;
* the **timeout token**, created internally by :meth:`CancellationToken.after`
  from the effective timeout budget.

Example::

    token = CancellationToken()
    task = asyncio.create_task(client.get("/slow", RequestConfig(cancel_token=token)))
    token.cancel("user navigated away")
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional


class CancellationToken:
    """A one-shot, awaitable cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Any = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @classmethod
    def after(cls, seconds: float, reason: Any = "timeout") -> CancellationToken:
        """Create a token that cancels itself after *seconds*.

        Must be called from inside a running event loop.  Call
        :meth:`dispose` once the guarded operation finishes so the timer does
        not outlive it.
        """
        token = cls()
        loop = asyncio.get_running_loop()
        token._timer = loop.call_later(max(seconds, 0.0), token.cancel, reason)
        return token

    @property
    def cancelled(self) -> bool:
        """Whether :meth:`cancel` has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> Any:
        """The value passed to :meth:`cancel`, or ``None``."""
        return self._reason

    def cancel(self, reason: Any = None) -> None:
        """Signal cancellation.  Subsequent calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        self.dispose()

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._event.wait()

    def dispose(self) -> None:
        """Release the pending timer of a token created by :meth:`after`."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def __repr__(self) -> str:
        state = f"cancelled, reason={self._reason!r}" if self.cancelled else "active"
        return f"<CancellationToken {state}>"
