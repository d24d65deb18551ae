"""Exception hierarchy for apikit.

All exceptions inherit from :class:`ApikitError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`apikit.exit_codes`.
The CLI entry point in :func:`apikit.app.main` catches ``ApikitError`` and
exits with the appropriate code.

Subclass hierarchy::

    ApikitError (exit 1)
    +-- InvalidUsageError          (exit 2)
    +-- ConfigError                (exit 1)
    +-- ApiError                   (exit derived from status)
    +-- RequestCancelledError      (exit 130)
    +-- CircuitOpenError           (exit 6)
    +-- StorageError               (exit 1)
        +-- StorageQuotaExceededError

:class:`ApiError` is the single normalized shape for every request failure
(network, timeout, HTTP status, undecodable body).  Caller-initiated
cancellation is deliberately *not* an ``ApiError``: it is propagated as
:class:`RequestCancelledError` and never reported to the ``on_error``
interceptor.
"""

from __future__ import annotations

from typing import Any, Optional

from apikit.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_SERVER_ERROR,
)

NETWORK_ERROR = "NETWORK_ERROR"
"""Error code for failures where no usable response was received."""

TIMEOUT = "TIMEOUT"
"""Error code for requests aborted by the internal timeout budget."""


class ApikitError(Exception):
    """Base exception for all apikit errors.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(ApikitError):
    """Raised for invalid CLI arguments (malformed headers, params or bodies)."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(ApikitError):
    """Raised for configuration problems (invalid JSON, failed validation)."""

    exit_code = EXIT_GENERIC_FAILURE


class ApiError(ApikitError):
    """Normalized error raised by the request pipeline for every failure mode.

    Attributes:
        message: Human-readable description, taken from the response body's
            ``message``/``error`` field or from the default status table.
        status: HTTP status code; ``0`` when no response was received and
            ``408`` when the internal timeout budget expired.
        code: Optional machine-readable code (``NETWORK_ERROR``,
            ``TIMEOUT``, or the body's ``code`` field).
        details: The decoded response body for HTTP status failures.
    """

    def __init__(
        self,
        message: str,
        status: int,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, exit_code=_exit_code_for_status(status))
        self.message = message
        self.status = status
        self.code = code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Return the error as a plain ``dict`` (``details`` omitted when unset)."""
        data: dict[str, Any] = {"message": self.message, "status": self.status}
        if self.code is not None:
            data["code"] = self.code
        if self.details is not None:
            data["details"] = self.details
        return data

    def __repr__(self) -> str:
        return f"ApiError(status={self.status}, code={self.code!r}, message={self.message!r})"


class RequestCancelledError(ApikitError):
    """Raised when the caller's own cancellation token aborted a request."""

    exit_code = EXIT_CANCELLED

    def __init__(self, message: str = "Request cancelled", reason: Any = None) -> None:
        super().__init__(message)
        self.reason = reason


class CircuitOpenError(ApikitError):
    """Raised by an open :class:`~apikit.client.circuit.CircuitBreaker` without calling out.

    Attributes:
        retry_after: Seconds until the breaker lets a trial call through.
    """

    exit_code = EXIT_CONNECTION_ERROR

    def __init__(self, message: str = "Circuit breaker is open", retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class StorageError(ApikitError):
    """Raised by a durable storage backend when the medium itself fails."""


class StorageQuotaExceededError(StorageError):
    """Raised by a durable storage backend when a write exceeds its capacity."""


def _exit_code_for_status(status: int) -> int:
    if status in (401, 403):
        return EXIT_AUTH_FAILURE
    if status == 404:
        return EXIT_NOT_FOUND
    if status >= 500:
        return EXIT_SERVER_ERROR
    if status in (0, 408):
        return EXIT_CONNECTION_ERROR
    return EXIT_GENERIC_FAILURE
