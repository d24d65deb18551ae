"""Response decoding and error-message normalization.

The request pipeline hands every :class:`httpx.Response` to
:func:`decode_body`, which picks the decoder from the ``Content-Type``
header:

* ``application/json`` and ``+json`` suffixed types -- parsed JSON (an
  empty body decodes to ``None``);
* ``text/*`` -- ``str``;
* anything else -- raw ``bytes``.

For non-2xx responses :func:`error_details` derives the ``message`` and
``code`` of the :class:`~apikit.exceptions.ApiError` from the decoded
body, falling back to :data:`STATUS_MESSAGES`.

:func:`format_api_response` bridges a completed
:class:`~apikit.models.ApiResponse` to the output system for the CLI.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx

from apikit.models import ApiResponse
from apikit.output import get_output

STATUS_MESSAGES: dict[int, str] = {
    400: "Invalid request",
    401: "Authentication required",
    403: "Forbidden",
    404: "Not found",
    409: "Conflict",
    422: "Validation error",
    429: "Rate limited",
    500: "Internal server error",
    502: "Bad gateway",
    503: "Service unavailable",
}
"""Default error messages by HTTP status, used when the body carries none."""

UNKNOWN_ERROR_MESSAGE = "Unknown error"


def media_type(response: httpx.Response) -> str:
    """Return the lower-cased media type of *response* without parameters."""
    content_type = response.headers.get("content-type", "")
    return content_type.split(";", 1)[0].strip().lower()


def is_json_media_type(value: str) -> bool:
    return value == "application/json" or value.endswith("+json")


def decode_body(response: httpx.Response) -> Any:
    """Decode the body of *response* according to its content type.

    Args:
        response: A response whose body has been read.

    Returns:
        Parsed JSON, a ``str`` for ``text/*`` types, or ``bytes``.

    Raises:
        ValueError: If the body does not match its declared content type
            (malformed JSON or undecodable text).
    """
    kind = media_type(response)
    if is_json_media_type(kind):
        if not response.content.strip():
            return None
        return json.loads(response.content)
    if kind.startswith("text/"):
        encoding = response.encoding or "utf-8"
        return response.content.decode(encoding)
    return response.content


def error_details(status: int, body: Any) -> tuple[str, Optional[str]]:
    """Derive the error message and code for a failed response.

    The message is the body's ``message`` field, then its ``error`` field
    (only when they are strings), then the :data:`STATUS_MESSAGES` entry for
    *status*, then :data:`UNKNOWN_ERROR_MESSAGE`.

    Args:
        status: HTTP status code.
        body: The decoded response body.

    Returns:
        A ``(message, code)`` tuple; ``code`` is the body's ``code`` field
        rendered as a string, or ``None``.
    """
    message: Optional[str] = None
    code: Optional[str] = None
    if isinstance(body, dict):
        for field in ("message", "error"):
            candidate = body.get(field)
            if isinstance(candidate, str):
                message = candidate
                break
        if body.get("code") is not None:
            code = str(body["code"])
    if message is None:
        message = STATUS_MESSAGES.get(status, UNKNOWN_ERROR_MESSAGE)
    return message, code


def format_api_response(response: ApiResponse) -> None:
    """Print an :class:`~apikit.models.ApiResponse` through the global output.

    The status line goes to stderr, the decoded body to stdout.  Binary
    bodies are written as a size summary rather than raw bytes.

    Args:
        response: The completed response to display.
    """
    output = get_output()
    output.info(f"HTTP {response.status}")

    data = response.data
    if data is None:
        return
    if isinstance(data, bytes):
        kind = response.headers.get("content-type", "application/octet-stream")
        output.print_data(f"<{len(data)} bytes of {kind}>")
        return
    output.format_response(data, response.headers.get("content-type", "application/json"))
