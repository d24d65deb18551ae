"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to an error category and is referenced by the
corresponding :class:`~apikit.exceptions.ApikitError` subclass.  Shell
wrappers can inspect the exit code of ``apikit request`` to tell an
authentication failure from a timeout without parsing stderr.

Example::

    $ apikit request GET /users --base-url https://api.example.com
    $ echo $?
    6   # EXIT_CONNECTION_ERROR -- the request timed out
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 3
"""The API rejected the credentials (HTTP 401 / 403)."""

EXIT_NOT_FOUND = 4
"""The requested resource was not found (HTTP 404)."""

EXIT_SERVER_ERROR = 5
"""The remote API returned an HTTP 5xx server error."""

EXIT_CONNECTION_ERROR = 6
"""No usable response arrived (network failure, undecodable body, timeout)."""

EXIT_CANCELLED = 130
"""The request was cancelled by the caller (mirrors SIGINT)."""
