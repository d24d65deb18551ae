"""Request command -- issue one call through the request pipeline.

``apikit request METHOD PATH`` resolves the client settings (flags,
environment, global config), sends the call with
:class:`~apikit.client.HttpClient` and prints the decoded body to stdout
and the status line to stderr.  Failures exit with the code carried by the
:class:`~apikit.exceptions.ApikitError` that caused them.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional

import typer

from apikit.client import create_http_client
from apikit.client.response import format_api_response
from apikit.exceptions import ApiError, ApikitError, InvalidUsageError
from apikit.models import ApiResponse, ClientConfig, HTTPMethod, ParamValue, RequestConfig
from apikit.output import debug, error


def request_command(
    method: str = typer.Argument(help="HTTP method: GET, POST, PUT, PATCH or DELETE."),
    path: str = typer.Argument(help="Request path, resolved against the base URL."),
    base_url: Optional[str] = typer.Option(
        None, "--base-url", "-b", help="Base URL (overrides APIKIT_BASE_URL and config)."
    ),
    header: Optional[List[str]] = typer.Option(
        None, "--header", "-H", help="Extra header as 'Name: value'. Repeatable."
    ),
    param: Optional[List[str]] = typer.Option(
        None, "--param", "-p", help="Query parameter as 'name=value'. Repeatable."
    ),
    body: Optional[str] = typer.Option(
        None, "--body", "-d", help="Request body; sent as JSON when it parses as JSON."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Timeout in seconds."
    ),
    token: Optional[str] = typer.Option(
        None, "--token", help="Bearer token for the Authorization header."
    ),
) -> None:
    """Send an HTTP request and print the response body.

    Example::

        apikit request GET /users --base-url https://api.example.com -p page=2
        apikit request POST /users -d '{"name": "Ada"}' --token $TOKEN
    """
    from apikit.config import build_client_config, resolve_config

    try:
        verb = _parse_method(method)
        config = RequestConfig(
            headers=_parse_headers(header or []),
            params=_parse_params(param or []),
            body=_parse_body(body),
            timeout=timeout,
        )
        settings = resolve_config(cli_base_url=base_url).client
        client_config = build_client_config(settings)
        response = asyncio.run(_send(client_config, verb, path, config, token))
    except ApiError as exc:
        if exc.status:
            error(f"HTTP {exc.status}: {exc.message}")
        else:
            error(exc.message)
        if exc.details is not None:
            debug(f"Response body: {exc.details!r}")
        raise typer.Exit(code=exc.exit_code) from None
    except ApikitError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    format_api_response(response)


async def _send(
    client_config: ClientConfig,
    verb: HTTPMethod,
    path: str,
    config: RequestConfig,
    token: Optional[str],
) -> ApiResponse:
    async with create_http_client(client_config) as client:
        if token:
            client.set_auth_token(token)
        return await client.request(verb, path, config)


def _parse_method(method: str) -> HTTPMethod:
    try:
        return HTTPMethod(method.upper())
    except ValueError:
        allowed = ", ".join(m.value for m in HTTPMethod)
        raise InvalidUsageError(f"Unsupported method '{method}', expected one of {allowed}") from None


def _parse_headers(values: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for raw in values:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            raise InvalidUsageError(f"Invalid header '{raw}', expected 'Name: value'")
        headers[name.strip()] = value.strip()
    return headers


def _parse_params(values: list[str]) -> dict[str, ParamValue]:
    params: dict[str, ParamValue] = {}
    for raw in values:
        name, sep, value = raw.partition("=")
        if not sep or not name:
            raise InvalidUsageError(f"Invalid parameter '{raw}', expected 'name=value'")
        params[name] = value
    return params


def _parse_body(body: Optional[str]) -> Any:
    """Parse *body* as JSON if possible, returning the raw string otherwise."""
    if body is None:
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return body
