"""Tests for the asynchronous request pipeline."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from pydantic import BaseModel

from apikit.cancellation import CancellationToken
from apikit.client import HttpClient, create_http_client
from apikit.exceptions import NETWORK_ERROR, TIMEOUT, ApiError, RequestCancelledError
from apikit.models import ApiResponse, ClientConfig, HTTPMethod, RequestConfig, RequestContext
from apikit.output import OutputManager, reset_output, set_output

BASE_URL = "https://api.example.com"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_client(handler, **config: Any) -> HttpClient:
    config.setdefault("base_url", BASE_URL)
    transport = httpx.MockTransport(handler)
    return HttpClient(ClientConfig(**config), http_client=httpx.AsyncClient(transport=transport))


def _json_response(data: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=data)


class Recorder:
    """Mock transport handler that records requests and replies with a fixed response."""

    def __init__(self, response: httpx.Response | None = None) -> None:
        self.response = response or _json_response({"ok": True})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture(autouse=True)
def _clean_output():
    """Reset the global output manager between tests."""
    set_output(OutputManager(no_color=True, quiet=True))
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Successful calls
# ---------------------------------------------------------------------------


class TestSuccess:
    @pytest.mark.asyncio
    async def test_get_merges_headers_and_decodes_json(self) -> None:
        recorder = Recorder(_json_response([{"id": 1, "name": "Ada"}]))
        client = _make_client(recorder, default_headers={"X-Client": "apikit"})

        response = await client.get("/users", RequestConfig(headers={"X-Trace": "abc"}))

        assert response.data == [{"id": 1, "name": "Ada"}]
        assert response.status == 200
        assert response.ok is True
        sent = recorder.last
        assert sent.method == "GET"
        assert str(sent.url) == f"{BASE_URL}/users"
        assert sent.headers["X-Client"] == "apikit"
        assert sent.headers["X-Trace"] == "abc"
        assert sent.headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_per_call_header_wins_case_insensitively(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder, default_headers={"X-Api-Version": "1"})

        await client.get("/v", RequestConfig(headers={"x-api-version": "2"}))

        assert recorder.last.headers.get_list("X-Api-Version") == ["2"]

    @pytest.mark.asyncio
    async def test_response_headers_are_exposed(self) -> None:
        recorder = Recorder(
            httpx.Response(200, json={}, headers={"ETag": '"v1"', "X-Total": "5"})
        )
        client = _make_client(recorder)
        response = await client.get("/users")
        assert response.headers["etag"] == '"v1"'
        assert response.headers["x-total"] == "5"

    @pytest.mark.asyncio
    async def test_method_strings_are_accepted(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.request("patch", "/users/1")
        assert recorder.last.method == "PATCH"

    @pytest.mark.asyncio
    async def test_unknown_method_is_rejected(self) -> None:
        client = _make_client(Recorder())
        with pytest.raises(ValueError):
            await client.request("TRACE", "/users")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("call", "method"),
        [("get", "GET"), ("delete", "DELETE"), ("post", "POST"), ("put", "PUT"), ("patch", "PATCH")],
    )
    async def test_convenience_methods(self, call: str, method: str) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await getattr(client, call)("/things")
        assert recorder.last.method == method


# ---------------------------------------------------------------------------
# URL building
# ---------------------------------------------------------------------------


class TestUrl:
    def test_trailing_and_leading_slashes(self) -> None:
        client = HttpClient(ClientConfig(base_url="https://api.example.com/"))
        assert client.build_url("users") == "https://api.example.com/users"
        assert client.build_url("/users") == "https://api.example.com/users"

    def test_only_one_trailing_slash_is_stripped(self) -> None:
        client = HttpClient(ClientConfig(base_url="https://api.example.com//"))
        assert client.build_url("/users") == "https://api.example.com//users"

    def test_params_skip_none_and_encode_booleans(self) -> None:
        client = HttpClient(ClientConfig(base_url=BASE_URL))
        url = client.build_url("/users", {"page": 2, "q": None, "active": True, "name": "a b"})
        assert url == f"{BASE_URL}/users?page=2&active=true&name=a+b"

    def test_all_none_params_leave_no_query(self) -> None:
        client = HttpClient(ClientConfig(base_url=BASE_URL))
        assert client.build_url("/users", {"q": None}) == f"{BASE_URL}/users"

    def test_server_base_url_when_running_on_server(self) -> None:
        client = HttpClient(
            ClientConfig(
                base_url="/api",
                server_base_url="http://backend:8080/api",
                running_on_server=True,
            )
        )
        assert client.build_url("/users") == "http://backend:8080/api/users"

    def test_server_base_url_ignored_in_client_mode(self) -> None:
        client = HttpClient(
            ClientConfig(base_url="https://public.example.com", server_base_url="http://backend")
        )
        assert client.base_url == "https://public.example.com"

    @pytest.mark.asyncio
    async def test_query_reaches_transport(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.get("/users", RequestConfig(params={"page": 1, "draft": False, "q": None}))
        params = recorder.last.url.params
        assert params["page"] == "1"
        assert params["draft"] == "false"
        assert "q" not in params

    @pytest.mark.asyncio
    async def test_set_base_url(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        client.set_base_url("https://other.example.com")
        await client.get("/x")
        assert recorder.last.url.host == "other.example.com"


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class Person(BaseModel):
    name: str
    age: int


class TestBody:
    @pytest.mark.asyncio
    async def test_dict_body_is_json(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.post("/users", {"name": "Ada", "tags": [1, 2]})
        assert json.loads(recorder.last.content) == {"name": "Ada", "tags": [1, 2]}

    @pytest.mark.asyncio
    async def test_model_body_is_json(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.put("/users/1", Person(name="Ada", age=36))
        assert json.loads(recorder.last.content) == {"name": "Ada", "age": 36}

    @pytest.mark.asyncio
    async def test_string_body_is_sent_as_is(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.post("/raw", "plain text")
        assert recorder.last.content == b"plain text"

    @pytest.mark.asyncio
    async def test_bytes_body_is_sent_as_is(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.patch("/raw", b"\x00\x01")
        assert recorder.last.content == b"\x00\x01"

    @pytest.mark.asyncio
    async def test_none_body_is_omitted(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.post("/empty")
        assert recorder.last.content == b""

    @pytest.mark.asyncio
    async def test_body_argument_overrides_config_body(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        await client.post("/x", {"a": 1}, RequestConfig(body={"b": 2}, headers={"X": "1"}))
        assert json.loads(recorder.last.content) == {"a": 1}
        assert recorder.last.headers["X"] == "1"


# ---------------------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------------------


class TestDecoding:
    @pytest.mark.asyncio
    async def test_text_response(self) -> None:
        recorder = Recorder(httpx.Response(200, text="hello"))
        client = _make_client(recorder)
        response = await client.get("/greeting")
        assert response.data == "hello"

    @pytest.mark.asyncio
    async def test_binary_response(self) -> None:
        recorder = Recorder(
            httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        )
        client = _make_client(recorder)
        response = await client.get("/logo.png")
        assert response.data == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_vendor_json_response(self) -> None:
        recorder = Recorder(
            httpx.Response(
                200,
                content=b'{"title": "bad"}',
                headers={"content-type": "application/problem+json"},
            )
        )
        client = _make_client(recorder)
        response = await client.get("/problem")
        assert response.data == {"title": "bad"}

    @pytest.mark.asyncio
    async def test_empty_json_body_is_none(self) -> None:
        recorder = Recorder(httpx.Response(204, headers={"content-type": "application/json"}))
        client = _make_client(recorder)
        response = await client.delete("/users/1")
        assert response.status == 204
        assert response.data is None

    @pytest.mark.asyncio
    async def test_malformed_json_is_network_error(self) -> None:
        recorder = Recorder(
            httpx.Response(200, content=b"{oops", headers={"content-type": "application/json"})
        )
        errors: list[ApiError] = []
        client = _make_client(recorder, on_error=errors.append)

        with pytest.raises(ApiError) as info:
            await client.get("/broken")

        assert info.value.status == 0
        assert info.value.code == NETWORK_ERROR
        assert errors == [info.value]


# ---------------------------------------------------------------------------
# HTTP errors
# ---------------------------------------------------------------------------


class TestHttpErrors:
    @pytest.mark.asyncio
    async def test_not_found_uses_body_message(self) -> None:
        recorder = Recorder(_json_response({"message": "Not found"}, status_code=404))
        errors: list[ApiError] = []
        client = _make_client(recorder, on_error=errors.append)

        with pytest.raises(ApiError) as info:
            await client.get("/users/99")

        assert info.value.status == 404
        assert info.value.message == "Not found"
        assert info.value.details == {"message": "Not found"}
        assert len(errors) == 1
        assert errors[0] is info.value

    @pytest.mark.asyncio
    async def test_error_field_and_code(self) -> None:
        recorder = Recorder(
            _json_response({"error": "Email taken", "code": "DUPLICATE"}, status_code=409)
        )
        client = _make_client(recorder)
        with pytest.raises(ApiError) as info:
            await client.post("/users", {"email": "a@b.c"})
        assert info.value.message == "Email taken"
        assert info.value.code == "DUPLICATE"

    @pytest.mark.asyncio
    async def test_default_message_table(self) -> None:
        recorder = Recorder(httpx.Response(503, text="<html>down</html>"))
        client = _make_client(recorder)
        with pytest.raises(ApiError) as info:
            await client.get("/status")
        assert info.value.message == "Service unavailable"
        assert info.value.details == "<html>down</html>"
        assert info.value.code is None

    @pytest.mark.asyncio
    async def test_unknown_status_message(self) -> None:
        recorder = Recorder(httpx.Response(418, text=""))
        client = _make_client(recorder)
        with pytest.raises(ApiError) as info:
            await client.get("/teapot")
        assert info.value.message == "Unknown error"

    @pytest.mark.asyncio
    async def test_exit_codes_follow_status(self) -> None:
        recorder = Recorder(_json_response({}, status_code=401))
        client = _make_client(recorder)
        with pytest.raises(ApiError) as info:
            await client.get("/me")
        assert info.value.exit_code == 3


# ---------------------------------------------------------------------------
# Transport failures, timeouts and cancellation
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_connection_error_is_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        errors: list[ApiError] = []
        client = _make_client(handler, on_error=errors.append)
        with pytest.raises(ApiError) as info:
            await client.get("/users")

        assert info.value.status == 0
        assert info.value.code == NETWORK_ERROR
        assert "connection refused" in info.value.message
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_transport_timeout_is_timeout_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        client = _make_client(handler)
        with pytest.raises(ApiError) as info:
            await client.get("/slow")
        assert info.value.status == 408
        assert info.value.code == TIMEOUT

    @pytest.mark.asyncio
    async def test_timeout_budget_aborts_slow_call(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return _json_response({})

        errors: list[ApiError] = []
        client = _make_client(handler, on_error=errors.append)
        with pytest.raises(ApiError) as info:
            await client.get("/slow", RequestConfig(timeout=0.05))

        assert info.value.status == 408
        assert info.value.code == TIMEOUT
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_client_timeout_applies_when_call_sets_none(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return _json_response({})

        client = _make_client(handler, timeout=0.05)
        with pytest.raises(ApiError) as info:
            await client.get("/slow")
        assert info.value.code == TIMEOUT

    @pytest.mark.asyncio
    async def test_caller_cancellation_skips_on_error(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return _json_response({})

        errors: list[Any] = []
        client = _make_client(handler, on_error=errors.append)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, "navigated away")

        with pytest.raises(RequestCancelledError) as info:
            await client.get("/slow", RequestConfig(cancel_token=token))

        assert info.value.reason == "navigated away"
        assert errors == []

    @pytest.mark.asyncio
    async def test_already_cancelled_token_sends_nothing(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RequestCancelledError):
            await client.get("/users", RequestConfig(cancel_token=token))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_caller_cancellation_wins_over_timeout(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return _json_response({})

        errors: list[Any] = []
        client = _make_client(handler, on_error=errors.append)
        token = CancellationToken()
        # Scheduled before the call starts, so it is due no later than the budget.
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        with pytest.raises(RequestCancelledError):
            await client.get("/slow", RequestConfig(cancel_token=token, timeout=0.05))
        assert errors == []

    @pytest.mark.asyncio
    async def test_fast_call_leaves_no_pending_tasks(self) -> None:
        client = _make_client(Recorder())
        await client.get("/users", RequestConfig(cancel_token=CancellationToken()))
        current = asyncio.current_task()
        others = [t for t in asyncio.all_tasks() if t is not current and not t.done()]
        assert others == []


# ---------------------------------------------------------------------------
# Interceptors
# ---------------------------------------------------------------------------


class TestInterceptors:
    @pytest.mark.asyncio
    async def test_request_interceptor_replaces_config(self) -> None:
        seen: list[RequestContext] = []

        def on_request(config: RequestConfig, context: RequestContext) -> RequestConfig:
            seen.append(context)
            return config.model_copy(
                update={"headers": {**config.headers, "X-Signed": "yes"}, "params": {"v": 2}}
            )

        recorder = Recorder()
        client = _make_client(recorder, on_request=on_request)
        await client.get("/users")

        assert seen == [RequestContext(method=HTTPMethod.GET, path="/users")]
        assert recorder.last.headers["X-Signed"] == "yes"
        assert recorder.last.url.params["v"] == "2"

    @pytest.mark.asyncio
    async def test_async_request_interceptor(self) -> None:
        async def on_request(config: RequestConfig, context: RequestContext) -> RequestConfig:
            await asyncio.sleep(0)
            config.headers["Authorization"] = "Bearer refreshed"
            return config

        recorder = Recorder()
        client = _make_client(recorder, on_request=on_request)
        await client.get("/me")
        assert recorder.last.headers["Authorization"] == "Bearer refreshed"

    @pytest.mark.asyncio
    async def test_interceptor_does_not_mutate_caller_config(self) -> None:
        def on_request(config: RequestConfig, context: RequestContext) -> RequestConfig:
            config.headers["X-Added"] = "1"
            config.params["added"] = "1"
            return config

        client = _make_client(Recorder(), on_request=on_request)
        original = RequestConfig(headers={"X-Mine": "1"}, params={"mine": 1})
        await client.get("/x", original)
        assert original.headers == {"X-Mine": "1"}
        assert original.params == {"mine": 1}

    @pytest.mark.asyncio
    async def test_response_interceptor_result_is_returned(self) -> None:
        async def on_response(response: ApiResponse) -> ApiResponse:
            return response.model_copy(update={"data": response.data["items"]})

        recorder = Recorder(_json_response({"items": [1, 2, 3]}))
        client = _make_client(recorder, on_response=on_response)
        response = await client.get("/list")
        assert response.data == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_response_interceptor_skipped_on_error(self) -> None:
        calls: list[ApiResponse] = []
        recorder = Recorder(_json_response({}, status_code=500))
        client = _make_client(recorder, on_response=calls.append)
        with pytest.raises(ApiError):
            await client.get("/boom")
        assert calls == []

    @pytest.mark.asyncio
    async def test_interceptor_exceptions_propagate_unchanged(self) -> None:
        def on_request(config: RequestConfig, context: RequestContext) -> RequestConfig:
            raise PermissionError("no token")

        errors: list[Any] = []
        recorder = Recorder()
        client = _make_client(recorder, on_request=on_request, on_error=errors.append)
        with pytest.raises(PermissionError, match="no token"):
            await client.get("/users")
        assert recorder.requests == []
        assert errors == []

    @pytest.mark.asyncio
    async def test_async_error_handler_is_awaited(self) -> None:
        seen: list[int] = []

        async def on_error(error: ApiError) -> None:
            await asyncio.sleep(0)
            seen.append(error.status)

        client = _make_client(Recorder(_json_response({}, status_code=400)), on_error=on_error)
        with pytest.raises(ApiError):
            await client.get("/bad")
        assert seen == [400]


# ---------------------------------------------------------------------------
# Client mutators and lifecycle
# ---------------------------------------------------------------------------


class TestMutators:
    @pytest.mark.asyncio
    async def test_set_auth_token_bearer(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder)
        client.set_auth_token("abc")
        await client.get("/me")
        assert recorder.last.headers["Authorization"] == "Bearer abc"

    def test_set_auth_token_basic(self) -> None:
        client = HttpClient()
        client.set_auth_token("dXNlcjpwYXNz", "Basic")
        assert client.default_headers["authorization"] == "Basic dXNlcjpwYXNz"

    def test_set_auth_token_rejects_unknown_scheme(self) -> None:
        client = HttpClient()
        with pytest.raises(ValueError):
            client.set_auth_token("abc", "Digest")

    @pytest.mark.asyncio
    async def test_clear_auth_token(self) -> None:
        recorder = Recorder()
        client = _make_client(recorder, default_headers={"authorization": "Bearer old"})
        client.clear_auth_token()
        client.clear_auth_token()
        await client.get("/me")
        assert "Authorization" not in recorder.last.headers

    def test_set_default_headers_merges(self) -> None:
        client = HttpClient(ClientConfig(default_headers={"X-A": "1"}))
        client.set_default_headers({"X-B": "2", "x-a": "3"})
        headers = client.default_headers
        assert headers["x-a"] == "3"
        assert headers["x-b"] == "2"
        assert headers["content-type"] == "application/json"

    def test_client_config_is_copied(self) -> None:
        config = ClientConfig(base_url="https://a.example.com")
        client = create_http_client(config)
        client.set_base_url("https://b.example.com")
        assert config.base_url == "https://a.example.com"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_owned_client_is_closed_on_exit(self) -> None:
        async with HttpClient() as client:
            assert client._client is not None
        assert client._client is None

    @pytest.mark.asyncio
    async def test_injected_client_is_left_open(self) -> None:
        injected = httpx.AsyncClient(transport=httpx.MockTransport(Recorder()))
        async with HttpClient(http_client=injected):
            pass
        assert not injected.is_closed
        await injected.aclose()
