"""Tests for the Cloudflare request proxy and sandbox binding sets."""

import json
from typing import Any

import httpx
import pytest

from cloudflare_api_mcp.context import (
    CloudflareClient,
    build_execute_context,
    build_search_context,
)
from cloudflare_api_mcp.schema_store import SchemaDocument
from cloudflare_api_mcp.types import CloudflareAPIError, EncodedJSON

BASE_URL = "https://api.cloudflare.test/client/v4"
TOKEN = "super-secret-token"


def _ok(result: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "errors": [], "messages": [], "result": result, **extra}


class _Recorder:
    def __init__(self, response: httpx.Response | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.response = response or httpx.Response(200, json=_ok({"id": "x"}))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


def _client(recorder: _Recorder) -> CloudflareClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return CloudflareClient(http, TOKEN, base_url=BASE_URL)


@pytest.mark.asyncio
async def test_get_returns_envelope_and_sends_credential() -> None:
    recorder = _Recorder(
        httpx.Response(200, json=_ok([{"id": "w1"}], result_info={"page": 1, "count": 1}))
    )
    envelope = await _client(recorder).request("get", "/accounts/abc/workers/scripts")

    assert envelope == {
        "success": True,
        "result": [{"id": "w1"}],
        "errors": [],
        "messages": [],
        "result_info": {"page": 1, "count": 1},
    }
    request = recorder.requests[0]
    assert request.method == "GET"
    assert str(request.url) == f"{BASE_URL}/accounts/abc/workers/scripts"
    assert request.headers["Authorization"] == f"Bearer {TOKEN}"
    assert "Content-Type" not in request.headers


@pytest.mark.asyncio
async def test_json_body_is_encoded() -> None:
    recorder = _Recorder()
    await _client(recorder).request("POST", "/zones", body={"name": "example.com"})

    request = recorder.requests[0]
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {"name": "example.com"}


@pytest.mark.asyncio
async def test_raw_body_is_sent_verbatim() -> None:
    recorder = _Recorder()
    source = "export default { fetch() { return new Response('hi') } }"
    await _client(recorder).request(
        "PUT",
        "/accounts/abc/workers/scripts/hello",
        body=source,
        content_type="application/javascript",
        raw_body=True,
    )

    request = recorder.requests[0]
    assert request.headers["Content-Type"] == "application/javascript"
    assert request.content == source.encode("utf-8")


@pytest.mark.asyncio
async def test_raw_body_requires_text() -> None:
    with pytest.raises(ValueError, match="raw_body"):
        await _client(_Recorder()).request("PUT", "/x", body={"a": 1}, raw_body=True)


@pytest.mark.asyncio
async def test_query_parameters_are_encoded() -> None:
    recorder = _Recorder()
    await _client(recorder).request(
        "GET", "/zones", query={"page": 2, "match": None, "proxied": True, "name": "a.com"}
    )

    params = dict(recorder.requests[0].url.params)
    assert params == {"page": "2", "proxied": "true", "name": "a.com"}


@pytest.mark.asyncio
async def test_account_placeholder_is_substituted() -> None:
    recorder = _Recorder()
    await _client(recorder).request(
        "GET", "/accounts/{account_id}/d1/database", account_id="abc123"
    )
    assert recorder.requests[0].url.path == "/client/v4/accounts/abc123/d1/database"


@pytest.mark.parametrize(
    "path",
    ["zones", "//evil.test/zones", "/https://evil.test", "/zones/../user", "/a\\b", 42],
)
@pytest.mark.asyncio
async def test_invalid_paths_are_rejected(path: Any) -> None:
    recorder = _Recorder()
    with pytest.raises(ValueError):
        await _client(recorder).request("GET", path)
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_unsupported_method_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unsupported method"):
        await _client(_Recorder()).request("TRACE", "/zones")


@pytest.mark.asyncio
async def test_error_envelope_raises_with_status() -> None:
    recorder = _Recorder(
        httpx.Response(
            403,
            json={
                "success": False,
                "errors": [{"code": 10000, "message": "Authentication error"}],
                "messages": [],
                "result": None,
            },
        )
    )
    with pytest.raises(CloudflareAPIError) as exc_info:
        await _client(recorder).request("GET", "/zones")

    assert exc_info.value.status_code == 403
    assert "[10000] Authentication error" in str(exc_info.value)
    assert TOKEN not in str(exc_info.value)


@pytest.mark.asyncio
async def test_network_error_raises_without_credential() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach with {TOKEN}", request=request)

    client = CloudflareClient(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)), TOKEN, base_url=BASE_URL
    )
    with pytest.raises(CloudflareAPIError, match="ConnectError") as exc_info:
        await client.request("GET", "/zones")
    assert TOKEN not in str(exc_info.value)


@pytest.mark.asyncio
async def test_non_envelope_response_is_wrapped() -> None:
    recorder = _Recorder(httpx.Response(200, text="plain script body"))
    envelope = await _client(recorder).request("GET", "/accounts/abc/workers/scripts/x/content")
    assert envelope["success"] is True
    assert envelope["result"] == "plain script body"


@pytest.mark.asyncio
async def test_non_envelope_error_is_raised() -> None:
    recorder = _Recorder(httpx.Response(502, text="bad gateway"))
    with pytest.raises(CloudflareAPIError, match="HTTP 502"):
        await _client(recorder).request("GET", "/zones")


def test_repr_hides_credential() -> None:
    client = _client(_Recorder())
    assert TOKEN not in repr(client)


def test_search_context_binds_encoded_schema() -> None:
    document = SchemaDocument({"paths": {"/zones": {"get": {"summary": "List Zones"}}}})
    bindings = build_search_context(document)

    assert list(bindings.values) == ["spec"]
    spec = bindings.values["spec"]
    assert isinstance(spec, EncodedJSON)
    assert json.loads(spec.text)["paths"]["/zones"]["get"]["summary"] == "List Zones"
    assert bindings.capabilities == {}


@pytest.mark.asyncio
async def test_execute_context_binds_account_and_proxy() -> None:
    recorder = _Recorder()
    bindings = build_execute_context("abc123", _client(recorder))

    assert bindings.values == {"account_id": "abc123"}
    assert set(bindings.capabilities) == {"cloudflare"}
    request = bindings.capabilities["cloudflare"]["request"]

    envelope = await request("GET", "/accounts/{account_id}/workers/scripts")

    assert envelope["result"] == {"id": "x"}
    assert recorder.requests[0].url.path == "/client/v4/accounts/abc123/workers/scripts"
    assert TOKEN not in json.dumps(bindings.values)


@pytest.mark.parametrize("account_id", ["x/../../user", "abc/zones", "abc?x=1", "a#b", ""])
@pytest.mark.asyncio
async def test_account_id_cannot_rewrite_path(account_id: str) -> None:
    recorder = _Recorder()
    with pytest.raises(ValueError, match="account_id"):
        await _client(recorder).request(
            "GET", "/accounts/{account_id}/workers/scripts", account_id=account_id
        )
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_substituted_path_is_validated() -> None:
    recorder = _Recorder()
    with pytest.raises(ValueError, match="'..' segments"):
        await _client(recorder).request(
            "GET", "/accounts/{account_id}/../../user", account_id="abc123"
        )
    assert recorder.requests == []


def test_execute_context_rejects_unsafe_account_id() -> None:
    with pytest.raises(ValueError, match="account_id"):
        build_execute_context("x/../../user", _client(_Recorder()))


@pytest.mark.asyncio
async def test_non_finite_json_body_is_rejected() -> None:
    recorder = _Recorder()
    with pytest.raises(ValueError):
        await _client(recorder).request("POST", "/zones", body={"ttl": float("nan")})
    assert recorder.requests == []
