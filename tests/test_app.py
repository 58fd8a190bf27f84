"""Tests for the HTTP bearer-token gate and MCP endpoint."""

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from starlette.testclient import TestClient

from cloudflare_api_mcp.app import create_app
from cloudflare_api_mcp.config import Settings
from cloudflare_api_mcp.schema_store import SchemaStore
from cloudflare_api_mcp.types import Bindings, Outcome, SandboxUnavailableError, Value

BASE_URL = "https://api.cloudflare.test/client/v4"
MCP_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
}


class FakeRuntime:
    async def execute(self, code: str, bindings: Bindings, timeout: float | None = None) -> Outcome:
        return Value(sorted(bindings.values))


def _identity_handler(request: httpx.Request) -> httpx.Response:
    token = request.headers.get("Authorization", "")
    if request.url.path.endswith("/user/tokens/verify"):
        if token == "Bearer user-token":
            return httpx.Response(200, json={"success": True, "result": {"status": "active"}})
        return httpx.Response(
            401,
            json={"success": False, "errors": [{"code": 1000, "message": "Invalid API Token"}]},
        )
    if request.url.path.endswith("/accounts"):
        if token == "Bearer account-token":
            return httpx.Response(200, json={"success": True, "result": [{"id": "abc123"}]})
        return httpx.Response(403, json={"success": False, "errors": [], "result": None})
    return httpx.Response(404, json={"success": False})


@pytest.fixture
def client(tmp_path: Path) -> Any:
    source = tmp_path / "openapi.json"
    source.write_text(
        json.dumps({"paths": {"/zones": {"get": {"summary": "List Zones", "tags": ["Zones"]}}}}),
        encoding="utf-8",
    )
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(_identity_handler))
    app = create_app(
        settings=Settings(api_base_url=BASE_URL, spec_source=str(source)),
        schema_store=SchemaStore(source),
        runtime=FakeRuntime(),  # type: ignore[arg-type]
        http=http,
    )
    with TestClient(app) as test_client:
        yield test_client


def _rpc(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or {}}


def test_missing_authorization_header(client: TestClient) -> None:
    response = client.post("/mcp/", json=_rpc("tools/list"), headers=MCP_HEADERS)
    assert response.status_code == 401
    assert response.json() == {"error": "Authorization header required"}


def test_malformed_authorization_header(client: TestClient) -> None:
    response = client.post(
        "/mcp/",
        json=_rpc("tools/list"),
        headers={**MCP_HEADERS, "Authorization": "Basic dXNlcjpwYXNz"},
    )
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid Authorization header format"}


def test_invalid_token(client: TestClient) -> None:
    response = client.post(
        "/mcp/",
        json=_rpc("tools/list"),
        headers={**MCP_HEADERS, "Authorization": "Bearer nope"},
    )
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid API Token"}


def test_user_token_lists_tools_with_account_id(client: TestClient) -> None:
    response = client.post(
        "/mcp/",
        json=_rpc("tools/list"),
        headers={**MCP_HEADERS, "Authorization": "Bearer user-token"},
    )
    assert response.status_code == 200
    tools = {tool["name"]: tool for tool in response.json()["result"]["tools"]}
    assert set(tools) == {"search", "execute"}
    assert "account_id" in tools["execute"]["inputSchema"]["required"]


def test_account_token_lists_tools_without_account_id(client: TestClient) -> None:
    response = client.post(
        "/mcp/",
        json=_rpc("tools/list"),
        headers={**MCP_HEADERS, "Authorization": "Bearer account-token"},
    )
    assert response.status_code == 200
    tools = {tool["name"]: tool for tool in response.json()["result"]["tools"]}
    assert tools["execute"]["inputSchema"]["required"] == ["code"]


def test_bare_mcp_path_is_served_without_redirect(client: TestClient) -> None:
    response = client.post(
        "/mcp",
        json=_rpc("tools/list"),
        headers={**MCP_HEADERS, "Authorization": "Bearer user-token"},
        follow_redirects=False,
    )
    assert response.status_code == 200
    assert {tool["name"] for tool in response.json()["result"]["tools"]} == {
        "search",
        "execute",
    }


def test_bare_mcp_path_requires_authorization(client: TestClient) -> None:
    response = client.post(
        "/mcp", json=_rpc("tools/list"), headers=MCP_HEADERS, follow_redirects=False
    )
    assert response.status_code == 401
    assert response.json() == {"error": "Authorization header required"}


def test_app_refuses_to_start_without_bwrap(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("cloudflare_api_mcp.sandbox.bwrap._BWRAP_AVAILABLE", False)
    settings = Settings(
        api_base_url=BASE_URL,
        spec_source=str(tmp_path / "openapi.json"),
        sandbox_mode="bwrap",
    )

    with pytest.raises(SandboxUnavailableError, match="CODEMODE_SANDBOX_MODE=process"):
        create_app(settings=settings)


def test_app_starts_in_explicit_process_mode_without_bwrap(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("cloudflare_api_mcp.sandbox.bwrap._BWRAP_AVAILABLE", False)
    settings = Settings(
        api_base_url=BASE_URL,
        spec_source=str(tmp_path / "openapi.json"),
        sandbox_mode="process",
    )

    app = create_app(settings=settings)

    assert app.routes
