"""The ``search`` and ``execute`` tools and their MCP server registration."""

from __future__ import annotations

from typing import Any

from mcp.server import Server
from mcp.types import CallToolResult, TextContent, Tool

from cloudflare_api_mcp import __version__
from cloudflare_api_mcp.context import (
    CloudflareClient,
    build_execute_context,
    build_search_context,
)
from cloudflare_api_mcp.logging import get_logger
from cloudflare_api_mcp.sandbox import SandboxRuntime
from cloudflare_api_mcp.schema_store import SchemaStore
from cloudflare_api_mcp.truncate import MAX_TOKENS, truncate_response
from cloudflare_api_mcp.types import (
    Failure,
    MultiAccount,
    Outcome,
    Session,
    SingleAccount,
    ToolResult,
)

logger = get_logger(__name__)

SERVER_NAME = "cloudflare-api"
PRODUCTS_IN_DESCRIPTION = 30

SPEC_TYPES = """
spec: dict  # {"paths": {path: {method: operation}}}

operation = {
    "summary": str,
    "description": str,
    "tags": list[str],
    "parameters": list[{"name": str, "in": str, "required": bool, "schema": dict, "description": str}],
    "requestBody": {"required": bool, "content": {media_type: {"schema": dict}}},
    "responses": {status: {"description": str, "content": {media_type: {"schema": dict}}}},
}
"""

CLOUDFLARE_TYPES = """
account_id: str

await cloudflare.request(
    method: str,                 # "GET" | "POST" | "PUT" | "PATCH" | "DELETE"
    path: str,                   # "/accounts/{account_id}/..." ({account_id} is filled in)
    query: dict | None = None,
    body: Any = None,            # JSON-encoded unless raw_body=True
    content_type: str | None = None,  # defaults to "application/json" when body is set
    raw_body: bool = False,      # send body verbatim
) -> {
    "success": bool,
    "result": Any,
    "errors": list[{"code": int, "message": str}],
    "messages": list[{"code": int, "message": str}],
    "result_info": {"page": int, "per_page": int, "total_pages": int, "count": int, "total_count": int},
}

A failed call raises CapabilityError. gather() and sleep() are available for concurrency.
"""

SEARCH_EXAMPLES = '''
# Find endpoints by product
async def main():
    results = []
    for path, methods in spec["paths"].items():
        for method, op in methods.items():
            if any(t.lower() == "workers" for t in op.get("tags", [])):
                results.append({"method": method.upper(), "path": path, "summary": op.get("summary")})
    return results

# Get endpoint with requestBody schema (refs are resolved)
async def main():
    op = spec["paths"].get("/accounts/{account_id}/d1/database", {}).get("post", {})
    return {"summary": op.get("summary"), "requestBody": op.get("requestBody")}

# Get endpoint parameters
async def main():
    return spec["paths"]["/accounts/{account_id}/workers/scripts"]["get"].get("parameters")
'''

EXECUTE_EXAMPLES = '''
async def main():
    response = await cloudflare.request(
        method="GET",
        path=f"/accounts/{account_id}/workers/scripts",
    )
    return response["result"]

# Upload a Worker script (service worker syntax)
async def main():
    worker_code = """addEventListener('fetch', event => {
  event.respondWith(new Response('Hello World!'));
});"""
    return await cloudflare.request(
        method="PUT",
        path=f"/accounts/{account_id}/workers/scripts/my-worker",
        body=worker_code,
        content_type="application/javascript",
        raw_body=True,
    )
'''


def search_description(products: list[str]) -> str:
    shown = ", ".join(products[:PRODUCTS_IN_DESCRIPTION])
    more = "..." if len(products) > PRODUCTS_IN_DESCRIPTION else ""
    return (
        "Search the Cloudflare OpenAPI spec. All $refs are pre-resolved inline.\n\n"
        f"Products: {shown}{more} ({len(products)} total)\n\n"
        f"Available in your code:\n{SPEC_TYPES}\n"
        "Your code must be a single Python async function with no arguments "
        "that returns the result.\n\n"
        f"Examples:\n{SEARCH_EXAMPLES}"
    )


def execute_description() -> str:
    return (
        "Execute Python code against the Cloudflare API. First use the 'search' "
        "tool to find the right endpoints, then write code using "
        "cloudflare.request().\n\n"
        f"Available in your code:\n{CLOUDFLARE_TYPES}\n"
        "Your code must be a single Python async function with no arguments "
        "that returns the result.\n\n"
        f"Examples:\n{EXECUTE_EXAMPLES}"
    )


def format_error(message: str) -> ToolResult:
    return ToolResult(text=f"Error: {message}", is_error=True)


class CodeModeTools:
    """Caller-visible operations for one session.

    Args:
        schema_store: Loaded schema store shared by all sessions.
        runtime: Sandbox runtime used for every script.
        session: Credential and identity of the caller.
        client: Outbound proxy closed over the session credential.
        max_tokens: Output budget for both tools.
    """

    def __init__(
        self,
        schema_store: SchemaStore,
        runtime: SandboxRuntime,
        session: Session,
        client: CloudflareClient,
        max_tokens: int = MAX_TOKENS,
    ) -> None:
        self._schema_store = schema_store
        self._runtime = runtime
        self._session = session
        self._client = client
        self._max_tokens = max_tokens

    @property
    def requires_account_id(self) -> bool:
        return isinstance(self._session.identity, MultiAccount)

    async def search(self, code: str) -> ToolResult:
        try:
            bindings = build_search_context(self._schema_store.get())
            outcome = await self._runtime.execute(code, bindings)
            return self._shape(outcome)
        except Exception as exc:
            logger.error("search_failed", exception_type=type(exc).__name__, exception=str(exc))
            return format_error(str(exc))

    async def execute(self, code: str, account_id: str | None = None) -> ToolResult:
        identity = self._session.identity
        if isinstance(identity, SingleAccount):
            if account_id and account_id != identity.account_id:
                logger.info("execute_account_id_ignored")
            account_id = identity.account_id
        elif not account_id or not account_id.strip():
            return format_error(
                "account_id is required (call GET /accounts to list available accounts)"
            )

        try:
            bindings = build_execute_context(account_id, self._client)
            outcome = await self._runtime.execute(code, bindings)
            return self._shape(outcome)
        except Exception as exc:
            logger.error("execute_failed", exception_type=type(exc).__name__, exception=str(exc))
            return format_error(str(exc))

    def _shape(self, outcome: Outcome) -> ToolResult:
        if isinstance(outcome, Failure):
            return format_error(outcome.message)
        return ToolResult(text=truncate_response(outcome.value, self._max_tokens))


def tool_definitions(tools: CodeModeTools, products: list[str]) -> list[Tool]:
    code_property = {"type": "string", "description": "Python async function to run"}
    execute_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"code": dict(code_property)},
        "required": ["code"],
    }
    if tools.requires_account_id:
        execute_schema["properties"]["account_id"] = {
            "type": "string",
            "description": "Your Cloudflare account ID (call GET /accounts to list available accounts)",
        }
        execute_schema["required"].append("account_id")

    return [
        Tool(
            name="search",
            description=search_description(products),
            inputSchema={
                "type": "object",
                "properties": {
                    "code": {
                        "type": "string",
                        "description": "Python async function to search the OpenAPI spec",
                    }
                },
                "required": ["code"],
            },
        ),
        Tool(
            name="execute",
            description=execute_description(),
            inputSchema=execute_schema,
        ),
    ]


def _to_call_result(result: ToolResult) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=result.text)],
        isError=result.is_error,
    )


async def dispatch_tool(
    tools: CodeModeTools, name: str, arguments: dict[str, Any] | None
) -> CallToolResult:
    arguments = arguments or {}
    code = arguments.get("code")
    if not isinstance(code, str):
        return _to_call_result(format_error("Missing 'code' argument"))

    if name == "search":
        result = await tools.search(code)
    elif name == "execute":
        account_id = arguments.get("account_id")
        result = await tools.execute(
            code, account_id if isinstance(account_id, str) else None
        )
    else:
        result = format_error(f"Unknown tool: {name}")

    logger.info("tool_called", tool=name, is_error=result.is_error, size=len(result.text))
    return _to_call_result(result)


def create_server(tools: CodeModeTools, products: list[str]) -> Server:
    """Build the MCP server exposing ``search`` and ``execute`` for one session."""
    server = Server(SERVER_NAME, version=__version__)
    definitions = tool_definitions(tools, products)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return definitions

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> CallToolResult:
        return await dispatch_tool(tools, name, arguments)

    return server


__all__ = [
    "CodeModeTools",
    "SERVER_NAME",
    "create_server",
    "dispatch_tool",
    "tool_definitions",
]
