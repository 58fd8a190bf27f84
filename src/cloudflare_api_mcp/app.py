"""HTTP entry point: bearer-token gate in front of a per-request MCP server."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator

import httpx
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from cloudflare_api_mcp.config import Settings
from cloudflare_api_mcp.context import CloudflareClient
from cloudflare_api_mcp.identity import extract_token, resolve_identity
from cloudflare_api_mcp.logging import get_logger
from cloudflare_api_mcp.sandbox import SandboxRuntime
from cloudflare_api_mcp.schema_store import SchemaStore
from cloudflare_api_mcp.server import CodeModeTools, create_server
from cloudflare_api_mcp.types import AuthError, Session

logger = get_logger(__name__)


def json_error(message: str, status_code: int = 401) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


class CodeModeEndpoint:
    """ASGI endpoint that authenticates the caller and serves one MCP exchange.

    A server, transport and identity are built per request; only the schema
    store, sandbox runtime and HTTP connection pool are shared.
    """

    def __init__(
        self,
        settings: Settings,
        schema_store: SchemaStore,
        runtime: SandboxRuntime,
        http: httpx.AsyncClient,
    ) -> None:
        self.settings = settings
        self.schema_store = schema_store
        self.runtime = runtime
        self.http = http

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        auth_header = request.headers.get("authorization")
        if not auth_header:
            await json_error("Authorization header required")(scope, receive, send)
            return

        token = extract_token(auth_header)
        if not token:
            await json_error("Invalid Authorization header format")(scope, receive, send)
            return

        try:
            identity = await resolve_identity(self.http, token)
        except AuthError as exc:
            await json_error(str(exc) or "Token verification failed")(scope, receive, send)
            return

        session = Session(credential=token, identity=identity)
        tools = CodeModeTools(
            schema_store=self.schema_store,
            runtime=self.runtime,
            session=session,
            client=CloudflareClient(self.http, token, self.settings.api_base_url),
            max_tokens=self.settings.max_tokens,
        )
        server = create_server(tools, self.schema_store.get().tags())
        manager = StreamableHTTPSessionManager(
            app=server, json_response=True, stateless=True
        )
        async with manager.run():
            await manager.handle_request(scope, receive, send)


def create_app(
    settings: Settings | None = None,
    schema_store: SchemaStore | None = None,
    runtime: SandboxRuntime | None = None,
    http: httpx.AsyncClient | None = None,
) -> Starlette:
    """Build the ASGI application; the schema is loaded during start-up.

    Raises ``SandboxUnavailableError`` when the configured sandbox mode
    cannot be provided on this host.
    """
    settings = settings or Settings.from_env()
    runtime = runtime or SandboxRuntime(
        timeout=settings.timeout,
        sandbox_mode=settings.sandbox_mode,
        memory_limit_mb=settings.memory_limit_mb,
    )
    http = http or httpx.AsyncClient(
        base_url=settings.api_base_url,
        trust_env=False,
        timeout=settings.http_timeout,
    )
    schema_store = schema_store or SchemaStore(settings.spec_source)
    endpoint = CodeModeEndpoint(settings, schema_store, runtime, http)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await schema_store.load()
        logger.info("server_ready", api_base_url=settings.api_base_url)
        try:
            yield
        finally:
            await http.aclose()

    routes = [Route("/mcp", endpoint=endpoint), Mount("/mcp", app=endpoint)]
    return Starlette(routes=routes, lifespan=lifespan)


__all__ = ["CodeModeEndpoint", "create_app", "json_error"]
