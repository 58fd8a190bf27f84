"""Code-mode MCP server for the Cloudflare API."""

__version__ = "0.1.0"

from cloudflare_api_mcp.types import (
    AuthError,
    Bindings,
    CloudflareAPIError,
    EncodedJSON,
    Failure,
    Identity,
    MultiAccount,
    Outcome,
    SandboxError,
    SandboxTimeoutError,
    SandboxUnavailableError,
    SchemaLoadError,
    SchemaNotLoadedError,
    Session,
    SingleAccount,
    ToolResult,
    Value,
)
from cloudflare_api_mcp.config import Settings
from cloudflare_api_mcp.identity import extract_token, resolve_identity
from cloudflare_api_mcp.schema_store import SchemaDocument, SchemaStore
from cloudflare_api_mcp.sandbox import SandboxRuntime
from cloudflare_api_mcp.context import (
    CloudflareClient,
    build_execute_context,
    build_search_context,
)
from cloudflare_api_mcp.truncate import truncate_response
from cloudflare_api_mcp.server import CodeModeTools, create_server
from cloudflare_api_mcp.logging import configure_logging, get_logger

__all__ = [
    "__version__",
    "AuthError",
    "Bindings",
    "CloudflareAPIError",
    "CloudflareClient",
    "CodeModeTools",
    "EncodedJSON",
    "Failure",
    "Identity",
    "MultiAccount",
    "Outcome",
    "SandboxError",
    "SandboxRuntime",
    "SandboxTimeoutError",
    "SandboxUnavailableError",
    "SchemaDocument",
    "SchemaLoadError",
    "SchemaNotLoadedError",
    "SchemaStore",
    "Session",
    "Settings",
    "SingleAccount",
    "ToolResult",
    "Value",
    "build_execute_context",
    "build_search_context",
    "configure_logging",
    "create_server",
    "extract_token",
    "get_logger",
    "resolve_identity",
    "truncate_response",
]
