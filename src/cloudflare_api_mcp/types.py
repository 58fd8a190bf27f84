"""Core type definitions for the Cloudflare API code-mode server."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


@dataclass(slots=True, frozen=True)
class MultiAccount:
    """User-scoped credential; the caller names an account on every call."""


@dataclass(slots=True, frozen=True)
class SingleAccount:
    """Account-scoped credential bound to exactly one account."""

    account_id: str


Identity = MultiAccount | SingleAccount


@dataclass(slots=True)
class Session:
    """Credential and resolved identity for one client session."""

    credential: str = field(repr=False)
    identity: Identity


@dataclass(slots=True)
class Value:
    """Successful sandbox outcome."""

    value: Any


@dataclass(slots=True)
class Failure:
    """Failed sandbox outcome."""

    message: str


Outcome = Value | Failure


@dataclass(slots=True)
class ToolResult:
    """Bounded text returned to the caller."""

    text: str
    is_error: bool = False


@dataclass(slots=True, frozen=True)
class EncodedJSON:
    """A binding value that is already serialized as JSON text."""

    text: str = field(repr=False)


@dataclass(slots=True)
class Bindings:
    """Names injected into a sandboxed script.

    ``values`` are copied into the sandbox as JSON. ``capabilities`` map a
    binding name to host coroutine functions exposed as ``name.method(...)``.
    """

    values: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, dict[str, Callable[..., Awaitable[Any]]]] = field(
        default_factory=dict
    )


class AuthError(Exception):
    """Raised when a credential cannot be resolved to an identity."""

    pass


class SandboxError(Exception):
    """Raised when a sandboxed script cannot produce a value."""

    pass


class SandboxTimeoutError(SandboxError):
    """Raised when a sandboxed script exceeds its time limit."""

    pass


class SandboxUnavailableError(SandboxError):
    """Raised when the configured sandbox mode cannot be provided."""

    pass


class CloudflareAPIError(Exception):
    """Raised when an outbound Cloudflare API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SchemaLoadError(Exception):
    """Raised when the API schema document cannot be loaded."""

    pass


class SchemaNotLoadedError(RuntimeError):
    """Raised when the schema document is requested before it is loaded."""

    pass
