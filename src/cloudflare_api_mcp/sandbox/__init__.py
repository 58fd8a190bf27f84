"""Isolated execution of untrusted scripts."""

from cloudflare_api_mcp.sandbox.bwrap import worker_command
from cloudflare_api_mcp.sandbox.runtime import SandboxRuntime, TIMEOUT_MESSAGE

__all__ = ["SandboxRuntime", "TIMEOUT_MESSAGE", "worker_command"]
