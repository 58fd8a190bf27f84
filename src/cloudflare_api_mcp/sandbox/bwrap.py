"""bwrap-backed command wrapping for sandbox worker processes."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

from cloudflare_api_mcp.logging import get_logger
from cloudflare_api_mcp.types import SandboxUnavailableError

logger = get_logger(__name__)

WORKER_PATH = Path(__file__).with_name("worker.py")
SANDBOX_MODES = ("bwrap", "process")

_BWRAP_AVAILABLE: bool | None = None


def _has_bwrap() -> bool:
    global _BWRAP_AVAILABLE
    if _BWRAP_AVAILABLE is None:
        _BWRAP_AVAILABLE = shutil.which("bwrap") is not None
    return _BWRAP_AVAILABLE


def require_sandbox(sandbox_mode: str) -> None:
    """Fail unless ``sandbox_mode`` can be provided on this host.

    ``bwrap`` never degrades to a plain process; ``process`` has to be
    chosen explicitly.
    """
    if sandbox_mode not in SANDBOX_MODES:
        raise ValueError(f"Unknown sandbox mode: {sandbox_mode!r}")
    if sandbox_mode == "bwrap" and not _has_bwrap():
        logger.error("bwrap_unavailable", sandbox_mode=sandbox_mode)
        raise SandboxUnavailableError(
            "Sandbox mode 'bwrap' requires the bwrap binary on PATH; "
            "install bubblewrap or set CODEMODE_SANDBOX_MODE=process"
        )


def worker_command(
    sandbox_mode: str = "bwrap",
    memory_limit_mb: int = 0,
    cpu_seconds: int = 0,
    python: str | None = None,
) -> list[str]:
    """Build the argv that starts one sandbox worker.

    In ``bwrap`` mode the worker gets a read-only root, a private ``/tmp``
    and no network or other shared namespaces. Raises
    ``SandboxUnavailableError`` when bwrap mode is asked for but bwrap is
    not on ``PATH``.
    """
    require_sandbox(sandbox_mode)
    command = [
        python or sys.executable,
        "-I",
        "-X",
        "utf8",
        str(WORKER_PATH),
        "--memory-mb",
        str(memory_limit_mb),
        "--cpu-seconds",
        str(cpu_seconds),
    ]
    if sandbox_mode == "process":
        return command
    return [
        "bwrap",
        "--ro-bind",
        "/",
        "/",
        "--dev",
        "/dev",
        "--proc",
        "/proc",
        "--tmpfs",
        "/tmp",
        "--unshare-all",
        "--die-with-parent",
        "--new-session",
        "--",
        *command,
    ]


__all__ = ["SANDBOX_MODES", "WORKER_PATH", "require_sandbox", "worker_command"]
