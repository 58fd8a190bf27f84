"""Runtime settings with environment variable fallbacks."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

DEFAULT_API_BASE_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_SPEC_SOURCE = (
    "https://raw.githubusercontent.com/cloudflare/api-schemas/main/openapi.json"
)

SandboxMode = Literal["bwrap", "process"]


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class Settings:
    """Server configuration.

    Every field can be passed explicitly; ``from_env`` fills the rest from
    environment variables.
    """

    api_base_url: str = DEFAULT_API_BASE_URL
    spec_source: str = DEFAULT_SPEC_SOURCE
    timeout: float = 30.0
    max_tokens: int = 6000
    sandbox_mode: SandboxMode = "bwrap"
    memory_limit_mb: int = 1024
    http_timeout: float = 30.0
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        mode = os.environ.get("CODEMODE_SANDBOX_MODE", "bwrap").strip().lower()
        if mode not in ("bwrap", "process"):
            raise ValueError(
                f"CODEMODE_SANDBOX_MODE must be 'bwrap' or 'process', got {mode!r}"
            )
        return cls(
            api_base_url=os.environ.get(
                "CLOUDFLARE_API_BASE_URL", DEFAULT_API_BASE_URL
            ).rstrip("/"),
            spec_source=os.environ.get("CLOUDFLARE_SPEC_SOURCE", DEFAULT_SPEC_SOURCE),
            timeout=_env_float("CODEMODE_TIMEOUT", 30.0),
            max_tokens=_env_int("CODEMODE_MAX_TOKENS", 6000),
            sandbox_mode=mode,  # type: ignore[arg-type]
            memory_limit_mb=_env_int("CODEMODE_MEMORY_LIMIT_MB", 1024),
            http_timeout=_env_float("CODEMODE_HTTP_TIMEOUT", 30.0),
            host=os.environ.get("CODEMODE_HOST", "127.0.0.1"),
            port=_env_int("CODEMODE_PORT", 8000),
            log_level=os.environ.get("CODEMODE_LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("CODEMODE_LOG_JSON", False),
        )


__all__ = ["DEFAULT_API_BASE_URL", "DEFAULT_SPEC_SOURCE", "SandboxMode", "Settings"]
