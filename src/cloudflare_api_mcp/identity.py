"""Resolve a bearer credential to a user-scoped or account-scoped identity."""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx

from cloudflare_api_mcp.logging import get_logger
from cloudflare_api_mcp.types import (
    AuthError,
    Identity,
    MultiAccount,
    SingleAccount,
)

logger = get_logger(__name__)

_BEARER_RE = re.compile(r"Bearer\s+(\S+)")

MULTIPLE_ACCOUNTS_MESSAGE = (
    "Token has access to multiple accounts - use a single-account token"
)


def extract_token(auth_header: str) -> str | None:
    """Return the token from an ``Authorization: Bearer`` header value."""
    match = _BEARER_RE.search(auth_header)
    return match.group(1) if match else None


def _error_messages(envelope: dict[str, Any]) -> str:
    errors = envelope.get("errors") or []
    messages = [
        str(error.get("message"))
        for error in errors
        if isinstance(error, dict) and error.get("message")
    ]
    return ", ".join(messages)


async def _get_envelope(
    client: httpx.AsyncClient, path: str, credential: str
) -> dict[str, Any]:
    response = await client.get(
        path, headers={"Authorization": f"Bearer {credential}"}
    )
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"unexpected response body from {path}")
    return data


async def resolve_identity(client: httpx.AsyncClient, credential: str) -> Identity:
    """Classify ``credential`` by asking the API about it.

    The user-token check and the account listing run concurrently. A token
    that verifies at user scope is multi-account; otherwise it must list
    exactly one account.

    Args:
        client: HTTP client whose base URL is the Cloudflare v4 API.
        credential: Bearer token supplied by the caller.

    Returns:
        ``MultiAccount()`` or ``SingleAccount(account_id)``.

    Raises:
        AuthError: If the token is invalid, lists no or several accounts,
            or verification itself fails.
    """
    try:
        user_data, accounts_data = await asyncio.gather(
            _get_envelope(client, "/user/tokens/verify", credential),
            _get_envelope(client, "/accounts", credential),
        )
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning(
            "token_verification_failed",
            exception_type=type(exc).__name__,
            exception=str(exc),
        )
        raise AuthError(f"Failed to verify token: {exc}") from exc

    if user_data.get("success"):
        logger.info("identity_resolved", scope="user")
        return MultiAccount()

    accounts = accounts_data.get("result")
    if not accounts_data.get("success") or not isinstance(accounts, list) or not accounts:
        message = _error_messages(user_data) or "Invalid token"
        logger.info("identity_rejected", reason="invalid")
        raise AuthError(message)

    if len(accounts) > 1:
        logger.info("identity_rejected", reason="multiple_accounts", count=len(accounts))
        raise AuthError(MULTIPLE_ACCOUNTS_MESSAGE)

    account = accounts[0]
    account_id = account.get("id") if isinstance(account, dict) else None
    if not isinstance(account_id, str) or not account_id:
        raise AuthError("Failed to verify token: account listing has no id")

    logger.info("identity_resolved", scope="account", account_id=account_id)
    return SingleAccount(account_id=account_id)


__all__ = ["MULTIPLE_ACCOUNTS_MESSAGE", "extract_token", "resolve_identity"]
