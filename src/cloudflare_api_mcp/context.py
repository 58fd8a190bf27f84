"""Binding sets for the search and execute sandboxes."""

from __future__ import annotations

import json
import re
from typing import Any

import httpx

from cloudflare_api_mcp.config import DEFAULT_API_BASE_URL
from cloudflare_api_mcp.logging import get_logger
from cloudflare_api_mcp.schema_store import SchemaDocument
from cloudflare_api_mcp.types import Bindings, CloudflareAPIError

logger = get_logger(__name__)

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
ACCOUNT_PLACEHOLDER = "{account_id}"
ACCOUNT_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def _validate_path(path: Any) -> str:
    if not isinstance(path, str) or not path.startswith("/"):
        raise ValueError("path must be an API path starting with '/'")
    if path.startswith("//") or "://" in path or "\\" in path:
        raise ValueError("path must not name a host")
    if ".." in path.split("?", 1)[0].split("/"):
        raise ValueError("path must not contain '..' segments")
    return path


def _validate_account_id(account_id: Any) -> str:
    if not isinstance(account_id, str) or not ACCOUNT_ID_PATTERN.fullmatch(account_id):
        raise ValueError("account_id must contain only letters, digits, '-' or '_'")
    return account_id


def _query_params(query: Any) -> dict[str, str]:
    if query is None:
        return {}
    if not isinstance(query, dict):
        raise ValueError("query must be a mapping")
    params: dict[str, str] = {}
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, bool):
            params[str(key)] = "true" if value else "false"
        else:
            params[str(key)] = str(value)
    return params


def _error_summary(envelope: dict[str, Any]) -> str:
    errors = envelope.get("errors") or []
    parts = []
    for error in errors:
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message", "")
            parts.append(f"[{code}] {message}" if code is not None else str(message))
    return ", ".join(parts) or "request failed"


class CloudflareClient:
    """Outbound request proxy closed over one caller's credential.

    The credential is only ever placed in the ``Authorization`` header of
    requests to ``base_url``; it never appears in returned data or errors.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        credential: str,
        base_url: str = DEFAULT_API_BASE_URL,
    ) -> None:
        self._http = http
        self._credential = credential
        self._base_url = base_url.rstrip("/")

    def __repr__(self) -> str:
        return f"CloudflareClient(base_url={self._base_url!r})"

    async def request(
        self,
        method: str,
        path: str,
        query: dict[str, Any] | None = None,
        body: Any = None,
        content_type: str | None = None,
        raw_body: bool = False,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        """Call the Cloudflare API and return its response envelope.

        Args:
            method: GET, POST, PUT, PATCH or DELETE.
            path: API path under the base URL, e.g. ``/accounts/{account_id}/workers/scripts``.
            query: Query parameters; ``None`` values are dropped.
            body: Request body, JSON-encoded unless ``raw_body`` is set.
            content_type: Content-Type header; defaults to ``application/json``.
            raw_body: Send ``body`` verbatim (e.g. worker script source).
            account_id: Value substituted for ``{account_id}`` in ``path``.

        Returns:
            The v4 envelope: ``success``, ``result``, ``errors``, ``messages``
            and ``result_info`` when the API sends it.

        Raises:
            ValueError: On an invalid method, path, account id or query, or a
                JSON body holding NaN or infinity.
            CloudflareAPIError: On a transport error or a non-success envelope.
        """
        verb = str(method).upper()
        if verb not in ALLOWED_METHODS:
            raise ValueError(f"Unsupported method: {method}")
        if account_id is not None and isinstance(path, str):
            path = path.replace(ACCOUNT_PLACEHOLDER, _validate_account_id(account_id))
        path = _validate_path(path)

        headers = {"Authorization": f"Bearer {self._credential}"}
        content: bytes | None = None
        if body is not None:
            headers["Content-Type"] = content_type or "application/json"
            if raw_body:
                if not isinstance(body, (str, bytes)):
                    raise ValueError("raw_body requires a string body")
                content = body.encode("utf-8") if isinstance(body, str) else body
            else:
                content = json.dumps(body, allow_nan=False).encode("utf-8")

        try:
            response = await self._http.request(
                verb,
                f"{self._base_url}{path}",
                params=_query_params(query),
                content=content,
                headers=headers,
            )
        except httpx.RequestError as exc:
            logger.error(
                "cloudflare_request_network_error",
                method=verb,
                path=path,
                exception_type=type(exc).__name__,
            )
            raise CloudflareAPIError(
                f"Cloudflare API request failed: {type(exc).__name__}"
            ) from exc

        envelope = self._envelope(response)
        logger.info(
            "cloudflare_request",
            method=verb,
            path=path,
            status_code=response.status_code,
            success=envelope.get("success"),
        )
        if not envelope.get("success"):
            raise CloudflareAPIError(
                f"Cloudflare API error (HTTP {response.status_code}): "
                f"{_error_summary(envelope)}",
                status_code=response.status_code,
            )
        return envelope

    @staticmethod
    def _envelope(response: httpx.Response) -> dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        data: Any = None
        if "json" in content_type:
            try:
                data = response.json()
            except ValueError:
                data = None
        if isinstance(data, dict) and "success" in data:
            envelope = {
                "success": bool(data.get("success")),
                "result": data.get("result"),
                "errors": data.get("errors") or [],
                "messages": data.get("messages") or [],
            }
            if data.get("result_info") is not None:
                envelope["result_info"] = data["result_info"]
            return envelope
        return {
            "success": response.is_success,
            "result": data if data is not None else response.text,
            "errors": []
            if response.is_success
            else [{"code": response.status_code, "message": response.reason_phrase}],
            "messages": [],
        }


def build_search_context(schema: SchemaDocument) -> Bindings:
    """Bindings for ``search``: the schema document as ``spec``."""
    return Bindings(values={"spec": schema.as_json()})


def build_execute_context(account_id: str, client: CloudflareClient) -> Bindings:
    """Bindings for ``execute``: ``account_id`` and the ``cloudflare`` proxy."""
    account_id = _validate_account_id(account_id)

    async def request(
        method: str,
        path: str,
        query: dict[str, Any] | None = None,
        body: Any = None,
        content_type: str | None = None,
        raw_body: bool = False,
    ) -> dict[str, Any]:
        return await client.request(
            method,
            path,
            query=query,
            body=body,
            content_type=content_type,
            raw_body=raw_body,
            account_id=account_id,
        )

    return Bindings(
        values={"account_id": account_id},
        capabilities={"cloudflare": {"request": request}},
    )


__all__ = [
    "CloudflareClient",
    "build_execute_context",
    "build_search_context",
]
