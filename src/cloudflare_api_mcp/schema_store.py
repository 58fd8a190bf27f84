"""In-memory store for the reference-resolved Cloudflare OpenAPI document."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cloudflare_api_mcp.logging import get_logger
from cloudflare_api_mcp.types import EncodedJSON, SchemaLoadError, SchemaNotLoadedError

logger = get_logger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "patch", "head", "options", "trace")
OPERATION_FIELDS = (
    "operationId",
    "summary",
    "description",
    "tags",
    "parameters",
    "requestBody",
    "responses",
)


class _RefResolver:
    """Inline ``#/`` JSON-pointer references against one root document."""

    def __init__(self, root: Mapping[str, Any]) -> None:
        self._root = root
        self._cache: dict[str, Any] = {}
        self._cuts = 0

    def resolve(self, node: Any, stack: tuple[str, ...] = ()) -> Any:
        if isinstance(node, list):
            return [self.resolve(item, stack) for item in node]
        if not isinstance(node, dict):
            return node

        ref = node.get("$ref")
        if isinstance(ref, str):
            resolved = self._resolve_ref(ref, stack)
            siblings = {k: v for k, v in node.items() if k != "$ref"}
            if siblings and isinstance(resolved, dict):
                resolved = {**resolved, **self.resolve(siblings, stack)}
            return resolved

        return {key: self.resolve(value, stack) for key, value in node.items()}

    def _resolve_ref(self, ref: str, stack: tuple[str, ...]) -> Any:
        if ref in stack:
            self._cuts += 1
            return {"$circular_ref": ref}
        if ref in self._cache:
            return self._cache[ref]
        target = self._lookup(ref)
        if target is None:
            return {"$unresolved_ref": ref}
        cuts = self._cuts
        resolved = self.resolve(target, stack + (ref,))
        # A result with a cycle cut depends on where the cycle was entered.
        if self._cuts == cuts:
            self._cache[ref] = resolved
        return resolved

    def _lookup(self, ref: str) -> Any:
        if not ref.startswith("#/"):
            return None
        node: Any = self._root
        for raw_part in ref[2:].split("/"):
            part = raw_part.replace("~1", "/").replace("~0", "~")
            if isinstance(node, dict) and part in node:
                node = node[part]
            elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
                node = node[int(part)]
            else:
                return None
        return node


def process_openapi(document: Mapping[str, Any]) -> dict[str, Any]:
    """Reduce an OpenAPI document to ``{"paths": ...}`` with refs inlined.

    Path-level parameters are merged into each operation and every
    operation keeps only its descriptive fields.
    """
    paths = document.get("paths")
    if not isinstance(paths, Mapping):
        raise SchemaLoadError("OpenAPI document has no 'paths' object")

    resolver = _RefResolver(document)
    processed: dict[str, dict[str, Any]] = {}
    for path, item in paths.items():
        if not isinstance(item, Mapping):
            continue
        item = resolver.resolve(dict(item))
        shared_params = item.get("parameters") or []
        operations: dict[str, Any] = {}
        for method in HTTP_METHODS:
            operation = item.get(method)
            if not isinstance(operation, dict):
                continue
            reduced = {f: operation[f] for f in OPERATION_FIELDS if f in operation}
            if shared_params:
                own = reduced.get("parameters") or []
                own_keys = {
                    (p.get("name"), p.get("in")) for p in own if isinstance(p, dict)
                }
                merged = [
                    p
                    for p in shared_params
                    if not isinstance(p, dict)
                    or (p.get("name"), p.get("in")) not in own_keys
                ]
                reduced["parameters"] = merged + list(own)
            operations[method] = reduced
        if operations:
            processed[path] = operations
    return {"paths": processed}


class SchemaDocument(Mapping[str, Any]):
    """Read-only view of the processed schema, with a cached JSON encoding."""

    def __init__(self, data: dict[str, Any]) -> None:
        self._data = MappingProxyType(data)
        self._encoded = EncodedJSON(
            json.dumps(data, ensure_ascii=False, separators=(",", ":"))
        )

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def paths(self) -> Mapping[str, Any]:
        return self._data["paths"]

    def as_json(self) -> EncodedJSON:
        return self._encoded

    def tags(self) -> list[str]:
        """Distinct operation tags in first-seen order."""
        seen: dict[str, None] = {}
        for operations in self.paths.values():
            for operation in operations.values():
                for tag in operation.get("tags") or []:
                    if isinstance(tag, str):
                        seen.setdefault(tag, None)
        return list(seen)


def _log_retry_attempt(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "schema_download_retry",
        attempt=retry_state.attempt_number,
        exception=str(exc),
    )


class SchemaStore:
    """Loads the schema document once and hands out the shared snapshot.

    Args:
        source: Local file path or ``http(s)://`` URL of the OpenAPI JSON.
        client: Optional HTTP client used for URL sources.
        max_attempts: Download attempts before giving up.
    """

    def __init__(
        self,
        source: str | Path,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 10.0,
    ) -> None:
        self._source = str(source)
        self._client = client
        self._max_attempts = max_attempts
        self._min_wait = min_wait
        self._max_wait = max_wait
        self._document: SchemaDocument | None = None
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._document is not None

    async def load(self) -> SchemaDocument:
        async with self._lock:
            if self._document is not None:
                return self._document

            raw = await self._read_source()
            try:
                document = json.loads(raw)
            except ValueError as exc:
                raise SchemaLoadError(f"Schema document is not valid JSON: {exc}") from exc
            if not isinstance(document, dict):
                raise SchemaLoadError("Schema document must be a JSON object")

            # Processing walks a multi-megabyte tree; keep it off the event loop.
            processed = await asyncio.to_thread(process_openapi, document)
            self._document = await asyncio.to_thread(SchemaDocument, processed)
            logger.info(
                "schema_loaded",
                source=self._source,
                paths=len(self._document.paths),
                size=len(self._document.as_json().text),
            )
            return self._document

    def get(self) -> SchemaDocument:
        if self._document is None:
            raise SchemaNotLoadedError("Schema document has not been loaded")
        return self._document

    async def _read_source(self) -> str:
        if self._source.startswith(("http://", "https://")):
            return await self._download()
        path = Path(self._source)
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as exc:
            raise SchemaLoadError(f"Cannot read schema file {path}: {exc}") from exc

    async def _download(self) -> str:
        client = self._client or httpx.AsyncClient(trust_env=False, timeout=60.0)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(min=self._min_wait, max=self._max_wait),
                retry=retry_if_exception_type(httpx.HTTPError),
                before_sleep=_log_retry_attempt,
                reraise=True,
            ):
                with attempt:
                    response = await client.get(self._source)
                    response.raise_for_status()
                    return response.text
        except httpx.HTTPError as exc:
            logger.error("schema_download_failed", source=self._source, exception=str(exc))
            raise SchemaLoadError(f"Cannot download schema from {self._source}: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        raise RuntimeError("Retry loop exited unexpectedly")


__all__ = ["SchemaDocument", "SchemaStore", "process_openapi"]
