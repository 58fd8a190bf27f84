"""Host side of the script sandbox: one worker process per execution."""

from __future__ import annotations

import asyncio
import json
import math
from typing import Any

from cloudflare_api_mcp.logging import get_logger
from cloudflare_api_mcp.sandbox import bwrap
from cloudflare_api_mcp.types import (
    Bindings,
    EncodedJSON,
    Failure,
    Outcome,
    SandboxError,
    SandboxTimeoutError,
    Value,
)

logger = get_logger(__name__)

MAX_RESULT_BYTES = 64 * 1024 * 1024
TIMEOUT_MESSAGE = "timeout"


def _check_name(name: str) -> None:
    if not name.isidentifier() or name.startswith("_"):
        raise ValueError(f"Invalid binding name: {name!r}")


def _encode_value(value: Any) -> str:
    if isinstance(value, EncodedJSON):
        return value.text
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def encode_start(code: str, bindings: Bindings) -> bytes:
    """Serialize the start message; pre-encoded values are spliced in as-is."""
    values = []
    for name, value in bindings.values.items():
        _check_name(name)
        values.append(f"{json.dumps(name)}:{_encode_value(value)}")
    capabilities: dict[str, list[str]] = {}
    for name, methods in bindings.capabilities.items():
        _check_name(name)
        for method in methods:
            _check_name(method)
        capabilities[name] = sorted(methods)
    line = (
        '{"type":"start","code":'
        + json.dumps(code, ensure_ascii=False)
        + ',"values":{'
        + ",".join(values)
        + '},"capabilities":'
        + json.dumps(capabilities)
        + "}\n"
    )
    return line.encode("utf-8")


class SandboxRuntime:
    """Executes script bodies in fresh, isolated worker processes.

    Args:
        timeout: Default wall-clock limit in seconds.
        sandbox_mode: ``"bwrap"`` to wrap workers with bubblewrap, or
            ``"process"`` to opt in to a plain child process.
        memory_limit_mb: Address-space limit applied inside the worker; 0 disables.
        max_result_bytes: Largest message the worker may send back.

    Raises:
        SandboxUnavailableError: ``"bwrap"`` was asked for and bwrap is not
            installed.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        sandbox_mode: str = "bwrap",
        memory_limit_mb: int = 1024,
        max_result_bytes: int = MAX_RESULT_BYTES,
    ) -> None:
        bwrap.require_sandbox(sandbox_mode)
        self.timeout = timeout
        self.sandbox_mode = sandbox_mode
        self.memory_limit_mb = memory_limit_mb
        self.max_result_bytes = max_result_bytes

    async def execute(
        self, code: str, bindings: Bindings, timeout: float | None = None
    ) -> Outcome:
        """Run ``code`` against ``bindings`` and return its outcome.

        Never raises: compile errors, script exceptions, failed capability
        calls, worker crashes and timeouts all become ``Failure``.
        """
        limit = timeout if timeout is not None else self.timeout
        try:
            value = await self._run(code, bindings, limit)
        except SandboxTimeoutError:
            logger.info("sandbox_timeout", timeout=limit)
            return Failure(TIMEOUT_MESSAGE)
        except SandboxError as exc:
            logger.info("sandbox_script_failed", error=str(exc))
            return Failure(str(exc))
        except Exception as exc:
            logger.error(
                "sandbox_internal_error",
                exception_type=type(exc).__name__,
                exception=str(exc),
            )
            return Failure(f"Sandbox failure: {exc}")
        return Value(value)

    async def _run(self, code: str, bindings: Bindings, limit: float) -> Any:
        start_line = encode_start(code, bindings)
        command = bwrap.worker_command(
            sandbox_mode=self.sandbox_mode,
            memory_limit_mb=self.memory_limit_mb,
            cpu_seconds=math.ceil(limit) + 1,
        )
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={},
            limit=self.max_result_bytes,
        )
        logger.debug("sandbox_started", pid=process.pid, mode=self.sandbox_mode)

        pending: set[asyncio.Task[None]] = set()
        stderr_chunks: list[str] = []
        stderr_task = asyncio.create_task(self._read_stderr(process, stderr_chunks))
        try:
            return await asyncio.wait_for(
                self._communicate(
                    process, start_line, bindings, pending, stderr_task, stderr_chunks
                ),
                timeout=limit,
            )
        except asyncio.TimeoutError as exc:
            raise SandboxTimeoutError(TIMEOUT_MESSAGE) from exc
        finally:
            # In-flight upstream calls are abandoned, not awaited.
            for task in pending:
                task.cancel()
            if process.returncode is None:
                process.kill()
            await process.wait()
            stderr_task.cancel()

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        start_line: bytes,
        bindings: Bindings,
        pending: set[asyncio.Task[None]],
        stderr_task: asyncio.Task[None],
        stderr_chunks: list[str],
    ) -> Any:
        assert process.stdin is not None and process.stdout is not None
        write_lock = asyncio.Lock()
        async with write_lock:
            try:
                process.stdin.write(start_line)
                await process.stdin.drain()
            except ConnectionError:
                # The worker died before reading; its exit status is reported below.
                logger.debug("sandbox_start_dropped", pid=process.pid)

        while True:
            try:
                line = await process.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as exc:
                raise SandboxError(
                    f"Script output exceeds {self.max_result_bytes} bytes"
                ) from exc
            if not line:
                break
            try:
                message = json.loads(line)
            except ValueError as exc:
                raise SandboxError("Sandbox sent a malformed message") from exc

            kind = message.get("type")
            if kind == "call":
                task = asyncio.create_task(
                    self._serve_call(process, message, bindings, write_lock)
                )
                pending.add(task)
                task.add_done_callback(pending.discard)
            elif kind == "log":
                logger.debug("sandbox_print", text=str(message.get("text", ""))[:2000])
            elif kind == "result":
                if message.get("ok"):
                    return message.get("value")
                raise SandboxError(str(message.get("error") or "Script failed"))

        returncode = await process.wait()
        await stderr_task
        detail = "".join(stderr_chunks).strip().splitlines()
        message = f"Sandbox exited unexpectedly (exit code {returncode})"
        if detail:
            message = f"{message}: {detail[-1]}"
        raise SandboxError(message)

    async def _serve_call(
        self,
        process: asyncio.subprocess.Process,
        message: dict[str, Any],
        bindings: Bindings,
        write_lock: asyncio.Lock,
    ) -> None:
        request_id = message.get("id")
        target = str(message.get("target", ""))
        name, _, method = target.partition(".")
        handler = bindings.capabilities.get(name, {}).get(method)
        args = message.get("args") or []
        kwargs = message.get("kwargs") or {}

        if handler is None:
            reply: dict[str, Any] = {
                "type": "reply",
                "id": request_id,
                "ok": False,
                "error": f"Unknown capability: {target}",
            }
        else:
            try:
                value = await handler(*args, **kwargs)
                reply = {"type": "reply", "id": request_id, "ok": True, "value": value}
            except Exception as exc:
                logger.info(
                    "sandbox_capability_failed",
                    target=target,
                    exception_type=type(exc).__name__,
                    exception=str(exc),
                )
                reply = {"type": "reply", "id": request_id, "ok": False, "error": str(exc)}

        data = json.dumps(reply, ensure_ascii=False, separators=(",", ":"), default=str)
        assert process.stdin is not None
        async with write_lock:
            try:
                process.stdin.write(data.encode("utf-8") + b"\n")
                await process.stdin.drain()
            except ConnectionError:
                logger.debug("sandbox_reply_dropped", target=target)

    async def _read_stderr(
        self, process: asyncio.subprocess.Process, chunks: list[str]
    ) -> None:
        assert process.stderr is not None
        while chunk := await process.stderr.read(4096):
            text = chunk.decode("utf-8", errors="replace")
            chunks.append(text)
            logger.debug("sandbox_stderr", text=text)


__all__ = ["SandboxRuntime", "TIMEOUT_MESSAGE", "encode_start"]
