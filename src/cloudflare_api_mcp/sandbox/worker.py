"""Sandbox worker: runs one untrusted async function and reports its value.

This file is executed by path in a fresh interpreter (``python -I worker.py``)
and imports only the standard library and RestrictedPython. It speaks JSON
lines:

host -> worker
    ``{"type": "start", "code": str, "values": {...}, "capabilities": {name: [method, ...]}}``
    ``{"type": "reply", "id": int, "ok": bool, "value": ..., "error": str}``
worker -> host
    ``{"type": "call", "id": int, "target": "name.method", "args": [...], "kwargs": {...}}``
    ``{"type": "log", "text": str}``
    ``{"type": "result", "ok": bool, "value": ..., "error": str}``

Scripts are compiled with RestrictedPython, so every attribute access,
subscript, iteration and attribute write goes through a guard. On top of
its policy the worker allows ``async``/``await``, and rejects imports,
``global``/``nonlocal``, ``match`` statements and frame, code or
traceback attributes.
"""

import argparse
import ast
import asyncio
import builtins
import json
import math
import operator
import sys

from RestrictedPython import RestrictingNodeTransformer, compile_restricted_exec
from RestrictedPython.Eval import default_guarded_getitem
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

MAX_LINE = 1 << 30

# Added on top of RestrictedPython's safe_builtins.
_EXTRA_BUILTIN_NAMES = (
    "aiter", "all", "anext", "any", "ascii", "bin", "dict", "enumerate",
    "filter", "frozenset", "iter", "list", "map", "max", "min", "next",
    "reversed", "set", "sum",
    "ArithmeticError", "Exception", "LookupError", "StopAsyncIteration",
)

_BLOCKED_ATTR_PREFIXES = ("f_", "gi_", "cr_", "ag_", "tb_", "co_")
_BLOCKED_ATTRS = frozenset(
    {"get_loop", "get_stack", "print_stack", "get_coro", "format_map", "mro"}
)

_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}

_MISSING = object()


class ScriptRejected(Exception):
    """The script does not have an allowed shape."""


class CapabilityError(Exception):
    """A host capability call failed."""


def _finite(value, parents=frozenset()):
    """Replace NaN and infinities with ``None``, as ``JSON.stringify`` does."""
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if not isinstance(value, (dict, list, tuple)):
        return value
    if id(value) in parents:
        raise ValueError("Circular reference detected")
    parents = parents | {id(value)}
    if isinstance(value, dict):
        return {key: _finite(item, parents) for key, item in value.items()}
    return [_finite(item, parents) for item in value]


def _send(message):
    line = json.dumps(
        _finite(message),
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
        default=_to_json,
    )
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _to_json(value):
    if isinstance(value, (set, frozenset)):
        return [
            None if isinstance(item, float) and not math.isfinite(item) else item
            for item in sorted(value, key=repr)
        ]
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return repr(value)


def _describe(exc):
    if isinstance(exc, SyntaxError):
        return f"SyntaxError: {exc.msg} (line {exc.lineno})"
    message = str(exc)
    return message if message else type(exc).__name__


def _blocked_attr(name):
    return name.startswith(_BLOCKED_ATTR_PREFIXES) or name in _BLOCKED_ATTRS


class ScriptPolicy(RestrictingNodeTransformer):
    """RestrictedPython policy for a single top-level async function."""

    def visit_AsyncFunctionDef(self, node):
        return self.visit_FunctionDef(node)

    def visit_Await(self, node):
        return self.node_contents_visit(node)

    def visit_AsyncFor(self, node):
        return self.node_contents_visit(node)

    def visit_AsyncWith(self, node):
        return self.node_contents_visit(node)

    def visit_Import(self, node):
        self.not_allowed(node)

    def visit_ImportFrom(self, node):
        self.not_allowed(node)

    def visit_Global(self, node):
        self.not_allowed(node)

    def visit_Nonlocal(self, node):
        self.not_allowed(node)

    def visit_Match(self, node):
        # Class patterns read attributes without going through _getattr_.
        self.not_allowed(node)

    def visit_Attribute(self, node):
        if _blocked_attr(node.attr):
            self.error(node, f"attribute '{node.attr}' is not allowed")
        return super().visit_Attribute(node)


def validate(tree):
    """Return the single zero-argument async function in ``tree``."""
    body = list(tree.body)
    if (
        body
        and isinstance(body[0], ast.Expr)
        and isinstance(body[0].value, ast.Constant)
        and isinstance(body[0].value.value, str)
    ):
        body = body[1:]
    if len(body) != 1 or not isinstance(body[0], ast.AsyncFunctionDef):
        raise ScriptRejected(
            "code must be a single async function, e.g. 'async def main(): ...'"
        )
    func = body[0]
    args = func.args
    required = len(args.posonlyargs) + len(args.args) - len(args.defaults)
    required += sum(1 for default in args.kw_defaults if default is None)
    if required:
        raise ScriptRejected("the async function must not take required arguments")
    return func.name


def compile_script(code):
    """Compile ``code`` under :class:`ScriptPolicy`; return (bytecode, function name)."""
    func_name = validate(ast.parse(code, filename="<script>", mode="exec"))
    result = compile_restricted_exec(code, filename="<script>", policy=ScriptPolicy)
    if result.errors:
        raise ScriptRejected("; ".join(result.errors))
    return result.code, func_name


def guarded_getattr(obj, name, default=_MISSING):
    if _blocked_attr(name):
        raise AttributeError(f"attribute '{name}' is not allowed")
    value = safer_getattr(obj, name, _MISSING)
    if value is _MISSING:
        if default is _MISSING:
            raise AttributeError(f"{type(obj).__name__!r} object has no attribute {name!r}")
        return default
    return value


def inplacevar(op, target, value):
    func = _INPLACE_OPS.get(op)
    if func is None:
        raise ScriptRejected(f"operator {op} is not allowed")
    return func(target, value)


def apply(func, *args, **kwargs):
    return func(*args, **kwargs)


class LogPrinter(PrintCollector):
    """Sends each ``print`` call to the host as a log line."""

    def _call_print(self, *objects, **kwargs):
        sep = kwargs.get("sep")
        text = (" " if sep is None else str(sep)).join(str(obj) for obj in objects)
        _send({"type": "log", "text": text})


class _Rpc:
    """Routes capability calls to the host and matches replies by id."""

    def __init__(self, reader):
        self._reader = reader
        self._pending = {}
        self._counter = 0
        self._task = None

    def start(self):
        self._task = asyncio.get_running_loop().create_task(self._read_replies())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def call(self, target, args, kwargs):
        loop = asyncio.get_running_loop()
        self._counter += 1
        request_id = self._counter
        future = loop.create_future()
        self._pending[request_id] = future
        _send(
            {
                "type": "call",
                "id": request_id,
                "target": target,
                "args": list(args),
                "kwargs": kwargs,
            }
        )
        return await future

    async def _read_replies(self):
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                message = json.loads(line)
                if message.get("type") != "reply":
                    continue
                future = self._pending.pop(message.get("id"), None)
                if future is None or future.done():
                    continue
                if message.get("ok"):
                    future.set_result(message.get("value"))
                else:
                    future.set_exception(
                        CapabilityError(message.get("error") or "capability call failed")
                    )
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(CapabilityError("host channel closed"))
            self._pending.clear()


class Capability:
    """Script-visible handle whose methods forward to the host."""

    def __init__(self, name, methods, rpc):
        for method in methods:
            setattr(self, method, self._bind(f"{name}.{method}", rpc))

    @staticmethod
    def _bind(target, rpc):
        async def invoke(*args, **kwargs):
            return await rpc.call(target, args, kwargs)

        invoke.__name__ = target.rsplit(".", 1)[-1]
        return invoke


def build_namespace(values, capabilities, rpc):
    safe = dict(safe_builtins)
    safe.update({name: getattr(builtins, name) for name in _EXTRA_BUILTIN_NAMES})
    safe["gather"] = asyncio.gather
    safe["sleep"] = asyncio.sleep
    safe["CapabilityError"] = CapabilityError
    namespace = {
        "__builtins__": safe,
        "__name__": "__sandbox__",
        "_getattr_": guarded_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": iter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": inplacevar,
        "_apply_": apply,
        "_print_": LogPrinter,
    }
    namespace.update(values)
    for name, methods in capabilities.items():
        namespace[name] = Capability(name, methods, rpc)
    return namespace


def apply_limits(memory_mb, cpu_seconds, max_files=64):
    if resource is None:
        return
    if memory_mb > 0:
        size = memory_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (size, size))
    if cpu_seconds > 0:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
    resource.setrlimit(resource.RLIMIT_NOFILE, (max_files, max_files))
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))


async def _open_stdin():
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def run():
    reader = await _open_stdin()
    line = await reader.readline()
    if not line:
        return
    rpc = _Rpc(reader)
    try:
        start = json.loads(line)
        code = start.get("code")
        if not isinstance(code, str):
            raise ScriptRejected("code must be a string")
        bytecode, func_name = compile_script(code)
        namespace = build_namespace(
            start.get("values") or {}, start.get("capabilities") or {}, rpc
        )
        exec(bytecode, namespace)
        rpc.start()
        value = await namespace[func_name]()
        _send({"type": "result", "ok": True, "value": value})
    except Exception as exc:
        _send({"type": "result", "ok": False, "error": _describe(exc)})
    finally:
        await rpc.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run one sandboxed script.")
    parser.add_argument("--memory-mb", type=int, default=0)
    parser.add_argument("--cpu-seconds", type=int, default=0)
    options = parser.parse_args(argv)
    apply_limits(options.memory_mb, options.cpu_seconds)
    asyncio.run(run())


if __name__ == "__main__":
    main()
