"""Isolation helpers for user-authored workflow content.

This module provides:
- Safe expression evaluation for condition nodes (safe_eval_expr)
- A subprocess sandbox for script nodes (ScriptSandbox): isolated interpreter,
  empty environment, scratch working directory, rlimits, restricted builtins
  and an import allow-list
- An egress policy and fetcher for http nodes (AllowlistedFetcher)
"""
from __future__ import annotations

import ast
import asyncio
import contextlib
import ipaddress
import json
import operator
import sys
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from stepflow.logging import get_logger
from stepflow.service.errors import ScriptTimeoutError

logger = get_logger(__name__)

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_DISALLOWED_NODES = (
    ast.Attribute,
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.NamedExpr,
    ast.Starred,
)

_MAX_RECURSION_DEPTH = 100
_MAX_POW_EXPONENT = 1000


def _eval_node(
    node: ast.AST,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None,
    _depth: int = 0,
) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")
    depth = _depth + 1

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, allowed_callables, depth)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = bool(_eval_node(value, names, allowed_callables, depth))
                if not result:
                    break
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = bool(_eval_node(value, names, allowed_callables, depth))
                if result:
                    break
            return result
        raise ValueError("unsupported boolean operator")

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, allowed_callables, depth)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        left = _eval_node(node.left, names, allowed_callables, depth)
        right = _eval_node(node.right, names, allowed_callables, depth)
        if op is operator.pow and isinstance(right, (int, float)) and abs(right) > _MAX_POW_EXPONENT:
            raise ValueError("exponent too large")
        return op(left, right)

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, allowed_callables, depth)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = _eval_node(comparator, names, allowed_callables, depth)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, names, allowed_callables, depth):
            return _eval_node(node.body, names, allowed_callables, depth)
        return _eval_node(node.orelse, names, allowed_callables, depth)

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name):
            raise ValueError("callable references must be simple names")
        if not allowed_callables or node.func.id not in allowed_callables:
            raise ValueError(f"callable {node.func.id} is not permitted")
        func = allowed_callables[node.func.id]
        if not callable(func):
            raise ValueError("call target is not callable")
        args = [_eval_node(arg, names, allowed_callables, depth) for arg in node.args]
        for kw in node.keywords:
            if kw.arg is None:
                raise ValueError("keyword unpacking (**kwargs) not permitted")
        kwargs = {
            kw.arg: _eval_node(kw.value, names, allowed_callables, depth)
            for kw in node.keywords
        }
        return func(*args, **kwargs)

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, names, allowed_callables, depth)
        index = _eval_node(node.slice, names, allowed_callables, depth)
        if not isinstance(target, (Mapping, Sequence, str, bytes)):
            raise ValueError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"invalid subscript access: {exc}") from exc

    if isinstance(node, ast.Tuple):
        return tuple(_eval_node(elt, names, allowed_callables, depth) for elt in node.elts)

    if isinstance(node, ast.List):
        return [_eval_node(elt, names, allowed_callables, depth) for elt in node.elts]

    if isinstance(node, ast.Dict):
        return {
            _eval_node(k, names, allowed_callables, depth): _eval_node(
                v, names, allowed_callables, depth
            )
            for k, v in zip(node.keys, node.values)
        }

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def parse_expression(expr: str) -> ast.Expression:
    """Parse and screen an expression without evaluating it."""
    try:
        parsed = ast.parse(expr, mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"invalid expression: {exc.msg}") from exc

    for node in ast.walk(parsed):
        if isinstance(node, _DISALLOWED_NODES):
            raise ValueError(f"disallowed syntax in expression: {type(node).__name__}")
    return parsed


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None = None,
) -> Any:
    """Evaluate an expression with a constrained AST allowlist.

    Only supports boolean operators, comparisons, conditional expressions,
    indexing, numeric ops, and calling explicitly allowed callables provided
    via ``allowed_callables``. Attribute access, comprehensions, and other
    dynamic constructs are rejected.
    """

    return _eval_node(parse_expression(expr), names, allowed_callables)


# =========================================================================
# Script sandbox
# =========================================================================


class SandboxError(Exception):
    """Raised when sandboxed work cannot run or violates its constraints."""


class ScriptExecutionError(SandboxError):
    """User script raised, returned nothing usable, or was killed."""


DEFAULT_ALLOWED_MODULES = (
    "collections",
    "datetime",
    "decimal",
    "functools",
    "itertools",
    "json",
    "math",
    "random",
    "re",
    "statistics",
    "string",
    "time",
)

DEFAULT_ALLOWED_BUILTINS = (
    "__build_class__",
    "abs",
    "all",
    "any",
    "bool",
    "bytes",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "frozenset",
    "hash",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "object",
    "ord",
    "pow",
    "print",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "ArithmeticError",
    "AssertionError",
    "Exception",
    "IndexError",
    "KeyError",
    "LookupError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
    "True",
    "False",
    "None",
)

_RESULT_START = "<<STEPFLOW_SCRIPT_RESULT>>"
_RESULT_END = "<<STEPFLOW_SCRIPT_RESULT_END>>"

# Runs inside the child interpreter; must only depend on the standard library.
_RUNNER_SOURCE = r'''
import builtins
import inspect
import json
import resource
import sys

payload = json.loads(sys.stdin.buffer.read().decode("utf-8"))
limits = payload["limits"]


def _limit(name, soft, hard=None):
    if not soft:
        return
    try:
        resource.setrlimit(getattr(resource, name), (soft, hard or soft))
    except (ValueError, OSError):
        pass


_limit("RLIMIT_AS", limits.get("memory_bytes"))
_limit("RLIMIT_CPU", limits.get("cpu_seconds"), (limits.get("cpu_seconds") or 0) + 1)
_limit("RLIMIT_FSIZE", limits.get("file_size_bytes"))
try:
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
except (ValueError, OSError):
    pass

allowed_modules = set(payload["allowed_modules"])
_real_import = builtins.__import__


def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name.split(".")[0] not in allowed_modules:
        raise ImportError("import of %r is not allowed in workflow scripts" % name)
    return _real_import(name, globals, locals, fromlist, level)


safe_builtins = {
    name: getattr(builtins, name)
    for name in payload["allowed_builtins"]
    if hasattr(builtins, name)
}
safe_builtins["__import__"] = _guarded_import


def _emit(body, code):
    data = json.dumps(body, default=str, ensure_ascii=False)
    sys.stdout.flush()
    sys.stdout.buffer.write(("\n%s\n%s\n%s\n" % (START, data, END)).encode("utf-8"))
    sys.stdout.flush()
    sys.exit(code)


START = payload["markers"][0]
END = payload["markers"][1]

namespace = {"__builtins__": safe_builtins, "__name__": "__workflow_script__"}
try:
    exec(compile(payload["code"], "<workflow-script>", "exec"), namespace)
    main = namespace.get("main")
    if not callable(main):
        raise TypeError("script must define a callable main()")
    kwargs = payload["kwargs"]
    params = inspect.signature(main).parameters.values()
    if not any(p.kind == p.VAR_KEYWORD for p in params):
        accepted = {
            p.name
            for p in params
            if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)
        }
        kwargs = {k: v for k, v in kwargs.items() if k in accepted}
    result = main(**kwargs)
except MemoryError:
    _emit({"ok": False, "error": "MemoryError: script exceeded its memory limit"}, 1)
except BaseException as exc:
    if isinstance(exc, SystemExit):
        raise
    _emit({"ok": False, "error": "%s: %s" % (type(exc).__name__, exc)}, 1)
else:
    _emit({"ok": True, "result": result}, 0)
'''


@dataclass
class SandboxConfig:
    """Limits applied to a script subprocess.

    Attributes:
        max_memory_mb: Address-space cap for the child interpreter
        max_cpu_seconds: CPU time cap (SIGXCPU after the soft limit)
        max_file_size_mb: Largest file the script may write
        scratch_dir: Working directory for the child
        allowed_modules: Top-level modules the script may import
        allowed_builtins: Builtins visible to the script
    """

    max_memory_mb: int = 256
    max_cpu_seconds: int = 10
    max_file_size_mb: int = 10
    scratch_dir: Optional[Path] = None
    allowed_modules: tuple = DEFAULT_ALLOWED_MODULES
    allowed_builtins: tuple = DEFAULT_ALLOWED_BUILTINS

    def __post_init__(self) -> None:
        if self.scratch_dir is None:
            self.scratch_dir = Path(tempfile.gettempdir()) / "stepflow_sandbox"


def ensure_scratch_dir(config: SandboxConfig) -> Path:
    """Ensure scratch directory exists and is accessible."""
    if config.scratch_dir is None:
        config.scratch_dir = Path(tempfile.gettempdir()) / "stepflow_sandbox"

    config.scratch_dir.mkdir(parents=True, exist_ok=True)
    return config.scratch_dir


def validate_script_source(code: str) -> Optional[str]:
    """Return an error message when ``code`` cannot run as a workflow script."""
    try:
        tree = ast.parse(code, mode="exec")
    except SyntaxError as exc:
        return f"script has a syntax error on line {exc.lineno}: {exc.msg}"
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == "main":
            if isinstance(node, ast.AsyncFunctionDef):
                return "script main() must be a regular function"
            return None
    return "script must define a top-level function named main"


class ScriptSandbox:
    """Runs ``main(**kwargs)`` from user code in a separate, limited interpreter.

    The child gets an empty environment, runs with ``-I`` (no user site, no
    PYTHON* variables, no cwd on sys.path) inside a scratch directory, and
    talks to the host only through JSON on stdin/stdout. Cancelling the
    awaiting task kills the child.
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        *,
        python_executable: Optional[str] = None,
    ) -> None:
        self.config = config or SandboxConfig()
        self.python_executable = python_executable or sys.executable

    def _payload(self, code: str, kwargs: Mapping[str, Any]) -> bytes:
        body = {
            "code": code,
            "kwargs": dict(kwargs),
            "limits": {
                "memory_bytes": self.config.max_memory_mb * 1024 * 1024,
                "cpu_seconds": self.config.max_cpu_seconds,
                "file_size_bytes": self.config.max_file_size_mb * 1024 * 1024,
            },
            "allowed_modules": list(self.config.allowed_modules),
            "allowed_builtins": list(self.config.allowed_builtins),
            "markers": [_RESULT_START, _RESULT_END],
        }
        return json.dumps(body, default=str, ensure_ascii=False).encode("utf-8")

    async def run(
        self,
        code: str,
        kwargs: Mapping[str, Any],
        *,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        scratch = ensure_scratch_dir(self.config)
        payload = self._payload(code, kwargs)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.python_executable,
                "-I",
                "-c",
                _RUNNER_SOURCE,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(scratch),
                env={"LANG": "C.UTF-8", "LC_ALL": "C.UTF-8"},
            )
        except OSError as exc:
            raise SandboxError(f"could not start script interpreter: {exc}") from exc

        try:
            if timeout_ms:
                stdout, stderr = await asyncio.wait_for(
                    proc.communicate(payload), timeout=timeout_ms / 1000.0
                )
            else:
                stdout, stderr = await proc.communicate(payload)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning("sandbox_script_timeout", timeout_ms=timeout_ms, pid=proc.pid)
            raise ScriptTimeoutError(f"script timed out after {timeout_ms} ms")
        except asyncio.CancelledError:
            await self._kill(proc)
            logger.info("sandbox_script_cancelled", pid=proc.pid)
            raise

        return self._parse_output(stdout, stderr, proc.returncode)

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(Exception):
            await proc.wait()

    def _parse_output(self, stdout: bytes, stderr: bytes, returncode: Optional[int]) -> Any:
        text = stdout.decode("utf-8", errors="replace")
        start = text.rfind(_RESULT_START)
        end = text.rfind(_RESULT_END)
        if start == -1 or end == -1 or end < start:
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            if returncode is not None and returncode < 0:
                raise ScriptExecutionError(
                    f"script was killed by signal {-returncode} (resource limit exceeded?)"
                )
            raise ScriptExecutionError(
                f"script exited with code {returncode} without a result"
                + (f": {tail}" if tail else "")
            )
        body = json.loads(text[start + len(_RESULT_START) : end].strip())
        if not body.get("ok"):
            raise ScriptExecutionError(body.get("error") or "script failed")
        return body.get("result")


# =========================================================================
# HTTP egress
# =========================================================================


@dataclass
class HttpEgressPolicy:
    """Network egress policy for http nodes.

    Attributes:
        allowlist: Allowed target host patterns (hostname, wildcard, or CIDR);
            empty means any host
        proxy_url: Optional HTTP proxy all requests must use
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
    """

    allowlist: list[str] = field(default_factory=list)
    proxy_url: Optional[str] = None
    connect_timeout: float = 10.0
    total_timeout: float = 30.0

    def permits(self, host: str) -> bool:
        if not self.allowlist:
            return True
        return _host_matches_allowlist(host, self.allowlist)


def _normalize_allowlist(entries: Sequence[str] | None) -> list[str]:
    normalized: list[str] = []
    for entry in entries or []:
        stripped = entry.strip().lower()
        if stripped:
            normalized.append(stripped)
    return normalized


def build_http_egress_policy(
    *,
    allowlist: Sequence[str] | None,
    proxy_url: Optional[str],
    connect_timeout: float = 10.0,
    total_timeout: float = 30.0,
) -> HttpEgressPolicy:
    """Create a normalized HttpEgressPolicy from raw values."""

    return HttpEgressPolicy(
        allowlist=_normalize_allowlist(list(allowlist or [])),
        proxy_url=proxy_url,
        connect_timeout=min(connect_timeout, total_timeout),
        total_timeout=total_timeout,
    )


def _host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    if not host:
        return False
    lowered = host.lower()
    for entry in allowlist:
        candidate = entry.lower()
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate:
            return True
        elif "/" in candidate:
            try:
                net = ipaddress.ip_network(candidate, strict=False)
                if ipaddress.ip_address(host) in net:
                    return True
            except ValueError:
                continue
    return False


class AllowlistedFetcher:
    """Async HTTP client enforcing the egress allowlist and proxy."""

    def __init__(
        self,
        policy: HttpEgressPolicy,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.policy = policy
        self.transport = transport

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        content: Optional[str | bytes] = None,
        json_body: Any = None,
        timeout_seconds: Optional[float] = None,
    ) -> httpx.Response:
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"}:
            raise SandboxError(f"unsupported URL scheme {parsed.scheme!r}")
        host = parsed.hostname
        if not host:
            raise SandboxError("URL is missing a host")
        if not self.policy.permits(host):
            raise SandboxError(f"target host '{host}' is not allowlisted")

        total = timeout_seconds or self.policy.total_timeout
        timeout = httpx.Timeout(total, connect=min(self.policy.connect_timeout, total))
        client_kwargs: dict[str, Any] = {"timeout": timeout, "follow_redirects": False}
        if self.transport is not None:
            client_kwargs["transport"] = self.transport
        elif self.policy.proxy_url:
            client_kwargs["proxy"] = self.policy.proxy_url
        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                return await client.request(
                    method, url, headers=headers, content=content, json=json_body
                )
        except httpx.TimeoutException as exc:
            raise SandboxError(f"request to {host} timed out") from exc
        except httpx.HTTPError as exc:
            raise SandboxError(f"request to {host} failed: {exc}") from exc
