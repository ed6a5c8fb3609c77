# sandbox.py
# Script host contract.
#
# The engine only ever talks to a ScriptHost: hand it a script body, a role
# and a JSON-shaped input, get JSON-shaped output back or an exception.
# Raw output is never trusted; the parse_* helpers below turn it into typed
# envelopes and raise ScriptOutputError on anything malformed.
#
# PythonScriptHost is the bundled in-process host. It narrows builtins and
# imports, refuses dunder and frame attribute access before exec, and runs
# each call in a daemon worker thread under a timeout. Scripts get no path to
# the host OS, though a busy loop can still burn CPU until it times out.

import ast
import asyncio
import builtins
import copy
import json
import logging
import math
import threading
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from bitwise_engine.errors import ScriptDeclineOrError, ScriptOutputError, ScriptTimeoutError
from bitwise_engine.metrics import MetricsCalculator
from bitwise_engine.models import (
    AlgorithmProposal,
    BitRange,
    Invocation,
    PolicyDecision,
    Role,
    ScoreResult,
    Stage,
)
from bitwise_engine.operations import OperationRouter

logger = logging.getLogger(__name__)

ENTRY_POINT = "execute"

ALLOWED_IMPORTS = frozenset(
    {"math", "itertools", "functools", "collections", "statistics", "json", "re"}
)

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bin", "bool", "callable", "chr", "dict", "divmod",
    "enumerate", "filter", "float", "format", "frozenset", "hash", "hex", "int",
    "isinstance", "iter", "len", "list", "map", "max", "min", "next", "oct", "ord",
    "pow", "range", "repr", "reversed", "round", "set", "slice", "sorted", "str",
    "sum", "tuple", "zip", "__build_class__",
    "ArithmeticError", "Exception", "IndexError", "KeyError", "RuntimeError",
    "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
)


def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name.split(".")[0] not in ALLOWED_IMPORTS:
        raise ImportError(f"Import of '{name}' is not allowed in scripts.")
    return builtins.__import__(name, globals, locals, fromlist, level)


def _safe_builtins() -> dict[str, Any]:
    safe = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
    safe["__import__"] = _guarded_import
    return safe


# Frame and code attributes lead back to module globals.
_FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
        "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
        "tb_frame", "tb_next",
    }
)


class _AccessValidator(ast.NodeVisitor):
    """Refuses dunder names, dunder attributes and frame walking."""

    def __init__(self, name: str) -> None:
        self.name = name

    def _refuse(self, what: str, node: ast.AST) -> None:
        raise ScriptDeclineOrError(
            f"Script '{self.name}' uses forbidden {what} (line {getattr(node, 'lineno', '?')})."
        )

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._refuse(f"name '{node.id}'", node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("__") or node.attr in _FORBIDDEN_ATTRIBUTES:
            self._refuse(f"attribute '{node.attr}'", node)
        self.generic_visit(node)

    def visit_alias(self, node: ast.alias) -> None:
        if any(part.startswith("__") for part in node.name.split(".")):
            self._refuse(f"import '{node.name}'", node)


def check_source(source: str, name: str = "<script>") -> ast.Module:
    """Parse a script body and reject attribute walks out of the sandbox."""
    tree = ast.parse(source, filename=f"<{name}>")
    _AccessValidator(name).visit(tree)
    return tree


# ---------------------------------------------------------------------------
# Hosts
# ---------------------------------------------------------------------------


class ScriptHost(ABC):
    """Executes one script invocation in isolation."""

    @abstractmethod
    async def run(
        self,
        source: str,
        role: Role,
        payload: dict[str, Any],
        timeout_ms: int,
        name: str = "<script>",
        log_sink: list[str] | None = None,
    ) -> Any:
        """
        Return the script's JSON-serializable output.

        Raises ScriptTimeoutError when `timeout_ms` elapses and
        ScriptDeclineOrError for any other script failure.
        """


class PythonScriptHost(ScriptHost):
    """
    Runs Python script bodies that define `execute(ctx)`.

    Scripts see a narrowed set of builtins plus an injected API:
    get_bits, get_bits_length, get_budget, log, get_all_metrics, get_metric,
    execute_operation, get_cost, get_available_operations.
    `execute_operation` is a pure preview; only the engine commits bits.
    """

    def __init__(
        self,
        router: OperationRouter | None = None,
        metrics: MetricsCalculator | None = None,
    ) -> None:
        self._router = router or OperationRouter()
        self._metrics = metrics or MetricsCalculator()

    async def run(
        self,
        source: str,
        role: Role,
        payload: dict[str, Any],
        timeout_ms: int,
        name: str = "<script>",
        log_sink: list[str] | None = None,
    ) -> Any:
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()

        def settle(output: Any, error: Exception | None) -> None:
            if done.done():
                return
            if error is not None:
                done.set_exception(error)
            else:
                done.set_result(output)

        def worker() -> None:
            output, error = None, None
            try:
                output = self._execute(source, role, payload, name, log_sink)
            except Exception as exc:
                error = exc
            try:
                loop.call_soon_threadsafe(settle, output, error)
            except RuntimeError:
                logger.debug("Script '%s' finished after its event loop closed.", name)

        # Daemon thread: a runaway script can't be killed, but it must not
        # keep the process alive either.
        threading.Thread(target=worker, name=f"script-{name}", daemon=True).start()
        try:
            return await asyncio.wait_for(done, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise ScriptTimeoutError(
                f"Script '{name}' exceeded {timeout_ms} ms."
            ) from None

    # ------------------------------------------------------------------
    # Worker-thread side
    # ------------------------------------------------------------------

    def _api(self, payload: dict[str, Any], name: str, log_sink: list[str] | None) -> dict[str, Any]:
        bits = payload.get("bits", payload.get("after_bits", ""))
        budget = payload.get("budget", payload.get("budget_remaining", 0))
        script_logger = logging.getLogger(f"bitwise_engine.script.{name}")
        router = self._router
        metrics = self._metrics

        def log(message: Any) -> None:
            text = str(message)
            script_logger.info(text)
            if log_sink is not None:
                log_sink.append(text)

        def execute_operation(operation: str, target: str | None = None, params: dict | None = None) -> str:
            result = router.apply(operation, bits if target is None else target, params)
            if not result.success:
                raise ValueError(result.error)
            return result.bits

        return {
            "get_bits": lambda: bits,
            "get_bits_length": lambda: len(bits),
            "get_budget": lambda: budget,
            "log": log,
            "get_all_metrics": lambda target=None: metrics.compute(bits if target is None else target),
            "get_metric": lambda metric, target=None: metrics.compute_one(
                metric, bits if target is None else target
            ),
            "execute_operation": execute_operation,
            "get_cost": router.get_cost,
            "get_available_operations": router.available,
        }

    def _execute(
        self,
        source: str,
        role: Role,
        payload: dict[str, Any],
        name: str,
        log_sink: list[str] | None,
    ) -> Any:
        namespace: dict[str, Any] = {
            "__builtins__": _safe_builtins(),
            "__name__": f"bitwise_script_{role.value}",
            **self._api(payload, name, log_sink),
        }
        try:
            code = compile(check_source(source, name), f"<{name}>", "exec")
            exec(code, namespace)
            entry = namespace.get(ENTRY_POINT)
            if not callable(entry):
                raise ScriptDeclineOrError(f"Script '{name}' does not define {ENTRY_POINT}(ctx).")
            output = entry(copy.deepcopy(payload))
        except ScriptDeclineOrError:
            raise
        # User code may raise anything; all of it is a script failure.
        except Exception as exc:
            raise ScriptDeclineOrError(f"Script '{name}' raised {type(exc).__name__}: {exc}") from exc

        try:
            json.dumps(output, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise ScriptOutputError(f"Script '{name}' returned non-JSON output: {exc}") from exc
        return output


# ---------------------------------------------------------------------------
# Envelope parsing
# ---------------------------------------------------------------------------


def _invocation(item: Any) -> Invocation:
    if isinstance(item, str):
        return Invocation(algorithm=item)
    if isinstance(item, dict):
        data = dict(item)
        raw_range = data.get("range")
        if isinstance(raw_range, (list, tuple)):
            if len(raw_range) != 2:
                raise ScriptOutputError(f"Stage range must be [start, end], got {raw_range!r}.")
            data["range"] = {"start": raw_range[0], "end": raw_range[1]}
        try:
            if isinstance(data.get("range"), dict):
                data["range"] = BitRange.model_validate(data["range"], strict=True)
            return Invocation.model_validate(data, strict=True)
        except ValidationError as exc:
            raise ScriptOutputError(f"Malformed stage entry {item!r}: {exc}") from exc
    raise ScriptOutputError(f"Stage entry must be a name or object, got {type(item).__name__}.")


def parse_plan(output: Any) -> list[Stage]:
    """Scheduler output -> ordered stages. A nested list is a declared-parallel group."""
    if output is None:
        return []
    if not isinstance(output, list):
        raise ScriptOutputError(f"Scheduler must return a list of stages, got {type(output).__name__}.")
    stages: list[Stage] = []
    for item in output:
        if isinstance(item, list):
            if not item:
                raise ScriptOutputError("Scheduler returned an empty stage group.")
            stages.append(Stage(invocations=[_invocation(i) for i in item], parallel=True))
        else:
            stages.append(Stage(invocations=[_invocation(item)]))
    return stages


def parse_proposal(output: Any) -> AlgorithmProposal | None:
    """Algorithm output -> proposal, or None for an explicit decline."""
    if output is None:
        return None
    if not isinstance(output, dict):
        raise ScriptOutputError(f"Algorithm must return an object or null, got {type(output).__name__}.")
    try:
        return AlgorithmProposal.model_validate(output, strict=True)
    except ValidationError as exc:
        raise ScriptOutputError(f"Malformed algorithm proposal: {exc}") from exc


def parse_score(output: Any) -> ScoreResult:
    """Scoring output -> score. Accepts a bare number or {score?, veto?}."""
    if isinstance(output, bool):
        raise ScriptOutputError("Scoring script returned a bool; expected a number.")
    if isinstance(output, (int, float)):
        if not math.isfinite(output):
            raise ScriptOutputError(f"Scoring script returned a non-finite score: {output!r}.")
        return ScoreResult(score=output)
    if isinstance(output, dict):
        try:
            result = ScoreResult.model_validate(output, strict=True)
        except ValidationError as exc:
            raise ScriptOutputError(f"Malformed score: {exc}") from exc
        if not math.isfinite(result.score):
            raise ScriptOutputError(f"Scoring script returned a non-finite score: {result.score!r}.")
        return result
    raise ScriptOutputError(f"Scoring script must return a number or object, got {type(output).__name__}.")


def parse_policy(output: Any) -> PolicyDecision:
    """Policy output -> {accept, reason}."""
    if not isinstance(output, dict):
        raise ScriptOutputError(f"Policy must return an object, got {type(output).__name__}.")
    try:
        return PolicyDecision.model_validate(output, strict=True)
    except ValidationError as exc:
        raise ScriptOutputError(f"Malformed policy decision: {exc}") from exc
