"""
Sandboxed evaluation for user-authored expressions and code.

Two entry points:

- safe_eval: a single expression (TRANSFORM nodes, SWITCH discriminants,
  template placeholders), evaluated with simpleeval. Only the names and
  functions passed in are reachable; dunder access is refused.
- CodeSandbox / safe_exec: a short Python function body (CODE nodes). The
  source is checked against an AST whitelist and executed with a reduced
  builtins table. The value of ``return`` (or of a variable named
  ``result`` when the body never returns) is the output.

Neither path enforces a wall-clock limit itself; the scheduler wraps every
node in its per-type timeout.
"""

import ast
import json
import logging
import math
import textwrap
from types import MappingProxyType, SimpleNamespace
from typing import Any

from simpleeval import EvalWithCompoundTypes, InvalidExpression

from flowengine.errors import SandboxError, TemplateError

logger = logging.getLogger(__name__)

# Functions callable from expressions
SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sum": sum,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "any": any,
    "all": all,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "strip": lambda s: str(s).strip(),
    "contains": lambda container, item: item in container if container is not None else False,
    "json_dumps": lambda v: json.dumps(v, ensure_ascii=False),
    "json_loads": json.loads,
}


def safe_eval(expression: str, names: dict[str, Any]) -> Any:
    """
    Evaluate a single expression against ``names``.

    Raises:
        TemplateError: if the expression is malformed, refers to something
            that is not exposed, or fails while evaluating.
    """
    if "__" in expression:
        raise TemplateError(f"Blocked identifier in expression: {expression!r}")

    evaluator = EvalWithCompoundTypes(names=names, functions=SAFE_FUNCTIONS)
    try:
        return evaluator.eval(expression)
    except InvalidExpression as e:
        raise TemplateError(f"Invalid expression {expression!r}: {e}") from e
    except SyntaxError as e:
        raise TemplateError(f"Syntax error in expression {expression!r}: {e.msg}") from e
    except Exception as e:
        raise TemplateError(
            f"Expression {expression!r} failed: {type(e).__name__}: {e}"
        ) from e


# ---------------------------------------------------------------------------
# Code sandbox
# ---------------------------------------------------------------------------

_ENTRYPOINT = "flow_code"
_PARAMS = ("input", "variables", "trigger", "nodes")

SAFE_BUILTINS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "list": list,
    "dict": dict,
    "set": set,
    "tuple": tuple,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "sorted": sorted,
    "reversed": reversed,
    "range": range,
    "enumerate": enumerate,
    "zip": zip,
    "map": map,
    "filter": filter,
    "any": any,
    "all": all,
    "isinstance": isinstance,
    "print": lambda *args, **kwargs: None,
    "True": True,
    "False": False,
    "None": None,
    "ValueError": ValueError,
    "KeyError": KeyError,
    "TypeError": TypeError,
    "Exception": Exception,
}

BLOCKED_NAMES = frozenset(
    {
        "eval",
        "exec",
        "compile",
        "open",
        "globals",
        "locals",
        "vars",
        "dir",
        "getattr",
        "setattr",
        "delattr",
        "breakpoint",
        "help",
        "memoryview",
        "type",
        "object",
        "super",
    }
)

BLOCKED_NODES: tuple[type[ast.AST], ...] = (
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.ClassDef,
    ast.AsyncFunctionDef,
    ast.Await,
    ast.AsyncFor,
    ast.AsyncWith,
    ast.Yield,
    ast.YieldFrom,
)


def _module_namespace() -> dict[str, Any]:
    """Helper modules exposed to code, reduced to plain callables."""
    return {
        "json": SimpleNamespace(loads=json.loads, dumps=json.dumps),
        "math": SimpleNamespace(
            **{name: getattr(math, name) for name in dir(math) if not name.startswith("_")}
        ),
    }


class CodeSandbox:
    """
    Validates and executes CODE node bodies.

    Example:
        sandbox = CodeSandbox()
        sandbox.run("return {'n': len(input['items'])}", input={"items": [1, 2]})
        # {'n': 2}
    """

    def validate(self, code: str) -> list[str]:
        """Return the reasons ``code`` is not allowed (empty when it is)."""
        try:
            tree = self._wrap(code)
        except SyntaxError as e:
            return [f"Syntax error on line {max((e.lineno or 2) - 1, 1)}: {e.msg}"]
        return self._violations(tree)

    def run(
        self,
        code: str,
        input: Any = None,
        variables: Any = None,
        trigger: Any = None,
        nodes: Any = None,
    ) -> Any:
        """
        Execute ``code`` and return its result.

        Raises:
            SandboxError: if the code is rejected or raises while running.
        """
        try:
            tree = self._wrap(code)
        except SyntaxError as e:
            raise SandboxError(f"Code error: {e.msg} (line {max((e.lineno or 2) - 1, 1)})") from e

        violations = self._violations(tree)
        if violations:
            raise SandboxError(f"Code rejected: {'; '.join(violations)}")

        namespace: dict[str, Any] = {"__builtins__": dict(SAFE_BUILTINS), **_module_namespace()}
        try:
            exec(compile(tree, "<code-node>", "exec"), namespace)
            return namespace[_ENTRYPOINT](
                input,
                dict(variables or {}),
                trigger,
                MappingProxyType(dict(nodes or {})),
            )
        except SandboxError:
            raise
        except Exception as e:
            logger.debug(f"Code node raised {type(e).__name__}: {e}")
            raise SandboxError(f"Code error: {type(e).__name__}: {e}") from e

    def _wrap(self, code: str) -> ast.Module:
        body = textwrap.dedent(code)
        if not body.strip():
            body = "pass"
        source = f"def {_ENTRYPOINT}({', '.join(_PARAMS)}):\n" + textwrap.indent(body, "    ")
        tree = ast.parse(source, mode="exec")

        func = tree.body[0]
        assert isinstance(func, ast.FunctionDef)
        has_return = any(isinstance(n, ast.Return) for n in ast.walk(func))
        assigns_result = any(
            isinstance(n, ast.Name) and n.id == "result" and isinstance(n.ctx, ast.Store)
            for n in ast.walk(func)
        )
        if not has_return and assigns_result:
            func.body.append(ast.Return(value=ast.Name(id="result", ctx=ast.Load())))
        ast.fix_missing_locations(tree)
        return tree

    def _violations(self, tree: ast.Module) -> list[str]:
        violations = []
        for node in ast.walk(tree):
            if isinstance(node, BLOCKED_NODES):
                violations.append(f"{type(node).__name__} is not allowed")
            elif isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                violations.append(f"access to attribute '{node.attr}' is not allowed")
            elif isinstance(node, ast.Name) and (
                node.id.startswith("_") or node.id in BLOCKED_NAMES
            ):
                violations.append(f"use of '{node.id}' is not allowed")
        return violations


_default_sandbox = CodeSandbox()


def safe_exec(code: str, **bindings: Any) -> Any:
    """Run a CODE node body in the default sandbox."""
    return _default_sandbox.run(code, **bindings)
