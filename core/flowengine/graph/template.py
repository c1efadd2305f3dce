"""
Template rendering for node configs.

Prompts, queries and similar config strings may embed ``{{ expr }}``
placeholders. Inside a placeholder the following are in scope:

    input                  the node's aggregated upstream input
    $variables.name        declared graph variables (also ``variables.name``)
    $trigger.field         the trigger input (also ``trigger.field``)
    $meta.run_id           run metadata: run_id, graph_id, node_id, started_at
    <node_id>.output.x     another node's recorded output (``.output`` optional)
    nodes['node-id']       the same, for ids that are not Python identifiers

Plain dotted references are resolved directly and yield None when a key
is missing; anything else is a simpleeval expression (see code_sandbox).

A template that is exactly one placeholder renders to the raw value
(``render_value``), so ``{{ input }}`` can pass a dict through untouched.
Mixed text always renders to a string, with dicts and lists JSON-encoded.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from flowengine.errors import TemplateError
from flowengine.graph.code_sandbox import safe_eval

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(.+?)\s*\}\}", re.DOTALL)
SINGLE_PLACEHOLDER_PATTERN = re.compile(r"^\s*\{\{\s*(.+?)\s*\}\}\s*$", re.DOTALL)
SIMPLE_REFERENCE_PATTERN = re.compile(r"^\$?[A-Za-z_][\w-]*(?:\.[\w-]+)*$")

_SCOPE_ALIASES = {
    "$variables": "variables",
    "$meta": "meta",
    "$trigger": "trigger",
    "$input": "input",
}
SCOPE_NAMES = frozenset(_SCOPE_ALIASES.values())

# String literals are matched first so aliases inside them are left alone
_ALIAS_TOKEN_PATTERN = re.compile(
    r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")|\$(variables|meta|trigger|input)\b"""
)


@dataclass
class TemplateScope:
    """Values reachable from a template."""

    input: Any = None
    variables: Mapping[str, Any] = field(default_factory=dict)
    trigger: Any = None
    meta: Mapping[str, Any] = field(default_factory=dict)
    node_outputs: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_context(cls, ctx: Any) -> "TemplateScope":
        """Build a scope from a NodeContext."""
        return cls(
            input=ctx.input,
            variables=ctx.variables,
            trigger=ctx.trigger_input,
            meta=ctx.meta,
            node_outputs=ctx.node_outputs,
        )

    def names(self) -> dict[str, Any]:
        """Names exposed to expression evaluation."""
        names: dict[str, Any] = {}
        for node_id, output in self.node_outputs.items():
            if node_id.isidentifier():
                names[node_id] = {"output": output}
        names.update(
            {
                "input": self.input,
                "variables": dict(self.variables),
                "trigger": self.trigger,
                "meta": dict(self.meta),
                "nodes": dict(self.node_outputs),
            }
        )
        return names


def _get_path(value: Any, path: list[str]) -> Any:
    for key in path:
        if isinstance(value, Mapping):
            value = value.get(key)
        elif isinstance(value, (list, tuple)) and key.lstrip("-").isdigit():
            index = int(key)
            value = value[index] if -len(value) <= index < len(value) else None
        else:
            return None
        if value is None:
            return None
    return value


def resolve_reference(reference: str, scope: TemplateScope) -> Any:
    """
    Resolve a dotted reference such as ``llm-1.output.text`` or ``$variables.lang``.

    Missing keys resolve to None rather than raising.
    """
    head, *path = reference.strip().split(".")
    head = _SCOPE_ALIASES.get(head, head)

    if head == "input":
        return _get_path(scope.input, path)
    if head == "variables":
        return _get_path(scope.variables, path)
    if head == "trigger":
        return _get_path(scope.trigger, path)
    if head == "meta":
        return _get_path(scope.meta, path)
    if head in scope.node_outputs:
        output = scope.node_outputs[head]
        # "<node>.output.x" and "<node>.x" are the same reference unless the
        # output itself has an "output" key
        if path and path[0] == "output" and not (
            isinstance(output, Mapping) and "output" in output
        ):
            path = path[1:]
        return _get_path(output, path)
    return None


def _is_simple_reference(expr: str, scope: TemplateScope) -> bool:
    if not SIMPLE_REFERENCE_PATTERN.match(expr):
        return False
    head = expr.split(".", 1)[0]
    head = _SCOPE_ALIASES.get(head, head)
    return head in SCOPE_NAMES or head in scope.node_outputs


def evaluate(expr: str, scope: TemplateScope) -> Any:
    """Evaluate one placeholder body (without the braces)."""
    expr = expr.strip()
    if not expr:
        raise TemplateError("Empty template expression")
    if _is_simple_reference(expr, scope):
        return resolve_reference(expr, scope)
    expr = _ALIAS_TOKEN_PATTERN.sub(lambda m: m.group(1) or m.group(2), expr)
    return safe_eval(expr, scope.names())


def stringify(value: Any) -> str:
    """Render a value for inclusion in text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple, bool)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render(template: str, scope: TemplateScope) -> str:
    """Render ``template`` to a string, substituting every placeholder."""
    if "{{" not in template:
        return template
    return PLACEHOLDER_PATTERN.sub(lambda m: stringify(evaluate(m.group(1), scope)), template)


def render_value(template: str, scope: TemplateScope) -> Any:
    """
    Render ``template``, returning the raw value when it is a single placeholder.

        render_value("{{ input }}", scope)         -> the input object itself
        render_value("Hi {{ input.name }}", scope) -> "Hi Ada"
    """
    match = SINGLE_PLACEHOLDER_PATTERN.match(template)
    if match and "{{" not in match.group(1):
        return evaluate(match.group(1), scope)
    return render(template, scope)
