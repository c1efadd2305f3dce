"""Graph structures: nodes, edges, validation, templates and the executor."""

from flowengine.graph.code_sandbox import CodeSandbox, safe_eval, safe_exec
from flowengine.graph.edge import (
    DEFAULT_HANDLE,
    EdgeSpec,
    GraphSpec,
    GraphVariables,
    WorkflowVariable,
    load_graph,
)
from flowengine.graph.executor import GraphExecutor
from flowengine.graph.hitl import HITLDecision, HITLKind, HITLRequest
from flowengine.graph.node import (
    MergeStrategy,
    NodeContext,
    NodeOutcome,
    NodeSpec,
    NodeType,
)
from flowengine.graph.validator import GraphValidator, ValidationResult

__all__ = [
    # Definition
    "NodeType",
    "NodeSpec",
    "MergeStrategy",
    "EdgeSpec",
    "DEFAULT_HANDLE",
    "GraphSpec",
    "GraphVariables",
    "WorkflowVariable",
    "load_graph",
    # Validation
    "GraphValidator",
    "ValidationResult",
    # Execution
    "GraphExecutor",
    "NodeContext",
    "NodeOutcome",
    # HITL
    "HITLRequest",
    "HITLDecision",
    "HITLKind",
    # Sandbox
    "CodeSandbox",
    "safe_eval",
    "safe_exec",
]
