"""Structural validation for graphs.

Runs once when a graph is loaded, before any run starts, so that a graph
which could deadlock or misroute never reaches the scheduler:

- node and edge ids are unique and edges reference known nodes
- the graph is acyclic (Kahn's algorithm)
- there is exactly one trigger and nothing points into it
- SWITCH edges carry a handle drawn from the declared cases (or default)
- MERGE nodes have at least one inbound edge
- every node config matches its type's config model
"""

import logging
from collections import deque
from dataclasses import dataclass

from pydantic import ValidationError

from flowengine.graph.edge import DEFAULT_HANDLE, GraphSpec
from flowengine.graph.node import NodeType
from flowengine.graph.template import SCOPE_NAMES

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    success: bool
    errors: list[str]

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def topological_order(graph: GraphSpec) -> tuple[list[str], list[str]]:
    """
    Kahn's algorithm over the graph's edges.

    Returns (ordered node ids, node ids left over). Any leftover node sits on
    or behind a cycle.
    """
    in_degree = {node.id: 0 for node in graph.nodes}
    for edge in graph.edges:
        if edge.source in in_degree and edge.target in in_degree:
            in_degree[edge.target] += 1

    queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
    ordered: list[str] = []
    while queue:
        node_id = queue.popleft()
        ordered.append(node_id)
        for edge in graph.get_outgoing_edges(node_id):
            if edge.target not in in_degree:
                continue
            in_degree[edge.target] -= 1
            if in_degree[edge.target] == 0:
                queue.append(edge.target)

    visited = set(ordered)
    remaining = [node_id for node_id in in_degree if node_id not in visited]
    return ordered, remaining


class GraphValidator:
    """Collects every structural problem in a graph instead of stopping at the first."""

    def validate(self, graph: GraphSpec) -> ValidationResult:
        errors: list[str] = []
        errors.extend(self._check_ids(graph))
        errors.extend(self._check_edge_references(graph))
        errors.extend(self._check_triggers(graph))
        errors.extend(self._check_cycles(graph))
        errors.extend(self._check_configs(graph))
        errors.extend(self._check_switches(graph))
        errors.extend(self._check_merges(graph))
        errors.extend(self._check_output_variables(graph))

        if errors:
            logger.debug(f"Graph '{graph.id}' failed validation with {len(errors)} error(s)")
        return ValidationResult(success=not errors, errors=errors)

    def _check_ids(self, graph: GraphSpec) -> list[str]:
        errors = []
        seen_nodes: set[str] = set()
        for node in graph.nodes:
            if node.id in seen_nodes:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_nodes.add(node.id)

        seen_edges: set[str] = set()
        for edge in graph.edges:
            if edge.id in seen_edges:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edges.add(edge.id)
        return errors

    def _check_edge_references(self, graph: GraphSpec) -> list[str]:
        errors = []
        for edge in graph.edges:
            if not graph.get_node(edge.source):
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if not graph.get_node(edge.target):
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")
        return errors

    def _check_triggers(self, graph: GraphSpec) -> list[str]:
        triggers = graph.trigger_nodes
        if len(triggers) != 1:
            found = ", ".join(f"'{t.id}'" for t in triggers) or "none"
            return [f"Graph must have exactly one trigger node (found {found})"]
        trigger = triggers[0]
        if graph.get_incoming_edges(trigger.id):
            return [f"Trigger node '{trigger.id}' cannot have inbound edges"]
        return []

    def _check_cycles(self, graph: GraphSpec) -> list[str]:
        _, remaining = topological_order(graph)
        if remaining:
            return [f"Graph contains a cycle involving: {', '.join(sorted(remaining))}"]
        return []

    def _check_configs(self, graph: GraphSpec) -> list[str]:
        errors = []
        for node in graph.nodes:
            try:
                node.settings()
            except ValidationError as e:
                for err in e.errors():
                    loc = ".".join(str(p) for p in err["loc"]) or "config"
                    errors.append(f"Node '{node.id}' ({node.type}): {loc}: {err['msg']}")
        return errors

    def _check_switches(self, graph: GraphSpec) -> list[str]:
        errors = []
        for node in graph.nodes_of_type(NodeType.SWITCH):
            try:
                settings = node.settings()
            except ValidationError:
                continue  # reported by _check_configs

            case_ids = [case.id for case in settings.cases]
            if len(case_ids) != len(set(case_ids)):
                errors.append(f"SWITCH '{node.id}' declares duplicate case ids")
            values = [case.value for case in settings.cases]
            if len(values) != len(set(values)):
                errors.append(f"SWITCH '{node.id}' declares duplicate case values")
            if DEFAULT_HANDLE in case_ids:
                errors.append(f"SWITCH '{node.id}' cannot use '{DEFAULT_HANDLE}' as a case id")

            allowed = set(case_ids) | {DEFAULT_HANDLE}
            for edge in graph.get_outgoing_edges(node.id):
                if edge.source_handle is None:
                    errors.append(
                        f"Edge '{edge.id}' leaves SWITCH '{node.id}' without a source handle"
                    )
                elif edge.source_handle not in allowed:
                    errors.append(
                        f"Edge '{edge.id}' leaves SWITCH '{node.id}' on unknown handle "
                        f"'{edge.source_handle}'. Valid: {sorted(allowed)}"
                    )
        return errors

    def _check_merges(self, graph: GraphSpec) -> list[str]:
        return [
            f"MERGE '{node.id}' has no inbound edges"
            for node in graph.nodes_of_type(NodeType.MERGE)
            if not graph.get_incoming_edges(node.id)
        ]

    def _check_output_variables(self, graph: GraphSpec) -> list[str]:
        errors = []
        for var in graph.variables.outputs:
            if not var.source or var.source.startswith("$"):
                continue
            head = var.source.split(".", 1)[0]
            if head in SCOPE_NAMES:
                continue
            if not graph.get_node(head):
                errors.append(
                    f"Output variable '{var.name}' references unknown node '{head}'"
                )
        return errors
