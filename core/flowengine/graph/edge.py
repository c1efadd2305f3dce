"""
Edge and Graph model - how nodes connect.

An edge is ``{id, source, source_handle, target}``. The handle only
matters for SWITCH sources, where it names the case (or ``default``) the
edge belongs to; the scheduler follows just the edges whose handle equals
the chosen case.

A GraphSpec is the immutable definition the scheduler runs: nodes, edges,
declared input/output variables, and lookups derived once at load time.
Use ``load_graph`` to build one from a stored definition; it validates the
graph and raises GraphValidationError with every problem found.
"""

import json
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from flowengine.errors import GraphValidationError
from flowengine.graph.node import NodeSpec, NodeType

DEFAULT_HANDLE = "default"


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Plain data edge
        EdgeSpec(id="e1", source="trigger", target="llm-1")

        # Case edge out of a SWITCH
        EdgeSpec(id="e2", source="route", source_handle="billing", target="billing-llm")
    """

    id: str
    source: str = Field(
        validation_alias=AliasChoices("source", "sourceNodeId", "source_node_id"),
        description="Source node ID",
    )
    source_handle: str | None = Field(
        default=None,
        validation_alias=AliasChoices("source_handle", "sourceHandle"),
        description="Case id (or 'default') for edges leaving a SWITCH",
    )
    target: str = Field(
        validation_alias=AliasChoices("target", "targetNodeId", "target_node_id"),
        description="Target node ID",
    )

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)


class WorkflowVariable(BaseModel):
    """A declared graph input or output."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = Field(default=None, validation_alias=AliasChoices("default", "defaultValue"))
    source: str | None = Field(
        default=None,
        description="Outputs only: reference resolved at completion, e.g. 'summarize.output.text'",
    )

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class GraphVariables(BaseModel):
    inputs: list[WorkflowVariable] = Field(default_factory=list)
    outputs: list[WorkflowVariable] = Field(default_factory=list)


class GraphSpec(BaseModel):
    """
    Complete specification of an executable graph.

        GraphSpec(
            id="support-chat",
            nodes=[
                NodeSpec(id="trigger", type=NodeType.TRIGGER_MANUAL),
                NodeSpec(id="answer", type=NodeType.STREAM_OUTPUT),
            ],
            edges=[EdgeSpec(id="e1", source="trigger", target="answer")],
        )
    """

    id: str
    name: str = ""
    version: str = "1.0.0"
    description: str = ""

    nodes: list[NodeSpec] = Field(default_factory=list, description="All node specifications")
    edges: list[EdgeSpec] = Field(default_factory=list, description="All edge specifications")
    variables: GraphVariables = Field(default_factory=GraphVariables)

    model_config = ConfigDict(extra="allow")

    # Derived lookups, computed once; the graph is not mutated after load
    _nodes_by_id: dict[str, NodeSpec] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _incoming: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._nodes_by_id = {}
        for node in self.nodes:
            self._nodes_by_id.setdefault(node.id, node)
        self._outgoing = {node.id: [] for node in self.nodes}
        self._incoming = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        return self._nodes_by_id.get(node_id)

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node, in definition order."""
        return self._outgoing.get(node_id, [])

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node, in definition order."""
        return self._incoming.get(node_id, [])

    def expected_sources(self, node_id: str) -> list[str]:
        """Distinct source node ids feeding ``node_id`` (a MERGE's expected inbound set)."""
        seen: list[str] = []
        for edge in self.get_incoming_edges(node_id):
            if edge.source not in seen:
                seen.append(edge.source)
        return seen

    @property
    def trigger_nodes(self) -> list[NodeSpec]:
        return [node for node in self.nodes if node.type.is_trigger]

    @property
    def trigger_node(self) -> NodeSpec:
        """The graph's single trigger node."""
        triggers = self.trigger_nodes
        if len(triggers) != 1:
            raise ValueError(f"Graph '{self.id}' must have exactly one trigger node")
        return triggers[0]

    def nodes_of_type(self, node_type: NodeType) -> list[NodeSpec]:
        return [node for node in self.nodes if node.type == node_type]

    def validate(self) -> list[str]:
        """Validate the graph structure; returns every problem found (empty when valid)."""
        from flowengine.graph.validator import GraphValidator

        return GraphValidator().validate(self).errors


def load_graph(definition: "GraphSpec | dict[str, Any] | str") -> GraphSpec:
    """
    Build and validate a GraphSpec from a stored definition.

    Accepts a GraphSpec, a dict, or a JSON string. Raises
    GraphValidationError listing every structural or config problem.
    """
    if isinstance(definition, GraphSpec):
        graph = definition
    else:
        try:
            if isinstance(definition, str):
                graph = GraphSpec.model_validate(json.loads(definition))
            else:
                graph = GraphSpec.model_validate(definition)
        except json.JSONDecodeError as e:
            raise GraphValidationError([f"Graph definition is not valid JSON: {e}"]) from e
        except ValidationError as e:
            raise GraphValidationError(
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            ) from e

    errors = graph.validate()
    if errors:
        raise GraphValidationError(errors)
    return graph
