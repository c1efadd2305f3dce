"""
Node model - the typed units a graph is built from.

A node is ``{id, type, config}``. The type selects exactly one executor
from the registry; the config is validated against that type's config
model when the graph is loaded, so executors can trust the shape they get.

Also defines the two objects that cross the executor boundary:

- NodeContext: everything an executor may read for one dispatch
- NodeOutcome: the single thing an executor hands back (an output, an
  optional routing branch, or a request to suspend the run)
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from flowengine.graph.hitl import HITLRequest

if TYPE_CHECKING:
    from flowengine.config import EngineConfig
    from flowengine.llm.provider import LLMProvider
    from flowengine.retrieval.provider import RetrievalProvider


class NodeType(StrEnum):
    """Every node kind the engine can execute."""

    TRIGGER_MANUAL = "trigger_manual"
    TRIGGER_WEBHOOK = "trigger_webhook"
    LLM = "llm"
    TRANSFORM = "transform"
    CODE = "code"
    RAG_SEARCH = "rag_search"
    PARALLEL = "parallel"
    MERGE = "merge"
    SWITCH = "switch"
    APPROVAL = "approval"
    HANDOFF = "handoff"
    STREAM_OUTPUT = "stream_output"
    OUTPUT_PARSER = "output_parser"

    @property
    def is_trigger(self) -> bool:
        return self in (NodeType.TRIGGER_MANUAL, NodeType.TRIGGER_WEBHOOK)


class MergeStrategy(StrEnum):
    """How a MERGE node combines its inbound branches."""

    ALL = "all"  # Join barrier: wait for every inbound source
    FIRST = "first"  # Race: first branch to finish wins
    ANY = "any"  # Race: first non-null output wins


# ---------------------------------------------------------------------------
# Per-type config models
# ---------------------------------------------------------------------------


class _NodeConfig(BaseModel):
    """Base for node configs. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class TriggerConfig(_NodeConfig):
    webhook_path: str | None = None
    method: str = "POST"


class LLMConfig(_NodeConfig):
    model: str | None = Field(default=None, description="Falls back to the engine default model")
    system_prompt: str = ""
    prompt: str | None = Field(
        default=None,
        description="User prompt template; defaults to the trigger message or the JSON input",
    )
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    json_output: bool = False
    include_history: bool = True


class TransformConfig(_NodeConfig):
    expression: str = Field(description="Expression evaluated over input, variables, nodes")


class CodeConfig(_NodeConfig):
    code: str = Field(description="Python function body; the value of `return` is the output")


class RagSearchConfig(_NodeConfig):
    query_template: str | None = None
    top_k: int = Field(default=5, ge=1, le=100)
    knowledge_base_ids: list[str] = Field(default_factory=list)


class ParallelConfig(_NodeConfig):
    pass


class MergeConfig(_NodeConfig):
    strategy: MergeStrategy = MergeStrategy.ALL

    @field_validator("strategy", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class SwitchCase(_NodeConfig):
    id: str = Field(description="Edge source handle taken when this case matches")
    value: str
    label: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        # Cases compare against the discriminant's text, so "1" and 1 are the same case
        if isinstance(v, bool):
            return "true" if v else "false"
        return v if isinstance(v, str) else str(v)


class SwitchConfig(_NodeConfig):
    switch_on: str = Field(description="Expression producing the discriminant value")
    cases: list[SwitchCase] = Field(default_factory=list)


class ApprovalConfig(_NodeConfig):
    prompt: str = "Approval required to continue"
    assign_to: str | None = None
    options: list[str] = Field(default_factory=lambda: ["approve", "reject"])


class HandoffConfig(_NodeConfig):
    prompt: str = "Conversation handed off to an operator"
    assign_to: str | None = None


class StreamOutputConfig(_NodeConfig):
    model: str | None = None
    system_prompt: str = ""
    prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    include_history: bool = True
    include_memory: bool = True


class OutputParserConfig(_NodeConfig):
    strict: bool = False


CONFIG_MODELS: dict[NodeType, type[_NodeConfig]] = {
    NodeType.TRIGGER_MANUAL: TriggerConfig,
    NodeType.TRIGGER_WEBHOOK: TriggerConfig,
    NodeType.LLM: LLMConfig,
    NodeType.TRANSFORM: TransformConfig,
    NodeType.CODE: CodeConfig,
    NodeType.RAG_SEARCH: RagSearchConfig,
    NodeType.PARALLEL: ParallelConfig,
    NodeType.MERGE: MergeConfig,
    NodeType.SWITCH: SwitchConfig,
    NodeType.APPROVAL: ApprovalConfig,
    NodeType.HANDOFF: HandoffConfig,
    NodeType.STREAM_OUTPUT: StreamOutputConfig,
    NodeType.OUTPUT_PARSER: OutputParserConfig,
}


# ---------------------------------------------------------------------------
# NodeSpec
# ---------------------------------------------------------------------------


class NodeSpec(BaseModel):
    """
    Specification of one node in a graph.

    Examples:
        NodeSpec(id="llm-1", type=NodeType.LLM, config={"prompt": "Summarize {{ input }}"})

        NodeSpec(
            id="route",
            type="SWITCH",
            config={
                "switch_on": "input.category",
                "cases": [{"id": "billing", "value": "billing"}],
            },
        )
    """

    id: str
    type: NodeType
    config: dict[str, Any] = Field(default_factory=dict)
    label: str = ""

    # Failure policy: None defers to the executor type's default
    continue_on_error: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("continue_on_error", "continueOnError"),
        description="Record failures with a null output and keep going instead of failing the run",
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds")
    )

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    def settings(self) -> Any:
        """Return ``config`` parsed into this node type's config model."""
        return CONFIG_MODELS[self.type].model_validate(self.config)


# ---------------------------------------------------------------------------
# Executor boundary
# ---------------------------------------------------------------------------


@dataclass
class NodeOutcome:
    """What an executor returns: an output, and optionally a branch or a suspension."""

    output: Any = None
    branch: str | None = None
    suspend: HITLRequest | None = None

    @property
    def suspended(self) -> bool:
        return self.suspend is not None


ChunkEmitter = Callable[[str, str], Awaitable[None]]  # (chunk, accumulated)


async def _discard_chunk(chunk: str, accumulated: str) -> None:
    return None


@dataclass
class NodeContext:
    """
    Execution context handed to a node executor for one dispatch.

    ``node_outputs`` is a read-only view of every result recorded so far;
    executors only ever produce their own output through NodeOutcome.
    """

    run_id: str
    graph_id: str
    node: NodeSpec
    input: Any
    inputs: Mapping[str, Any]
    trigger_input: Any
    variables: Mapping[str, Any]
    node_outputs: Mapping[str, Any]
    llm: "LLMProvider | None" = None
    retriever: "RetrievalProvider | None" = None
    config: "EngineConfig | None" = None
    emit_chunk: ChunkEmitter = _discard_chunk
    started_at: str = ""

    @property
    def user_message(self) -> str | None:
        """The chat message that triggered the run, when there is one."""
        if isinstance(self.trigger_input, dict):
            message = self.trigger_input.get("message")
            if isinstance(message, str):
                return message
        if isinstance(self.trigger_input, str):
            return self.trigger_input
        return None

    @property
    def history(self) -> list[dict[str, Any]]:
        """Prior chat turns carried in the trigger input ([{role, content}])."""
        if isinstance(self.trigger_input, dict):
            history = self.trigger_input.get("history")
            if isinstance(history, list):
                return [m for m in history if isinstance(m, dict) and "content" in m]
        return []

    @property
    def meta(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "node_id": self.node.id,
            "started_at": self.started_at,
        }
