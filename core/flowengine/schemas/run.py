"""
Run Schema - one execution of a graph against one trigger input.

The Run record is the unit of durability: it holds everything needed to
reconstruct the scheduler's position (frontier, per-node results, the
suspended node) so a run can resume after the process that started it is
gone.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


class RunStatus(StrEnum):
    """Status of a run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"  # Waiting on an external decision
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class NodeStatus(StrEnum):
    """Status of a single node within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SUSPENDED = "suspended"


class NodeRunResult(BaseModel):
    """Recorded outcome of one node in one run."""

    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: str | None = None
    branch: str | None = Field(default=None, description="SWITCH case handle that was taken")
    continue_on_error: bool = False
    suspend: dict[str, Any] | None = Field(
        default=None, description="Prompt payload recorded when the node suspended"
    )
    started_at: datetime | None = None
    finished_at: datetime | None = None

    model_config = {"extra": "allow"}

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class Run(BaseModel):
    """
    A complete execution of a graph.

    ``frontier`` lists node ids whose dependencies are satisfied but which
    have not been dispatched, in the order they became ready. ``path``
    lists node ids in the order they finished. ``version`` is bumped by the
    run store on every checkpoint and guards against concurrent writers.
    """

    id: str
    graph_id: str
    status: RunStatus = RunStatus.PENDING

    # Scheduler position
    frontier: list[str] = Field(default_factory=list)
    node_results: dict[str, NodeRunResult] = Field(default_factory=dict)
    suspended_node_id: str | None = None
    path: list[str] = Field(default_factory=list)

    # Data
    input: Any = None
    variables: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    # Bookkeeping
    version: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @property
    def duration_ms(self) -> int:
        end = self.completed_at or _now()
        return int((end - self.created_at).total_seconds() * 1000)

    def result_for(self, node_id: str) -> NodeRunResult | None:
        return self.node_results.get(node_id)

    def node_outputs(self) -> dict[str, Any]:
        """Outputs of every node that has finished (success, or tolerated failure)."""
        return {
            node_id: result.output
            for node_id, result in self.node_results.items()
            if result.status in (NodeStatus.SUCCESS, NodeStatus.FAILED)
        }

    def complete(self, status: RunStatus, error: str | None = None) -> None:
        """Move the run to a terminal status."""
        self.status = status
        self.error = error
        self.completed_at = _now()
        self.frontier = []

    def summary(self) -> "RunSummary":
        return RunSummary.from_run(self)


class RunSummary(BaseModel):
    """Compact view of a run for listings."""

    run_id: str
    graph_id: str
    status: RunStatus
    suspended_node_id: str | None = None
    nodes_succeeded: int = 0
    nodes_failed: int = 0
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_run(cls, run: Run) -> "RunSummary":
        statuses = [r.status for r in run.node_results.values()]
        return cls(
            run_id=run.id,
            graph_id=run.graph_id,
            status=run.status,
            suspended_node_id=run.suspended_node_id,
            nodes_succeeded=statuses.count(NodeStatus.SUCCESS),
            nodes_failed=statuses.count(NodeStatus.FAILED),
            error=run.error,
            created_at=run.created_at,
            updated_at=run.updated_at,
        )
