"""
Graph Executor - the scheduler that runs graphs.

The executor:
1. Validates the graph and creates a Run in the run store
2. Keeps a frontier of nodes whose dependencies are satisfied
3. Dispatches frontier nodes (concurrently, up to max_parallel_branches)
   to the executor registered for their type
4. Records each outcome, follows the edges it activates, and checkpoints
   the Run after every transition
5. Stops when the frontier drains (COMPLETED), a node fails fatally
   (FAILED), or an APPROVAL/HANDOFF node suspends the run (SUSPENDED)

All mutation of a run happens in the single coordinating coroutine that
owns it; node tasks only compute outcomes. A suspended run is fully
described by its stored record, so ``resume`` works from any process that
can reach the same store.
"""

import asyncio
import copy
import functools
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from pydantic_core import to_jsonable_python

from flowengine.config import EngineConfig
from flowengine.errors import (
    ConcurrentModificationError,
    ExecutionError,
    GraphValidationError,
    NodeTimeoutError,
    RunNotFoundError,
)
from flowengine.graph.edge import EdgeSpec, GraphSpec, load_graph
from flowengine.graph.node import MergeStrategy, NodeContext, NodeOutcome, NodeSpec, NodeType
from flowengine.graph.nodes.registry import NodeExecutorRegistry
from flowengine.graph.template import TemplateScope, resolve_reference
from flowengine.llm.provider import LLMProvider
from flowengine.observability import set_trace_context
from flowengine.retrieval.provider import RetrievalProvider
from flowengine.runtime.event_bus import EventBus
from flowengine.schemas.run import NodeRunResult, NodeStatus, Run, RunStatus
from flowengine.storage.run_store import InMemoryRunStore, RunStore

RUN_CANCELLED = "Run cancelled"


def _now() -> datetime:
    return datetime.now(UTC)


def _fail_suspended_node(run: Run, error: str) -> None:
    if run.suspended_node_id:
        result = run.node_results[run.suspended_node_id]
        result.status = NodeStatus.FAILED
        result.error = error
        result.finished_at = _now()
    run.suspended_node_id = None


@dataclass
class NodeAttempt:
    """What one node task produced. Exactly one of outcome/error is set."""

    node_id: str
    started_at: datetime
    finished_at: datetime
    outcome: NodeOutcome | None = None
    error: str | None = None


class _Halt:
    """Why the coordinating loop stopped dispatching."""

    SUSPENDED = "suspended"
    FAILED = "failed"
    CANCELLED = "cancelled"


def output_preview(output: Any, limit: int = 200) -> str:
    """Short text rendering of a node output for step:success events."""
    if isinstance(output, str):
        text = output
    else:
        try:
            text = json.dumps(output, ensure_ascii=False, default=str)
        except ValueError:
            text = str(output)
    return text[:limit] + "..." if len(text) > limit else text


class GraphExecutor:
    """
    Runs graphs and owns the lifecycle of their runs.

    Example:
        executor = GraphExecutor(llm=LiteLLMProvider(model="openai/gpt-4o-mini"))
        run = await executor.execute(graph, {"message": "hi"})

        if run.status == RunStatus.SUSPENDED:
            run = await executor.resume(run.id, {"approved": True})
    """

    def __init__(
        self,
        store: RunStore | None = None,
        event_bus: EventBus | None = None,
        llm: LLMProvider | None = None,
        retriever: RetrievalProvider | None = None,
        registry: NodeExecutorRegistry | None = None,
        config: EngineConfig | None = None,
    ):
        """
        Args:
            store: Where runs are checkpointed (defaults to an in-memory store)
            event_bus: Where progress events are published
            llm: Model-call provider for LLM / STREAM_OUTPUT nodes
            retriever: Retrieval provider for RAG_SEARCH nodes
            registry: Node executors (defaults to the built-ins)
            config: Engine configuration (timeouts, parallelism, model defaults)
        """
        self.store = store or InMemoryRunStore()
        self.event_bus = event_bus or EventBus()
        self.llm = llm
        self.retriever = retriever
        self.registry = registry or NodeExecutorRegistry.default()
        self.config = config or EngineConfig()
        self.logger = logging.getLogger(__name__)

        self._graphs: dict[str, GraphSpec] = {}
        self._active: dict[str, asyncio.Event] = {}  # run_id -> cancel request

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    def register_graph(self, graph: "GraphSpec | dict[str, Any] | str") -> GraphSpec:
        """Validate a graph and remember it so resume/recover can find it by id."""
        loaded = load_graph(graph)
        missing = sorted({str(n.type) for n in loaded.nodes if n.type not in self.registry})
        if missing:
            raise GraphValidationError(
                [f"No executor registered for node type '{t}'" for t in missing]
            )
        self._graphs[loaded.id] = loaded
        return loaded

    def _graph_for(self, run: Run, graph: GraphSpec | None) -> GraphSpec:
        if graph is not None:
            return self.register_graph(graph)
        try:
            return self._graphs[run.graph_id]
        except KeyError:
            raise ExecutionError(
                f"Graph '{run.graph_id}' for run {run.id} is not registered with this executor"
            ) from None

    def _resolve_variables(
        self,
        graph: GraphSpec,
        input_data: Any,
        variables: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Declared inputs come from ``variables``, then the trigger input, then defaults."""
        provided = dict(variables or {})
        resolved = dict(provided)
        errors = []
        for var in graph.variables.inputs:
            if var.name in provided:
                continue
            if isinstance(input_data, dict) and var.name in input_data:
                resolved[var.name] = input_data[var.name]
            elif var.default is not None:
                resolved[var.name] = var.default
            elif var.required:
                errors.append(f"Missing required input variable '{var.name}'")
            else:
                resolved[var.name] = None
        if errors:
            raise GraphValidationError(errors)
        return resolved

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def execute(
        self,
        graph: "GraphSpec | dict[str, Any] | str",
        input_data: Any = None,
        variables: dict[str, Any] | None = None,
    ) -> Run:
        """
        Start a run of ``graph`` for one trigger input and drive it as far as it goes.

        Returns the Run once it is COMPLETED, FAILED or SUSPENDED.

        Raises:
            GraphValidationError: if the graph or its declared inputs are
                invalid. No run is created in that case.
        """
        graph = self.register_graph(graph)
        resolved = self._resolve_variables(graph, input_data, variables)

        run = await self.store.create(graph.id, input=input_data, variables=resolved)
        set_trace_context(run_id=run.id, graph_id=graph.id)

        run.status = RunStatus.RUNNING
        run.frontier = [graph.trigger_node.id]
        await self.store.checkpoint(run)

        self.logger.info(f"🚀 Starting run {run.id} of graph '{graph.id}'")
        await self.event_bus.emit_run_started(run.id, graph.id)
        return await self._drive(graph, run)

    async def resume(
        self,
        run_id: str,
        decision: Any = None,
        graph: GraphSpec | None = None,
    ) -> Run:
        """
        Deliver an external decision to a suspended run and continue it.

        Calling resume on a run that is not SUSPENDED (already resumed,
        completed, failed) is a no-op that returns the stored run.

        Raises:
            RunNotFoundError: if the run id is unknown
        """
        async with self.store.lock(run_id):
            run = await self.store.load(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status != RunStatus.SUSPENDED or run.suspended_node_id is None:
                self.logger.info(f"Run {run_id} is {run.status}; resume ignored")
                return run

            graph = self._graph_for(run, graph)
            node_id = run.suspended_node_id
            node = self._node(graph, node_id)
            result = run.node_results[node_id]

            started = result.started_at or _now()
            try:
                outcome = await self.registry.get(node.type).on_resume(node, decision)
                attempt = NodeAttempt(node_id, started, _now(), outcome=outcome)
            except ExecutionError as e:
                attempt = NodeAttempt(node_id, started, _now(), error=str(e))

            run.status = RunStatus.RUNNING
            run.suspended_node_id = None
            result.status = NodeStatus.RUNNING
            try:
                await self.store.checkpoint(run)
            except ConcurrentModificationError:
                self.logger.info(f"Run {run_id} was resumed elsewhere; resume ignored")
                return await self.store.load(run_id) or run

        set_trace_context(run_id=run.id, graph_id=graph.id)
        self.logger.info(f"🔄 Resuming run {run.id} at '{node_id}'")
        await self.event_bus.emit_run_resumed(run.id, node_id)

        self._active.setdefault(run.id, asyncio.Event())
        halt = await self._apply(graph, run, attempt, None)
        return await self._drive(graph, run, halt)

    async def recover(self, run_id: str, graph: GraphSpec | None = None) -> Run:
        """
        Continue a RUNNING run whose scheduler died (e.g. process restart).

        Nodes left ``running`` are re-queued; finished nodes are never re-run.
        A run in any other status, or one still being driven by this
        executor, is returned unchanged.
        """
        async with self.store.lock(run_id):
            run = await self.store.load(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status != RunStatus.RUNNING or run_id in self._active:
                return run

            graph = self._graph_for(run, graph)
            interrupted = [
                node_id
                for node_id, result in run.node_results.items()
                if result.status == NodeStatus.RUNNING
            ]
            for node_id in interrupted:
                del run.node_results[node_id]
            run.frontier = interrupted + [n for n in run.frontier if n not in interrupted]
            await self.store.checkpoint(run)

        set_trace_context(run_id=run.id, graph_id=graph.id)
        self.logger.info(f"🔄 Recovering run {run.id} ({len(interrupted)} interrupted node(s))")
        return await self._drive(graph, run)

    async def cancel(self, run_id: str) -> Run | None:
        """
        Cancel a run.

        An active run stops dispatching at the next node boundary; results of
        nodes already executing are discarded. A suspended (or not yet
        started) run is failed immediately.
        """
        event = self._active.get(run_id)
        if event is not None:
            self.logger.info(f"Cancellation requested for run {run_id}")
            event.set()
            return await self.store.load(run_id)

        async with self.store.lock(run_id):
            run = await self.store.load(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status not in (RunStatus.SUSPENDED, RunStatus.PENDING):
                return run

            _fail_suspended_node(run, RUN_CANCELLED)
            run.complete(RunStatus.FAILED, RUN_CANCELLED)
            await self.store.checkpoint(run)

        self.logger.info(f"Run {run_id} cancelled")
        await self.event_bus.emit_run_complete(
            run.id, run.status.value, run.duration_ms, error=run.error
        )
        return run

    # ------------------------------------------------------------------
    # Coordinating loop
    # ------------------------------------------------------------------

    async def _drive(self, graph: GraphSpec, run: Run, halt: str | None = None) -> Run:
        cancel = self._active.setdefault(run.id, asyncio.Event())
        in_flight: dict[asyncio.Task, str] = {}
        limit = max(1, self.config.max_parallel_branches)

        def check_cancel(halt: str | None) -> str | None:
            if cancel.is_set() and halt != _Halt.CANCELLED:
                self.logger.info(f"⏹ Run {run.id} cancelled; discarding in-flight nodes")
                return _Halt.CANCELLED
            return halt

        try:
            while True:
                if halt is None:
                    while run.frontier and len(in_flight) < limit and not cancel.is_set():
                        task, node_id = await self._dispatch(graph, run, run.frontier.pop(0))
                        in_flight[task] = node_id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in [t for t in in_flight if t in done]:
                    del in_flight[task]
                    halt = await self._apply(graph, run, task.result(), check_cancel(halt))
        finally:
            for task in in_flight:
                task.cancel()
            self._active.pop(run.id, None)

        return await self._finish(graph, run, check_cancel(halt))

    async def _dispatch(
        self, graph: GraphSpec, run: Run, node_id: str
    ) -> tuple[asyncio.Task, str]:
        node = self._node(graph, node_id)
        executor = self.registry.get(node.type)
        started = _now()

        run.node_results[node_id] = NodeRunResult(
            status=NodeStatus.RUNNING,
            started_at=started,
            continue_on_error=executor.tolerates_failure(node),
        )
        ctx = self._build_context(graph, run, node, started)
        await self.store.checkpoint(run)

        self.logger.info(f"▶ {node_id} ({node.type})")
        await self.event_bus.emit_step_start(run.id, node_id, node.type.value, node.label)

        successors = graph.get_outgoing_edges(node_id)
        if node.type == NodeType.PARALLEL and len(successors) > 1:
            self.logger.info(f"   ⑂ Fan-out: {len(successors)} branches after '{node_id}'")

        task = asyncio.create_task(self._run_node(node, ctx, started), name=f"{run.id}:{node_id}")
        return task, node_id

    async def _run_node(self, node: NodeSpec, ctx: NodeContext, started: datetime) -> NodeAttempt:
        """Run one executor under its timeout. Never raises: failures become the attempt's error."""
        set_trace_context(node_id=node.id)
        timeout = self.config.timeout_for(node.type, node.timeout_seconds)
        try:
            executor = self.registry.get(node.type)
            outcome = await asyncio.wait_for(executor.execute(node, ctx), timeout=timeout)
            return NodeAttempt(node.id, started, _now(), outcome=outcome)
        except TimeoutError:
            error = NodeTimeoutError(f"Node '{node.id}' timed out after {timeout:g}s")
        except ExecutionError as e:
            error = e
        except Exception as e:
            self.logger.exception(f"Unexpected error in node '{node.id}'")
            error = ExecutionError(f"{type(e).__name__}: {e}")
        return NodeAttempt(node.id, started, _now(), error=str(error))

    async def _apply(
        self, graph: GraphSpec, run: Run, attempt: NodeAttempt, halt: str | None
    ) -> str | None:
        """Record one attempt on the run. Returns the (possibly new) halt reason."""
        node_id = attempt.node_id
        result = run.node_results[node_id]
        result.started_at = attempt.started_at
        result.finished_at = attempt.finished_at

        if halt == _Halt.CANCELLED:
            result.status = NodeStatus.FAILED
            result.error = f"Discarded: {RUN_CANCELLED.lower()}"
            await self.store.checkpoint(run)
            await self.event_bus.emit_step_error(
                run.id, node_id, result.error, result.duration_ms, fatal=False
            )
            return halt

        if attempt.error is not None:
            return await self._record_failure(graph, run, node_id, attempt.error, halt)

        outcome = attempt.outcome
        assert outcome is not None
        if outcome.suspended:
            return await self._record_suspension(run, node_id, outcome, halt)

        result.status = NodeStatus.SUCCESS
        result.output = to_jsonable_python(outcome.output, fallback=str)
        result.branch = outcome.branch
        result.error = None
        run.path.append(node_id)
        self._enqueue_successors(graph, run, node_id)
        await self.store.checkpoint(run)

        self.logger.info(f"✓ {node_id} ({result.duration_ms}ms)")
        await self.event_bus.emit_step_success(
            run.id,
            node_id,
            result.duration_ms,
            output_preview(result.output, self.config.output_preview_chars),
        )
        return halt

    async def _record_failure(
        self, graph: GraphSpec, run: Run, node_id: str, error: str, halt: str | None
    ) -> str | None:
        result = run.node_results[node_id]
        result.status = NodeStatus.FAILED
        result.output = None
        result.error = error
        run.path.append(node_id)

        if result.continue_on_error:
            self.logger.warning(f"✗ {node_id} failed (continuing): {error}")
            self._enqueue_successors(graph, run, node_id)
        else:
            self.logger.error(f"✗ {node_id} failed: {error}")
            if run.error is None:
                run.error = f"Node '{node_id}' failed: {error}"
            halt = _Halt.FAILED

        await self.store.checkpoint(run)
        await self.event_bus.emit_step_error(
            run.id, node_id, error, result.duration_ms, fatal=not result.continue_on_error
        )
        return halt

    async def _record_suspension(
        self, run: Run, node_id: str, outcome: NodeOutcome, halt: str | None
    ) -> str | None:
        if halt is not None or run.suspended_node_id is not None:
            # The run is already stopping; this node runs again after resume
            del run.node_results[node_id]
            run.frontier.insert(0, node_id)
            await self.store.checkpoint(run)
            return halt

        assert outcome.suspend is not None
        result = run.node_results[node_id]
        result.status = NodeStatus.SUSPENDED
        result.suspend = outcome.suspend.to_dict()
        run.suspended_node_id = node_id
        await self.store.checkpoint(run)
        return _Halt.SUSPENDED

    async def _finish(self, graph: GraphSpec, run: Run, halt: str | None) -> Run:
        if halt == _Halt.SUSPENDED:
            # Published only once no sibling is still running, so a resume
            # arriving after step:suspend always finds the run SUSPENDED
            run.status = RunStatus.SUSPENDED
            await self.store.checkpoint(run)
            node_id = run.suspended_node_id
            assert node_id is not None
            self.logger.info(f"⏸ Run {run.id} suspended at '{node_id}'")
            await self.event_bus.emit_step_suspend(
                run.id, node_id, run.node_results[node_id].suspend or {}
            )
            return run

        if halt == _Halt.CANCELLED:
            _fail_suspended_node(run, RUN_CANCELLED)
            run.complete(RunStatus.FAILED, RUN_CANCELLED)
        elif halt == _Halt.FAILED:
            run.suspended_node_id = None
            run.complete(RunStatus.FAILED, run.error)
        else:
            run.output = self._resolve_outputs(graph, run)
            run.complete(RunStatus.COMPLETED)

        await self.store.checkpoint(run)
        if run.status == RunStatus.COMPLETED:
            self.logger.info(f"🏁 Run {run.id} completed in {run.duration_ms}ms")
        else:
            self.logger.error(f"🛑 Run {run.id} failed: {run.error}")
        await self.event_bus.emit_run_complete(
            run.id, run.status.value, run.duration_ms, error=run.error, output=run.output
        )
        return run

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _edge_live(self, graph: GraphSpec, run: Run, edge: EdgeSpec) -> bool:
        """An edge carries data once its source finished and routed onto it."""
        result = run.node_results.get(edge.source)
        if result is None:
            return False
        if result.status == NodeStatus.FAILED:
            if not result.continue_on_error:
                return False
        elif result.status != NodeStatus.SUCCESS:
            return False

        source = self._node(graph, edge.source)
        if source.type == NodeType.SWITCH:
            return result.branch is not None and edge.source_handle == result.branch
        return True

    def _is_ready(self, graph: GraphSpec, run: Run, node_id: str) -> bool:
        node = self._node(graph, node_id)
        incoming = graph.get_incoming_edges(node_id)
        if node.type == NodeType.MERGE and node.settings().strategy != MergeStrategy.ALL:
            # Race merge: the first successful branch releases it
            return any(
                self._edge_live(graph, run, e)
                and run.node_results[e.source].status == NodeStatus.SUCCESS
                for e in incoming
            )
        return all(self._edge_live(graph, run, e) for e in incoming)

    def _enqueue_successors(self, graph: GraphSpec, run: Run, node_id: str) -> None:
        for edge in graph.get_outgoing_edges(node_id):
            target = edge.target
            if target in run.node_results or target in run.frontier:
                continue
            if self._edge_live(graph, run, edge) and self._is_ready(graph, run, target):
                run.frontier.append(target)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _node(self, graph: GraphSpec, node_id: str) -> NodeSpec:
        node = graph.get_node(node_id)
        if node is None:
            raise ExecutionError(f"Node '{node_id}' not found in graph '{graph.id}'")
        return node

    def _build_context(
        self, graph: GraphSpec, run: Run, node: NodeSpec, started: datetime
    ) -> NodeContext:
        # Executors get private copies so nothing they do can touch recorded results
        outputs = copy.deepcopy(run.node_outputs())
        live_sources = {
            e.source for e in graph.get_incoming_edges(node.id) if self._edge_live(graph, run, e)
        }
        if node.type == NodeType.MERGE and node.settings().strategy != MergeStrategy.ALL:
            # Race merges only see branches that succeeded
            live_sources = {
                s for s in live_sources if run.node_results[s].status == NodeStatus.SUCCESS
            }
        inputs = {source: outputs.get(source) for source in run.path if source in live_sources}

        if node.type.is_trigger:
            node_input = copy.deepcopy(run.input)
        elif len(inputs) == 1:
            node_input = next(iter(inputs.values()))
        elif inputs:
            node_input = dict(inputs)
        else:
            node_input = None

        return NodeContext(
            run_id=run.id,
            graph_id=graph.id,
            node=node,
            input=node_input,
            inputs=MappingProxyType(inputs),
            trigger_input=copy.deepcopy(run.input),
            variables=MappingProxyType(copy.deepcopy(run.variables)),
            node_outputs=MappingProxyType(outputs),
            llm=self.llm,
            retriever=self.retriever,
            config=self.config,
            emit_chunk=functools.partial(self.event_bus.emit_stream_chunk, run.id, node.id),
            started_at=started.isoformat(),
        )

    def _resolve_outputs(self, graph: GraphSpec, run: Run) -> dict[str, Any]:
        """Declared outputs, or the outputs of every sink node when none are declared."""
        outputs = run.node_outputs()
        if not graph.variables.outputs:
            return {
                node_id: output
                for node_id, output in outputs.items()
                if not graph.get_outgoing_edges(node_id)
                and run.node_results[node_id].status == NodeStatus.SUCCESS
            }

        scope = TemplateScope(
            input=run.input,
            variables=run.variables,
            trigger=run.input,
            meta={"run_id": run.id, "graph_id": graph.id},
            node_outputs=outputs,
        )
        return {
            var.name: to_jsonable_python(
                resolve_reference(var.source, scope) if var.source else None, fallback=str
            )
            for var in graph.variables.outputs
        }
