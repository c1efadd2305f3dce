"""
Tests for the GraphExecutor scheduler.

Covers sequential runs, fan-out/fan-in, SWITCH routing, failure policy,
timeouts, cancellation and concurrency limits.
"""

import asyncio

import pytest
from conftest import chain, edge, graph, node

from flowengine.config import EngineConfig
from flowengine.errors import GraphValidationError
from flowengine.graph.executor import GraphExecutor, output_preview
from flowengine.graph.node import NodeOutcome, NodeType
from flowengine.graph.nodes import NodeExecutor, NodeExecutorRegistry, TriggerExecutor
from flowengine.runtime.event_bus import EventType
from flowengine.schemas.run import NodeStatus, RunStatus


class DelayExecutor(NodeExecutor):
    """TRANSFORM stand-in that sleeps ``config.delay`` then returns ``config.value``."""

    node_types = (NodeType.TRANSFORM,)

    def __init__(self):
        self.active = 0
        self.max_active = 0
        self.calls: list[str] = []

    async def execute(self, node, ctx):
        self.calls.append(node.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(node.config.get("delay", 0))
        finally:
            self.active -= 1
        return NodeOutcome(output=node.config.get("value", ctx.input))


def delay_node(node_id: str, delay: float, value=None, **extra):
    data = node(node_id, "TRANSFORM", expression="input", delay=delay, value=value)
    data.update(extra)
    return data


@pytest.fixture
def delays():
    return DelayExecutor()


@pytest.fixture
def delay_executor(store, bus, llm, config, delays):
    registry = NodeExecutorRegistry.default()
    registry.register(delays, replace=True)
    return GraphExecutor(store=store, event_bus=bus, llm=llm, registry=registry, config=config)


def fan_out(merge_strategy: str, *branches: dict) -> dict:
    nodes = [
        node("trigger", "TRIGGER_MANUAL"),
        node("fork", "PARALLEL"),
        *branches,
        node("join", "MERGE", strategy=merge_strategy),
    ]
    edges = [edge("trigger", "fork")]
    for branch in branches:
        edges += [edge("fork", branch["id"]), edge(branch["id"], "join")]
    return graph("fan-out", nodes, edges)


# === SEQUENTIAL RUNS ===


class TestSequentialRun:
    @pytest.mark.asyncio
    async def test_trigger_llm_transform(self, executor, store):
        definition = chain(
            "scenario-a",
            node("llm-1", "LLM"),
            node("transform-1", "TRANSFORM", expression="upper(input.text)"),
        )

        run = await executor.execute(definition, {"message": "hi"})

        assert run.status == RunStatus.COMPLETED
        assert run.path == ["trigger", "llm-1", "transform-1"]
        assert run.node_results["llm-1"].output["text"] == "Echo: hi"
        assert run.node_results["transform-1"].output == "ECHO: HI"
        assert run.output == {"transform-1": "ECHO: HI"}
        assert run.frontier == []
        assert run.completed_at is not None

        stored = await store.load(run.id)
        assert stored.status == run.status
        assert stored.node_results == run.node_results
        assert stored.version == run.version

    @pytest.mark.asyncio
    async def test_events_in_order(self, executor, bus):
        run = await executor.execute(
            chain("g", node("tf", "TRANSFORM", expression="input.n * 2")), {"n": 21}
        )

        events = bus.get_history(run_id=run.id)[::-1]
        assert [(e.type, e.node_id) for e in events] == [
            (EventType.RUN_STARTED, None),
            (EventType.STEP_START, "trigger"),
            (EventType.STEP_SUCCESS, "trigger"),
            (EventType.STEP_START, "tf"),
            (EventType.STEP_SUCCESS, "tf"),
            (EventType.RUN_COMPLETE, None),
        ]
        assert events[4].data["output_preview"] == "42"
        assert events[-1].data["status"] == "COMPLETED"
        assert events[-1].data["output"] == {"tf": 42}

    @pytest.mark.asyncio
    async def test_checkpoint_after_every_transition(self, executor, store):
        run = await executor.execute(chain("g", node("tf", "TRANSFORM", expression="1")), None)
        # create, start, then dispatch + result for each of two nodes, then completion
        assert run.version == 7
        assert (await store.load(run.id)).version == 7

    @pytest.mark.asyncio
    async def test_executors_get_private_copies(self, executor):
        definition = chain(
            "g",
            node("a", "TRANSFORM", expression="{'x': 1}"),
            node("b", "CODE", code="input['x'] = 2\nreturn input"),
        )
        run = await executor.execute(definition, None)

        assert run.node_results["a"].output == {"x": 1}
        assert run.node_results["b"].output == {"x": 2}

    @pytest.mark.asyncio
    async def test_declared_variables_and_outputs(self, executor, store):
        definition = chain("g", node("tf", "TRANSFORM", expression="$variables.lang"))
        definition["variables"] = {
            "inputs": [
                {"name": "lang", "required": True},
                {"name": "tone", "defaultValue": "friendly"},
            ],
            "outputs": [{"name": "answer", "source": "tf.output"}],
        }

        with pytest.raises(GraphValidationError, match="lang"):
            await executor.execute(definition, {})
        assert await store.list_runs() == []

        run = await executor.execute(definition, {"lang": "fr"})
        assert run.variables == {"lang": "fr", "tone": "friendly"}
        assert run.output == {"answer": "fr"}

        run = await executor.execute(definition, {}, variables={"lang": "de"})
        assert run.output == {"answer": "de"}

    @pytest.mark.asyncio
    async def test_invalid_graph_creates_no_run(self, executor, store):
        with pytest.raises(GraphValidationError):
            await executor.execute(graph("g", [node("tf", "TRANSFORM", expression="1")], []))
        assert await store.list_runs() == []

    @pytest.mark.asyncio
    async def test_missing_executor_is_a_validation_error(self, store, bus):
        executor = GraphExecutor(
            store=store, event_bus=bus, registry=NodeExecutorRegistry([TriggerExecutor()])
        )
        with pytest.raises(GraphValidationError, match="transform"):
            await executor.execute(chain("g", node("tf", "TRANSFORM", expression="1")))


def test_output_preview_truncates():
    assert output_preview("x" * 500, 200) == "x" * 200 + "..."
    assert output_preview({"a": 1}) == '{"a": 1}'


# === FAN-OUT / FAN-IN ===


class TestParallelAndMerge:
    @pytest.mark.asyncio
    async def test_tolerated_failure_contributes_null(self, executor, bus):
        definition = fan_out(
            "all",
            node("b1", "TRANSFORM", expression="'one'"),
            {**node("b2", "CODE", code="return 1 / 0"), "continueOnError": True},
            node("b3", "TRANSFORM", expression="'three'"),
        )

        run = await executor.execute(definition, {})

        assert run.status == RunStatus.COMPLETED
        assert run.node_results["b2"].status == NodeStatus.FAILED
        assert "ZeroDivisionError" in run.node_results["b2"].error
        assert run.node_results["join"].output == {"b1": "one", "b2": None, "b3": "three"}

        errors = bus.get_history(EventType.STEP_ERROR, run_id=run.id)
        assert len(errors) == 1
        assert errors[0].data["fatal"] is False

    @pytest.mark.asyncio
    async def test_merge_all_waits_for_every_branch(self, delay_executor):
        definition = fan_out(
            "all",
            delay_node("fast", 0.01, "f"),
            delay_node("slow", 0.1, "s"),
        )

        run = await delay_executor.execute(definition, {})

        join = run.node_results["join"]
        assert join.output == {"fast": "f", "slow": "s"}
        assert join.started_at >= run.node_results["slow"].finished_at
        assert run.path == ["trigger", "fork", "fast", "slow", "join"]

    @pytest.mark.asyncio
    async def test_merge_first_runs_once(self, delay_executor):
        definition = fan_out(
            "first",
            delay_node("fast", 0.01, "f"),
            delay_node("slow", 0.1, "s"),
        )

        run = await delay_executor.execute(definition, {})

        assert run.status == RunStatus.COMPLETED
        assert run.node_results["join"].output == "f"
        assert run.path.count("join") == 1
        assert run.path.index("join") < run.path.index("slow")

    @pytest.mark.parametrize("strategy", ["first", "any"])
    @pytest.mark.asyncio
    async def test_race_merge_skips_tolerated_failure(self, delay_executor, strategy):
        definition = fan_out(
            strategy,
            {**node("bad", "CODE", code="raise ValueError('nope')"), "continueOnError": True},
            delay_node("good", 0.05, "winner"),
        )

        run = await delay_executor.execute(definition, {})

        assert run.status == RunStatus.COMPLETED
        assert run.node_results["bad"].status == NodeStatus.FAILED
        assert run.path.index("bad") < run.path.index("good")
        assert run.node_results["join"].output == "winner"

    @pytest.mark.asyncio
    async def test_branches_run_concurrently(self, delay_executor, delays):
        definition = fan_out(
            "all", *(delay_node(f"b{i}", 0.05, i) for i in range(3))
        )
        await delay_executor.execute(definition, {})
        assert delays.max_active == 3

    @pytest.mark.asyncio
    async def test_max_parallel_branches(self, store, bus, delays):
        registry = NodeExecutorRegistry.default()
        registry.register(delays, replace=True)
        executor = GraphExecutor(
            store=store,
            event_bus=bus,
            registry=registry,
            config=EngineConfig(model="mock/model", max_parallel_branches=1),
        )
        definition = fan_out("all", *(delay_node(f"b{i}", 0.01, i) for i in range(3)))

        run = await executor.execute(definition, {})

        assert run.status == RunStatus.COMPLETED
        assert delays.max_active == 1
        assert run.node_results["join"].output == {"b0": 0, "b1": 1, "b2": 2}


# === SWITCH ===


class TestSwitch:
    def _definition(self, with_default: bool = False) -> dict:
        nodes = [
            node("trigger", "TRIGGER_MANUAL"),
            node(
                "route",
                "SWITCH",
                switchOn="input.kind",
                cases=[{"id": "a", "value": "A"}, {"id": "b", "value": "B"}],
            ),
            node("on-a", "TRANSFORM", expression="'took a'"),
            node("on-b", "TRANSFORM", expression="'took b'"),
        ]
        edges = [
            edge("trigger", "route"),
            edge("route", "on-a", handle="a"),
            edge("route", "on-b", handle="b"),
        ]
        if with_default:
            nodes.append(node("fallback", "TRANSFORM", expression="'took default'"))
            edges.append(edge("route", "fallback", handle="default"))
        return graph("switch", nodes, edges)

    @pytest.mark.asyncio
    async def test_follows_matching_case_only(self, executor):
        run = await executor.execute(self._definition(), {"kind": "B"})
        assert run.node_results["route"].branch == "b"
        assert run.node_results["on-b"].output == "took b"
        assert "on-a" not in run.node_results

    @pytest.mark.asyncio
    async def test_unmatched_without_default_completes(self, executor):
        run = await executor.execute(self._definition(), {"kind": "C"})
        assert run.status == RunStatus.COMPLETED
        assert run.node_results["route"].branch == "default"
        assert set(run.node_results) == {"trigger", "route"}

    @pytest.mark.asyncio
    async def test_unmatched_takes_default_edge(self, executor):
        run = await executor.execute(self._definition(with_default=True), {"kind": "C"})
        assert run.node_results["fallback"].output == "took default"


# === FAILURE, TIMEOUT, CANCEL ===


class TestFailures:
    @pytest.mark.asyncio
    async def test_fatal_failure_fails_run(self, executor, bus):
        definition = chain(
            "g",
            node("boom", "CODE", code="return 1 / 0"),
            node("after", "TRANSFORM", expression="input"),
        )

        run = await executor.execute(definition, {})

        assert run.status == RunStatus.FAILED
        assert run.error.startswith("Node 'boom' failed: Code error: ZeroDivisionError")
        assert "after" not in run.node_results
        complete = bus.get_history(EventType.RUN_COMPLETE, run_id=run.id)[0]
        assert complete.data["status"] == "FAILED"
        assert bus.get_history(EventType.STEP_ERROR, run_id=run.id)[0].data["fatal"] is True

    @pytest.mark.asyncio
    async def test_in_flight_siblings_finish_after_fatal_failure(self, delay_executor):
        definition = fan_out(
            "all",
            node("bad", "CODE", code="return missing_name"),
            delay_node("slow", 0.05, "s"),
        )

        run = await delay_executor.execute(definition, {})

        assert run.status == RunStatus.FAILED
        assert run.node_results["slow"].status == NodeStatus.SUCCESS
        assert "join" not in run.node_results

    @pytest.mark.asyncio
    async def test_node_timeout(self, delay_executor):
        definition = chain("g", delay_node("stuck", 5, "never", timeoutSeconds=0.05))

        run = await delay_executor.execute(definition, {})

        assert run.status == RunStatus.FAILED
        assert run.node_results["stuck"].error == "Node 'stuck' timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_tolerated_timeout_continues(self, delay_executor):
        definition = chain(
            "g",
            delay_node("stuck", 5, "never", timeoutSeconds=0.05, continueOnError=True),
            node("after", "CODE", code="return input is None"),
        )

        run = await delay_executor.execute(definition, {})

        assert run.status == RunStatus.COMPLETED
        assert run.node_results["after"].output is True

    @pytest.mark.asyncio
    async def test_cancel_active_run(self, delay_executor, bus):
        definition = chain(
            "g", delay_node("slow", 0.2, "s"), node("after", "TRANSFORM", expression="input")
        )

        started = asyncio.create_task(
            bus.wait_for(EventType.STEP_START, node_id="slow", timeout=2)
        )
        await asyncio.sleep(0)
        running = asyncio.create_task(delay_executor.execute(definition, {}))

        event = await started
        await delay_executor.cancel(event.run_id)
        run = await running

        assert run.status == RunStatus.FAILED
        assert run.error == "Run cancelled"
        assert run.node_results["slow"].status == NodeStatus.FAILED
        assert "after" not in run.node_results

    @pytest.mark.asyncio
    async def test_cancel_while_suspension_waits_for_sibling(self, delay_executor, bus):
        definition = graph(
            "gate-and-slow",
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("fork", "PARALLEL"),
                node("gate", "APPROVAL"),
                delay_node("slow", 0.3, "s"),
            ],
            [edge("trigger", "fork"), edge("fork", "gate"), edge("fork", "slow")],
        )

        suspended = asyncio.create_task(
            bus.wait_for(EventType.STEP_START, node_id="slow", timeout=2)
        )
        await asyncio.sleep(0)
        running = asyncio.create_task(delay_executor.execute(definition, {}))

        event = await suspended
        await asyncio.sleep(0.05)
        await delay_executor.cancel(event.run_id)
        run = await running

        assert run.status == RunStatus.FAILED
        assert run.error == "Run cancelled"
        assert run.suspended_node_id is None
        assert run.node_results["gate"].status == NodeStatus.FAILED
        assert run.node_results["gate"].error == "Run cancelled"
        assert bus.get_history(EventType.STEP_SUSPEND, run_id=run.id) == []
