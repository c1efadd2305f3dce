"""
Command-line interface for flowengine.

Usage:
    flowengine validate graphs/support.json
    flowengine run graphs/support.json --input '{"message": "hi"}'
    flowengine run graphs/support.json --input '{"message": "hi"}' --mock
    flowengine resume run_ab12... --graph graphs/support.json --decision '{"approved": true}'
    flowengine suspended --graph-id support
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import FlowEngineError
from flowengine.graph.edge import GraphSpec, load_graph
from flowengine.graph.executor import GraphExecutor
from flowengine.llm import LiteLLMProvider, LLMProvider, MockLLMProvider
from flowengine.observability import configure_logging
from flowengine.runtime.event_bus import EventBus, EventType, WorkflowEvent
from flowengine.storage.run_store import FileRunStore

logger = logging.getLogger(__name__)


def _read_graph(path: str) -> GraphSpec:
    return load_graph(Path(path).read_text(encoding="utf-8"))


def _parse_json(value: str | None, what: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        # Bare words are accepted as plain strings: --decision approve
        if what == "decision":
            return value
        raise


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _build_executor(args: argparse.Namespace, config: EngineConfig) -> GraphExecutor:
    llm: LLMProvider
    if getattr(args, "mock", False):
        llm = MockLLMProvider()
    else:
        llm = LiteLLMProvider(
            model=args.model or config.model, api_key=config.api_key, api_base=config.api_base
        )
    if args.model:
        config.model = args.model

    bus = EventBus()
    if getattr(args, "stream", False):

        async def print_chunk(event: WorkflowEvent) -> None:
            sys.stderr.write(event.data.get("chunk", ""))
            sys.stderr.flush()

        bus.subscribe([EventType.STEP_STREAM_CHUNK], print_chunk)

    store = FileRunStore(config.storage_path)
    return GraphExecutor(store=store, event_bus=bus, llm=llm, config=config)


async def _drained(executor: GraphExecutor, operation: Any) -> Any:
    """Await a run operation, then let event handlers (stream printing) finish."""
    result = await operation
    await executor.event_bus.drain()
    return result


# === COMMANDS ===


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = _read_graph(args.graph)
    except FlowEngineError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    print(f"✓ Graph '{graph.id}' is valid ({len(graph.nodes)} nodes, {len(graph.edges)} edges)")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    config = EngineConfig()
    try:
        graph = _read_graph(args.graph)
        input_data = _parse_json(args.input, "input")
        variables = _parse_json(args.variables, "variables")
        executor = _build_executor(args, config)
        run = asyncio.run(_drained(executor, executor.execute(graph, input_data, variables)))
    except (FlowEngineError, json.JSONDecodeError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    _print_json(run.model_dump(mode="json") if args.verbose else _run_report(run))
    return 0 if run.status != "FAILED" else 1


def cmd_resume(args: argparse.Namespace) -> int:
    config = EngineConfig()
    try:
        graph = _read_graph(args.graph)
        decision = _parse_json(args.decision, "decision")
        executor = _build_executor(args, config)
        run = asyncio.run(_drained(executor, executor.resume(args.run_id, decision, graph=graph)))
    except (FlowEngineError, json.JSONDecodeError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    _print_json(run.model_dump(mode="json") if args.verbose else _run_report(run))
    return 0 if run.status != "FAILED" else 1


def cmd_suspended(args: argparse.Namespace) -> int:
    store = FileRunStore(EngineConfig().storage_path)
    runs = asyncio.run(store.list_suspended(args.graph_id))
    if not runs:
        print("No suspended runs")
        return 0
    for run in runs:
        node_id = run.suspended_node_id or ""
        prompt = (run.node_results[node_id].suspend or {}).get("prompt", "") if node_id else ""
        print(f"⏸ {run.id}  graph={run.graph_id}  node={node_id}  {prompt}")
    return 0


def _run_report(run: Any) -> dict[str, Any]:
    report: dict[str, Any] = {
        "run_id": run.id,
        "graph_id": run.graph_id,
        "status": run.status.value,
        "path": run.path,
        "output": run.output,
    }
    if run.error:
        report["error"] = run.error
    if run.suspended_node_id:
        report["suspended_node_id"] = run.suspended_node_id
        report["prompt"] = run.node_results[run.suspended_node_id].suspend
    return report


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate = subparsers.add_parser("validate", help="Validate a graph definition")
    validate.add_argument("graph", help="Path to a graph JSON file")
    validate.set_defaults(func=cmd_validate)

    run = subparsers.add_parser("run", help="Run a graph once")
    run.add_argument("graph", help="Path to a graph JSON file")
    run.add_argument("--input", "-i", help="Trigger input as JSON")
    run.add_argument("--variables", help="Graph input variables as a JSON object")
    run.add_argument("--mock", action="store_true", help="Use the echoing mock model")
    run.add_argument("--stream", action="store_true", help="Print streamed text to stderr")
    run.add_argument("--verbose", "-v", action="store_true", help="Print the full run record")
    run.set_defaults(func=cmd_run)

    resume = subparsers.add_parser("resume", help="Resume a suspended run")
    resume.add_argument("run_id", help="Id of the suspended run")
    resume.add_argument(
        "--graph", "-g", required=True, help="Path to the graph JSON file the run was started from"
    )
    resume.add_argument(
        "--decision", "-d", default="approve", help="Decision as JSON, or approve/reject"
    )
    resume.add_argument("--mock", action="store_true", help="Use the echoing mock model")
    resume.add_argument("--stream", action="store_true", help="Print streamed text to stderr")
    resume.add_argument("--verbose", "-v", action="store_true", help="Print the full run record")
    resume.set_defaults(func=cmd_resume)

    suspended = subparsers.add_parser("suspended", help="List runs waiting on a decision")
    suspended.add_argument("--graph-id", help="Only runs of this graph")
    suspended.set_defaults(func=cmd_suspended)


def main():
    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="flowengine - Run AI automation graphs and chatflows",
    )
    parser.add_argument("--model", default=None, help="Default model for LLM nodes")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-format", choices=["json", "human"], default=None)

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format or "auto")

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
