"""Shared fixtures and graph builders for flowengine tests."""

import os
from typing import Any

import pytest

# Keep litellm from fetching its remote model-cost map at import time (offline test runs).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from flowengine.config import EngineConfig
from flowengine.graph.executor import GraphExecutor
from flowengine.llm.mock import MockLLMProvider
from flowengine.retrieval.provider import RetrievalProvider, RetrievedChunk
from flowengine.runtime.event_bus import EventBus
from flowengine.storage.run_store import InMemoryRunStore


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the developer's ~/.flowengine/configuration.json."""
    monkeypatch.setenv("FLOWENGINE_CONFIG", str(tmp_path / "missing-configuration.json"))


class FakeRetriever(RetrievalProvider):
    """Returns canned chunks and records every query."""

    def __init__(self, chunks: list[RetrievedChunk] | None = None):
        self.chunks = chunks if chunks is not None else [
            RetrievedChunk(
                text="Refunds are issued within 14 days of the return.",
                source_title="Refund policy",
                section="Timelines",
                score=0.92,
            ),
            RetrievedChunk(
                text="Gift cards cannot be refunded.",
                source_title="Refund policy",
                section="Exclusions",
                score=0.81,
            ),
        ]
        self.queries: list[dict[str, Any]] = []

    async def search(self, query, top_k=5, scope=None):
        self.queries.append({"query": query, "top_k": top_k, "scope": scope})
        return self.chunks[:top_k]


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def llm():
    return MockLLMProvider()


@pytest.fixture
def retriever():
    return FakeRetriever()


@pytest.fixture
def config(tmp_path):
    return EngineConfig(model="mock/model", api_key=None, storage_path=tmp_path / "runs")


@pytest.fixture
def executor(store, bus, llm, retriever, config):
    return GraphExecutor(store=store, event_bus=bus, llm=llm, retriever=retriever, config=config)


# === GRAPH BUILDERS ===


def node(node_id: str, node_type: str, **config: Any) -> dict[str, Any]:
    return {"id": node_id, "type": node_type, "config": config}


def edge(source: str, target: str, handle: str | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {"id": f"{source}->{target}", "source": source, "target": target}
    if handle is not None:
        data["sourceHandle"] = handle
    return data


def graph(graph_id: str, nodes: list[dict], edges: list[dict], **extra: Any) -> dict[str, Any]:
    return {"id": graph_id, "name": graph_id, "nodes": nodes, "edges": edges, **extra}


def chain(graph_id: str, *nodes: dict[str, Any]) -> dict[str, Any]:
    """Trigger followed by ``nodes`` in a straight line."""
    all_nodes = [node("trigger", "TRIGGER_MANUAL"), *nodes]
    edges = [edge(a["id"], b["id"]) for a, b in zip(all_nodes, all_nodes[1:])]
    return graph(graph_id, all_nodes, edges)
