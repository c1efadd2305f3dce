"""Tests for the chatflow adapter."""

import pytest
from conftest import FakeRetriever, edge, graph, node

from flowengine.chatflow import ChatflowAdapter, ChatMemory, ChatMessage
from flowengine.graph.executor import GraphExecutor
from flowengine.llm.mock import MockLLMProvider
from flowengine.runtime.event_bus import EventBus, EventType
from flowengine.schemas.run import RunStatus
from flowengine.storage.run_store import InMemoryRunStore


def support_chatflow() -> dict:
    return graph(
        "support-chat",
        [
            node("trigger", "TRIGGER_MANUAL"),
            node("search", "RAG_SEARCH", topK=2),
            node("answer", "STREAM_OUTPUT", systemPrompt="You are a support agent."),
        ],
        [edge("trigger", "search"), edge("search", "answer")],
    )


def make_adapter(
    llm: MockLLMProvider, bus: EventBus | None = None, store: InMemoryRunStore | None = None
) -> ChatflowAdapter:
    executor = GraphExecutor(
        store=store or InMemoryRunStore(),
        event_bus=bus or EventBus(),
        llm=llm,
        retriever=FakeRetriever(),
    )
    return ChatflowAdapter(executor)


class TestChatflowAdapter:
    @pytest.mark.asyncio
    async def test_streamed_answer_with_sources(self):
        bus = EventBus()
        llm = MockLLMProvider(responses=["Refunds arrive within 14 days."], chunk_size=4)
        adapter = make_adapter(llm, bus)

        result = await adapter.run(support_chatflow(), "When will I get my refund?")

        assert result.fallback is False
        assert result.status == RunStatus.COMPLETED
        assert result.response == "Refunds arrive within 14 days."
        assert result.sources == [
            {"title": "Refund policy", "section": "Timelines"},
            {"title": "Refund policy", "section": "Exclusions"},
        ]

        chunks = bus.get_history(EventType.STEP_STREAM_CHUNK, run_id=result.run_id, limit=1000)
        assert chunks[0].data["accumulated"] == "Refunds arrive within 14 days."
        assert "".join(e.data["chunk"] for e in reversed(chunks)) == result.response

        prompt = llm.calls[0]["messages"][-1]["content"]
        assert prompt.startswith("User question: When will I get my refund?")
        assert "Gift cards cannot be refunded." in prompt

    @pytest.mark.asyncio
    async def test_memory_and_history_reach_the_model(self):
        llm = MockLLMProvider(responses=["Hi Sam"])
        adapter = make_adapter(llm)
        memory = ChatMemory(
            history=[
                ChatMessage(role="user", content="I ordered boots"),
                ChatMessage(role="assistant", content="Noted!"),
            ],
            user_profile={"name": "Sam"},
            working_memory={"order_id": "A-17"},
        )

        result = await adapter.run(support_chatflow(), "Where are they?", memory)

        assert result.response == "Hi Sam"
        call = llm.calls[0]
        assert call["system"].startswith("You are a support agent.")
        assert "Sam" in call["system"]
        assert "A-17" in call["system"]
        assert [m["content"] for m in call["messages"][:2]] == ["I ordered boots", "Noted!"]

    @pytest.mark.asyncio
    async def test_memory_accepts_plain_dict(self):
        adapter = make_adapter(MockLLMProvider(responses=["ok"]))
        result = await adapter.run(
            support_chatflow(), "hi", {"history": [{"role": "user", "content": "earlier"}]}
        )
        assert result.response == "ok"

    @pytest.mark.asyncio
    async def test_unmatched_switch_falls_back(self):
        definition = graph(
            "routed-chat",
            [
                node("trigger", "TRIGGER_MANUAL"),
                node(
                    "route",
                    "SWITCH",
                    switchOn="trigger.message",
                    cases=[{"id": "a", "value": "billing"}, {"id": "b", "value": "tech"}],
                ),
                node("answer", "STREAM_OUTPUT"),
            ],
            [edge("trigger", "route"), edge("route", "answer", handle="a")],
        )
        llm = MockLLMProvider()
        store = InMemoryRunStore()

        result = await make_adapter(llm, store=store).run(definition, "something else")

        assert result.fallback is True
        assert result.status == RunStatus.COMPLETED
        assert result.response == ""
        assert llm.calls == []
        assert [r.run_id for r in await store.list_runs()] == [result.run_id]

    @pytest.mark.asyncio
    async def test_failed_run_falls_back(self):
        adapter = make_adapter(MockLLMProvider(error="provider down"))

        result = await adapter.run(support_chatflow(), "hello")

        assert result.fallback is True
        assert result.status == RunStatus.FAILED
        assert "provider down" in result.error
        assert result.sources

    @pytest.mark.asyncio
    async def test_invalid_graph_falls_back(self):
        definition = graph(
            "broken",
            [node("answer", "STREAM_OUTPUT")],
            [],
        )
        result = await make_adapter(MockLLMProvider()).run(definition, "hello")

        assert result.fallback is True
        assert result.run_id is None
        assert "trigger" in result.error

    @pytest.mark.asyncio
    async def test_graph_without_stream_output_still_runs(self):
        definition = graph(
            "no-answer",
            [node("trigger", "TRIGGER_MANUAL"), node("tf", "TRANSFORM", expression="input")],
            [edge("trigger", "tf")],
        )
        store = InMemoryRunStore()
        result = await make_adapter(MockLLMProvider(), store=store).run(definition, "hello")

        assert result.fallback is True
        assert result.status == RunStatus.COMPLETED
        assert result.error == "No STREAM_OUTPUT node produced an answer"
        run = await store.load(result.run_id)
        assert run.node_results["tf"].output["message"] == "hello"


def test_trigger_input_shape():
    memory = ChatMemory(
        history=[ChatMessage(content="before")],
        semantic_recall=["likes email"],
    )
    trigger = ChatflowAdapter.build_trigger_input("now", memory)

    assert trigger["message"] == "now"
    assert trigger["history"] == [{"role": "user", "content": "before"}]
    assert trigger["memory"]["semantic_recall"] == ["likes email"]
    assert "history" not in trigger["memory"]
