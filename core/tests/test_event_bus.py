"""Tests for the EventBus: subscriptions, run listeners, history and waiting."""

import asyncio

import pytest

from flowengine.runtime.event_bus import EventBus, EventType, WorkflowEvent


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_handler_receives_matching_events(self):
        bus = EventBus()
        received: list[WorkflowEvent] = []

        async def handler(event: WorkflowEvent) -> None:
            received.append(event)

        bus.subscribe([EventType.STEP_SUCCESS], handler, filter_run="run_1")

        await bus.emit_step_success("run_1", "a", 12, "ok")
        await bus.emit_step_success("run_2", "a", 12, "ok")
        await bus.emit_step_start("run_1", "a", "llm")
        await bus.drain()

        assert len(received) == 1
        assert received[0].data == {
            "run_id": "run_1",
            "node_id": "a",
            "duration_ms": 12,
            "output_preview": "ok",
        }

    @pytest.mark.asyncio
    async def test_node_filter_and_unsubscribe(self):
        bus = EventBus()
        received: list[str] = []

        async def handler(event: WorkflowEvent) -> None:
            received.append(event.node_id)

        sub_id = bus.subscribe([EventType.STEP_START], handler, filter_node="b")
        await bus.emit_step_start("run_1", "a", "llm")
        await bus.emit_step_start("run_1", "b", "llm")
        await bus.drain()
        assert received == ["b"]

        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False
        await bus.emit_step_start("run_1", "b", "llm")
        await bus.drain()
        assert received == ["b"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_reach_publisher(self):
        bus = EventBus()

        async def broken(event: WorkflowEvent) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe([EventType.RUN_STARTED], broken)
        await bus.emit_run_started("run_1", "g")
        await bus.drain()

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_slow_handlers(self):
        bus = EventBus()
        release = asyncio.Event()

        async def slow(event: WorkflowEvent) -> None:
            await release.wait()

        bus.subscribe([EventType.STEP_START], slow)
        await asyncio.wait_for(bus.emit_step_start("run_1", "a", "llm"), timeout=1)
        release.set()
        await bus.drain()


class TestRunListener:
    @pytest.mark.asyncio
    async def test_iterates_until_run_complete(self):
        bus = EventBus()
        listener = bus.listen("run_1")

        await bus.emit_run_started("run_1", "g")
        await bus.emit_run_started("run_2", "g")
        await bus.emit_stream_chunk("run_1", "out", "Hel", "Hel")
        await bus.emit_run_complete("run_1", "COMPLETED", 5)

        async with listener as events:
            types = [event.type async for event in events]

        assert types == [
            EventType.RUN_STARTED,
            EventType.STEP_STREAM_CHUNK,
            EventType.RUN_COMPLETE,
        ]
        assert bus.get_stats()["listeners"] == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self):
        bus = EventBus(listener_queue_size=1)
        listener = bus.listen("run_1")

        await bus.emit_stream_chunk("run_1", "out", "a", "a")
        await bus.emit_stream_chunk("run_1", "out", "b", "ab")

        assert listener.dropped == 1
        listener.close()


class TestHistory:
    @pytest.mark.asyncio
    async def test_most_recent_first_with_filters(self):
        bus = EventBus(max_history=3)
        await bus.emit_step_start("run_1", "a", "llm")
        await bus.emit_step_start("run_1", "b", "llm")
        await bus.emit_step_error("run_1", "b", "boom", 3, fatal=True)
        await bus.emit_step_start("run_2", "c", "llm")

        history = bus.get_history()
        assert [e.node_id for e in history] == ["c", "b", "b"]
        assert bus.get_history(EventType.STEP_ERROR)[0].data["fatal"] is True
        assert bus.get_history(run_id="run_2", limit=1)[0].node_id == "c"
        assert bus.get_stats()["events_by_type"] == {"step:start": 2, "step:error": 1}

    def test_event_to_dict(self):
        event = WorkflowEvent(type=EventType.STEP_SUSPEND, run_id="run_1", node_id="gate")
        data = event.to_dict()
        assert data["type"] == "step:suspend"
        assert data["node_id"] == "gate"
        assert "timestamp" in data

    @pytest.mark.asyncio
    async def test_wait_for(self):
        bus = EventBus()

        async def publish_later() -> None:
            await asyncio.sleep(0.01)
            await bus.emit_run_complete("run_1", "COMPLETED", 10, output={"x": 1})

        task = asyncio.create_task(publish_later())
        event = await bus.wait_for(EventType.RUN_COMPLETE, run_id="run_1", timeout=1)
        await task

        assert event is not None
        assert event.data["output"] == {"x": 1}

    @pytest.mark.asyncio
    async def test_wait_for_timeout(self):
        bus = EventBus()
        assert await bus.wait_for(EventType.RUN_COMPLETE, timeout=0.01) is None
