"""
Event Bus - live progress events for runs.

The scheduler publishes one event per state transition (step:start,
step:success, ...). Any number of consumers can watch: callback
subscriptions, per-run listener queues (one per UI session), or
``wait_for`` in tests.

Publishing never blocks the scheduler. The event is appended to a bounded
history and matching handlers are started as background tasks; listener
queues that are full drop the event with a warning. There is no replay:
a late listener sees only later events and must read the Run record for
anything earlier.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run:start"
    RUN_RESUMED = "run:resumed"
    RUN_COMPLETE = "run:complete"

    # Node lifecycle
    STEP_START = "step:start"
    STEP_SUCCESS = "step:success"
    STEP_ERROR = "step:error"
    STEP_SUSPEND = "step:suspend"

    # Token streaming from STREAM_OUTPUT nodes
    STEP_STREAM_CHUNK = "step:stream-chunk"


@dataclass
class WorkflowEvent:
    """An event about one run."""

    type: EventType
    run_id: str
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class RunListener:
    """
    Async iterator over one run's events, fed by the bus.

    Iteration ends after the run's ``run:complete`` event. A suspended run
    does not complete, so UI sessions close their listener when done.

        async with bus.listen(run_id) as events:
            async for event in events:
                send_to_client(event.to_dict())
    """

    def __init__(self, bus: "EventBus", run_id: str, maxsize: int):
        self.run_id = run_id
        self.dropped = 0
        self._bus = bus
        self._queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue(maxsize=maxsize)
        self._finished = False

    def _offer(self, event: WorkflowEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Listener queue full for run {self.run_id}; dropped {event.type} event"
            )

    def __aiter__(self) -> "RunListener":
        return self

    async def __anext__(self) -> WorkflowEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.type == EventType.RUN_COMPLETE:
            self._finished = True
            self.close()
        return event

    def close(self) -> None:
        self._bus._remove_listener(self)

    async def __aenter__(self) -> "RunListener":
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    """
    Pub/sub bus keyed by run id.

    Example:
        bus = EventBus()

        async def on_complete(event: WorkflowEvent):
            print(f"Run {event.run_id} finished: {event.data['status']}")

        bus.subscribe(event_types=[EventType.RUN_COMPLETE], handler=on_complete)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
        listener_queue_size: int = 1000,
    ):
        """
        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
            listener_queue_size: Per-listener buffer before events are dropped
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: deque[WorkflowEvent] = deque(maxlen=max_history)
        self._listeners: dict[str, list[RunListener]] = {}
        self._listener_queue_size = listener_queue_size
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._pending: set[asyncio.Task] = set()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_run: Only receive events from this run
            filter_node: Only receive events from this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    def listen(self, run_id: str) -> RunListener:
        """Open a listener that receives every later event of ``run_id``."""
        listener = RunListener(self, run_id, self._listener_queue_size)
        self._listeners.setdefault(run_id, []).append(listener)
        return listener

    def _remove_listener(self, listener: RunListener) -> None:
        listeners = self._listeners.get(listener.run_id, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(listener.run_id, None)

    async def publish(self, event: WorkflowEvent) -> None:
        """
        Publish an event without waiting on its consumers.

        Handlers run as background tasks; use ``drain()`` to wait for them.
        """
        self._event_history.append(event)

        for listener in list(self._listeners.get(event.run_id, [])):
            listener._offer(event)

        for subscription in list(self._subscriptions.values()):
            if self._matches(subscription, event):
                task = asyncio.create_task(self._run_handler(subscription.handler, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    def _matches(self, subscription: Subscription, event: WorkflowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _run_handler(self, handler: EventHandler, event: WorkflowEvent) -> None:
        async with self._semaphore:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.type}: {e}")

    async def drain(self) -> None:
        """Wait until every handler started so far has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(self, run_id: str, graph_id: str) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                data={"run_id": run_id, "graph_id": graph_id},
            )
        )

    async def emit_run_resumed(self, run_id: str, node_id: str) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.RUN_RESUMED,
                run_id=run_id,
                node_id=node_id,
                data={"run_id": run_id, "node_id": node_id},
            )
        )

    async def emit_step_start(
        self, run_id: str, node_id: str, node_type: str, label: str = ""
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.STEP_START,
                run_id=run_id,
                node_id=node_id,
                data={"run_id": run_id, "node_id": node_id, "node_type": node_type, "label": label},
            )
        )

    async def emit_step_success(
        self,
        run_id: str,
        node_id: str,
        duration_ms: int | None,
        output_preview: str,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.STEP_SUCCESS,
                run_id=run_id,
                node_id=node_id,
                data={
                    "run_id": run_id,
                    "node_id": node_id,
                    "duration_ms": duration_ms,
                    "output_preview": output_preview,
                },
            )
        )

    async def emit_step_error(
        self,
        run_id: str,
        node_id: str,
        error: str,
        duration_ms: int | None = None,
        fatal: bool = True,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.STEP_ERROR,
                run_id=run_id,
                node_id=node_id,
                data={
                    "run_id": run_id,
                    "node_id": node_id,
                    "error": error,
                    "duration_ms": duration_ms,
                    "fatal": fatal,
                },
            )
        )

    async def emit_step_suspend(self, run_id: str, node_id: str, prompt: dict[str, Any]) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.STEP_SUSPEND,
                run_id=run_id,
                node_id=node_id,
                data={"run_id": run_id, "node_id": node_id, "prompt": prompt},
            )
        )

    async def emit_stream_chunk(
        self, run_id: str, node_id: str, chunk: str, accumulated: str
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.STEP_STREAM_CHUNK,
                run_id=run_id,
                node_id=node_id,
                data={
                    "run_id": run_id,
                    "node_id": node_id,
                    "chunk": chunk,
                    "accumulated": accumulated,
                },
            )
        )

    async def emit_run_complete(
        self,
        run_id: str,
        status: str,
        duration_ms: int,
        error: str | None = None,
        output: dict[str, Any] | None = None,
    ) -> None:
        data: dict[str, Any] = {"run_id": run_id, "status": status, "duration_ms": duration_ms}
        if error is not None:
            data["error"] = error
        if output:
            data["output"] = output
        await self.publish(WorkflowEvent(type=EventType.RUN_COMPLETE, run_id=run_id, data=data))

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = list(self._event_history)[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        if node_id:
            events = [e for e in events if e.node_id == node_id]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "listeners": sum(len(v) for v in self._listeners.values()),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None on timeout
        """
        result: WorkflowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: WorkflowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_run=run_id,
            filter_node=node_id,
        )
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
