"""Tests for the execution event bus.

Covers subscription matching, history, handler isolation and order, and
using ``EventBus.publish`` as an engine ``on_event`` callback.
"""

import asyncio

import pytest

from flowforge.graph.executor import ExecutionEngine
from flowforge.graph.node import Node
from flowforge.graph.registry import ExecutorRegistry
from flowforge.graph.types import ExecutionOptions
from flowforge.runtime.event_bus import EventBus, ExecutionEvent, ExecutionEventType, dispatch_event


def event(event_type, node_id=None, run_id="run-1", **data):
    return ExecutionEvent(type=event_type, run_id=run_id, node_id=node_id, data=data)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------
class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_handler_receives_matching_types_only(self):
        bus = EventBus()
        received = []
        bus.subscribe([ExecutionEventType.NODE_ERROR], received.append)

        await bus.publish(event(ExecutionEventType.NODE_START, "a"))
        await bus.publish(event(ExecutionEventType.NODE_ERROR, "a", error="boom"))

        assert [e.type for e in received] == [ExecutionEventType.NODE_ERROR]
        assert received[0].data["error"] == "boom"

    @pytest.mark.asyncio
    async def test_node_and_run_filters(self):
        bus = EventBus()
        by_node, by_run = [], []
        types = [ExecutionEventType.NODE_COMPLETE]
        bus.subscribe(types, by_node.append, node_id="b")
        bus.subscribe(types, by_run.append, run_id="run-2")

        await bus.publish(event(ExecutionEventType.NODE_COMPLETE, "a"))
        await bus.publish(event(ExecutionEventType.NODE_COMPLETE, "b"))
        await bus.publish(event(ExecutionEventType.NODE_COMPLETE, "a", run_id="run-2"))

        assert [e.node_id for e in by_node] == ["b"]
        assert [e.run_id for e in by_run] == ["run-2"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []
        sub_id = bus.subscribe([ExecutionEventType.START], received.append)

        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False

        await bus.publish(event(ExecutionEventType.START))
        assert received == []

    @pytest.mark.asyncio
    async def test_async_handlers(self):
        bus = EventBus()
        received = []

        async def handler(e):
            await asyncio.sleep(0)
            received.append(e.node_id)

        bus.subscribe([ExecutionEventType.NODE_START], handler)
        await bus.publish(event(ExecutionEventType.NODE_START, "x"))
        assert received == ["x"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(e):
            raise RuntimeError("handler bug")

        bus.subscribe([ExecutionEventType.COMPLETE], broken)
        bus.subscribe([ExecutionEventType.COMPLETE], received.append)

        await bus.publish(event(ExecutionEventType.COMPLETE, status="success"))
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_no_event_types_means_all(self):
        bus = EventBus()
        received = []
        bus.subscribe(None, received.append)

        await bus.publish(event(ExecutionEventType.START))
        await bus.publish(event(ExecutionEventType.NODE_RETRY, "a", attempt=1))

        assert [e.type for e in received] == [ExecutionEventType.START, ExecutionEventType.NODE_RETRY]

    @pytest.mark.asyncio
    async def test_handlers_run_one_at_a_time_in_subscription_order(self):
        bus = EventBus()
        seen = []

        async def slow(e):
            await asyncio.sleep(0.01)
            seen.append(("slow", e.node_id))

        bus.subscribe(None, slow)
        bus.subscribe(None, lambda e: seen.append(("fast", e.node_id)))

        await bus.publish(event(ExecutionEventType.NODE_START, "a"))
        await bus.publish(event(ExecutionEventType.NODE_START, "b"))

        assert seen == [("slow", "a"), ("fast", "a"), ("slow", "b"), ("fast", "b")]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_oldest_first_and_filterable(self):
        bus = EventBus()
        await bus.publish(event(ExecutionEventType.NODE_START, "a"))
        await bus.publish(event(ExecutionEventType.NODE_COMPLETE, "a"))
        await bus.publish(event(ExecutionEventType.NODE_START, "b", run_id="run-2"))

        assert [(e.type, e.node_id) for e in bus.get_history()] == [
            (ExecutionEventType.NODE_START, "a"),
            (ExecutionEventType.NODE_COMPLETE, "a"),
            (ExecutionEventType.NODE_START, "b"),
        ]
        assert len(bus.get_history(event_type=ExecutionEventType.NODE_START)) == 2
        assert len(bus.get_history(node_id="a")) == 2
        assert [e.node_id for e in bus.get_history(run_id="run-2")] == ["b"]
        assert [e.node_id for e in bus.get_history(limit=1)] == ["b"]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.publish(event(ExecutionEventType.NODE_START, f"n{i}"))

        assert [e.node_id for e in bus.get_history()] == ["n2", "n3", "n4"]


# ---------------------------------------------------------------------------
# Events and dispatch
# ---------------------------------------------------------------------------
def test_event_to_dict():
    e = ExecutionEvent(
        type=ExecutionEventType.NODE_RETRY,
        run_id="r",
        node_id="n",
        data={"attempt": 1},
        depth=2,
    )
    data = e.to_dict()

    assert data["type"] == "node-retry"
    assert data["node_id"] == "n"
    assert data["data"] == {"attempt": 1}
    assert data["depth"] == 2
    assert isinstance(data["timestamp"], str)


@pytest.mark.asyncio
async def test_dispatch_event_swallows_handler_errors():
    async def broken(e):
        raise ValueError("nope")

    await dispatch_event(broken, event(ExecutionEventType.START))


@pytest.mark.asyncio
async def test_publish_as_engine_callback():
    async def const(ctx):
        return {"out": 1}

    executors = ExecutorRegistry()
    executors.register("Const", const)
    bus = EventBus()

    state = await ExecutionEngine(executors).execute(
        [Node(id="a", type="Const")], [], ExecutionOptions(on_event=bus.publish)
    )

    types = [e.type for e in bus.get_history()]
    assert types == [
        ExecutionEventType.START,
        ExecutionEventType.NODE_START,
        ExecutionEventType.NODE_COMPLETE,
        ExecutionEventType.COMPLETE,
    ]
    assert all(e.run_id == state.run_id for e in bus.get_history())
