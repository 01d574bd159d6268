"""Tests for the flow status event stream."""

import asyncio

import orjson

from services.flow.events import EventSink, FlowEvent


def _event(node_id, status="running", execution_id="e1"):
    return FlowEvent(execution_id, node_id, status)


class TestEventSink:
    """Tests for EventSink delivery."""

    async def test_delivery_is_fifo(self):
        sink = EventSink()
        received = []
        sink.subscribe(lambda event: received.append(event.node_id))

        for node_id in ("A", "B", "C"):
            sink.emit(_event(node_id))
        await sink.drain()

        assert received == ["A", "B", "C"]
        await sink.stop()

    async def test_async_subscriber_awaited_in_order(self):
        sink = EventSink()
        received = []

        async def slow(event):
            await asyncio.sleep(0.01 if event.node_id == "A" else 0)
            received.append(event.node_id)

        sink.subscribe(slow)
        sink.emit(_event("A"))
        sink.emit(_event("B"))
        await sink.drain()

        assert received == ["A", "B"]
        await sink.stop()

    async def test_failing_subscriber_does_not_stop_delivery(self):
        sink = EventSink()
        received = []

        def broken(event):
            raise RuntimeError("socket closed")

        sink.subscribe(broken)
        sink.subscribe(lambda event: received.append(event.node_id))
        sink.emit(_event("A"))
        sink.emit(_event("B"))
        await sink.drain()

        assert received == ["A", "B"]
        await sink.stop()

    async def test_unsubscribe(self):
        sink = EventSink()
        received = []
        unsubscribe = sink.subscribe(received.append)

        sink.emit(_event("A"))
        await sink.drain()
        unsubscribe()
        sink.emit(_event("B"))
        await sink.drain()

        assert [e.node_id for e in received] == ["A"]
        await sink.stop()

    async def test_emit_does_not_wait_for_subscribers(self):
        sink = EventSink()
        release = asyncio.Event()

        async def blocked(event):
            await release.wait()

        sink.subscribe(blocked)
        sink.emit(_event("A"))
        sink.emit(_event("B"))

        assert len(sink.recent()) == 2
        release.set()
        await sink.drain()
        await sink.stop()

    def test_emit_without_running_loop(self):
        sink = EventSink()
        sink.emit(_event("A"))
        assert sink.recent("e1")[0].node_id == "A"

    def test_history_is_bounded_and_filterable(self):
        sink = EventSink(history_size=3)
        for i in range(5):
            sink.emit(_event(f"N{i}", execution_id="e1" if i % 2 else "e2"))

        assert [e.node_id for e in sink.recent()] == ["N2", "N3", "N4"]
        assert [e.node_id for e in sink.recent("e1")] == ["N3"]


class TestFlowEvent:
    """Tests for FlowEvent serialization."""

    def test_to_json(self):
        event = FlowEvent("e1", None, "completed", timestamp=1.5,
                          data={"executed_nodes": ["A"]})

        assert orjson.loads(event.to_json()) == {
            "execution_id": "e1",
            "node_id": None,
            "status": "completed",
            "timestamp": 1.5,
            "data": {"executed_nodes": ["A"]},
        }
