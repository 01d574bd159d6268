"""Status event stream for flow executions.

The engine emits one FlowEvent per status transition. Emission only enqueues;
a single dispatcher task delivers events to subscribers in FIFO order, so a
slow WebSocket broadcaster or persistence writer never blocks scheduling.
"""

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

import orjson

from core.logging import get_logger

logger = get_logger(__name__)

Subscriber = Callable[["FlowEvent"], Union[None, Awaitable[None]]]


@dataclass
class FlowEvent:
    """One status transition. ``node_id`` is None for execution-level events."""
    execution_id: str
    node_id: Optional[str]
    status: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "status": self.status,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict(), default=str)


class EventSink:
    """Fire-and-forget event fan-out with a bounded history for late subscribers."""

    def __init__(self, history_size: int = 500):
        self._subscribers: List[Subscriber] = []
        self._queue: "asyncio.Queue[FlowEvent]" = asyncio.Queue()
        self._history: Deque[FlowEvent] = deque(maxlen=history_size)
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a sync or async subscriber. Returns an unsubscribe callable."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event: FlowEvent) -> None:
        """Queue an event for delivery. Never blocks, never raises."""
        try:
            self._history.append(event)
            self._queue.put_nowait(event)
            self._ensure_dispatcher()
        except Exception as e:
            logger.warning("Failed to emit flow event",
                          execution_id=event.execution_id,
                          node_id=event.node_id, error=str(e))

    def recent(self, execution_id: Optional[str] = None) -> List[FlowEvent]:
        """Retained events, optionally filtered to one execution."""
        if execution_id is None:
            return list(self._history)
        return [e for e in self._history if e.execution_id == execution_id]

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        self._ensure_dispatcher()
        await self._queue.join()

    async def start(self) -> None:
        self._ensure_dispatcher()
        logger.debug("Event sink started", subscribers=len(self._subscribers))

    async def stop(self) -> None:
        """Deliver what is queued, then stop the dispatcher."""
        if self._task and not self._task.done():
            await self.drain()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.debug("Event sink stopped")

    def _ensure_dispatcher(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; delivery starts with the first emit inside one
            return
        self._task = loop.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                for callback in list(self._subscribers):
                    await self._deliver(callback, event)
            finally:
                self._queue.task_done()

    async def _deliver(self, callback: Subscriber, event: FlowEvent) -> None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Flow event subscriber failed",
                          execution_id=event.execution_id,
                          node_id=event.node_id,
                          status=event.status, error=str(e))
