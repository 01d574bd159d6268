"""
Test configuration and fixtures for the flow execution engine.
"""

import asyncio
from collections import Counter, defaultdict
from typing import Any, Dict, Iterable, List, Optional

import pytest
import fakeredis.aioredis

from core.cache import CacheService
from core.config import Settings
from services.flow.context import ExecutionContextManager
from services.flow.engine import FlowExecutionEngine
from services.flow.events import EventSink
from services.flow.graph import Connection, WorkflowGraph, WorkflowNode
from services.flow.models import FlowExecutionOptions
from services.flow.persistence import ExecutionStore


class ScriptedExecutor:
    """Fake node executor whose behaviour is scripted per node id.

    By default every node emits one item on ``main`` tagged with its id.
    Tests can hold a node open with a gate, make it fail, make it fail
    only for its first attempts, or return custom port outputs.
    """

    def __init__(self):
        self.outputs: Dict[str, Any] = {}
        self.failures: Dict[str, Exception] = {}
        self.flaky: Dict[str, int] = {}
        self.delays: Dict[str, float] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.started: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.attempts: Counter = Counter()
        self.calls: List[tuple] = []
        self.log: List[tuple] = []
        self.running: set = set()
        self.max_concurrency = 0

    def gate(self, node_id: str) -> asyncio.Event:
        """Block ``node_id`` until the returned event is set."""
        event = asyncio.Event()
        self.gates[node_id] = event
        return event

    def started_ids(self) -> List[str]:
        return [node_id for kind, node_id in self.log if kind == "start"]

    def index(self, kind: str, node_id: str) -> int:
        return self.log.index((kind, node_id))

    async def __call__(self, node: WorkflowNode, input_data: Dict[str, List[Any]],
                       parameters: Dict[str, Any]):
        self.attempts[node.id] += 1
        self.calls.append((node.id, input_data))
        self.log.append(("start", node.id))
        self.started[node.id].set()
        self.running.add(node.id)
        self.max_concurrency = max(self.max_concurrency, len(self.running))
        try:
            if node.id in self.gates:
                await self.gates[node.id].wait()
            if node.id in self.delays:
                await asyncio.sleep(self.delays[node.id])
            if self.attempts[node.id] <= self.flaky.get(node.id, 0):
                raise RuntimeError(f"{node.id} transient failure")
            if node.id in self.failures:
                raise self.failures[node.id]
            if node.id in self.outputs:
                return self.outputs[node.id]
            return {"main": [{"node": node.id}]}
        finally:
            self.running.discard(node.id)
            self.log.append(("end", node.id))


def build_graph(*edges, nodes: Iterable[str] = (), triggers: Iterable[str] = (),
                disabled: Iterable[str] = (), types: Optional[Dict[str, str]] = None,
                workflow_id: str = "wf-test") -> WorkflowGraph:
    """Build a graph from ``"A->B"`` strings or ``(source, target, output, input)`` tuples.

    Node ids are collected from the edges plus ``nodes``; trigger ids get
    the ``manualTrigger`` type.
    """
    connections = []
    ids: List[str] = []

    def remember(node_id):
        if node_id not in ids:
            ids.append(node_id)

    for edge in edges:
        if isinstance(edge, str):
            source, target = [part.strip() for part in edge.split("->")]
            connections.append(Connection(source, target))
        else:
            connections.append(Connection(*edge))
        remember(connections[-1].source_node_id)
        remember(connections[-1].target_node_id)
    for node_id in nodes:
        remember(node_id)

    triggers, disabled, types = set(triggers), set(disabled), dict(types or {})
    graph_nodes = [
        WorkflowNode(
            id=node_id,
            type=types.get(node_id, "manualTrigger" if node_id in triggers else "noOp"),
            disabled=node_id in disabled,
        )
        for node_id in ids
    ]
    return WorkflowGraph(graph_nodes, connections, workflow_id=workflow_id)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def test_settings():
    """Create test settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        execution_timeout=5.0,
        retry_delay=0.01,
        retry_max_delay=0.05,
        context_retention_seconds=0,
        sweep_interval=0.05,
    )


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def context_manager():
    return ExecutionContextManager(retention_seconds=0)


@pytest.fixture
def event_sink():
    return EventSink(history_size=1000)


@pytest.fixture
def memory_cache(test_settings):
    return CacheService(test_settings)


@pytest.fixture
async def redis_cache(test_settings):
    """CacheService backed by an in-process fake Redis."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    cache = CacheService(test_settings, redis_client=client)
    await cache.startup()
    yield cache
    await cache.shutdown()


@pytest.fixture
def store(memory_cache):
    return ExecutionStore(memory_cache, snapshot_ttl=3600)


@pytest.fixture
def default_options(test_settings):
    return FlowExecutionOptions.from_settings(test_settings)


@pytest.fixture
def engine(executor, context_manager, event_sink, store, default_options):
    """Engine wired with the scripted executor and in-memory collaborators."""
    return FlowExecutionEngine(
        node_executor=executor,
        context_manager=context_manager,
        event_sink=event_sink,
        store=store,
        default_options=default_options,
    )
