"""Tests for execution snapshots on the memory and Redis backends."""

import pytest

from constants import ACTIVE_EXECUTIONS_KEY
from services.flow.context import ExecutionContextManager
from services.flow.models import FlowNodeStatus, FlowStatus, NodeOutput
from services.flow.persistence import ExecutionSnapshot, ExecutionStore


def _interrupted_context(manager, execution_id="e1"):
    """T completed, A running, B idle."""
    ctx = manager.start_execution(execution_id, "T", ["T", "A", "B"],
                                  workflow_id="wf-1", trigger_data={"x": 1})
    manager.set_node_queued(execution_id, "T")
    manager.set_node_running(execution_id, "T")
    manager.set_node_completed(execution_id, "T", NodeOutput({"main": [{"x": 1}], "false": []}))
    manager.set_node_queued(execution_id, "A")
    manager.set_node_running(execution_id, "A")
    return ctx


@pytest.fixture(params=["memory", "redis"])
async def any_store(request, memory_cache, redis_cache):
    cache = memory_cache if request.param == "memory" else redis_cache
    return ExecutionStore(cache, snapshot_ttl=3600)


class TestExecutionSnapshot:
    """Tests for context <-> snapshot conversion."""

    def test_to_context_restores_sets_and_ports(self):
        ctx = _interrupted_context(ExecutionContextManager())

        restored = ExecutionSnapshot.from_dict(
            ExecutionSnapshot.from_context(ctx).to_dict()).to_context()

        assert restored.completed == {"T"}
        assert restored.running == {"A"}
        assert restored.node_status("B") == FlowNodeStatus.IDLE
        assert restored.fired_ports["T"] == frozenset({"main"})
        assert restored.execution_path == ["T"]
        assert restored.workflow_id == "wf-1"
        assert restored.status == FlowStatus.RUNNING

    def test_recoverable_statuses(self):
        manager = ExecutionContextManager()
        ctx = _interrupted_context(manager)
        assert ExecutionSnapshot.from_context(ctx).is_recoverable

        manager.pause_execution("e1")
        assert ExecutionSnapshot.from_context(ctx).is_recoverable

        manager.cancel_execution("e1")
        assert not ExecutionSnapshot.from_context(ctx).is_recoverable

    def test_unknown_keys_ignored(self):
        snapshot = ExecutionSnapshot.from_dict({
            "execution_id": "e1", "trigger_node_id": "T", "start_node_id": "T",
            "status": "running", "schema_version": 2,
        })
        assert snapshot.execution_id == "e1"


class TestExecutionStore:
    """Tests for ExecutionStore on both backends."""

    async def test_save_and_load(self, any_store):
        ctx = _interrupted_context(ExecutionContextManager())

        assert await any_store.save_context(ctx)
        snapshot = await any_store.load_snapshot("e1")

        assert snapshot.running == ["A"]
        assert snapshot.completed == ["T"]
        assert snapshot.outputs == {"T": {"main": [{"x": 1}], "false": []}}
        assert snapshot.trigger_data == {"x": 1}

    async def test_missing_snapshot(self, any_store):
        assert await any_store.load_snapshot("nope") is None

    async def test_active_index_follows_status(self, any_store):
        manager = ExecutionContextManager()
        live = _interrupted_context(manager, "live")
        done = _interrupted_context(manager, "done")
        manager.finish_execution("done", FlowStatus.COMPLETED)

        await any_store.save_context(live)
        await any_store.save_context(done)

        assert await any_store.list_recoverable() == ["live"]

        manager.cancel_execution("live")
        await any_store.save_context(live)
        assert await any_store.list_recoverable() == []

    async def test_stale_index_entries_pruned(self, any_store):
        await any_store.cache.set_add(ACTIVE_EXECUTIONS_KEY, "ghost")

        assert await any_store.list_recoverable() == []
        assert "ghost" not in await any_store.cache.set_members(ACTIVE_EXECUTIONS_KEY)

    async def test_delete(self, any_store):
        await any_store.save_context(_interrupted_context(ExecutionContextManager()))

        assert await any_store.delete("e1")
        assert await any_store.load_snapshot("e1") is None
        assert await any_store.list_recoverable() == []

    async def test_rename(self, any_store):
        await any_store.save_context(_interrupted_context(ExecutionContextManager(), "temp-1"))

        assert await any_store.rename("temp-1", "srv-1")

        assert await any_store.load_snapshot("temp-1") is None
        assert (await any_store.load_snapshot("srv-1")).execution_id == "srv-1"
        assert await any_store.list_recoverable() == ["srv-1"]
        assert not await any_store.rename("temp-1", "srv-2")


class TestRedisExpiry:
    """Tests for snapshot TTLs on Redis."""

    async def test_terminal_snapshot_expires_live_one_does_not(self, redis_cache):
        store = ExecutionStore(redis_cache, snapshot_ttl=3600)
        manager = ExecutionContextManager()
        live = _interrupted_context(manager, "live")
        done = _interrupted_context(manager, "done")
        manager.finish_execution("done", FlowStatus.FAILED)

        await store.save_context(live)
        await store.save_context(done)

        assert await redis_cache.redis.ttl("flow:execution:live") == -1
        assert 0 < await redis_cache.redis.ttl("flow:execution:done") <= 3600
