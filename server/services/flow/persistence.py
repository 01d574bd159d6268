"""Execution snapshot persistence for pause/resume and crash recovery.

Key schema (Redis):
    flow:execution:{id}      -> HASH {field -> JSON value}
    flow:executions:active   -> SET {execution ids in running/paused}

Without Redis the snapshot is stored as one JSON value through CacheService
and only survives as long as the process.
"""

import time
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import orjson

from constants import ACTIVE_EXECUTIONS_KEY, SNAPSHOT_KEY_PREFIX
from core.cache import CacheService
from core.logging import get_logger
from .context import ExecutionContext
from .models import FlowNodeStatus, FlowStatus, NodeExecutionState

logger = get_logger(__name__)

RECOVERABLE_STATUSES = frozenset([FlowStatus.RUNNING.value, FlowStatus.PAUSED.value])


@dataclass
class ExecutionSnapshot:
    """Serializable image of an ExecutionContext."""
    execution_id: str
    trigger_node_id: str
    start_node_id: str
    status: str
    workflow_id: Optional[str] = None
    affected_node_ids: List[str] = field(default_factory=list)
    queued: List[str] = field(default_factory=list)
    running: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    outputs: Dict[str, Dict[str, List[Any]]] = field(default_factory=dict)
    execution_path: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    trigger_data: Any = None
    started_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_recoverable(self) -> bool:
        return self.status in RECOVERABLE_STATUSES

    @classmethod
    def from_context(cls, ctx: ExecutionContext) -> "ExecutionSnapshot":
        return cls(
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow_id,
            trigger_node_id=ctx.trigger_node_id,
            start_node_id=ctx.start_node_id,
            status=ctx.status.value,
            affected_node_ids=sorted(ctx.affected_node_ids),
            queued=sorted(ctx.queued),
            running=sorted(ctx.running),
            completed=sorted(ctx.completed),
            failed=sorted(ctx.failed),
            skipped=sorted(ctx.skipped),
            outputs=dict(ctx.outputs),
            execution_path=list(ctx.execution_path),
            errors=list(ctx.errors),
            trigger_data=ctx.trigger_data,
            started_at=ctx.start_time,
            updated_at=time.time(),
        )

    def to_context(self) -> ExecutionContext:
        """Rebuild an ExecutionContext (status sets, outputs and path)."""
        ctx = ExecutionContext(
            execution_id=self.execution_id,
            trigger_node_id=self.trigger_node_id,
            start_node_id=self.start_node_id,
            affected_node_ids=frozenset(self.affected_node_ids),
            workflow_id=self.workflow_id,
            status=FlowStatus(self.status),
            start_time=self.started_at or time.time(),
            trigger_data=self.trigger_data,
        )
        for status, node_ids in (
            (FlowNodeStatus.QUEUED, self.queued),
            (FlowNodeStatus.RUNNING, self.running),
            (FlowNodeStatus.COMPLETED, self.completed),
            (FlowNodeStatus.FAILED, self.failed),
            (FlowNodeStatus.SKIPPED, self.skipped),
        ):
            for node_id in node_ids:
                ctx.node_states.setdefault(node_id, NodeExecutionState(node_id=node_id))
                ctx.move(node_id, status)

        ctx.outputs = {k: dict(v) for k, v in self.outputs.items()}
        ctx.fired_ports = {
            node_id: frozenset(port for port, items in ports.items() if items)
            for node_id, ports in ctx.outputs.items()
        }
        for node_id, ports in ctx.outputs.items():
            if node_id in ctx.node_states:
                ctx.node_states[node_id].output = ports
        ctx.execution_path = list(self.execution_path)
        ctx.errors = list(self.errors)
        return ctx

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionSnapshot":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class ExecutionStore:
    """Saves and loads ExecutionSnapshots through CacheService.

    Every method logs and swallows backend errors; callers treat
    persistence as best effort.
    """

    def __init__(self, cache: CacheService, snapshot_ttl: int = 86400):
        self.cache = cache
        self.snapshot_ttl = snapshot_ttl

    @staticmethod
    def _key(execution_id: str) -> str:
        return f"{SNAPSHOT_KEY_PREFIX}:{execution_id}"

    async def save_snapshot(self, snapshot: ExecutionSnapshot) -> bool:
        """Persist a snapshot and keep the active index in sync.

        Terminal snapshots get ``snapshot_ttl``; live ones do not expire.
        """
        key = self._key(snapshot.execution_id)
        try:
            data = snapshot.to_dict()
            if self.cache.is_redis_available():
                mapping = {
                    k: orjson.dumps(v, default=str).decode("utf-8")
                    for k, v in data.items()
                }
                await self.cache.redis.hset(key, mapping=mapping)
                if snapshot.is_recoverable:
                    await self.cache.redis.persist(key)
                else:
                    await self.cache.redis.expire(key, self.snapshot_ttl)
            else:
                # Round-trip through orjson so memory and Redis store the same shapes
                await self.cache.set(key, orjson.loads(orjson.dumps(data, default=str)),
                                     ttl=self.snapshot_ttl)

            if snapshot.is_recoverable:
                await self.cache.set_add(ACTIVE_EXECUTIONS_KEY, snapshot.execution_id)
            else:
                await self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, snapshot.execution_id)

            logger.debug("Saved execution snapshot",
                        execution_id=snapshot.execution_id, status=snapshot.status)
            return True

        except Exception as e:
            logger.error("Failed to save execution snapshot",
                        execution_id=snapshot.execution_id, error=str(e))
            return False

    async def save_context(self, ctx: ExecutionContext) -> bool:
        return await self.save_snapshot(ExecutionSnapshot.from_context(ctx))

    async def load_snapshot(self, execution_id: str) -> Optional[ExecutionSnapshot]:
        key = self._key(execution_id)
        try:
            if self.cache.is_redis_available():
                raw = await self.cache.redis.hgetall(key)
                if not raw:
                    return None
                data = {}
                for k, v in raw.items():
                    k = k.decode("utf-8") if isinstance(k, bytes) else k
                    data[k] = orjson.loads(v)
            else:
                data = await self.cache.get(key)
                if not data:
                    return None
            return ExecutionSnapshot.from_dict(data)

        except Exception as e:
            logger.error("Failed to load execution snapshot",
                        execution_id=execution_id, error=str(e))
            return None

    async def delete(self, execution_id: str) -> bool:
        try:
            await self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id)
            return await self.cache.delete(self._key(execution_id))
        except Exception as e:
            logger.error("Failed to delete execution snapshot",
                        execution_id=execution_id, error=str(e))
            return False

    async def rename(self, old_id: str, new_id: str) -> bool:
        """Move a snapshot to a server-assigned execution id."""
        snapshot = await self.load_snapshot(old_id)
        if snapshot is None:
            return False
        snapshot.execution_id = new_id
        await self.delete(old_id)
        return await self.save_snapshot(snapshot)

    async def list_recoverable(self) -> List[str]:
        """Ids of snapshots left in running or paused state.

        Index entries whose snapshot is gone or terminal are pruned.
        """
        recoverable = []
        for execution_id in sorted(await self.cache.set_members(ACTIVE_EXECUTIONS_KEY)):
            snapshot = await self.load_snapshot(execution_id)
            if snapshot is not None and snapshot.is_recoverable:
                recoverable.append(execution_id)
            else:
                await self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id)
        return recoverable
