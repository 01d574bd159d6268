"""Per-execution state and the registry that isolates concurrent executions.

Every mutation of an ExecutionContext goes through ExecutionContextManager;
each transition is one synchronous method, so no caller on the event loop
can observe a node in two status sets at once.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from core.logging import get_logger
from .errors import ExecutionNotFoundError, FlowErrorType, FlowExecutionError
from .models import (
    FlowNodeStatus,
    FlowStatus,
    NodeExecutionState,
    NodeOutput,
)

logger = get_logger(__name__)


# Which states each transition may start from
_ALLOWED_FROM: Dict[FlowNodeStatus, FrozenSet[FlowNodeStatus]] = {
    FlowNodeStatus.QUEUED: frozenset([FlowNodeStatus.IDLE]),
    FlowNodeStatus.RUNNING: frozenset([FlowNodeStatus.QUEUED]),
    FlowNodeStatus.COMPLETED: frozenset([FlowNodeStatus.RUNNING]),
    FlowNodeStatus.FAILED: frozenset([FlowNodeStatus.QUEUED, FlowNodeStatus.RUNNING]),
    FlowNodeStatus.SKIPPED: frozenset([FlowNodeStatus.IDLE, FlowNodeStatus.QUEUED]),
}


@dataclass
class ExecutionContext:
    """Isolated state of one triggered run.

    ``queued``, ``running``, ``completed``, ``failed`` and ``skipped``
    partition the affected nodes that have left ``idle``; cancelled nodes
    leave every set.
    """
    execution_id: str
    trigger_node_id: str
    start_node_id: str
    affected_node_ids: FrozenSet[str]
    workflow_id: Optional[str] = None
    status: FlowStatus = FlowStatus.RUNNING
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    queued: Set[str] = field(default_factory=set)
    running: Set[str] = field(default_factory=set)
    completed: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)
    skipped: Set[str] = field(default_factory=set)

    node_states: Dict[str, NodeExecutionState] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, List[Any]]] = field(default_factory=dict)
    fired_ports: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    execution_path: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    trigger_data: Any = None

    def __post_init__(self):
        for node_id in self.affected_node_ids:
            self.node_states.setdefault(node_id, NodeExecutionState(node_id=node_id))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def executed_nodes(self) -> List[str]:
        """Successfully completed nodes in completion order."""
        return [n for n in self.execution_path if n in self.completed]

    @property
    def pending(self) -> Set[str]:
        return self.queued | self.running

    def node_status(self, node_id: str) -> FlowNodeStatus:
        state = self.node_states.get(node_id)
        return state.status if state else FlowNodeStatus.IDLE

    def _set_for(self, status: FlowNodeStatus) -> Optional[Set[str]]:
        return {
            FlowNodeStatus.QUEUED: self.queued,
            FlowNodeStatus.RUNNING: self.running,
            FlowNodeStatus.COMPLETED: self.completed,
            FlowNodeStatus.FAILED: self.failed,
            FlowNodeStatus.SKIPPED: self.skipped,
        }.get(status)

    def move(self, node_id: str, status: FlowNodeStatus) -> NodeExecutionState:
        """Move a node between status sets. Callers validate the transition."""
        state = self.node_states[node_id]
        previous = self._set_for(state.status)
        if previous is not None:
            previous.discard(node_id)
        target = self._set_for(status)
        if target is not None:
            target.add(node_id)
        state.status = status
        return state

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "trigger_node_id": self.trigger_node_id,
            "start_node_id": self.start_node_id,
            "status": self.status.value,
            "affected_node_ids": sorted(self.affected_node_ids),
            "queued": sorted(self.queued),
            "running": sorted(self.running),
            "completed": sorted(self.completed),
            "failed": sorted(self.failed),
            "skipped": sorted(self.skipped),
            "execution_path": self.execution_path,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


class ExecutionContextManager:
    """Registry of execution contexts plus a node -> executions reverse index.

    One instance per process, constructed explicitly and injected where it
    is needed. The "current" execution pointer is a UI convenience only; the
    engine never consults it.
    """

    def __init__(self, retention_seconds: float = 60.0):
        self.retention_seconds = retention_seconds
        self._contexts: Dict[str, ExecutionContext] = {}
        self._node_index: Dict[str, Set[str]] = defaultdict(set)
        self._current_execution_id: Optional[str] = None

    # =========================================================================
    # REGISTRY
    # =========================================================================

    def start_execution(self, execution_id: str, trigger_node_id: str,
                        affected_nodes: Iterable[str],
                        start_node_id: Optional[str] = None,
                        workflow_id: Optional[str] = None,
                        trigger_data: Any = None) -> ExecutionContext:
        """Register a new context and index its affected nodes.

        Raises:
            FlowExecutionError: INVALID_FLOW_STATE if a live context already
                uses ``execution_id``
        """
        existing = self._contexts.get(execution_id)
        if existing is not None:
            if not existing.is_terminal:
                raise FlowExecutionError(
                    FlowErrorType.INVALID_FLOW_STATE,
                    f"Execution {execution_id} is already active",
                )
            self.clear_execution(execution_id)

        ctx = ExecutionContext(
            execution_id=execution_id,
            trigger_node_id=trigger_node_id,
            start_node_id=start_node_id or trigger_node_id,
            affected_node_ids=frozenset(affected_nodes),
            workflow_id=workflow_id,
            trigger_data=trigger_data,
        )
        self._contexts[execution_id] = ctx
        for node_id in ctx.affected_node_ids:
            self._node_index[node_id].add(execution_id)

        logger.debug("Execution context registered",
                    execution_id=execution_id,
                    trigger_node_id=trigger_node_id,
                    affected_nodes=len(ctx.affected_node_ids))
        return ctx

    def register_context(self, ctx: ExecutionContext) -> ExecutionContext:
        """Register a context rebuilt elsewhere (recovery from a snapshot)."""
        if ctx.execution_id in self._contexts:
            raise FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"Execution {ctx.execution_id} is already registered",
            )
        self._contexts[ctx.execution_id] = ctx
        for node_id in ctx.affected_node_ids:
            self._node_index[node_id].add(ctx.execution_id)
        return ctx

    def get_execution(self, execution_id: str) -> Optional[ExecutionContext]:
        return self._contexts.get(execution_id)

    def require_execution(self, execution_id: str) -> ExecutionContext:
        ctx = self._contexts.get(execution_id)
        if ctx is None:
            raise ExecutionNotFoundError(execution_id)
        return ctx

    def rename_execution(self, old_id: str, new_id: str) -> bool:
        """Replace a temporary execution id with a server-assigned one.

        Returns:
            True if renamed, False if ``old_id`` is unknown
        """
        if old_id == new_id:
            return old_id in self._contexts
        ctx = self._contexts.get(old_id)
        if ctx is None:
            return False
        if new_id in self._contexts:
            raise FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"Cannot rename {old_id}: execution {new_id} already exists",
            )

        del self._contexts[old_id]
        ctx.execution_id = new_id
        self._contexts[new_id] = ctx
        for node_id in ctx.affected_node_ids:
            executions = self._node_index.get(node_id)
            if executions is not None:
                executions.discard(old_id)
                executions.add(new_id)
        if self._current_execution_id == old_id:
            self._current_execution_id = new_id

        logger.info("Execution id reassigned", old_id=old_id, new_id=new_id)
        return True

    # =========================================================================
    # NODE TRANSITIONS
    # =========================================================================

    def _transition(self, execution_id: str, node_id: str,
                    target: FlowNodeStatus) -> Optional[NodeExecutionState]:
        """Validate and apply one node transition.

        Returns the node state, or None when the context is terminal (late
        results after cancel/timeout are dropped).
        """
        ctx = self.require_execution(execution_id)
        if ctx.is_terminal:
            logger.debug("Dropping transition on terminal execution",
                        execution_id=execution_id, node_id=node_id,
                        target=target.value, status=ctx.status.value)
            return None
        if node_id not in ctx.affected_node_ids:
            raise FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"Node {node_id} is not part of execution {execution_id}",
                node_id=node_id,
                execution_path=ctx.execution_path,
            )

        current = ctx.node_status(node_id)
        if current not in _ALLOWED_FROM[target]:
            raise FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"Illegal transition for node {node_id}: {current.value} -> {target.value}",
                node_id=node_id,
                execution_path=ctx.execution_path,
            )
        return ctx.move(node_id, target)

    def set_node_queued(self, execution_id: str, node_id: str) -> bool:
        return self._transition(execution_id, node_id, FlowNodeStatus.QUEUED) is not None

    def set_node_running(self, execution_id: str, node_id: str,
                         input_data: Optional[Dict[str, List[Any]]] = None) -> bool:
        state = self._transition(execution_id, node_id, FlowNodeStatus.RUNNING)
        if state is None:
            return False
        state.started_at = time.time()
        state.input_data = input_data
        return True

    def set_node_completed(self, execution_id: str, node_id: str,
                           output: Optional[NodeOutput] = None, attempts: int = 1) -> bool:
        state = self._transition(execution_id, node_id, FlowNodeStatus.COMPLETED)
        if state is None:
            return False
        output = output or NodeOutput()
        ctx = self._contexts[execution_id]
        state.completed_at = time.time()
        state.output = output.outputs_by_port
        state.attempts = attempts
        ctx.outputs[node_id] = output.outputs_by_port
        ctx.fired_ports[node_id] = output.fired_ports()
        ctx.execution_path.append(node_id)
        return True

    def set_node_failed(self, execution_id: str, node_id: str,
                        error: Optional[Dict[str, Any]] = None, attempts: int = 1) -> bool:
        state = self._transition(execution_id, node_id, FlowNodeStatus.FAILED)
        if state is None:
            return False
        ctx = self._contexts[execution_id]
        state.completed_at = time.time()
        state.error = error
        state.attempts = attempts
        ctx.execution_path.append(node_id)
        if error:
            ctx.errors.append(error)
        return True

    def set_node_skipped(self, execution_id: str, node_id: str,
                         reason: Optional[str] = None) -> bool:
        state = self._transition(execution_id, node_id, FlowNodeStatus.SKIPPED)
        if state is None:
            return False
        state.skip_reason = reason
        return True

    def requeue_interrupted(self, execution_id: str) -> List[str]:
        """Move nodes left running by a crashed process back to queued."""
        ctx = self.require_execution(execution_id)
        if ctx.is_terminal:
            return []
        requeued = sorted(ctx.running)
        for node_id in requeued:
            state = ctx.move(node_id, FlowNodeStatus.QUEUED)
            state.started_at = None
        return requeued

    # =========================================================================
    # EXECUTION TRANSITIONS
    # =========================================================================

    def pause_execution(self, execution_id: str) -> ExecutionContext:
        """running -> paused.

        Raises:
            FlowExecutionError: INVALID_FLOW_STATE unless the context is running
        """
        ctx = self.require_execution(execution_id)
        if ctx.status != FlowStatus.RUNNING:
            raise FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"Cannot pause execution {execution_id} in state {ctx.status.value}",
                execution_path=ctx.execution_path,
            )
        ctx.status = FlowStatus.PAUSED
        return ctx

    def resume_execution(self, execution_id: str) -> ExecutionContext:
        """paused -> running.

        Raises:
            FlowExecutionError: INVALID_FLOW_STATE unless the context is paused
        """
        ctx = self.require_execution(execution_id)
        if ctx.status != FlowStatus.PAUSED:
            raise FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"Cannot resume execution {execution_id} in state {ctx.status.value}",
                execution_path=ctx.execution_path,
            )
        ctx.status = FlowStatus.RUNNING
        return ctx

    def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running or paused context; no-op on a terminal one.

        Returns:
            True if this call cancelled the context, False if it was already terminal
        """
        ctx = self.require_execution(execution_id)
        if ctx.is_terminal:
            return False
        self._terminate(ctx, FlowStatus.CANCELLED)
        return True

    def finish_execution(self, execution_id: str, status: FlowStatus,
                         error: Optional[Dict[str, Any]] = None) -> bool:
        """Move a context to a terminal status; no-op if it already is terminal."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        ctx = self.require_execution(execution_id)
        if ctx.is_terminal:
            return False
        if error:
            ctx.errors.append(error)
        self._terminate(ctx, status)
        return True

    def _terminate(self, ctx: ExecutionContext, status: FlowStatus) -> None:
        # Pending nodes leave every set; in-flight executor calls are abandoned
        for node_id in list(ctx.queued | ctx.running):
            state = ctx.move(node_id, FlowNodeStatus.CANCELLED)
            state.completed_at = time.time()
        ctx.status = status
        ctx.end_time = time.time()
        logger.debug("Execution context terminated",
                    execution_id=ctx.execution_id, status=status.value)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def set_current_execution(self, execution_id: Optional[str]) -> None:
        """Set the UI focus used when queries omit an execution id."""
        self._current_execution_id = execution_id

    @property
    def current_execution_id(self) -> Optional[str]:
        return self._current_execution_id

    def is_node_executing_in_current(self, node_id: str,
                                     execution_id: Optional[str] = None) -> bool:
        """True only if the focused context is running and has ``node_id`` running."""
        focus = execution_id or self._current_execution_id
        if focus is None:
            return False
        ctx = self._contexts.get(focus)
        return (ctx is not None
                and ctx.status == FlowStatus.RUNNING
                and node_id in ctx.affected_node_ids
                and node_id in ctx.running)

    def is_node_executing(self, node_id: str) -> bool:
        """True if ``node_id`` is running in any running context."""
        for execution_id in self._node_index.get(node_id, ()):
            ctx = self._contexts.get(execution_id)
            if ctx and ctx.status == FlowStatus.RUNNING and node_id in ctx.running:
                return True
        return False

    def running_elsewhere(self, node_id: str, execution_id: str) -> List[str]:
        """Other live executions in which ``node_id`` is currently running."""
        return [
            other for other in self._node_index.get(node_id, ())
            if other != execution_id
            and (ctx := self._contexts.get(other)) is not None
            and not ctx.is_terminal and node_id in ctx.running
        ]

    def get_node_status_in_execution(self, execution_id: str,
                                     node_id: str) -> Optional[FlowNodeStatus]:
        """Status of a node inside one context; None if unknown or unaffected."""
        ctx = self._contexts.get(execution_id)
        if ctx is None or node_id not in ctx.affected_node_ids:
            return None
        return ctx.node_status(node_id)

    def get_node_status(self, node_id: str,
                        execution_id: Optional[str] = None) -> Dict[str, Any]:
        """Status of a node for display.

        Uses the given or current execution when it contains the node,
        otherwise the most recently started live execution containing it.
        """
        target = self.get_execution_for_node(node_id, execution_id)
        if target is None:
            return {"status": FlowNodeStatus.IDLE, "execution_id": None}
        return {
            "status": self._contexts[target].node_status(node_id),
            "execution_id": target,
        }

    def get_node_executions(self, node_id: str) -> List[str]:
        """Execution ids whose affected nodes include ``node_id``."""
        return sorted(self._node_index.get(node_id, ()))

    def get_execution_for_node(self, node_id: str,
                               execution_id: Optional[str] = None) -> Optional[str]:
        focus = execution_id or self._current_execution_id
        if focus is not None:
            ctx = self._contexts.get(focus)
            if ctx is not None and node_id in ctx.affected_node_ids:
                return focus

        live = [
            self._contexts[e] for e in self._node_index.get(node_id, ())
            if e in self._contexts and not self._contexts[e].is_terminal
        ]
        if not live:
            return None
        return max(live, key=lambda c: c.start_time).execution_id

    def get_active_executions(self) -> List[ExecutionContext]:
        """Contexts that are running or paused."""
        return [ctx for ctx in self._contexts.values() if not ctx.is_terminal]

    def get_debug_info(self) -> Dict[str, Any]:
        return {
            "total_executions": len(self._contexts),
            "active_executions": len(self.get_active_executions()),
            "current_execution_id": self._current_execution_id,
            "node_to_execution_mappings": len(self._node_index),
        }

    # =========================================================================
    # CLEANUP
    # =========================================================================

    def clear_execution(self, execution_id: str) -> bool:
        """Remove a context and its reverse-index entries."""
        ctx = self._contexts.pop(execution_id, None)
        if ctx is None:
            return False
        for node_id in ctx.affected_node_ids:
            executions = self._node_index.get(node_id)
            if executions is None:
                continue
            executions.discard(execution_id)
            if not executions:
                del self._node_index[node_id]
        if self._current_execution_id == execution_id:
            self._current_execution_id = None
        return True

    def clear_inactive_executions(self, max_age: Optional[float] = None) -> List[str]:
        """Evict terminal contexts whose end time is older than ``max_age`` seconds.

        Args:
            max_age: Minimum age since termination; None evicts every terminal context

        Returns:
            Evicted execution ids
        """
        now = time.time()
        evicted = [
            execution_id for execution_id, ctx in self._contexts.items()
            if ctx.is_terminal and (
                max_age is None or (now - (ctx.end_time or now)) >= max_age
            )
        ]
        for execution_id in evicted:
            self.clear_execution(execution_id)
        if evicted:
            logger.debug("Evicted inactive executions", count=len(evicted))
        return evicted

    def __len__(self) -> int:
        return len(self._contexts)
