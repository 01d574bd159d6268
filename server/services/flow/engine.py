"""Flow execution engine: cascading, parallel, pausable runs over a workflow graph.

Implements:
- Cascade from an arbitrary node or from a trigger with injected data
- Fan-out: every ready node is dispatched at once and awaited as a set
  (asyncio.wait FIRST_COMPLETED), fan-in: joins wait for all dependencies
- Port-aware branching: only connections leaving ports that produced items
  trigger downstream nodes
- Cancel / pause / resume, execution and per-node timeouts, retries
- Snapshots for crash recovery and a fire-and-forget status event stream
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Tuple, Union

from core.logging import get_logger, log_execution_time
from .context import ExecutionContext, ExecutionContextManager
from .errors import ExecutionNotFoundError, FlowErrorType, FlowExecutionError
from .events import EventSink, FlowEvent
from .graph import WorkflowGraph, WorkflowNode
from .models import (
    ConcurrencyPolicy,
    ExecutionFlowStatus,
    FlowExecutionOptions,
    FlowExecutionResult,
    FlowNodeStatus,
    FlowStatus,
    NodeExecutionResult,
    NodeOutput,
)
from .persistence import ExecutionSnapshot, ExecutionStore
from .resolver import DependencyResolver

logger = get_logger(__name__)

NodeExecutor = Callable[
    [WorkflowNode, Dict[str, List[Any]], Dict[str, Any]],
    Awaitable[Union[NodeOutput, Mapping[str, Any]]],
]
OptionsArg = Union[FlowExecutionOptions, Mapping[str, Any], None]


@dataclass
class _NodeOutcome:
    """What one dispatched node produced after retries."""
    output: Optional[NodeOutput] = None
    error: Optional[FlowExecutionError] = None
    attempts: int = 1
    duration: float = 0.0


@dataclass
class _Run:
    """Scheduler-side bookkeeping for one live execution."""
    ctx: ExecutionContext
    graph: WorkflowGraph
    resolver: DependencyResolver
    options: FlowExecutionOptions
    signal: asyncio.Event = field(default_factory=asyncio.Event)
    start_input: Optional[Dict[str, List[Any]]] = None
    in_flight: Dict[asyncio.Task, str] = field(default_factory=dict)


class FlowExecutionEngine:
    """Drives ExecutionContexts from start node to terminal status.

    The engine owns scheduling only. Node business logic comes from the
    injected ``node_executor``; state lives in the ExecutionContextManager;
    events and snapshots go to optional collaborators whose failures never
    reach the run loop.
    """

    def __init__(self, node_executor: NodeExecutor,
                 context_manager: ExecutionContextManager,
                 event_sink: Optional[EventSink] = None,
                 store: Optional[ExecutionStore] = None,
                 default_options: Optional[FlowExecutionOptions] = None,
                 duration_history_size: int = 20,
                 recovery_mode: str = "resume"):
        """Initialize engine.

        Args:
            node_executor: Async function executing a single node
                Signature: async def execute(node, input_data, parameters) -> NodeOutput | dict
            context_manager: Registry isolating concurrent executions
            event_sink: Optional status event stream
            store: Optional snapshot store for pause/resume and recovery
            default_options: Defaults for every execution (usually from Settings)
            duration_history_size: Samples kept per workflow node for ETA estimates
            recovery_mode: "resume" or "fail" for interrupted executions
        """
        self.node_executor = node_executor
        self.contexts = context_manager
        self.event_sink = event_sink
        self.store = store
        self.default_options = default_options or FlowExecutionOptions()
        self.duration_history_size = duration_history_size
        self.recovery_mode = recovery_mode

        self._runs: Dict[str, _Run] = {}
        self._durations: Dict[Tuple[Optional[str], str], Deque[float]] = {}
        self._detached: set = set()

    # =========================================================================
    # EXECUTION ENTRY POINTS
    # =========================================================================

    async def execute_from_node(self, graph: WorkflowGraph, node_id: str,
                                input_data: Optional[Dict[str, List[Any]]] = None,
                                options: OptionsArg = None,
                                execution_id: Optional[str] = None) -> FlowExecutionResult:
        """Run ``node_id`` and everything downstream of it.

        Args:
            graph: Workflow snapshot
            node_id: Node to start from
            input_data: Optional input for the start node, port -> items
            options: FlowExecutionOptions or a mapping of overrides
            execution_id: Optional (temporary) execution id

        Returns:
            FlowExecutionResult; execution problems never raise

        Raises:
            asyncio.CancelledError: When the calling task is cancelled. The
                context is cancelled and its snapshot saved first.
        """
        return await self._execute(graph, node_id, options, execution_id,
                                   start_input=input_data)

    async def execute_from_trigger(self, graph: WorkflowGraph, trigger_id: str,
                                   trigger_data: Any = None,
                                   options: OptionsArg = None,
                                   execution_id: Optional[str] = None) -> FlowExecutionResult:
        """Run a trigger cascade; ``trigger_data`` becomes the trigger's ``main`` output.

        The trigger node itself is not sent to the node executor.
        """
        return await self._execute(graph, trigger_id, options, execution_id,
                                   trigger_data=trigger_data, is_trigger=True)

    async def _execute(self, graph: WorkflowGraph, start_node_id: str,
                       options: OptionsArg, execution_id: Optional[str],
                       start_input: Optional[Dict[str, List[Any]]] = None,
                       trigger_data: Any = None,
                       is_trigger: bool = False) -> FlowExecutionResult:
        execution_id = execution_id or str(uuid.uuid4())
        start_time = time.time()

        try:
            resolved = self._resolve_options(options, graph)
        except (TypeError, ValueError) as e:
            return self._rejected(execution_id, start_time, FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE, f"Invalid execution options: {e}",
                node_id=start_node_id,
            ))

        if not graph.has_node(start_node_id):
            return self._rejected(execution_id, start_time, FlowExecutionError(
                FlowErrorType.MISSING_DEPENDENCY,
                f"Start node {start_node_id} does not exist in the workflow",
                node_id=start_node_id,
            ))

        resolver = DependencyResolver(graph)
        affected = {start_node_id} | resolver.get_downstream_closure(start_node_id)

        # Precondition: the run loop would spin forever on a cycle
        try:
            resolver.validate_execution_safety(affected)
        except FlowExecutionError as e:
            return self._rejected(execution_id, start_time, e)
        log_execution_time(logger, "validate_execution_path", start_time, time.time(),
                           execution_id=execution_id, node_count=len(affected))

        try:
            ctx = self.contexts.start_execution(
                execution_id, start_node_id, affected,
                start_node_id=start_node_id,
                workflow_id=resolved.workflow_id,
                trigger_data=trigger_data,
            )
        except FlowExecutionError as e:
            return self._rejected(execution_id, start_time, e)

        run = _Run(ctx=ctx, graph=graph, resolver=resolver, options=resolved,
                   start_input=_normalize_input(start_input))
        self._runs[execution_id] = run

        logger.info("Starting flow execution",
                   execution_id=execution_id,
                   workflow_id=resolved.workflow_id,
                   start_node_id=start_node_id,
                   trigger=is_trigger,
                   affected_nodes=len(affected),
                   layers=len(resolver.get_execution_layers(affected)))
        self._emit(ctx, None, FlowStatus.RUNNING.value,
                   {"start_node_id": start_node_id, "affected_nodes": sorted(affected)})
        await self._save(ctx)

        if graph.get_node(start_node_id).disabled:
            self._skip(run, start_node_id, "Node is disabled")
        else:
            self._queue_node(run, start_node_id)
            if is_trigger:
                self._complete_trigger(run, start_node_id, trigger_data)

        return await self._drive(run)

    async def _drive(self, run: _Run) -> FlowExecutionResult:
        """Run loop plus the error boundary around it."""
        ctx = run.ctx
        host_cancelled = False
        try:
            await self._run_loop(run)
        except asyncio.CancelledError:
            logger.info("Flow execution task cancelled", execution_id=ctx.execution_id)
            host_cancelled = True
            pending = sorted(ctx.pending)
            if self.contexts.cancel_execution(ctx.execution_id):
                self._emit_cancelled(ctx, pending)
        except Exception as e:
            logger.error("Flow engine internal error",
                        execution_id=ctx.execution_id, error=str(e), exc_info=True)
            error = FlowExecutionError(
                FlowErrorType.INTERNAL_ERROR, f"Engine error: {e}",
                affected_nodes=sorted(ctx.pending),
                execution_path=ctx.execution_path,
                details={"exception": type(e).__name__},
            )
            pending = sorted(ctx.pending)
            if self.contexts.finish_execution(ctx.execution_id, FlowStatus.FAILED,
                                              error=error.to_dict()):
                self._emit_cancelled(ctx, pending)
        finally:
            self._detach(run)

        result = await self._finalize(run)
        if host_cancelled:
            raise asyncio.CancelledError()
        return result

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    async def _run_loop(self, run: _Run) -> None:
        """Dispatch queued nodes and settle finished ones until nothing is pending.

        Suspends on the set of in-flight node tasks plus a wake-up signal
        (set by resume, cancel and newly queued nodes). The execution
        deadline is frozen while paused.
        """
        ctx = run.ctx
        timeout = run.options.timeout
        deadline = time.time() + timeout if timeout else None
        paused_since: Optional[float] = None

        while not ctx.is_terminal:
            run.signal.clear()

            if ctx.status == FlowStatus.PAUSED:
                if paused_since is None:
                    paused_since = time.time()
            else:
                if paused_since is not None and deadline is not None:
                    deadline += time.time() - paused_since
                paused_since = None
                for node_id in sorted(ctx.queued):
                    task = self._dispatch(run, node_id)
                    if task is not None:
                        run.in_flight[task] = node_id

            if ctx.is_terminal or (not run.in_flight and not ctx.queued):
                break

            wait_timeout = None
            if deadline is not None and paused_since is None:
                wait_timeout = max(0.0, deadline - time.time())

            signal_task = asyncio.ensure_future(run.signal.wait())
            try:
                done, _ = await asyncio.wait(
                    set(run.in_flight) | {signal_task},
                    timeout=wait_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                if not signal_task.done():
                    signal_task.cancel()

            if not done:
                self._abort_on_timeout(run)
                break

            settled = False
            for task in done:
                if task is signal_task:
                    continue
                node_id = run.in_flight.pop(task)
                self._settle(run, node_id, task.result())
                settled = True

            if settled and run.options.save_progress and not ctx.is_terminal:
                await self._save(ctx)

        if not ctx.is_terminal:
            self._drain(run)

    def _dispatch(self, run: _Run, node_id: str) -> Optional[asyncio.Task]:
        """queued -> running; start the node executor call as a task."""
        ctx = run.ctx
        node = run.graph.get_node(node_id)

        if run.options.concurrency_policy == ConcurrencyPolicy.REJECT:
            conflicting = self.contexts.running_elsewhere(node_id, ctx.execution_id)
            if conflicting:
                self._fail_node(run, node_id, FlowExecutionError(
                    FlowErrorType.CONCURRENT_EXECUTION_CONFLICT,
                    f"Node {node_id} is already running in execution(s) "
                    f"{', '.join(sorted(conflicting))}",
                    node_id=node_id,
                    details={"conflicting_executions": sorted(conflicting)},
                ), attempts=0)
                self._advance(run, node_id)
                return None

        input_data = self._collect_input(run, node_id)
        if not self.contexts.set_node_running(ctx.execution_id, node_id, input_data):
            return None
        self._emit(ctx, node_id, FlowNodeStatus.RUNNING.value)
        logger.debug("Dispatching node", execution_id=ctx.execution_id,
                    node_id=node_id, node_name=node.display_name, node_type=node.type)
        return asyncio.create_task(self._run_node(run, node, input_data),
                                   name=f"flow-node-{node_id}")

    async def _run_node(self, run: _Run, node: WorkflowNode,
                        input_data: Dict[str, List[Any]]) -> _NodeOutcome:
        """Call the node executor with timeout and retry. Never raises except on cancel."""
        options = run.options
        retry_policy = options.retry_policy()
        started = time.time()
        attempt = 0

        while True:
            attempt += 1
            try:
                call = self.node_executor(node, input_data, dict(node.parameters))
                if options.node_timeout:
                    raw = await asyncio.wait_for(call, options.node_timeout)
                else:
                    raw = await call
                output = NodeOutput.coerce(raw)
                if output.success:
                    return _NodeOutcome(output=output, attempts=attempt,
                                        duration=time.time() - started)
                error = FlowExecutionError(
                    FlowErrorType.NODE_EXECUTION_FAILED, output.error, node_id=node.id,
                )

            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                error = FlowExecutionError(
                    FlowErrorType.EXECUTION_TIMEOUT,
                    f"Node {node.id} exceeded node timeout of {options.node_timeout}s",
                    node_id=node.id,
                )
            except Exception as e:
                error = FlowExecutionError(
                    FlowErrorType.NODE_EXECUTION_FAILED,
                    str(e) or type(e).__name__,
                    node_id=node.id,
                    details={"exception": type(e).__name__},
                )

            if run.ctx.is_terminal or not retry_policy.should_retry(error.message, attempt):
                return _NodeOutcome(error=error, attempts=attempt,
                                    duration=time.time() - started)

            delay = retry_policy.calculate_delay(attempt - 1)
            logger.warning("Node failed, retrying",
                          execution_id=run.ctx.execution_id,
                          node_id=node.id,
                          attempt=attempt,
                          max_attempts=retry_policy.max_attempts,
                          delay=delay,
                          error=error.message)
            await asyncio.sleep(delay)

    def _settle(self, run: _Run, node_id: str, outcome: _NodeOutcome) -> None:
        """Apply a node's outcome to the context, then cascade."""
        ctx = run.ctx
        if ctx.is_terminal:
            return

        if outcome.error is None:
            if not self.contexts.set_node_completed(ctx.execution_id, node_id,
                                                    outcome.output, outcome.attempts):
                return
            self._record_duration(ctx, node_id, outcome.duration)
            logger.info("Node completed", execution_id=ctx.execution_id,
                       node_id=node_id, duration=round(outcome.duration, 4),
                       attempts=outcome.attempts)
            self._emit(ctx, node_id, FlowNodeStatus.COMPLETED.value, {
                "outputs_by_port": outcome.output.outputs_by_port,
                "duration": outcome.duration,
                "attempts": outcome.attempts,
            })
        else:
            self._fail_node(run, node_id, outcome.error, outcome.attempts)

        self._advance(run, node_id)

    def _fail_node(self, run: _Run, node_id: str, error: FlowExecutionError,
                   attempts: int) -> None:
        ctx = run.ctx
        error.with_path(ctx.execution_path)
        if not self.contexts.set_node_failed(ctx.execution_id, node_id,
                                             error.to_dict(), attempts):
            return
        logger.error("Node failed", execution_id=ctx.execution_id, node_id=node_id,
                    error_type=error.error_type.value, error=error.message,
                    attempts=attempts)
        self._emit(ctx, node_id, FlowNodeStatus.FAILED.value, {"error": error.to_dict()})

    # =========================================================================
    # CASCADE
    # =========================================================================

    def _advance(self, run: _Run, node_id: str) -> None:
        """Re-evaluate the structural successors of a node that just left idle/running."""
        for target in sorted(run.resolver.get_downstream_nodes(node_id)):
            if target in run.ctx.affected_node_ids:
                self._evaluate(run, target)

    def _evaluate(self, run: _Run, node_id: str) -> None:
        """Queue, skip or keep waiting on one idle node."""
        ctx = run.ctx
        if ctx.is_terminal or ctx.node_status(node_id) != FlowNodeStatus.IDLE:
            return

        dependencies = run.resolver.get_dependencies(node_id)
        dead = dependencies & (ctx.failed | ctx.skipped)
        if dead:
            self._skip(run, node_id, f"Upstream node(s) did not complete: {', '.join(sorted(dead))}")
            return

        # Fan-in join: wait until every dependency has completed
        if not dependencies <= ctx.completed:
            return

        if node_id not in run.resolver.get_executable_nodes([node_id], ctx.completed):
            self._skip(run, node_id, "Node is disabled")
            return

        if not run.resolver.has_live_input(node_id, ctx.fired_ports):
            self._skip(run, node_id, "No connected output produced data")
            return

        self._queue_node(run, node_id)

    def _queue_node(self, run: _Run, node_id: str) -> None:
        if self.contexts.set_node_queued(run.ctx.execution_id, node_id):
            self._emit(run.ctx, node_id, FlowNodeStatus.QUEUED.value)
            run.signal.set()

    def _skip(self, run: _Run, node_id: str, reason: str) -> None:
        ctx = run.ctx
        if not self.contexts.set_node_skipped(ctx.execution_id, node_id, reason):
            return
        logger.debug("Node skipped", execution_id=ctx.execution_id,
                    node_id=node_id, reason=reason)
        self._emit(ctx, node_id, FlowNodeStatus.SKIPPED.value, {"reason": reason})
        self._advance(run, node_id)

    def _complete_trigger(self, run: _Run, trigger_id: str, trigger_data: Any) -> None:
        """Give the trigger its synthetic output without calling the node executor."""
        ctx = run.ctx
        payload = trigger_data if trigger_data is not None else {}
        output = NodeOutput(outputs_by_port={"main": [payload]})
        if not self.contexts.set_node_running(ctx.execution_id, trigger_id):
            return
        self._emit(ctx, trigger_id, FlowNodeStatus.RUNNING.value)
        if not self.contexts.set_node_completed(ctx.execution_id, trigger_id, output):
            return
        self._emit(ctx, trigger_id, FlowNodeStatus.COMPLETED.value,
                   {"outputs_by_port": output.outputs_by_port, "duration": 0.0, "attempts": 1})
        self._advance(run, trigger_id)

    def _collect_input(self, run: _Run, node_id: str) -> Dict[str, List[Any]]:
        """Concatenate upstream items per target input, in upstream completion order."""
        if node_id == run.ctx.start_node_id and run.start_input is not None:
            return run.start_input

        ctx = run.ctx
        incoming = run.graph.incoming(node_id)
        inputs: Dict[str, List[Any]] = {}
        for source_id in ctx.execution_path:
            if source_id not in ctx.completed:
                continue
            ports = ctx.outputs.get(source_id, {})
            for conn in incoming:
                if conn.source_node_id == source_id and ports.get(conn.source_output):
                    inputs.setdefault(conn.target_input, []).extend(ports[conn.source_output])
        return inputs

    def _drain(self, run: _Run) -> None:
        """Skip what never became ready and pick the terminal status."""
        ctx = run.ctx
        for node_id in sorted(ctx.affected_node_ids):
            if ctx.node_status(node_id) == FlowNodeStatus.IDLE:
                self._skip(run, node_id, "Dependencies were not satisfied in this execution")

        if ctx.failed:
            if run.options.continue_on_node_failure and ctx.completed:
                status = FlowStatus.PARTIAL
            else:
                status = FlowStatus.FAILED
        else:
            status = FlowStatus.COMPLETED
        self.contexts.finish_execution(ctx.execution_id, status)

    def _abort_on_timeout(self, run: _Run) -> None:
        ctx = run.ctx
        pending = sorted(ctx.pending)
        error = FlowExecutionError(
            FlowErrorType.EXECUTION_TIMEOUT,
            f"Execution exceeded timeout of {run.options.timeout}s",
            affected_nodes=pending,
            execution_path=ctx.execution_path,
        )
        logger.warning("Flow execution timed out", execution_id=ctx.execution_id,
                      timeout=run.options.timeout, pending_nodes=pending)
        if self.contexts.finish_execution(ctx.execution_id, FlowStatus.FAILED,
                                          error=error.to_dict()):
            self._emit_cancelled(ctx, pending)

    def _detach(self, run: _Run) -> None:
        """Let abandoned node calls finish in the background; their results are dropped."""
        for task, node_id in run.in_flight.items():
            self._detached.add(task)
            task.add_done_callback(self._discard_late_result)
        run.in_flight.clear()

    def _discard_late_result(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.warning("Abandoned node task raised", error=str(task.exception()))
            return
        logger.debug("Discarded late node result", task=task.get_name())

    # =========================================================================
    # RESULTS
    # =========================================================================

    async def _finalize(self, run: _Run) -> FlowExecutionResult:
        ctx = run.ctx
        self._runs.pop(ctx.execution_id, None)
        result = self._build_result(ctx)

        log = logger.info if result.status == FlowStatus.COMPLETED else logger.warning
        log("Flow execution finished",
            execution_id=ctx.execution_id,
            status=result.status.value,
            executed=len(result.executed_nodes),
            failed=len(result.failed_nodes),
            skipped=len(result.skipped_nodes),
            duration=round(result.total_duration, 4))

        self._emit(ctx, None, ctx.status.value, {
            "executed_nodes": result.executed_nodes,
            "failed_nodes": result.failed_nodes,
            "total_duration": result.total_duration,
            "errors": result.errors,
        })
        await self._save(ctx)
        return result

    def _build_result(self, ctx: ExecutionContext) -> FlowExecutionResult:
        node_results = {}
        for node_id, state in ctx.node_states.items():
            if state.status == FlowNodeStatus.IDLE:
                continue
            node_results[node_id] = NodeExecutionResult(
                node_id=node_id,
                status=state.status,
                data=state.output,
                error=state.error,
                duration=state.duration or 0.0,
                attempts=state.attempts,
            )

        end_time = ctx.end_time or time.time()
        return FlowExecutionResult(
            execution_id=ctx.execution_id,
            status=ctx.status,
            executed_nodes=ctx.executed_nodes,
            failed_nodes=[n for n in ctx.execution_path if n in ctx.failed],
            skipped_nodes=sorted(ctx.skipped),
            execution_path=list(ctx.execution_path),
            total_duration=end_time - ctx.start_time,
            node_results=node_results,
            errors=list(ctx.errors),
        )

    def _rejected(self, execution_id: str, start_time: float,
                  error: FlowExecutionError) -> FlowExecutionResult:
        """Result for an execution refused before any node ran."""
        logger.warning("Flow execution rejected", execution_id=execution_id,
                      error_type=error.error_type.value, error=error.message,
                      affected_nodes=error.affected_nodes)
        live = self.contexts.get_execution(execution_id)
        # Never report a failure under an id owned by a live execution
        if self.event_sink is not None and (live is None or live.is_terminal):
            self.event_sink.emit(FlowEvent(execution_id, None, FlowStatus.FAILED.value,
                                           data={"errors": [error.to_dict()]}))
        return FlowExecutionResult(
            execution_id=execution_id,
            status=FlowStatus.FAILED,
            total_duration=time.time() - start_time,
            errors=[error.to_dict()],
        )

    # =========================================================================
    # CONTROL
    # =========================================================================

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running or paused execution.

        Idempotent: cancelling a terminal execution is a no-op returning False.

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        ctx = self.contexts.require_execution(execution_id)
        pending = sorted(ctx.pending)
        if not self.contexts.cancel_execution(execution_id):
            return False

        logger.info("Flow execution cancelled", execution_id=execution_id,
                   pending_nodes=pending)
        self._emit_cancelled(ctx, pending)

        run = self._runs.get(execution_id)
        if run is not None:
            run.signal.set()
        else:
            self._emit(ctx, None, FlowStatus.CANCELLED.value)
            await self._save(ctx)
        return True

    async def pause_execution(self, execution_id: str) -> ExecutionFlowStatus:
        """Stop dispatching queued nodes; running nodes finish normally.

        Raises:
            FlowExecutionError: INVALID_FLOW_STATE unless running
        """
        ctx = self.contexts.pause_execution(execution_id)
        logger.info("Flow execution paused", execution_id=execution_id,
                   running_nodes=sorted(ctx.running), queued_nodes=sorted(ctx.queued))
        self._emit(ctx, None, FlowStatus.PAUSED.value)
        await self._save(ctx)
        run = self._runs.get(execution_id)
        if run is not None:
            # Re-arm the wait without the execution deadline
            run.signal.set()
        return self.get_execution_status(execution_id)

    async def resume_execution(self, execution_id: str) -> ExecutionFlowStatus:
        """Re-enable dispatch of a paused execution.

        Raises:
            FlowExecutionError: INVALID_FLOW_STATE unless paused
        """
        ctx = self.contexts.resume_execution(execution_id)
        logger.info("Flow execution resumed", execution_id=execution_id,
                   queued_nodes=sorted(ctx.queued))
        self._emit(ctx, None, FlowStatus.RUNNING.value, {"resumed": True})
        await self._save(ctx)
        run = self._runs.get(execution_id)
        if run is not None:
            run.signal.set()
        return self.get_execution_status(execution_id)

    async def assign_execution_id(self, temp_id: str, server_id: str) -> bool:
        """Replace a temporary execution id with the server-assigned one."""
        if not self.contexts.rename_execution(temp_id, server_id):
            return False
        run = self._runs.pop(temp_id, None)
        if run is not None:
            self._runs[server_id] = run
        if self.store is not None:
            await self.store.rename(temp_id, server_id)
        return True

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_execution_status(self, execution_id: str) -> ExecutionFlowStatus:
        """Read-only progress snapshot.

        Raises:
            ExecutionNotFoundError: Unknown (or already evicted) execution id
        """
        ctx = self.contexts.get_execution(execution_id)
        if ctx is None:
            raise ExecutionNotFoundError(execution_id)

        total = len(ctx.affected_node_ids)
        progress = (len(ctx.completed) / total * 100.0) if total else 100.0
        return ExecutionFlowStatus(
            execution_id=ctx.execution_id,
            overall_status=ctx.status,
            progress=progress,
            node_states={n: ctx.node_status(n) for n in sorted(ctx.affected_node_ids)},
            currently_executing=sorted(ctx.running),
            completed_nodes=ctx.executed_nodes,
            failed_nodes=[n for n in ctx.execution_path if n in ctx.failed],
            queued_nodes=sorted(ctx.queued),
            skipped_nodes=sorted(ctx.skipped),
            execution_path=list(ctx.execution_path),
            estimated_time_remaining=self._estimate_remaining(ctx),
        )

    def _record_duration(self, ctx: ExecutionContext, node_id: str, duration: float) -> None:
        key = (ctx.workflow_id, node_id)
        history = self._durations.get(key)
        if history is None:
            history = self._durations[key] = deque(maxlen=self.duration_history_size)
        history.append(duration)

    def _estimate_remaining(self, ctx: ExecutionContext) -> Optional[float]:
        """Sum of mean historical durations over nodes that have not finished."""
        remaining = [
            n for n in ctx.affected_node_ids
            if ctx.node_status(n) in (FlowNodeStatus.IDLE, FlowNodeStatus.QUEUED,
                                      FlowNodeStatus.RUNNING)
        ]
        if not remaining or ctx.is_terminal:
            return 0.0

        run_durations = [
            ctx.node_states[n].duration for n in ctx.completed
            if ctx.node_states[n].duration is not None
        ]
        run_mean = sum(run_durations) / len(run_durations) if run_durations else None

        estimate, known = 0.0, False
        for node_id in remaining:
            history = self._durations.get((ctx.workflow_id, node_id))
            if history:
                estimate += sum(history) / len(history)
                known = True
            elif run_mean is not None:
                estimate += run_mean
                known = True
        return estimate if known else None

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def recover_execution(self, graph: WorkflowGraph, execution_id: str,
                                options: OptionsArg = None) -> FlowExecutionResult:
        """Rehydrate an interrupted execution from its last snapshot.

        With recovery_mode "resume", nodes that were running are re-queued
        and the execution continues (a paused execution stays paused until
        resume_execution). With "fail" the execution is marked failed.
        """
        start_time = time.time()
        snapshot = await self.store.load_snapshot(execution_id) if self.store else None
        if snapshot is None:
            return self._rejected(execution_id, start_time, FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"No snapshot found for execution {execution_id}",
            ))

        ctx = snapshot.to_context()
        if not snapshot.is_recoverable:
            return self._build_result(ctx)

        missing = sorted(n for n in ctx.affected_node_ids if not graph.has_node(n))
        if missing:
            return self._rejected(execution_id, start_time, FlowExecutionError(
                FlowErrorType.MISSING_DEPENDENCY,
                f"Workflow no longer contains node(s): {', '.join(missing)}",
                affected_nodes=missing,
                execution_path=ctx.execution_path,
            ))

        try:
            resolved = self._resolve_options(options, graph)
            self.contexts.register_context(ctx)
        except (TypeError, ValueError, FlowExecutionError) as e:
            error = e if isinstance(e, FlowExecutionError) else FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE, f"Invalid execution options: {e}")
            return self._rejected(execution_id, start_time, error)

        run = _Run(ctx=ctx, graph=graph, resolver=DependencyResolver(graph), options=resolved)
        self._runs[execution_id] = run

        if self.recovery_mode == "fail":
            error = FlowExecutionError(
                FlowErrorType.INVALID_FLOW_STATE,
                f"Execution {execution_id} was interrupted by a process restart",
                affected_nodes=sorted(ctx.pending),
                execution_path=ctx.execution_path,
                suggested_resolution="Start the workflow again.",
            )
            pending = sorted(ctx.pending)
            self.contexts.finish_execution(execution_id, FlowStatus.FAILED, error=error.to_dict())
            self._emit_cancelled(ctx, pending)
            logger.warning("Interrupted execution marked failed", execution_id=execution_id)
            return await self._finalize(run)

        requeued = self.contexts.requeue_interrupted(execution_id)
        for node_id in requeued:
            self._emit(ctx, node_id, FlowNodeStatus.QUEUED.value, {"recovered": True})

        logger.info("Recovering flow execution", execution_id=execution_id,
                   status=ctx.status.value, requeued=requeued,
                   completed=len(ctx.completed))
        self._emit(ctx, None, ctx.status.value, {"recovered": True})

        # Settled nodes may have successors that were never evaluated
        for node_id in list(ctx.execution_path):
            self._advance(run, node_id)

        return await self._drive(run)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _resolve_options(self, options: OptionsArg, graph: WorkflowGraph) -> FlowExecutionOptions:
        if isinstance(options, FlowExecutionOptions):
            resolved = options
        else:
            resolved = self.default_options.merged(options)
        if resolved.workflow_id is None and graph.workflow_id is not None:
            resolved = resolved.merged({"workflow_id": graph.workflow_id})
        return resolved

    def _emit(self, ctx: ExecutionContext, node_id: Optional[str], status: str,
              data: Optional[Dict[str, Any]] = None) -> None:
        if self.event_sink is not None:
            self.event_sink.emit(FlowEvent(ctx.execution_id, node_id, status, data=data))

    def _emit_cancelled(self, ctx: ExecutionContext, node_ids: List[str]) -> None:
        for node_id in node_ids:
            self._emit(ctx, node_id, FlowNodeStatus.CANCELLED.value)

    async def _save(self, ctx: ExecutionContext) -> None:
        if self.store is not None:
            await self.store.save_snapshot(ExecutionSnapshot.from_context(ctx))


def _normalize_input(input_data: Any) -> Optional[Dict[str, List[Any]]]:
    """Accept port -> items mappings; wrap anything else as one ``main`` item."""
    if input_data is None:
        return None
    if isinstance(input_data, Mapping) and all(isinstance(v, list) for v in input_data.values()):
        return {port: list(items) for port, items in input_data.items()}
    return {"main": [input_data]}
