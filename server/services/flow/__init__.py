"""Flow execution engine package.

Dependency-graph scheduling for workflow runs:
- Port-aware cascade with parallel fan-out and fan-in joins
- Cycle and missing-reference validation before any node runs
- Isolated execution contexts for concurrent triggers over one graph
- Cancel / pause / resume, timeouts, retries and crash recovery
"""

from .models import (
    FlowNodeStatus,
    FlowStatus,
    ConcurrencyPolicy,
    RetryPolicy,
    FlowExecutionOptions,
    NodeOutput,
    NodeExecutionState,
    NodeExecutionResult,
    FlowExecutionResult,
    ExecutionFlowStatus,
    CircularDependency,
    ValidationResult,
)
from .errors import (
    FlowErrorType,
    FlowExecutionError,
    ExecutionNotFoundError,
)
from .graph import WorkflowNode, Connection, WorkflowGraph
from .resolver import DependencyResolver
from .context import ExecutionContext, ExecutionContextManager
from .events import FlowEvent, EventSink
from .persistence import ExecutionSnapshot, ExecutionStore
from .engine import FlowExecutionEngine, NodeExecutor
from .sweeper import ExecutionSweeper

__all__ = [
    # Models
    "FlowNodeStatus",
    "FlowStatus",
    "ConcurrencyPolicy",
    "RetryPolicy",
    "FlowExecutionOptions",
    "NodeOutput",
    "NodeExecutionState",
    "NodeExecutionResult",
    "FlowExecutionResult",
    "ExecutionFlowStatus",
    "CircularDependency",
    "ValidationResult",
    # Errors
    "FlowErrorType",
    "FlowExecutionError",
    "ExecutionNotFoundError",
    # Graph
    "WorkflowNode",
    "Connection",
    "WorkflowGraph",
    "DependencyResolver",
    # Contexts
    "ExecutionContext",
    "ExecutionContextManager",
    # Events
    "FlowEvent",
    "EventSink",
    # Persistence
    "ExecutionSnapshot",
    "ExecutionStore",
    # Engine
    "FlowExecutionEngine",
    "NodeExecutor",
    "ExecutionSweeper",
]
