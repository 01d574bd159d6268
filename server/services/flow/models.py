"""Flow engine state models.

Node lifecycle follows the n8n execution states; all models are
JSON-serializable for Redis persistence and WebSocket broadcast.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Any, List, Optional, Mapping


class FlowNodeStatus(str, Enum):
    """Per-node state inside one execution context.

    State transitions:
        IDLE -> QUEUED -> RUNNING -> COMPLETED
                                  -> FAILED
        IDLE -> SKIPPED (upstream failed, disabled, or branch not taken)
        QUEUED/RUNNING -> CANCELLED (execution cancelled)
    """
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FlowStatus(str, Enum):
    """Execution-level states."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"        # Failures tolerated by continue_on_node_failure
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_FLOW_STATUSES


TERMINAL_FLOW_STATUSES = frozenset([
    FlowStatus.COMPLETED,
    FlowStatus.FAILED,
    FlowStatus.PARTIAL,
    FlowStatus.CANCELLED,
])


class ConcurrencyPolicy(str, Enum):
    """What to do when a node is already running in another execution."""
    ALLOW = "allow"
    REJECT = "reject"


@dataclass
class RetryPolicy:
    """Retry configuration for node execution.

    Implements exponential backoff with configurable limits.
    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_attempts: int = 1
    initial_delay: float = 1.0       # seconds
    max_delay: float = 30.0          # seconds
    backoff_multiplier: float = 2.0
    retry_on_timeout: bool = True
    retry_on_any_error: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next attempt
        """
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, error: str, attempt: int) -> bool:
        """Determine if execution should be retried.

        Args:
            error: Error message from failed execution
            attempt: Number of attempts made so far

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= self.max_attempts:
            return False
        if self.retry_on_any_error:
            return True
        return self.retry_on_timeout and "timeout" in error.lower()


@dataclass
class FlowExecutionOptions:
    """Per-execution knobs; defaults come from Settings."""
    workflow_id: Optional[str] = None
    timeout: Optional[float] = 300.0
    node_timeout: Optional[float] = None
    continue_on_node_failure: bool = False
    retry_failed_nodes: bool = False
    max_retry_attempts: int = 3
    retry_delay: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay: float = 30.0
    concurrency_policy: ConcurrencyPolicy = ConcurrencyPolicy.ALLOW
    save_progress: bool = True

    @classmethod
    def from_settings(cls, settings) -> "FlowExecutionOptions":
        """Build defaults from application settings."""
        return cls(
            timeout=settings.execution_timeout_or_none,
            node_timeout=settings.node_timeout,
            continue_on_node_failure=settings.continue_on_node_failure,
            retry_failed_nodes=settings.retry_failed_nodes,
            max_retry_attempts=settings.max_retry_attempts,
            retry_delay=settings.retry_delay,
            retry_backoff_multiplier=settings.retry_backoff_multiplier,
            retry_max_delay=settings.retry_max_delay,
            concurrency_policy=ConcurrencyPolicy(settings.concurrency_policy),
            save_progress=settings.save_progress,
        )

    def merged(self, overrides: Optional[Mapping[str, Any]] = None) -> "FlowExecutionOptions":
        """Return a copy with caller overrides applied."""
        if not overrides:
            return replace(self)
        unknown = set(overrides) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown execution options: {sorted(unknown)}")
        merged = replace(self, **overrides)
        merged.concurrency_policy = ConcurrencyPolicy(merged.concurrency_policy)
        return merged

    def retry_policy(self) -> RetryPolicy:
        """Retry policy implied by these options (single attempt when disabled)."""
        if not self.retry_failed_nodes:
            return RetryPolicy(max_attempts=1)
        return RetryPolicy(
            max_attempts=self.max_retry_attempts,
            initial_delay=self.retry_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
        )


@dataclass
class NodeOutput:
    """What the node executor hands back: items per output port."""
    outputs_by_port: Dict[str, List[Any]] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def fired_ports(self) -> frozenset:
        """Output ports that actually produced items."""
        return frozenset(port for port, items in self.outputs_by_port.items() if items)

    @classmethod
    def coerce(cls, value: Any) -> "NodeOutput":
        """Normalize whatever the node executor returned.

        Accepts a NodeOutput, a mapping with ``outputs_by_port``/``error``
        keys, or a bare mapping of port -> items.
        """
        if isinstance(value, NodeOutput):
            return value
        if value is None:
            return cls()
        if not isinstance(value, Mapping):
            raise TypeError(f"Node executor returned unsupported type {type(value).__name__}")

        if "outputs_by_port" in value or "error" in value:
            ports = value.get("outputs_by_port") or {}
            error = value.get("error")
        else:
            ports, error = value, None

        outputs = {}
        for port, items in ports.items():
            if items is None:
                outputs[port] = []
            elif isinstance(items, list):
                outputs[port] = items
            else:
                outputs[port] = [items]
        return cls(outputs_by_port=outputs, error=str(error) if error is not None else None)

    def to_dict(self) -> Dict[str, Any]:
        return {"outputs_by_port": self.outputs_by_port, "error": self.error}


@dataclass
class NodeExecutionState:
    """Tracks one node inside one execution context."""
    node_id: str
    status: FlowNodeStatus = FlowNodeStatus.IDLE
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    input_data: Optional[Dict[str, List[Any]]] = None
    output: Optional[Dict[str, List[Any]]] = None
    error: Optional[Dict[str, Any]] = None
    attempts: int = 0
    skip_reason: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": self.duration,
            "output": self.output,
            "error": self.error,
            "attempts": self.attempts,
            "skip_reason": self.skip_reason,
        }


@dataclass
class NodeExecutionResult:
    """Final outcome of one node in a finished execution."""
    node_id: str
    status: FlowNodeStatus
    data: Optional[Dict[str, List[Any]]] = None
    error: Optional[Dict[str, Any]] = None
    duration: float = 0.0
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "data": self.data,
            "error": self.error,
            "duration": self.duration,
            "attempts": self.attempts,
        }


@dataclass
class FlowExecutionResult:
    """Result of executeFromNode / executeFromTrigger.

    ``execution_path`` lists every node that finished (completed or failed)
    in completion order; ``executed_nodes`` only the successful ones.
    """
    execution_id: str
    status: FlowStatus
    executed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    skipped_nodes: List[str] = field(default_factory=list)
    execution_path: List[str] = field(default_factory=list)
    total_duration: float = 0.0
    node_results: Dict[str, NodeExecutionResult] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == FlowStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "executed_nodes": self.executed_nodes,
            "failed_nodes": self.failed_nodes,
            "skipped_nodes": self.skipped_nodes,
            "execution_path": self.execution_path,
            "total_duration": self.total_duration,
            "node_results": {k: v.to_dict() for k, v in self.node_results.items()},
            "errors": self.errors,
        }


@dataclass
class ExecutionFlowStatus:
    """Read-only progress snapshot of one execution."""
    execution_id: str
    overall_status: FlowStatus
    progress: float
    node_states: Dict[str, FlowNodeStatus]
    currently_executing: List[str]
    completed_nodes: List[str]
    failed_nodes: List[str]
    queued_nodes: List[str]
    skipped_nodes: List[str]
    execution_path: List[str]
    estimated_time_remaining: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "overall_status": self.overall_status.value,
            "progress": self.progress,
            "node_states": {k: v.value for k, v in self.node_states.items()},
            "currently_executing": self.currently_executing,
            "completed_nodes": self.completed_nodes,
            "failed_nodes": self.failed_nodes,
            "queued_nodes": self.queued_nodes,
            "skipped_nodes": self.skipped_nodes,
            "execution_path": self.execution_path,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


@dataclass
class CircularDependency:
    """One directed cycle, as the ordered list of node ids forming it."""
    cycle: List[str]
    severity: str = "error"

    @property
    def description(self) -> str:
        return " -> ".join(self.cycle + self.cycle[:1])

    def to_dict(self) -> Dict[str, Any]:
        return {"cycle": self.cycle, "severity": self.severity}


@dataclass
class ValidationResult:
    """Outcome of validateExecutionPath."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    circular_dependencies: List[CircularDependency] = field(default_factory=list)
    unreachable_nodes: List[str] = field(default_factory=list)
    orphaned_nodes: List[str] = field(default_factory=list)
    missing_references: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "circular_dependencies": [c.to_dict() for c in self.circular_dependencies],
            "unreachable_nodes": self.unreachable_nodes,
            "orphaned_nodes": self.orphaned_nodes,
            "missing_references": self.missing_references,
        }