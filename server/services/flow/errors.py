"""Flow engine exception hierarchy."""

import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class FlowErrorType(str, Enum):
    """Classification of flow engine errors."""
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    NODE_EXECUTION_FAILED = "NODE_EXECUTION_FAILED"
    INVALID_FLOW_STATE = "INVALID_FLOW_STATE"
    CONCURRENT_EXECUTION_CONFLICT = "CONCURRENT_EXECUTION_CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


SUGGESTED_RESOLUTIONS: Dict[FlowErrorType, str] = {
    FlowErrorType.CIRCULAR_DEPENDENCY:
        "Remove one of the connections forming the loop so the workflow becomes acyclic.",
    FlowErrorType.MISSING_DEPENDENCY:
        "Delete the connection or restore the node it references.",
    FlowErrorType.EXECUTION_TIMEOUT:
        "Increase the timeout or split the slow work into smaller nodes.",
    FlowErrorType.NODE_EXECUTION_FAILED:
        "Check the node parameters and input data, then re-run the node.",
    FlowErrorType.INVALID_FLOW_STATE:
        "Refresh the execution status and retry the operation from a valid state.",
    FlowErrorType.CONCURRENT_EXECUTION_CONFLICT:
        "Wait for the other execution to finish or allow concurrent execution of shared nodes.",
    FlowErrorType.INTERNAL_ERROR:
        "Retry the execution; report the error if it keeps happening.",
}


class FlowExecutionError(Exception):
    """Base exception for all flow engine errors.

    Every error carries the nodes it affects, the execution path reached
    so far and a human-readable resolution hint.
    """

    def __init__(self, error_type: FlowErrorType, message: str,
                 node_id: Optional[str] = None,
                 affected_nodes: Optional[Iterable[str]] = None,
                 execution_path: Optional[Iterable[str]] = None,
                 suggested_resolution: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.error_type = FlowErrorType(error_type)
        self.message = message
        self.node_id = node_id
        self.affected_nodes: List[str] = list(affected_nodes or ([node_id] if node_id else []))
        self.execution_path: List[str] = list(execution_path or [])
        self.suggested_resolution = suggested_resolution or SUGGESTED_RESOLUTIONS[self.error_type]
        self.details: Dict[str, Any] = dict(details or {})
        self.timestamp = time.time()
        super().__init__(f"[{self.error_type.value}] {message}")

    def with_path(self, execution_path: Iterable[str]) -> "FlowExecutionError":
        """Attach the execution path reached when the error surfaced."""
        self.execution_path = list(execution_path)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "type": self.error_type.value,
            "message": self.message,
            "node_id": self.node_id,
            "affected_nodes": self.affected_nodes,
            "execution_path": self.execution_path,
            "suggested_resolution": self.suggested_resolution,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class ExecutionNotFoundError(FlowExecutionError):
    """Control operation requested for an unknown execution id."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(
            FlowErrorType.INVALID_FLOW_STATE,
            f"Execution {execution_id} not found",
            suggested_resolution="The execution may have finished and been evicted; "
                                 "start a new execution instead.",
        )
