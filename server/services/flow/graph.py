"""Read-only workflow graph snapshot.

One WorkflowGraph is built per workflow version and may be shared by any
number of concurrent executions; nothing in the engine mutates it.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from constants import DEFAULT_PORT, WORKFLOW_TRIGGER_TYPES


@dataclass(frozen=True)
class WorkflowNode:
    """A node as the engine sees it: identity, type, parameters, disabled flag."""
    id: str
    type: str = "unknown"
    name: Optional[str] = None
    parameters: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)
    disabled: bool = False

    @property
    def is_trigger(self) -> bool:
        return self.type in WORKFLOW_TRIGGER_TYPES

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowNode":
        """Create from an editor/database node dict (camelCase or snake_case)."""
        node_data = data.get("data") or {}
        return cls(
            id=data["id"],
            type=data.get("type", "unknown"),
            name=data.get("name") or node_data.get("label"),
            parameters=dict(data.get("parameters") or {}),
            disabled=bool(data.get("disabled", node_data.get("disabled", False))),
        )


@dataclass(frozen=True)
class Connection:
    """Directed edge between two named ports."""
    source_node_id: str
    target_node_id: str
    source_output: str = DEFAULT_PORT
    target_input: str = DEFAULT_PORT

    @property
    def is_self_loop(self) -> bool:
        return self.source_node_id == self.target_node_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Connection":
        """Create from a connection dict (camelCase, snake_case or React Flow edge)."""
        source = data.get("sourceNodeId", data.get("source_node_id", data.get("source")))
        target = data.get("targetNodeId", data.get("target_node_id", data.get("target")))
        if not source or not target:
            raise ValueError(f"Connection is missing an endpoint: {dict(data)}")
        return cls(
            source_node_id=source,
            target_node_id=target,
            source_output=(data.get("sourceOutput") or data.get("source_output")
                           or data.get("sourceHandle") or DEFAULT_PORT),
            target_input=(data.get("targetInput") or data.get("target_input")
                          or data.get("targetHandle") or DEFAULT_PORT),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "sourceNodeId": self.source_node_id,
            "sourceOutput": self.source_output,
            "targetNodeId": self.target_node_id,
            "targetInput": self.target_input,
        }


class WorkflowGraph:
    """Immutable view of a workflow's nodes and connections.

    Adjacency maps are computed once; connections keep declaration order so
    input merging and cycle reports are deterministic.
    """

    def __init__(self, nodes: Iterable[WorkflowNode], connections: Iterable[Connection],
                 workflow_id: Optional[str] = None):
        self.workflow_id = workflow_id
        node_map: Dict[str, WorkflowNode] = {}
        for node in nodes:
            if node.id in node_map:
                raise ValueError(f"Duplicate node id: {node.id}")
            node_map[node.id] = node
        self._nodes = MappingProxyType(node_map)
        self._connections: Tuple[Connection, ...] = tuple(connections)

        incoming: Dict[str, List[Connection]] = {}
        outgoing: Dict[str, List[Connection]] = {}
        for conn in self._connections:
            outgoing.setdefault(conn.source_node_id, []).append(conn)
            incoming.setdefault(conn.target_node_id, []).append(conn)
        self._incoming = {k: tuple(v) for k, v in incoming.items()}
        self._outgoing = {k: tuple(v) for k, v in outgoing.items()}

    @classmethod
    def from_dict(cls, workflow: Mapping[str, Any]) -> "WorkflowGraph":
        """Build from a workflow dict with ``nodes`` and ``connections`` (or ``edges``)."""
        connections = workflow.get("connections")
        if connections is None:
            connections = workflow.get("edges", [])
        return cls(
            nodes=[WorkflowNode.from_dict(n) for n in workflow.get("nodes", [])],
            connections=[Connection.from_dict(c) for c in connections],
            workflow_id=workflow.get("id"),
        )

    # =========================================================================
    # ADJACENCY QUERIES
    # =========================================================================

    @property
    def nodes(self) -> Mapping[str, WorkflowNode]:
        return self._nodes

    @property
    def connections(self) -> Tuple[Connection, ...]:
        return self._connections

    @property
    def node_ids(self) -> List[str]:
        """Node ids in declaration order."""
        return list(self._nodes)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self._nodes.get(node_id)

    def incoming(self, node_id: str) -> Tuple[Connection, ...]:
        """Connections whose target is ``node_id``."""
        return self._incoming.get(node_id, ())

    def outgoing(self, node_id: str, ports: Optional[Iterable[str]] = None) -> Tuple[Connection, ...]:
        """Connections leaving ``node_id``, optionally only from the given output ports."""
        conns = self._outgoing.get(node_id, ())
        if ports is None:
            return conns
        ports = frozenset(ports)
        return tuple(c for c in conns if c.source_output in ports)

    def validate_structure(self) -> Tuple[List[Connection], List[Connection]]:
        """Return (connections with unknown endpoints, self-loop connections)."""
        missing = [
            c for c in self._connections
            if c.source_node_id not in self._nodes or c.target_node_id not in self._nodes
        ]
        self_loops = [c for c in self._connections if c.is_self_loop]
        return missing, self_loops

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return (f"WorkflowGraph(workflow_id={self.workflow_id!r}, nodes={len(self._nodes)}, "
                f"connections={len(self._connections)})")
