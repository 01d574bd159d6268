"""Dependency resolution over a WorkflowGraph.

Pure, side-effect-free queries: dependencies, downstream nodes, the fan-in
join rule, cycle detection and execution-path validation.

Two notions of "downstream":
- structure (validation, reachability, affected-node closure) follows every
  connection leaving a node;
- cascade triggering after a node ran only follows connections whose
  source output port actually produced items (e.g. the taken branch of an IF).
"""

from collections import defaultdict, deque
from typing import Dict, Iterable, List, Mapping, Optional, Set

from core.logging import get_logger
from .errors import FlowErrorType, FlowExecutionError
from .graph import WorkflowGraph
from .models import CircularDependency, ValidationResult

logger = get_logger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyResolver:
    """Answers dependency questions about one immutable graph."""

    def __init__(self, graph: WorkflowGraph):
        self.graph = graph

    # =========================================================================
    # ADJACENCY
    # =========================================================================

    def get_dependencies(self, node_id: str) -> Set[str]:
        """All nodes with a connection into ``node_id``."""
        return {c.source_node_id for c in self.graph.incoming(node_id)}

    def get_downstream_nodes(self, node_id: str,
                             fired_ports: Optional[Iterable[str]] = None) -> Set[str]:
        """Direct successors of ``node_id``.

        Args:
            node_id: Source node
            fired_ports: When given, only follow connections leaving these
                output ports (cascade semantics). None follows every
                connection (structural semantics).
        """
        return {c.target_node_id for c in self.graph.outgoing(node_id, fired_ports)}

    def get_downstream_closure(self, node_id: str) -> Set[str]:
        """Every node reachable forward from ``node_id`` (excluding itself unless on a cycle)."""
        reached: Set[str] = set()
        frontier = deque([node_id])
        while frontier:
            current = frontier.popleft()
            for successor in self.get_downstream_nodes(current):
                if successor not in reached:
                    reached.add(successor)
                    frontier.append(successor)
        return reached

    def has_live_input(self, node_id: str,
                       fired_ports_by_node: Mapping[str, Iterable[str]]) -> bool:
        """True when at least one incoming connection carries a fired output port."""
        for conn in self.graph.incoming(node_id):
            if conn.source_output in fired_ports_by_node.get(conn.source_node_id, ()):
                return True
        return False

    # =========================================================================
    # FAN-IN JOIN RULE
    # =========================================================================

    def get_executable_nodes(self, node_ids: Iterable[str],
                             completed_nodes: Iterable[str],
                             finished_nodes: Iterable[str] = ()) -> Set[str]:
        """Nodes whose every dependency has completed.

        A node N is executable when:
        - N is not completed and not in ``finished_nodes`` (failed, skipped,
          queued, running...)
        - every node in get_dependencies(N) is in ``completed_nodes``
        - N is not disabled

        A merge node with three upstream branches therefore becomes
        executable only once all three completed.
        """
        completed = set(completed_nodes)
        excluded = completed | set(finished_nodes)
        executable = set()
        for node_id in node_ids:
            if node_id in excluded:
                continue
            node = self.graph.get_node(node_id)
            if node is None or node.disabled:
                continue
            if self.get_dependencies(node_id) <= completed:
                executable.add(node_id)
        return executable

    # =========================================================================
    # CYCLE DETECTION
    # =========================================================================

    def _adjacency(self, node_ids: Optional[Iterable[str]] = None) -> Dict[str, List[str]]:
        """Successor lists (declaration order, de-duplicated) restricted to a scope."""
        scope = set(node_ids) if node_ids is not None else None
        adjacency: Dict[str, List[str]] = {}
        for node_id in self.graph.node_ids:
            if scope is None or node_id in scope:
                adjacency[node_id] = []
        for conn in self.graph.connections:
            if scope is not None and (conn.source_node_id not in scope
                                      or conn.target_node_id not in scope):
                continue
            successors = adjacency.setdefault(conn.source_node_id, [])
            adjacency.setdefault(conn.target_node_id, [])
            if conn.target_node_id not in successors:
                successors.append(conn.target_node_id)
        return adjacency

    def detect_circular_dependencies(self, node_ids: Optional[Iterable[str]] = None
                                     ) -> List[CircularDependency]:
        """Find directed cycles with an iterative three-color DFS.

        Every back edge yields one cycle (the DFS path slice it closes);
        rotations of the same cycle are reported once. Self-referencing
        connections come back as cycles of length 1.

        Args:
            node_ids: Optional scope; connections leaving the scope are ignored

        Returns:
            List of CircularDependency, empty for a DAG
        """
        adjacency = self._adjacency(node_ids)
        color: Dict[str, int] = defaultdict(int)
        cycles: List[CircularDependency] = []
        seen: Set[tuple] = set()

        for root in adjacency:
            if color[root] != _WHITE:
                continue

            color[root] = _GRAY
            path = [root]
            stack = [(root, iter(adjacency[root]))]

            while stack:
                node_id, successors = stack[-1]
                successor = next(successors, None)

                if successor is None:
                    stack.pop()
                    path.pop()
                    color[node_id] = _BLACK
                    continue

                if color[successor] == _GRAY:
                    cycle = path[path.index(successor):]
                    key = _canonical_cycle(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(CircularDependency(cycle=list(cycle)))
                elif color[successor] == _WHITE:
                    color[successor] = _GRAY
                    path.append(successor)
                    stack.append((successor, iter(adjacency[successor])))

        if cycles:
            logger.debug("Circular dependencies detected",
                        cycles=[c.description for c in cycles])
        return cycles

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_execution_path(self, node_ids: Optional[Iterable[str]] = None) -> ValidationResult:
        """Compose structural checks, cycle detection and reachability analysis.

        Errors (fatal): connections to missing nodes, self-loops, cycles.
        Warnings: unreachable nodes, orphaned nodes (no connections at all
        and not a trigger).
        """
        scope = list(node_ids) if node_ids is not None else self.graph.node_ids
        scope_set = set(scope)
        result = ValidationResult(is_valid=True)

        missing, self_loops = self.graph.validate_structure()
        for conn in missing:
            if conn.source_node_id not in scope_set and conn.target_node_id not in scope_set:
                continue
            absent = [n for n in (conn.source_node_id, conn.target_node_id)
                      if not self.graph.has_node(n)]
            result.missing_references.append({**conn.to_dict(), "missing": absent})
            result.errors.append(
                f"Connection {conn.source_node_id}.{conn.source_output} -> "
                f"{conn.target_node_id}.{conn.target_input} references missing node(s): "
                f"{', '.join(absent)}"
            )

        for conn in self_loops:
            if conn.source_node_id in scope_set:
                result.errors.append(f"Node {conn.source_node_id} is connected to itself")

        result.circular_dependencies = self.detect_circular_dependencies(scope)
        for cycle in result.circular_dependencies:
            if len(cycle.cycle) > 1:
                result.errors.append(f"Circular dependency detected: {cycle.description}")

        result.unreachable_nodes = self._find_unreachable(scope)
        if result.unreachable_nodes:
            result.warnings.append(
                f"Unreachable nodes (no path from an entry point): "
                f"{', '.join(result.unreachable_nodes)}"
            )

        if len(scope) > 1:
            result.orphaned_nodes = [
                n for n in scope
                if not self.graph.incoming(n) and not self.graph.outgoing(n)
                and self.graph.has_node(n) and not self._is_trigger(n)
            ]
            if result.orphaned_nodes:
                result.warnings.append(f"Orphaned nodes: {', '.join(result.orphaned_nodes)}")

        result.is_valid = not result.errors
        return result

    def validate_execution_safety(self, node_ids: Optional[Iterable[str]] = None,
                                  execution_path: Iterable[str] = ()) -> None:
        """Raise the first fatal validation problem as a FlowExecutionError.

        Raises:
            FlowExecutionError: MISSING_DEPENDENCY or CIRCULAR_DEPENDENCY
        """
        result = self.validate_execution_path(node_ids)

        if result.missing_references:
            affected = sorted({n for ref in result.missing_references
                               for n in (ref["sourceNodeId"], ref["targetNodeId"])})
            raise FlowExecutionError(
                FlowErrorType.MISSING_DEPENDENCY,
                result.errors[0],
                affected_nodes=affected,
                execution_path=execution_path,
                details={"missing_references": result.missing_references},
            )

        if result.circular_dependencies:
            affected = []
            for cycle in result.circular_dependencies:
                affected.extend(n for n in cycle.cycle if n not in affected)
            raise FlowExecutionError(
                FlowErrorType.CIRCULAR_DEPENDENCY,
                "Circular dependency detected: " + "; ".join(
                    c.description for c in result.circular_dependencies),
                affected_nodes=affected,
                execution_path=execution_path,
                details={"cycles": [c.to_dict() for c in result.circular_dependencies]},
            )

    def _is_trigger(self, node_id: str) -> bool:
        node = self.graph.get_node(node_id)
        return node is not None and node.is_trigger

    def _find_unreachable(self, scope: List[str]) -> List[str]:
        """Nodes in scope not reachable from a trigger (or, without triggers, from a root)."""
        scope_set = set(scope)
        entries = [n for n in scope if self._is_trigger(n)]
        if not entries:
            entries = [
                n for n in scope
                if not any(c.source_node_id in scope_set for c in self.graph.incoming(n))
            ]

        reached = set(entries)
        frontier = deque(entries)
        while frontier:
            current = frontier.popleft()
            for successor in self.get_downstream_nodes(current):
                if successor in scope_set and successor not in reached:
                    reached.add(successor)
                    frontier.append(successor)
        return [n for n in scope if n not in reached]

    # =========================================================================
    # LAYERING
    # =========================================================================

    def get_execution_layers(self, node_ids: Optional[Iterable[str]] = None) -> List[List[str]]:
        """Kahn layering: nodes in one layer have no dependencies on each other.

        Nodes left over by a cycle are returned as a final layer so callers
        never loop forever.
        """
        adjacency = self._adjacency(node_ids)
        in_degree: Dict[str, int] = {n: 0 for n in adjacency}
        for successors in adjacency.values():
            for successor in successors:
                in_degree[successor] += 1

        layers: List[List[str]] = []
        remaining = list(adjacency)
        while remaining:
            layer = [n for n in remaining if in_degree[n] == 0]
            if not layer:
                logger.warning("Cycle detected while layering", remaining=remaining)
                layers.append(remaining)
                break
            layers.append(layer)
            remaining = [n for n in remaining if in_degree[n] != 0]
            for node_id in layer:
                in_degree[node_id] = -1
                for successor in adjacency[node_id]:
                    in_degree[successor] -= 1

        logger.debug("Computed execution layers", layer_count=len(layers))
        return layers


def _canonical_cycle(cycle: List[str]) -> tuple:
    """Rotation-independent key for a cycle."""
    pivot = cycle.index(min(cycle))
    return tuple(cycle[pivot:] + cycle[:pivot])
