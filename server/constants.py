"""Centralized constants for node types, ports and execution events.

This module provides a single source of truth for node type definitions
and key names shared by the flow engine and its collaborators.
"""

from typing import FrozenSet

# =============================================================================
# TRIGGER NODE TYPES (starting points for workflow graphs)
# =============================================================================

# Manual and scheduled entry points
WORKFLOW_CONTROL_TYPES: FrozenSet[str] = frozenset([
    'start',
    'manualTrigger',
    'cronScheduler',
    'scheduleTrigger',
])

# Event-driven triggers that wait for external events
EVENT_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    'webhookTrigger',
    'workflowTrigger',
    'workflowCalled',
    'chatTrigger',
])

# Combined set of all trigger node types that can start a workflow.
# These nodes have no input ports and serve as entry points.
WORKFLOW_TRIGGER_TYPES: FrozenSet[str] = WORKFLOW_CONTROL_TYPES | EVENT_TRIGGER_TYPES

# =============================================================================
# PORTS
# =============================================================================

DEFAULT_PORT = 'main'

# =============================================================================
# PERSISTENCE KEYS
# =============================================================================

SNAPSHOT_KEY_PREFIX = 'flow:execution'
ACTIVE_EXECUTIONS_KEY = 'flow:executions:active'
