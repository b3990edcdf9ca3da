"""
flowforge - a dataflow execution engine.

Flows are directed acyclic graphs of typed nodes wired port to port. The
engine runs them level by level with bounded retries, timeouts,
cooperative cancellation and configurable failure handling, and can run
whole subflows as single nodes.
"""

from flowforge.graph import (
    CancellationToken,
    Edge,
    ErrorMode,
    ExecutionContext,
    ExecutionEngine,
    ExecutionOptions,
    ExecutionResult,
    ExecutionState,
    ExecutorRegistry,
    FlowGraph,
    Node,
    NodeStatus,
    NodeTypeRegistry,
    NodeTypeSpec,
    RetryConfig,
    RunStatus,
    execute_flow,
)
from flowforge.packs import PackRegistry, create_default_registries
from flowforge.runtime import EventBus, ExecutionEvent, ExecutionEventType

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "Edge",
    "ErrorMode",
    "EventBus",
    "ExecutionContext",
    "ExecutionEngine",
    "ExecutionEvent",
    "ExecutionEventType",
    "ExecutionOptions",
    "ExecutionResult",
    "ExecutionState",
    "ExecutorRegistry",
    "FlowGraph",
    "Node",
    "NodeStatus",
    "NodeTypeRegistry",
    "NodeTypeSpec",
    "PackRegistry",
    "RetryConfig",
    "RunStatus",
    "create_default_registries",
    "execute_flow",
]
