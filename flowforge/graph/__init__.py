"""Graph structures: Nodes, Edges, Analysis, and Execution."""

from flowforge.graph.analyzer import dependencies, dependents, descendants, levels
from flowforge.graph.cancellation import CancellationToken
from flowforge.graph.edge import Edge, FlowGraph, port_conflicts, validate_structure
from flowforge.graph.errors import (
    CancellationError,
    ConfigurationError,
    CycleError,
    ExecutorError,
    FlowError,
    NodeTimeoutError,
    RecursionLimitExceeded,
    SubflowError,
    UnknownNodeTypeError,
    ValidationError,
)
from flowforge.graph.executor import ExecutionEngine, execute_flow
from flowforge.graph.node import Node, NodeTypeRegistry, NodeTypeSpec, PortSpec
from flowforge.graph.registry import ExecutorRegistry, NodeExecutor
from flowforge.graph.subflow import (
    MAX_SUBFLOW_DEPTH,
    PortMapping,
    SubflowDefinition,
    convert_to_node_type,
    create_subflow_executor,
    extract_subflow,
)
from flowforge.graph.types import (
    UPSTREAM_ERRORS_KEY,
    ErrorMode,
    ExecutionContext,
    ExecutionOptions,
    ExecutionResult,
    ExecutionState,
    NodeState,
    NodeStatus,
    RetryConfig,
    RetryOverride,
    RunStatus,
    UpstreamError,
)
from flowforge.graph.values import DataKind, matches_kind, to_boolean, to_number, to_string

__all__ = [
    # Node / Edge
    "Node",
    "PortSpec",
    "NodeTypeSpec",
    "NodeTypeRegistry",
    "Edge",
    "FlowGraph",
    "validate_structure",
    "port_conflicts",
    # Values
    "DataKind",
    "matches_kind",
    "to_number",
    "to_string",
    "to_boolean",
    # Analysis
    "levels",
    "dependencies",
    "dependents",
    "descendants",
    # Registry
    "ExecutorRegistry",
    "NodeExecutor",
    # Execution
    "ExecutionEngine",
    "execute_flow",
    "ExecutionContext",
    "ExecutionResult",
    "ExecutionOptions",
    "ExecutionState",
    "NodeState",
    "NodeStatus",
    "RunStatus",
    "ErrorMode",
    "RetryConfig",
    "RetryOverride",
    "UpstreamError",
    "UPSTREAM_ERRORS_KEY",
    "CancellationToken",
    # Subflows
    "SubflowDefinition",
    "PortMapping",
    "create_subflow_executor",
    "extract_subflow",
    "convert_to_node_type",
    "MAX_SUBFLOW_DEPTH",
    # Errors
    "FlowError",
    "ConfigurationError",
    "UnknownNodeTypeError",
    "CycleError",
    "ValidationError",
    "ExecutorError",
    "NodeTimeoutError",
    "SubflowError",
    "CancellationError",
    "RecursionLimitExceeded",
]
