"""
Error taxonomy for flow execution.

Configuration problems are detected before any node runs and are the only
errors that escape ``ExecutionEngine.execute()``. Everything else is raised
inside a node invocation and ends up in that node's ``NodeState.error``.

Each class carries ``retryable``; the retry wrapper only re-invokes a node
when the raised error allows it.
"""


class FlowError(Exception):
    """Base class for all flowforge errors."""

    retryable: bool = False


# ---------------------------------------------------------------------------
# Configuration-time errors (fatal, raised before execution starts)
# ---------------------------------------------------------------------------


class ConfigurationError(FlowError):
    """The graph or its environment is malformed."""


class UnknownNodeTypeError(ConfigurationError):
    """No executor is registered for a node type."""

    def __init__(self, node_type: str, node_id: str | None = None):
        self.node_type = node_type
        self.node_id = node_id
        where = f" (node '{node_id}')" if node_id else ""
        super().__init__(f"No executor found for node type: {node_type}{where}")


class CycleError(ConfigurationError):
    """The graph contains a circular dependency."""

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__(f"Circular dependency: {' -> '.join(path)}")


# ---------------------------------------------------------------------------
# Node-level errors (recorded on the node, never raised past execute())
# ---------------------------------------------------------------------------


class ValidationError(FlowError):
    """A node's resolved inputs do not satisfy its declared ports."""

    def __init__(self, message: str, node_id: str | None = None, port: str | None = None):
        self.node_id = node_id
        self.port = port
        super().__init__(message)


class ExecutorError(FlowError):
    """Raised by (or on behalf of) a node implementation."""

    retryable = True


class NodeTimeoutError(ExecutorError):
    """A node exceeded its effective timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Node execution timed out after {timeout:g}s")


class SubflowError(ExecutorError):
    """An inner node of a subflow failed."""

    def __init__(self, message: str, inner_node_id: str | None = None):
        self.inner_node_id = inner_node_id
        super().__init__(f"Subflow error: {message}")


class CancellationError(FlowError):
    """Execution was cancelled through a cancellation token."""

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(reason or "Execution cancelled")


class RecursionLimitExceeded(FlowError):
    """Subflow nesting went past the configured maximum depth."""

    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        super().__init__(
            f"Subflow execution depth exceeded (max {max_depth}). Possible circular reference."
        )


def is_retryable(error: BaseException) -> bool:
    """Whether the retry wrapper may re-invoke a node after ``error``.

    Plain exceptions raised by executor code are treated like ExecutorError.
    """
    if isinstance(error, FlowError):
        return error.retryable
    return isinstance(error, Exception)
