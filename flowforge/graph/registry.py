"""Executor Registry - maps node type tags to their runtime implementations."""

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flowforge.graph.types import ExecutionContext, ExecutionResult

logger = logging.getLogger(__name__)

# An executor may be a coroutine function or a plain function.
NodeExecutor = Callable[
    ["ExecutionContext"], "Awaitable[ExecutionResult] | ExecutionResult"
]


class ExecutorRegistry:
    """
    Lookup table of executors by node type.

    Registries are plain objects owned by (or passed into) an engine, so
    separate engines and tests never share handlers. A registry may be
    layered over a ``parent``: lookups fall through to the parent, while
    registrations only touch the child.

    Example:
        registry = ExecutorRegistry()

        async def double(ctx):
            return ExecutionResult(outputs={"out": ctx.inputs["in"] * 2})

        registry.register("Double", double)
    """

    def __init__(self, parent: "ExecutorRegistry | None" = None):
        self._executors: dict[str, NodeExecutor] = {}
        self._parent = parent

    def register(self, node_type: str, executor: NodeExecutor) -> None:
        """Register (or replace) the executor for a node type."""
        if not callable(executor):
            raise TypeError(f"Executor for '{node_type}' must be callable")
        if node_type in self._executors:
            logger.debug(f"Replacing executor for node type '{node_type}'")
        self._executors[node_type] = executor

    def unregister(self, node_type: str) -> bool:
        """Remove the executor for a node type. Returns True if one was removed."""
        return self._executors.pop(node_type, None) is not None

    def get(self, node_type: str) -> NodeExecutor | None:
        executor = self._executors.get(node_type)
        if executor is None and self._parent is not None:
            return self._parent.get(node_type)
        return executor

    def has(self, node_type: str) -> bool:
        return self.get(node_type) is not None

    def list(self) -> list[str]:
        """Registered node types, including those inherited from a parent."""
        types = list(self._parent.list()) if self._parent is not None else []
        for node_type in self._executors:
            if node_type not in types:
                types.append(node_type)
        return types

    def overlay(self, executors: dict[str, NodeExecutor] | None = None) -> "ExecutorRegistry":
        """Create a child registry layered over this one."""
        child = ExecutorRegistry(parent=self)
        for node_type, executor in (executors or {}).items():
            child.register(node_type, executor)
        return child

    def __contains__(self, node_type: Any) -> bool:
        return isinstance(node_type, str) and self.has(node_type)
