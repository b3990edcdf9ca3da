"""
Node Protocol - What runs in a flow.

A node is an instance of a node *type*. The type decides which executor
runs it and which ports it declares; the node itself only carries its id
and a free-form configuration map (``data``).

Node type metadata (ports, error resilience) lives in a NodeTypeRegistry.
It is consulted for input validation and skip decisions only, never for
execution semantics.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field

from flowforge.graph.values import DataKind

logger = logging.getLogger(__name__)


class Node(BaseModel):
    """
    A node in a flow.

    Example:
        Node(id="sum", type="Math", data={"operation": "add"})

    ``data`` is mutable: executors may return a config update that the
    engine merges back into it after a successful run.
    """

    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict, description="Node configuration")

    model_config = {"extra": "allow"}


class PortSpec(BaseModel):
    """A declared input or output port of a node type."""

    id: str
    name: str = ""
    kind: DataKind = DataKind.ANY
    required: bool = False

    @property
    def label(self) -> str:
        return self.name or self.id


class NodeTypeSpec(BaseModel):
    """
    Metadata for a node type.

    Example:
        NodeTypeSpec(
            type="Math",
            title="Math",
            category="Process",
            inputs=[
                PortSpec(id="a", kind=DataKind.NUMBER, required=True),
                PortSpec(id="b", kind=DataKind.NUMBER, required=True),
            ],
            outputs=[PortSpec(id="out", kind=DataKind.NUMBER)],
        )
    """

    type: str
    title: str = ""
    category: str = "General"
    description: str = ""
    inputs: list[PortSpec] = Field(default_factory=list)
    outputs: list[PortSpec] = Field(default_factory=list)
    error_resilient: bool = Field(
        default=False,
        description="Run with upstream failure details instead of being skipped",
    )

    def get_input(self, port_id: str) -> PortSpec | None:
        for port in self.inputs:
            if port.id == port_id:
                return port
        return None

    def get_output(self, port_id: str) -> PortSpec | None:
        for port in self.outputs:
            if port.id == port_id:
                return port
        return None


class NodeTypeRegistry:
    """Node type metadata keyed by type tag."""

    def __init__(self, specs: list[NodeTypeSpec] | None = None):
        self._specs: dict[str, NodeTypeSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: NodeTypeSpec) -> None:
        if spec.type in self._specs:
            logger.debug(f"Replacing node type definition for '{spec.type}'")
        self._specs[spec.type] = spec

    def unregister(self, node_type: str) -> bool:
        return self._specs.pop(node_type, None) is not None

    def get(self, node_type: str) -> NodeTypeSpec | None:
        return self._specs.get(node_type)

    def has(self, node_type: str) -> bool:
        return node_type in self._specs

    def list(self) -> list[NodeTypeSpec]:
        return list(self._specs.values())

    def is_error_resilient(self, node_type: str) -> bool:
        spec = self._specs.get(node_type)
        return bool(spec and spec.error_resilient)

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._specs

    def __len__(self) -> int:
        return len(self._specs)
