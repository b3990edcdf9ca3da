"""
Edge Protocol - How nodes connect in a flow.

An edge carries one output port of a source node into one input port of a
target node. At most one edge should target a given (node, input port)
pair; when several do, the last edge in the list wins.
"""

from typing import Any

from pydantic import BaseModel, Field

from flowforge.graph.node import Node


class Edge(BaseModel):
    """
    Specification for an edge between node ports.

    Example:
        Edge(
            id="a-to-sum",
            source="a",
            source_port="out",
            target="sum",
            target_port="a",
        )
    """

    id: str
    source: str = Field(description="Source node ID")
    source_port: str = Field(default="out", description="Output port on the source node")
    target: str = Field(description="Target node ID")
    target_port: str = Field(default="in", description="Input port on the target node")

    model_config = {"extra": "allow"}


class FlowGraph(BaseModel):
    """
    A complete flow: nodes plus the edges wiring their ports.

    Example:
        FlowGraph(
            nodes=[Node(id="a", type="NumberInput", data={"value": 2})],
            edges=[],
        )
    """

    id: str = ""
    name: str = ""
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> Node | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        """Get all edges leaving a node."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def validate(self) -> list[str]:
        """Validate the graph structure."""
        return validate_structure(self.nodes, self.edges)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def validate_structure(nodes: list[Node], edges: list[Edge]) -> list[str]:
    """Structural problems of a node/edge list, as human-readable messages."""
    errors = []

    seen_nodes: set[str] = set()
    for node in nodes:
        if node.id in seen_nodes:
            errors.append(f"Duplicate node ID: '{node.id}'")
        seen_nodes.add(node.id)

    seen_edges: set[str] = set()
    for edge in edges:
        if edge.id in seen_edges:
            errors.append(f"Duplicate edge ID: '{edge.id}'")
        seen_edges.add(edge.id)

        if edge.source not in seen_nodes:
            errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
        if edge.target not in seen_nodes:
            errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

    return errors


def port_conflicts(edges: list[Edge]) -> list[str]:
    """Input ports targeted by more than one edge. The last such edge wins."""
    seen: dict[tuple[str, str], str] = {}
    conflicts = []
    for edge in edges:
        key = (edge.target, edge.target_port)
        if key in seen:
            conflicts.append(
                f"Input '{edge.target_port}' of node '{edge.target}' is targeted by "
                f"edges '{seen[key]}' and '{edge.id}'"
            )
        seen[key] = edge.id
    return conflicts
