"""
Subflow Composer - runs a reusable node/edge graph as a single node.

A subflow definition holds internal nodes and edges plus port mappings
that expose chosen internal ports as the subflow's own inputs and outputs.
``create_subflow_executor`` turns a definition into an ordinary executor;
each invocation:

1. Rejects the call when the recursion depth limit is reached
2. Clones the internal graph under ids unique to this call
3. Feeds each exposed input through a synthetic constant-source node
4. Runs a nested ExecutionEngine one level deeper, sharing the caller's
   cancellation token, with input validation disabled
5. Lifts the mapped inner outputs back out, or surfaces the first inner
   failure as a SubflowError
"""

import copy
import logging
import re
import uuid
from typing import Any

from pydantic import BaseModel, Field

from flowforge.graph.edge import Edge, FlowGraph
from flowforge.graph.errors import ConfigurationError, RecursionLimitExceeded, SubflowError
from flowforge.graph.executor import ExecutionEngine
from flowforge.graph.node import Node, NodeTypeRegistry, NodeTypeSpec, PortSpec
from flowforge.graph.registry import ExecutorRegistry, NodeExecutor
from flowforge.graph.types import (
    ExecutionContext,
    ExecutionOptions,
    ExecutionResult,
    NodeStatus,
)
from flowforge.graph.values import DataKind

logger = logging.getLogger(__name__)

MAX_SUBFLOW_DEPTH = 10

# Synthetic node type that re-emits a caller-supplied value on port "out"
SUBFLOW_INPUT_TYPE = "__SubflowInput"


class PortMapping(BaseModel):
    """Exposes one internal node port as a subflow port."""

    exposed_port_id: str
    exposed_port_name: str = ""
    internal_node_id: str
    internal_port_id: str
    kind: DataKind = DataKind.ANY


class SubflowDefinition(BaseModel):
    """
    Internal graph of a subflow plus its public port mappings.

    Example:
        SubflowDefinition(
            nodes=[Node(id="x", type="Math"), Node(id="y", type="ToString")],
            edges=[Edge(id="e", source="x", source_port="out", target="y", target_port="value")],
            input_mappings=[
                PortMapping(exposed_port_id="a", internal_node_id="x", internal_port_id="a"),
            ],
            output_mappings=[
                PortMapping(exposed_port_id="text", internal_node_id="y", internal_port_id="out"),
            ],
        )
    """

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    input_mappings: list[PortMapping] = Field(default_factory=list)
    output_mappings: list[PortMapping] = Field(default_factory=list)

    def validate_mappings(self) -> list[str]:
        """Mappings that point at nodes outside the definition."""
        node_ids = {node.id for node in self.nodes}
        errors = []
        for mapping in [*self.input_mappings, *self.output_mappings]:
            if mapping.internal_node_id not in node_ids:
                errors.append(
                    f"Port '{mapping.exposed_port_id}' maps to missing internal node "
                    f"'{mapping.internal_node_id}'"
                )
        return errors

    def node_type_spec(
        self,
        node_type: str,
        title: str = "",
        category: str = "Custom",
        description: str = "",
    ) -> NodeTypeSpec:
        """Node type metadata exposing this subflow's mapped ports."""
        return NodeTypeSpec(
            type=node_type,
            title=title or node_type,
            category=category,
            description=description or f"Custom node: {title or node_type}",
            inputs=[
                PortSpec(id=m.exposed_port_id, name=m.exposed_port_name, kind=m.kind)
                for m in self.input_mappings
            ],
            outputs=[
                PortSpec(id=m.exposed_port_id, name=m.exposed_port_name, kind=m.kind)
                for m in self.output_mappings
            ],
        )


async def _emit_subflow_input(ctx: ExecutionContext) -> ExecutionResult:
    if "value" not in ctx.config:
        return ExecutionResult()
    return ExecutionResult(outputs={"out": ctx.config["value"]})


def _clone_graph(
    definition: SubflowDefinition, inputs: dict[str, Any], call_id: str
) -> tuple[list[Node], list[Edge], dict[str, str]]:
    id_map = {node.id: f"{node.id}__{call_id}" for node in definition.nodes}

    nodes = [
        node.model_copy(update={"id": id_map[node.id], "data": copy.deepcopy(node.data)})
        for node in definition.nodes
    ]
    edges = [
        edge.model_copy(
            update={
                "id": f"{edge.id}__{call_id}",
                "source": id_map.get(edge.source, edge.source),
                "target": id_map.get(edge.target, edge.target),
            }
        )
        for edge in definition.edges
    ]

    for mapping in definition.input_mappings:
        source_id = f"__input_{mapping.exposed_port_id}__{call_id}"
        data = {}
        if mapping.exposed_port_id in inputs:
            data["value"] = inputs[mapping.exposed_port_id]
        nodes.append(Node(id=source_id, type=SUBFLOW_INPUT_TYPE, data=data))
        edges.append(
            Edge(
                id=f"__input_edge_{mapping.exposed_port_id}_{mapping.internal_node_id}__{call_id}",
                source=source_id,
                source_port="out",
                target=id_map.get(mapping.internal_node_id, mapping.internal_node_id),
                target_port=mapping.internal_port_id,
            )
        )

    return nodes, edges, id_map


def create_subflow_executor(
    definition: SubflowDefinition,
    executors: ExecutorRegistry,
    node_types: NodeTypeRegistry | None = None,
    max_depth: int = MAX_SUBFLOW_DEPTH,
) -> NodeExecutor:
    """
    Build an executor that runs ``definition`` as one node.

    Args:
        definition: Internal graph and port mappings
        executors: Registry used to resolve internal node types. Looked up
            at call time, so subflow types may refer to other subflow types
            registered later.
        node_types: Node type metadata for the nested engine
        max_depth: Calls at this depth or deeper are rejected

    Returns:
        An async executor usable with ExecutorRegistry.register()
    """
    problems = definition.validate_mappings()
    if problems:
        raise ConfigurationError("; ".join(problems))

    async def execute_subflow(ctx: ExecutionContext) -> ExecutionResult:
        if ctx.depth >= max_depth:
            raise RecursionLimitExceeded(max_depth)

        call_id = uuid.uuid4().hex[:12]
        nodes, edges, id_map = _clone_graph(definition, ctx.inputs, call_id)

        engine = ExecutionEngine(
            executors.overlay({SUBFLOW_INPUT_TYPE: _emit_subflow_input}),
            node_types,
        )
        logger.debug(
            f"Running subflow for node '{ctx.node_id}' at depth {ctx.depth + 1} "
            f"({len(definition.nodes)} internal node(s))"
        )
        state = await engine.execute(
            nodes,
            edges,
            ExecutionOptions(token=ctx.token, skip_validation=True, depth=ctx.depth + 1),
        )

        ctx.token.raise_if_cancelled()

        if not state.success:
            # Siblings cancelled by the abort are errors too; report the cause first
            definition_ids = {clone_id: node_id for node_id, clone_id in id_map.items()}
            candidates = [state.failed_node_id] if state.failed_node_id else []
            candidates += [id_map[node.id] for node in definition.nodes]
            for clone_id in candidates:
                inner_state = state.node_states.get(clone_id)
                if inner_state and inner_state.status == NodeStatus.ERROR and inner_state.error:
                    inner_id = definition_ids.get(clone_id, clone_id)
                    raise SubflowError(inner_state.error, inner_node_id=inner_id)
            raise SubflowError(state.error or "Subflow execution failed")

        outputs: dict[str, Any] = {}
        for mapping in definition.output_mappings:
            inner_state = state.node_states.get(id_map[mapping.internal_node_id])
            if inner_state and mapping.internal_port_id in inner_state.outputs:
                outputs[mapping.exposed_port_id] = inner_state.outputs[mapping.internal_port_id]

        return ExecutionResult(outputs=outputs)

    return execute_subflow


# ---------------------------------------------------------------------------
# Turning part of a flow into a reusable node type
# ---------------------------------------------------------------------------


def extract_subflow(
    graph: FlowGraph,
    node_ids: list[str],
    input_mappings: list[PortMapping],
    output_mappings: list[PortMapping],
) -> SubflowDefinition:
    """
    Cut the selected nodes (and the edges fully inside the selection) out
    of a flow as a subflow definition. Node configs are copied.
    """
    selected = set(node_ids)
    nodes = [
        node.model_copy(update={"data": copy.deepcopy(node.data)})
        for node in graph.nodes
        if node.id in selected
    ]
    edges = [
        edge.model_copy()
        for edge in graph.edges
        if edge.source in selected and edge.target in selected
    ]
    return SubflowDefinition(
        nodes=nodes,
        edges=edges,
        input_mappings=input_mappings,
        output_mappings=output_mappings,
    )


def subflow_type_name(pack_id: str, title: str) -> str:
    """Namespaced type tag for a custom node, e.g. ``mypack:AddTwice``."""
    compact = re.sub(r"\s+", "", title)
    return f"{pack_id}:{compact}"


def convert_to_node_type(
    definition: SubflowDefinition,
    pack_id: str,
    title: str,
    category: str = "Custom",
    description: str = "",
) -> NodeTypeSpec:
    """
    Node type metadata for publishing a subflow as a custom pack node.

    Raises:
        ConfigurationError: If the subflow contains a node of the very type
            being created
    """
    type_name = subflow_type_name(pack_id, title)
    for node in definition.nodes:
        if node.type == type_name:
            raise ConfigurationError(
                f"Circular reference detected: node '{node.id}' has type '{type_name}' "
                "which is the same as the custom node being created."
            )
    return definition.node_type_spec(type_name, title, category, description)
