"""
Tests for executor and node type registries, and graph structure checks.
"""

import pytest

from flowforge.graph.edge import Edge, FlowGraph, port_conflicts, validate_structure
from flowforge.graph.node import Node, NodeTypeRegistry, NodeTypeSpec, PortSpec
from flowforge.graph.registry import ExecutorRegistry


async def _noop(ctx):
    return None


class TestExecutorRegistry:
    def test_register_and_get(self):
        registry = ExecutorRegistry()
        registry.register("Noop", _noop)

        assert registry.get("Noop") is _noop
        assert registry.has("Noop")
        assert "Noop" in registry
        assert registry.get("Missing") is None

    def test_register_replaces(self):
        registry = ExecutorRegistry()

        def other(ctx):
            return None

        registry.register("Noop", _noop)
        registry.register("Noop", other)
        assert registry.get("Noop") is other

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            ExecutorRegistry().register("Bad", "not callable")

    def test_unregister(self):
        registry = ExecutorRegistry()
        registry.register("Noop", _noop)

        assert registry.unregister("Noop") is True
        assert registry.unregister("Noop") is False
        assert not registry.has("Noop")

    def test_overlay_falls_through_without_touching_parent(self):
        parent = ExecutorRegistry()
        parent.register("Base", _noop)

        def extra(ctx):
            return None

        child = parent.overlay({"Extra": extra})

        assert child.get("Base") is _noop
        assert child.get("Extra") is extra
        assert not parent.has("Extra")
        assert child.list() == ["Base", "Extra"]

    def test_registries_are_independent(self):
        a = ExecutorRegistry()
        b = ExecutorRegistry()
        a.register("Noop", _noop)
        assert not b.has("Noop")


class TestNodeTypeRegistry:
    def test_register_and_query(self):
        spec = NodeTypeSpec(
            type="Debug",
            title="Debug",
            inputs=[PortSpec(id="input", required=True)],
            error_resilient=True,
        )
        registry = NodeTypeRegistry([spec])

        assert registry.get("Debug") is spec
        assert "Debug" in registry
        assert len(registry) == 1
        assert registry.is_error_resilient("Debug")
        assert not registry.is_error_resilient("Other")
        assert spec.get_input("input").required
        assert spec.get_output("out") is None

    def test_unregister(self):
        registry = NodeTypeRegistry([NodeTypeSpec(type="A")])
        assert registry.unregister("A")
        assert registry.list() == []

    def test_port_label_falls_back_to_id(self):
        assert PortSpec(id="a").label == "a"
        assert PortSpec(id="a", name="Alpha").label == "Alpha"


class TestStructure:
    def test_valid_graph(self):
        graph = FlowGraph(
            nodes=[Node(id="a", type="T"), Node(id="b", type="T")],
            edges=[Edge(id="e1", source="a", target="b")],
        )
        assert graph.validate() == []
        assert graph.get_node("a").id == "a"
        assert graph.get_node("zzz") is None
        assert [e.id for e in graph.get_outgoing_edges("a")] == ["e1"]
        assert [e.id for e in graph.get_incoming_edges("b")] == ["e1"]

    def test_duplicate_ids_and_missing_endpoints(self):
        nodes = [Node(id="a", type="T"), Node(id="a", type="T")]
        edges = [
            Edge(id="e1", source="a", target="ghost"),
            Edge(id="e1", source="phantom", target="a"),
        ]
        problems = validate_structure(nodes, edges)

        assert "Duplicate node ID: 'a'" in problems
        assert "Duplicate edge ID: 'e1'" in problems
        assert "Edge 'e1' references missing target 'ghost'" in problems
        assert "Edge 'e1' references missing source 'phantom'" in problems

    def test_port_conflicts(self):
        edges = [
            Edge(id="e1", source="a", target="c", target_port="x"),
            Edge(id="e2", source="b", target="c", target_port="x"),
            Edge(id="e3", source="b", target="c", target_port="y"),
        ]
        conflicts = port_conflicts(edges)
        assert len(conflicts) == 1
        assert "'e1' and 'e2'" in conflicts[0]

    def test_graph_round_trips_through_dict(self):
        graph = FlowGraph(
            id="g",
            nodes=[Node(id="a", type="NumberInput", data={"value": 3})],
            edges=[],
        )
        assert FlowGraph.model_validate(graph.to_dict()) == graph
