"""
Tests for dependency levels and cycle detection.
"""

import pytest

from flowforge.graph.analyzer import dependencies, dependents, descendants, find_cycle_path, levels
from flowforge.graph.edge import Edge
from flowforge.graph.errors import CycleError
from flowforge.graph.node import Node


def _nodes(*ids):
    return [Node(id=node_id, type="T") for node_id in ids]


def _edge(source, target, source_port="out", target_port="in"):
    return Edge(
        id=f"{source}-{target}-{target_port}",
        source=source,
        source_port=source_port,
        target=target,
        target_port=target_port,
    )


class TestLevels:
    def test_empty_graph(self):
        assert levels([], []) == []

    def test_independent_nodes_share_level_zero(self):
        assert levels(_nodes("a", "b", "c"), []) == [["a", "b", "c"]]

    def test_linear_chain(self):
        edges = [_edge("a", "b"), _edge("b", "c")]
        assert levels(_nodes("a", "b", "c"), edges) == [["a"], ["b"], ["c"]]

    def test_diamond(self):
        edges = [
            _edge("a", "b"),
            _edge("a", "c"),
            _edge("b", "d", target_port="x"),
            _edge("c", "d", target_port="y"),
        ]
        assert levels(_nodes("a", "b", "c", "d"), edges) == [["a"], ["b", "c"], ["d"]]

    def test_node_waits_for_its_deepest_dependency(self):
        # d depends on a (level 0) and c (level 2)
        edges = [
            _edge("a", "b"),
            _edge("b", "c"),
            _edge("c", "d", target_port="x"),
            _edge("a", "d", target_port="y"),
        ]
        assert levels(_nodes("a", "b", "c", "d"), edges) == [["a"], ["b"], ["c"], ["d"]]

    def test_level_order_follows_node_list(self):
        edges = [_edge("root", "z"), _edge("root", "y"), _edge("root", "x")]
        result = levels(_nodes("root", "x", "y", "z"), edges)
        assert result == [["root"], ["x", "y", "z"]]

    def test_every_node_appears_exactly_once(self):
        ids = [f"n{i}" for i in range(8)]
        edges = [_edge(ids[i], ids[i + 1]) for i in range(0, 7, 2)] + [_edge("n1", "n2")]
        result = levels(_nodes(*ids), edges)
        flat = [node_id for level in result for node_id in level]
        assert sorted(flat) == sorted(ids)

    def test_edges_always_point_to_later_levels(self):
        edges = [_edge("a", "c"), _edge("b", "c", target_port="y"), _edge("c", "d"), _edge("a", "d", target_port="z")]
        result = levels(_nodes("a", "b", "c", "d"), edges)
        index = {node_id: i for i, level in enumerate(result) for node_id in level}
        for edge in edges:
            assert index[edge.source] < index[edge.target]

    def test_edges_to_unknown_nodes_are_ignored(self):
        assert levels(_nodes("a"), [_edge("a", "ghost")]) == [["a"]]


class TestCycles:
    def test_two_node_cycle(self):
        with pytest.raises(CycleError) as exc_info:
            levels(_nodes("a", "b"), [_edge("a", "b"), _edge("b", "a")])

        path = exc_info.value.path
        assert path[0] == path[-1]
        assert set(path) == {"a", "b"}
        assert "Circular dependency:" in str(exc_info.value)

    def test_three_node_cycle_message(self):
        edges = [_edge("a", "b"), _edge("b", "c"), _edge("c", "a")]
        with pytest.raises(CycleError) as exc_info:
            levels(_nodes("a", "b", "c"), edges)

        assert exc_info.value.path == ["a", "b", "c", "a"]
        assert str(exc_info.value) == "Circular dependency: a -> b -> c -> a"

    def test_self_loop(self):
        with pytest.raises(CycleError) as exc_info:
            levels(_nodes("a"), [_edge("a", "a")])
        assert exc_info.value.path == ["a", "a"]

    def test_cycle_behind_acyclic_prefix(self):
        edges = [_edge("start", "b"), _edge("b", "c"), _edge("c", "b", target_port="back")]
        with pytest.raises(CycleError) as exc_info:
            levels(_nodes("start", "b", "c"), edges)
        assert set(exc_info.value.path) == {"b", "c"}

    def test_nodes_downstream_of_a_cycle_are_not_in_the_path(self):
        edges = [_edge("a", "b"), _edge("b", "a"), _edge("b", "tail", target_port="x")]
        with pytest.raises(CycleError) as exc_info:
            levels(_nodes("tail", "a", "b"), edges)
        assert "tail" not in exc_info.value.path

    def test_find_cycle_path_without_stuck_nodes(self):
        assert find_cycle_path([], {}) == []


class TestNeighbours:
    def test_dependencies_and_dependents(self):
        edges = [_edge("a", "c"), _edge("b", "c", target_port="y"), _edge("c", "d")]
        assert dependencies("c", edges) == ["a", "b"]
        assert dependents("c", edges) == ["d"]
        assert dependencies("a", edges) == []

    def test_descendants_are_transitive(self):
        edges = [_edge("a", "b"), _edge("b", "c"), _edge("x", "y")]
        assert descendants("a", edges) == {"b", "c"}
        assert descendants("c", edges) == set()
