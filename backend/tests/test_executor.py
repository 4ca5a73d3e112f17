"""Tests for execution order: topological sort and dependency levels."""
import pytest

from mediagraph.engine.executor import group_by_level, topological_sort
from mediagraph.engine.graph import Edge, Graph, Node


def build_graph(node_ids, links):
    nodes = {nid: Node(id=nid, type="prompt") for nid in node_ids}
    edges = [
        Edge(id=f"e{i}", source=src, target=dst)
        for i, (src, dst) in enumerate(links)
    ]
    return Graph(nodes=nodes, edges=edges)


class TestTopologicalSort:
    def test_simple_chain(self):
        graph = build_graph(["a", "b", "c"], [("a", "b"), ("b", "c")])
        assert topological_sort(graph) == ["a", "b", "c"]

    def test_single_node(self):
        assert topological_sort(build_graph(["n1"], [])) == ["n1"]

    def test_empty_graph(self):
        assert topological_sort(Graph()) == []

    def test_cycle_raises(self):
        graph = build_graph(["a", "b"], [("a", "b"), ("b", "a")])
        with pytest.raises(RuntimeError, match="cycle"):
            topological_sort(graph)

    def test_diamond_graph(self):
        """A -> B, A -> C, B -> D, C -> D"""
        graph = build_graph(
            ["a", "b", "c", "d"],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        order = topological_sort(graph)
        assert order.index("a") < order.index("b")
        assert order.index("a") < order.index("c")
        assert order.index("b") < order.index("d")
        assert order.index("c") < order.index("d")

    def test_parallel_edges_between_same_nodes(self):
        graph = build_graph(["a", "b"], [("a", "b"), ("a", "b")])
        assert topological_sort(graph) == ["a", "b"]

    def test_dangling_edges_are_ignored(self):
        graph = build_graph(["a"], [("a", "gone"), ("gone", "a")])
        assert topological_sort(graph) == ["a"]


class TestGroupByLevel:
    def test_independent_nodes_share_level(self):
        graph = build_graph(["a", "b", "c"], [])
        assert group_by_level(graph) == [["a", "b", "c"]]

    def test_diamond_levels(self):
        graph = build_graph(
            ["a", "b", "c", "d"],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        assert group_by_level(graph) == [["a"], ["b", "c"], ["d"]]

    def test_level_is_longest_path(self):
        graph = build_graph(
            ["a", "b", "c"],
            [("a", "b"), ("b", "c"), ("a", "c")],
        )
        assert group_by_level(graph) == [["a"], ["b"], ["c"]]

    def test_every_input_in_an_earlier_level(self):
        graph = build_graph(
            ["img", "prompt", "gen", "split", "out"],
            [("img", "gen"), ("prompt", "gen"), ("img", "split"), ("gen", "out"), ("split", "out")],
        )
        levels = group_by_level(graph)
        position = {nid: i for i, level in enumerate(levels) for nid in level}
        for e in graph.edges:
            assert position[e.source] < position[e.target]

    def test_empty_graph_has_no_levels(self):
        assert group_by_level(Graph()) == []

    def test_cycle_raises(self):
        graph = build_graph(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "b")])
        with pytest.raises(RuntimeError, match="cycle"):
            group_by_level(graph)
