"""Tests for the deterministic layered auto-layout."""

from __future__ import annotations

import pytest

from storymap.graph import Edge, Position
from storymap.layout import auto_layout, compute_layers, layout_graph


def _edges(*pairs: tuple[str, str]) -> list[Edge]:
    return [
        Edge(f"{source}-{target}", source, target) for source, target in pairs
    ]


def test_layers_follow_edge_depth() -> None:
    layers = compute_layers(
        ["start", "a", "b", "end"],
        _edges(("start", "a"), ("start", "b"), ("a", "end"), ("b", "end")),
    )

    assert layers == [["start"], ["a", "b"], ["end"]]


def test_layers_keep_input_order_within_a_layer() -> None:
    layers = compute_layers(
        ["root", "z", "y", "x"], _edges(("root", "x"), ("root", "y"), ("root", "z"))
    )

    assert layers == [["root"], ["z", "y", "x"]]


def test_cyclic_nodes_land_in_a_trailing_layer() -> None:
    layers = compute_layers(
        ["a", "b", "c"], _edges(("a", "b"), ("b", "c"), ("c", "b"))
    )

    assert layers == [["a"], ["b", "c"]]


def test_auto_layout_assigns_one_position_per_node() -> None:
    result = auto_layout(
        ["a", "b", "c"],
        _edges(("a", "b"), ("b", "c"), ("c", "b")),
        algorithm="dagre",
        column_gap=320,
        row_gap=200,
    )

    assert result.algorithm_used == "dagre"
    assert result.positions == {
        "a": Position(0, 0),
        "b": Position(320, 0),
        "c": Position(320, 200),
    }


def test_auto_layout_is_deterministic() -> None:
    edges = _edges(("a", "b"), ("a", "c"), ("c", "d"))

    first = auto_layout(["a", "b", "c", "d"], edges)
    second = auto_layout(["a", "b", "c", "d"], edges)

    assert first == second


def test_edges_with_unknown_endpoints_are_ignored() -> None:
    result = auto_layout(["a"], _edges(("a", "ghost"), ("ghost", "a")))

    assert result.positions == {"a": Position(0, 0)}


def test_unknown_algorithm_is_rejected() -> None:
    with pytest.raises(ValueError):
        auto_layout(["a"], [], algorithm="force")


def test_layout_graph_repositions_every_node(left_right_graph) -> None:
    graph = layout_graph(left_right_graph, column_gap=100, row_gap=50)

    positions = {node.node_id: node.position for node in graph.nodes}
    assert positions["start"] == Position(0, 0)
    assert positions["intro"] == Position(100, 0)
    assert positions["fork"] == Position(200, 0)
    assert graph.edges == left_right_graph.edges
