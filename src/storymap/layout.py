"""Deterministic layered auto-layout for StoryMap editors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .graph import Edge, Node, Position, StoryGraph, reposition

logger = logging.getLogger(__name__)

DEFAULT_COLUMN_GAP = 320
DEFAULT_ROW_GAP = 200

LAYERED_ALGORITHM = "layered"
# Names sent by the editor canvas; all are served by the layered algorithm.
SUPPORTED_ALGORITHMS = frozenset({LAYERED_ALGORITHM, "dagre", "elk", "custom"})


@dataclass(frozen=True)
class LayoutResult:
    """Positions computed for a set of nodes."""

    algorithm_used: str
    layers: tuple[tuple[str, ...], ...]
    positions: Mapping[str, Position]

    def position_of(self, node_id: str) -> Position:
        return self.positions[node_id]


def compute_layers(
    node_ids: Sequence[str], edges: Iterable[Edge]
) -> list[list[str]]:
    """Group ``node_ids`` into layers using Kahn's algorithm.

    Layer 0 holds every node without incoming edges. Removing a layer's
    outgoing edges produces the next layer from nodes whose in-degree reached
    zero. Nodes never released this way sit on a cycle (or behind one) and are
    collected into a single trailing layer, which guarantees termination.
    Within a layer nodes keep their input order. Edges whose endpoints are
    unknown are ignored.
    """

    order = {node_id: index for index, node_id in enumerate(dict.fromkeys(node_ids))}
    in_degree = {node_id: 0 for node_id in order}
    adjacency: dict[str, list[str]] = {node_id: [] for node_id in order}

    for edge in edges:
        if edge.source_node_id not in order or edge.target_node_id not in order:
            continue
        adjacency[edge.source_node_id].append(edge.target_node_id)
        in_degree[edge.target_node_id] += 1

    layers: list[list[str]] = []
    current = [node_id for node_id in order if in_degree[node_id] == 0]
    placed: set[str] = set()

    while current:
        layers.append(current)
        placed.update(current)
        released: set[str] = set()
        for node_id in current:
            for target in adjacency[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0 and target not in placed:
                    released.add(target)
        current = sorted(released, key=order.__getitem__)

    remaining = [node_id for node_id in order if node_id not in placed]
    if remaining:
        layers.append(remaining)
    return layers


def auto_layout(
    nodes: Sequence[Node] | Sequence[str],
    edges: Iterable[Edge],
    *,
    algorithm: str = LAYERED_ALGORITHM,
    column_gap: float = DEFAULT_COLUMN_GAP,
    row_gap: float = DEFAULT_ROW_GAP,
) -> LayoutResult:
    """Assign exactly one position to every node.

    The node at row ``r`` of layer ``c`` is placed at
    ``(c * column_gap, r * row_gap)``.

    Raises:
        ValueError: If ``algorithm`` is not a supported layout name.
    """

    normalised = (algorithm or LAYERED_ALGORITHM).strip().lower()
    if normalised not in SUPPORTED_ALGORITHMS:
        raise ValueError(
            f"Unsupported layout algorithm '{algorithm}'. "
            f"Choose one of: {', '.join(sorted(SUPPORTED_ALGORITHMS))}."
        )

    node_ids = [node if isinstance(node, str) else node.node_id for node in nodes]
    layers = compute_layers(node_ids, edges)

    positions: dict[str, Position] = {}
    for column, layer in enumerate(layers):
        for row, node_id in enumerate(layer):
            positions[node_id] = Position(x=column * column_gap, y=row * row_gap)

    logger.debug(
        "Laid out %d nodes in %d layers using %s", len(positions), len(layers), normalised
    )
    return LayoutResult(
        algorithm_used=normalised,
        layers=tuple(tuple(layer) for layer in layers),
        positions=positions,
    )


def layout_graph(
    graph: StoryGraph,
    *,
    algorithm: str = LAYERED_ALGORITHM,
    column_gap: float = DEFAULT_COLUMN_GAP,
    row_gap: float = DEFAULT_ROW_GAP,
) -> StoryGraph:
    """Return ``graph`` with every node repositioned by :func:`auto_layout`."""

    result = auto_layout(
        graph.nodes,
        graph.edges,
        algorithm=algorithm,
        column_gap=column_gap,
        row_gap=row_gap,
    )
    return graph.with_nodes(
        reposition(node, result.positions[node.node_id]) for node in graph.nodes
    )


__all__ = [
    "DEFAULT_COLUMN_GAP",
    "DEFAULT_ROW_GAP",
    "SUPPORTED_ALGORITHMS",
    "LayoutResult",
    "compute_layers",
    "auto_layout",
    "layout_graph",
]
