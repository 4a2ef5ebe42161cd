"""Assemble delivery bundles joining graph nodes to external scene content."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol, Sequence

from .conditions import evaluate
from .errors import EvaluationError
from .graph import (
    Choice,
    ChoiceNode,
    Node,
    SceneNode,
    StartNode,
    StoryGraph,
    graph_to_payload,
)

logger = logging.getLogger(__name__)


class SceneContentProvider(Protocol):
    """Source of scene content owned outside the StoryMap."""

    def get_scene(self, scene_id: str) -> Mapping[str, Any]:
        """Return the content of ``scene_id``.

        Raises:
            KeyError: If the scene does not exist.
        """


class InMemorySceneContent:
    """Scene content kept in a plain mapping keyed by scene id."""

    def __init__(self, scenes: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._scenes: Dict[str, Dict[str, Any]] = {
            scene_id: dict(content) for scene_id, content in (scenes or {}).items()
        }

    def get_scene(self, scene_id: str) -> Mapping[str, Any]:
        try:
            return dict(self._scenes[scene_id])
        except KeyError as exc:
            raise KeyError(f"Scene '{scene_id}' does not exist") from exc

    def put_scene(self, scene_id: str, content: Mapping[str, Any]) -> None:
        self._scenes[scene_id] = dict(content)

    def scene_ids(self) -> list[str]:
        return sorted(self._scenes)


def load_scene_content_from_file(path: str | Path) -> InMemorySceneContent:
    """Load scene content from JSON.

    The file holds either an object keyed by scene id or a list of scene
    objects that each carry a ``sceneId``.
    """

    with Path(path).open("r", encoding="utf-8") as handle:
        raw = json.load(handle)

    scenes: Dict[str, Mapping[str, Any]] = {}
    if isinstance(raw, Mapping):
        for scene_id, content in raw.items():
            if not isinstance(content, Mapping):
                raise ValueError(f"Scene '{scene_id}' must be an object definition.")
            scenes[str(scene_id)] = {"sceneId": str(scene_id), **content}
    elif isinstance(raw, Sequence) and not isinstance(raw, str):
        for index, content in enumerate(raw):
            if not isinstance(content, Mapping):
                raise ValueError(f"Scene #{index} must be an object definition.")
            scene_id = content.get("sceneId")
            if not isinstance(scene_id, str) or not scene_id.strip():
                raise ValueError(f"Scene #{index} is missing 'sceneId'.")
            scenes[scene_id.strip()] = dict(content)
    else:
        raise ValueError("Scene content files must contain an object or a list.")
    return InMemorySceneContent(scenes)


@dataclass(frozen=True)
class DeliveryBundle:
    """Everything the reader UI needs to render one node."""

    node_id: str
    scene: Mapping[str, Any] | None
    choices: tuple[Mapping[str, Any], ...]
    story_map: Mapping[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "scene": dict(self.scene) if self.scene is not None else None,
            "choices": [dict(choice) for choice in self.choices],
            "storyMap": dict(self.story_map),
        }


def _choice_payload(owner: ChoiceNode, choice: Choice) -> Dict[str, Any]:
    return {
        "choiceId": choice.choice_id,
        "nodeId": owner.node_id,
        "text": choice.text,
        "targetNodeId": choice.target_node_id,
        "timeLimitSeconds": (
            choice.time_limit_seconds
            if choice.time_limit_seconds is not None
            else owner.time_limit_seconds
        ),
    }


def _edge_taken(condition: Any, bag: Mapping[str, Any] | None) -> bool:
    if bag is None:
        return True
    try:
        return evaluate(condition, bag)
    except EvaluationError:
        return False


def _following_choice_node(
    graph: StoryGraph, node: Node, bag: Mapping[str, Any] | None = None
) -> ChoiceNode | None:
    """Return the choice node a reader reaches next from ``node``.

    With a ``bag`` only the first edge whose condition holds is followed, the
    same way playback leaves a scene; without one the first outgoing edge
    into a choice node wins.
    """

    if isinstance(node, ChoiceNode):
        return node
    if not isinstance(node, (StartNode, SceneNode)):
        return None
    candidates = []
    if node.default_next_node_id is not None:
        candidates.append(node.default_next_node_id)
    else:
        taken = [
            edge.target_node_id
            for edge in graph.outgoing_edges(node.node_id)
            if _edge_taken(edge.condition, bag)
        ]
        candidates.extend(taken if bag is None else taken[:1])
    for candidate in candidates:
        if graph.has_node(candidate):
            target = graph.get_node(candidate)
            if isinstance(target, ChoiceNode):
                return target
    return None


def _is_visible(choice: Choice, bag: Mapping[str, Any] | None) -> bool:
    if bag is None:
        return True
    try:
        return evaluate(choice.condition, bag)
    except EvaluationError as exc:
        logger.warning("Hiding choice %s from delivery: %s", choice.choice_id, exc)
        return False


def assemble_delivery(
    graph: StoryGraph,
    node_id: str | None,
    provider: SceneContentProvider,
    *,
    bag: Mapping[str, Any] | None = None,
) -> DeliveryBundle:
    """Return the delivery bundle for ``node_id`` (the start node when ``None``).

    Choices come from the node itself when it is a choice node, otherwise from
    the choice node that directly follows it. With a ``bag`` the options hidden
    by their display condition are left out.

    Raises:
        KeyError: If the node does not exist.
    """

    resolved = node_id or graph.start_node_id
    if resolved is None:
        raise KeyError("The StoryMap has no unique start node.")
    node = graph.get_node(resolved)

    scene: Mapping[str, Any] | None = None
    if isinstance(node, SceneNode) and node.scene_id:
        try:
            scene = provider.get_scene(node.scene_id)
        except KeyError:
            logger.warning(
                "Scene %s referenced by node %s has no content", node.scene_id, node.node_id
            )

    owner = _following_choice_node(graph, node, bag)
    choices: tuple[Mapping[str, Any], ...] = ()
    if owner is not None:
        choices = tuple(
            _choice_payload(owner, choice)
            for choice in owner.choices
            if _is_visible(choice, bag)
        )

    return DeliveryBundle(
        node_id=resolved,
        scene=scene,
        choices=choices,
        story_map=graph_to_payload(graph),
    )


__all__ = [
    "SceneContentProvider",
    "InMemorySceneContent",
    "load_scene_content_from_file",
    "DeliveryBundle",
    "assemble_delivery",
]
