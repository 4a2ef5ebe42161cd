"""Test configuration for the StoryMap project."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from typing import Any, Callable

import pytest

from storymap.graph import StoryGraph, load_graph_from_mapping
from storymap.testing_toolkit import ManualScheduler


def _left_right_payload() -> dict[str, Any]:
    return {
        "nodes": [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "intro"},
            {
                "nodeId": "intro",
                "kind": "scene",
                "title": "Intro",
                "sceneId": "scene-intro",
                "defaultNextNodeId": "fork",
            },
            {
                "nodeId": "fork",
                "kind": "choice",
                "title": "Fork in the road",
                "choices": [
                    {"choiceId": "go-left", "text": "Go left", "targetNodeId": "left-end"},
                    {
                        "choiceId": "go-right",
                        "text": "Go right",
                        "targetNodeId": "right-end",
                    },
                ],
            },
            {"nodeId": "left-end", "kind": "ending", "endingTitle": "Left", "outcome": "left"},
            {
                "nodeId": "right-end",
                "kind": "ending",
                "endingTitle": "Right",
                "outcome": "right",
            },
        ],
        "edges": [
            {"edgeId": "e1", "sourceNodeId": "start", "targetNodeId": "intro"},
            {"edgeId": "e2", "sourceNodeId": "intro", "targetNodeId": "fork"},
        ],
        "storyVariables": [],
    }


def _gold_payload() -> dict[str, Any]:
    return {
        "nodes": [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "pick"},
            {
                "nodeId": "pick",
                "kind": "choice",
                "choices": [
                    {
                        "choiceId": "dig",
                        "text": "Dig for gold",
                        "targetNodeId": "vault",
                        "actions": [
                            {"variableId": "gold", "operation": "add", "value": 12}
                        ],
                    },
                    {"choiceId": "rest", "text": "Rest", "targetNodeId": "vault"},
                ],
            },
            {"nodeId": "vault", "kind": "branch"},
            {"nodeId": "rich", "kind": "ending", "outcome": "rich"},
            {"nodeId": "poor", "kind": "ending", "outcome": "poor"},
        ],
        "edges": [
            {
                "edgeId": "to-rich",
                "sourceNodeId": "vault",
                "targetNodeId": "rich",
                "condition": "gold >= 10",
            },
            {"edgeId": "to-poor", "sourceNodeId": "vault", "targetNodeId": "poor"},
        ],
        "storyVariables": [
            {"variableId": "gold", "name": "Gold", "type": "number", "initialValue": 0}
        ],
    }


def _timed_payload() -> dict[str, Any]:
    return {
        "nodes": [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "timed"},
            {
                "nodeId": "timed",
                "kind": "choice",
                "timeLimitSeconds": 5,
                "timeoutChoiceId": "safe",
                "choices": [
                    {"choiceId": "bold", "text": "Leap", "targetNodeId": "bold-end"},
                    {"choiceId": "safe", "text": "Hold back", "targetNodeId": "safe-end"},
                ],
            },
            {"nodeId": "bold-end", "kind": "ending"},
            {"nodeId": "safe-end", "kind": "ending"},
        ],
        "edges": [],
        "storyVariables": [],
    }


@pytest.fixture()
def left_right_payload() -> dict[str, Any]:
    """Start, one scene, a two-way choice and two endings."""

    return _left_right_payload()


@pytest.fixture()
def left_right_graph() -> StoryGraph:
    return load_graph_from_mapping(_left_right_payload())


@pytest.fixture()
def gold_payload() -> dict[str, Any]:
    return _gold_payload()


@pytest.fixture()
def gold_graph() -> StoryGraph:
    """A branch routing to ``rich`` when ``gold >= 10`` and to ``poor`` otherwise."""

    return load_graph_from_mapping(_gold_payload())


@pytest.fixture()
def timed_payload() -> dict[str, Any]:
    return _timed_payload()


@pytest.fixture()
def timed_graph() -> StoryGraph:
    """A five second choice defaulting to ``safe`` when the timer expires."""

    return load_graph_from_mapping(_timed_payload())


@pytest.fixture()
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def graph_factory() -> Callable[..., StoryGraph]:
    """Build graphs from compact node/edge definitions."""

    def _factory(
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]] | None = None,
        variables: list[dict[str, Any]] | None = None,
    ) -> StoryGraph:
        return load_graph_from_mapping(
            {"nodes": nodes, "edges": edges or [], "storyVariables": variables or []}
        )

    return _factory
