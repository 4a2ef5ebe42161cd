import json
from pathlib import Path

import pytest

from storymap.delivery import (
    InMemorySceneContent,
    assemble_delivery,
    load_scene_content_from_file,
)


@pytest.fixture
def scenes() -> InMemorySceneContent:
    return InMemorySceneContent(
        {"scene-intro": {"title": "Intro", "text": "The road splits in two."}}
    )


def test_scene_node_bundles_content_and_following_choices(
    left_right_graph, scenes
) -> None:
    bundle = assemble_delivery(left_right_graph, "intro", scenes)

    assert bundle.node_id == "intro"
    assert bundle.scene == {"title": "Intro", "text": "The road splits in two."}
    assert [choice["choiceId"] for choice in bundle.choices] == ["go-left", "go-right"]
    assert bundle.choices[0] == {
        "choiceId": "go-left",
        "nodeId": "fork",
        "text": "Go left",
        "targetNodeId": "left-end",
        "timeLimitSeconds": None,
    }
    assert bundle.story_map["startNodeId"] == "start"


def test_default_node_is_the_start(left_right_graph, scenes) -> None:
    bundle = assemble_delivery(left_right_graph, None, scenes)

    assert bundle.node_id == "start"
    assert bundle.scene is None
    assert bundle.choices == ()


def test_choice_nodes_offer_their_own_options(timed_graph, scenes) -> None:
    bundle = assemble_delivery(timed_graph, "timed", scenes)

    assert [choice["choiceId"] for choice in bundle.choices] == ["bold", "safe"]
    assert {choice["timeLimitSeconds"] for choice in bundle.choices} == {5}


def test_bag_hides_choices_whose_condition_fails(graph_factory, scenes) -> None:
    graph = graph_factory(
        [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "pick"},
            {
                "nodeId": "pick",
                "kind": "choice",
                "choices": [
                    {
                        "choiceId": "bribe",
                        "text": "Bribe the guard",
                        "targetNodeId": "end",
                        "condition": "gold >= 10",
                    },
                    {"choiceId": "sneak", "text": "Sneak past", "targetNodeId": "end"},
                ],
            },
            {"nodeId": "end", "kind": "ending"},
        ]
    )

    everything = assemble_delivery(graph, "pick", scenes)
    poor = assemble_delivery(graph, "pick", scenes, bag={"gold": 2})
    unknown = assemble_delivery(graph, "pick", scenes, bag={})

    assert len(everything.choices) == 2
    assert [choice["choiceId"] for choice in poor.choices] == ["sneak"]
    assert [choice["choiceId"] for choice in unknown.choices] == ["sneak"]


def test_missing_scene_content_is_tolerated(left_right_graph) -> None:
    bundle = assemble_delivery(left_right_graph, "intro", InMemorySceneContent())

    assert bundle.scene is None
    assert len(bundle.choices) == 2


def test_unknown_node_raises_key_error(left_right_graph, scenes) -> None:
    with pytest.raises(KeyError):
        assemble_delivery(left_right_graph, "missing", scenes)


def test_bundle_payload_is_json_ready(left_right_graph, scenes) -> None:
    payload = assemble_delivery(left_right_graph, "intro", scenes).to_payload()

    encoded = json.loads(json.dumps(payload))
    assert set(encoded) == {"nodeId", "scene", "choices", "storyMap"}
    assert encoded["scene"]["title"] == "Intro"


def test_in_memory_scene_content_copies_entries() -> None:
    content = InMemorySceneContent()
    content.put_scene("s1", {"title": "One"})

    fetched = content.get_scene("s1")
    fetched["title"] = "Changed"

    assert content.get_scene("s1") == {"title": "One"}
    assert content.scene_ids() == ["s1"]
    with pytest.raises(KeyError):
        content.get_scene("s2")


def test_load_scene_content_from_mapping_and_list(tmp_path: Path) -> None:
    mapping_path = tmp_path / "mapping.json"
    mapping_path.write_text(json.dumps({"s1": {"title": "One"}}), encoding="utf-8")
    list_path = tmp_path / "list.json"
    list_path.write_text(
        json.dumps([{"sceneId": "s2", "title": "Two"}]), encoding="utf-8"
    )

    assert load_scene_content_from_file(mapping_path).get_scene("s1") == {
        "sceneId": "s1",
        "title": "One",
    }
    assert load_scene_content_from_file(list_path).get_scene("s2")["title"] == "Two"


def test_load_scene_content_rejects_malformed_files(tmp_path: Path) -> None:
    path = tmp_path / "scenes.json"

    path.write_text(json.dumps([{"title": "No id"}]), encoding="utf-8")
    with pytest.raises(ValueError):
        load_scene_content_from_file(path)

    path.write_text(json.dumps("scenes"), encoding="utf-8")
    with pytest.raises(ValueError):
        load_scene_content_from_file(path)


def test_bag_selects_the_choice_node_playback_would_reach(graph_factory, scenes) -> None:
    graph = graph_factory(
        [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "hall"},
            {"nodeId": "hall", "kind": "scene", "sceneId": "scene-intro"},
            {
                "nodeId": "vault",
                "kind": "choice",
                "choices": [
                    {"choiceId": "buy", "text": "Buy the crown", "targetNodeId": "end"}
                ],
            },
            {
                "nodeId": "alley",
                "kind": "choice",
                "choices": [
                    {"choiceId": "beg", "text": "Beg for coins", "targetNodeId": "end"}
                ],
            },
            {"nodeId": "end", "kind": "ending"},
        ],
        edges=[
            {
                "edgeId": "rich",
                "sourceNodeId": "hall",
                "targetNodeId": "vault",
                "condition": "gold >= 10",
            },
            {"edgeId": "poor", "sourceNodeId": "hall", "targetNodeId": "alley"},
        ],
        variables=[{"variableId": "gold", "type": "number", "initialValue": 0}],
    )

    rich = assemble_delivery(graph, "hall", scenes, bag={"gold": 12})
    poor = assemble_delivery(graph, "hall", scenes, bag={"gold": 2})
    unknown = assemble_delivery(graph, "hall", scenes, bag={})
    unfiltered = assemble_delivery(graph, "hall", scenes)

    assert [choice["choiceId"] for choice in rich.choices] == ["buy"]
    assert [choice["choiceId"] for choice in poor.choices] == ["beg"]
    assert [choice["choiceId"] for choice in unknown.choices] == ["beg"]
    assert [choice["choiceId"] for choice in unfiltered.choices] == ["buy"]
