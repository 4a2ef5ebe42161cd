"""Tests for the StoryMap FastAPI application."""

from __future__ import annotations

from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient

from storymap.api import StoryMapSettings, create_app
from storymap.delivery import InMemorySceneContent
from storymap.graph_store import InMemoryGraphStore
from storymap.registry import ServiceRegistry, build_registry
from storymap.testing_toolkit import ManualScheduler


@pytest.fixture
def registry(manual_scheduler: ManualScheduler) -> Iterator[ServiceRegistry]:
    services = build_registry(
        StoryMapSettings(),
        store=InMemoryGraphStore(),
        scene_content=InMemorySceneContent(
            {"scene-intro": {"title": "Intro", "text": "The road splits in two."}}
        ),
        scheduler=manual_scheduler,
    )
    yield services
    services.close()


@pytest.fixture
def client(registry: ServiceRegistry) -> TestClient:
    return TestClient(create_app(registry))


def _create(
    client: TestClient, episode_id: str, story_map: dict[str, Any], novel_id: str = "novel-1"
) -> dict[str, Any]:
    response = client.post(
        f"/api/episodes/{episode_id}/storymap",
        json={"novel_id": novel_id, "story_map": story_map},
    )
    assert response.status_code == 201, response.text
    return response.json()


def _start_session(client: TestClient, episode_id: str, **body: Any) -> dict[str, Any]:
    response = client.post(f"/api/episodes/{episode_id}/sessions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def _prompt_token(response) -> int:
    return response.json()["session"]["state"]["promptToken"]


def test_create_and_fetch_story_map(client: TestClient, left_right_payload) -> None:
    created = _create(client, "ep-1", left_right_payload)

    assert created["version"] == 1
    assert created["is_active"] is True
    assert created["novel_id"] == "novel-1"

    fetched = client.get("/api/episodes/ep-1/storymap")
    assert fetched.status_code == 200
    assert fetched.json()["story_map"]["startNodeId"] == "start"
    assert [node["nodeId"] for node in fetched.json()["story_map"]["nodes"]] == [
        "start",
        "intro",
        "fork",
        "left-end",
        "right-end",
    ]


def test_create_without_story_map_uses_a_single_start_node(client: TestClient) -> None:
    response = client.post("/api/episodes/ep-1/storymap", json={"novel_id": "novel-1"})

    assert response.status_code == 201
    assert [node["kind"] for node in response.json()["story_map"]["nodes"]] == ["start"]


def test_creating_twice_conflicts(client: TestClient, left_right_payload) -> None:
    _create(client, "ep-1", left_right_payload)

    response = client.post(
        "/api/episodes/ep-1/storymap",
        json={"novel_id": "novel-1", "story_map": left_right_payload},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["expected_version"] == 0


def test_invalid_graphs_are_rejected_with_issues(client: TestClient) -> None:
    response = client.post(
        "/api/episodes/ep-1/storymap",
        json={
            "novel_id": "novel-1",
            "story_map": {"nodes": [{"nodeId": "a", "kind": "ending"}]},
        },
    )

    assert response.status_code == 422
    issues = response.json()["detail"]["issues"]
    assert [issue["code"] for issue in issues] == ["missing_start_node"]


def test_malformed_graph_payloads_are_bad_requests(client: TestClient) -> None:
    response = client.post(
        "/api/episodes/ep-1/storymap",
        json={"novel_id": "novel-1", "story_map": {"nodes": "nope"}},
    )

    assert response.status_code == 400


def test_commit_uses_optimistic_versions(
    client: TestClient, left_right_payload, gold_payload
) -> None:
    _create(client, "ep-1", left_right_payload)

    committed = client.put(
        "/api/episodes/ep-1/storymap",
        json={"expected_version": 1, "story_map": gold_payload},
        headers={"X-Command-Id": "cmd-1"},
    )
    assert committed.status_code == 200
    body = committed.json()
    assert body["story_map"]["version"] == 2
    assert body["previous_version"] == 1
    assert body["already_applied"] is False

    replay = client.put(
        "/api/episodes/ep-1/storymap",
        json={"expected_version": 1, "story_map": gold_payload},
        headers={"X-Command-Id": "cmd-1"},
    )
    assert replay.status_code == 200
    assert replay.json()["already_applied"] is True

    stale = client.put(
        "/api/episodes/ep-1/storymap",
        json={"expected_version": 1, "story_map": left_right_payload},
    )
    assert stale.status_code == 409
    detail = stale.json()["detail"]
    assert detail["expected_version"] == 1
    assert detail["current_version"] == 2

    historical = client.get("/api/episodes/ep-1/storymap", params={"version": 1})
    assert historical.json()["story_map"]["nodes"][1]["nodeId"] == "intro"
    assert historical.json()["is_active"] is False


def test_patch_applies_incremental_edits(client: TestClient, left_right_payload) -> None:
    _create(client, "ep-1", left_right_payload)
    body = {
        "expected_version": 1,
        "patch": {
            "upsertVariables": [{"variableId": "gold", "type": "number"}],
            "upsertEdges": [
                {"edgeId": "e3", "sourceNodeId": "fork", "targetNodeId": "left-end"}
            ],
        },
    }

    response = client.patch(
        "/api/episodes/ep-1/storymap", json=body, headers={"X-Command-Id": "p-1"}
    )
    replay = client.patch(
        "/api/episodes/ep-1/storymap", json=body, headers={"X-Command-Id": "p-1"}
    )

    assert response.status_code == 200
    story_map = response.json()["story_map"]["story_map"]
    assert [edge["edgeId"] for edge in story_map["edges"]] == ["e1", "e2", "e3"]
    assert [variable["variableId"] for variable in story_map["storyVariables"]] == ["gold"]
    assert replay.json()["already_applied"] is True
    assert replay.json()["story_map"]["version"] == 2


def test_patch_rejects_malformed_patches(client: TestClient, left_right_payload) -> None:
    _create(client, "ep-1", left_right_payload)

    response = client.patch(
        "/api/episodes/ep-1/storymap",
        json={"expected_version": 1, "patch": {"removeNodeIds": "intro"}},
    )

    assert response.status_code == 400


def test_versions_listing(client: TestClient, left_right_payload, gold_payload) -> None:
    _create(client, "ep-1", left_right_payload)
    client.put(
        "/api/episodes/ep-1/storymap",
        json={"expected_version": 1, "story_map": gold_payload},
    )

    response = client.get("/api/episodes/ep-1/storymap/versions")

    body = response.json()
    assert body["active_version"] == 2
    assert [(entry["version"], entry["is_active"]) for entry in body["versions"]] == [
        (1, False),
        (2, True),
    ]
    assert body["versions"][0]["node_count"] == 5


def test_unknown_episode_returns_404(client: TestClient) -> None:
    assert client.get("/api/episodes/missing/storymap").status_code == 404
    assert client.get("/api/episodes/missing/storymap/versions").status_code == 404
    assert client.post("/api/episodes/missing/sessions", json={}).status_code == 404


def test_delete_novel_soft_deletes_story_maps(
    client: TestClient, left_right_payload
) -> None:
    _create(client, "ep-1", left_right_payload)
    _create(client, "ep-2", left_right_payload)
    _create(client, "ep-3", left_right_payload, novel_id="novel-2")

    response = client.delete("/api/novels/novel-1")

    assert response.json() == {"novel_id": "novel-1", "deleted_story_maps": 2}
    assert client.get("/api/episodes/ep-1/storymap").status_code == 404
    assert client.get("/api/episodes/ep-3/storymap").status_code == 200
    history = client.get("/api/episodes/ep-1/storymap/versions").json()
    assert history["active_version"] is None


def test_autolayout_positions_nodes(client: TestClient) -> None:
    response = client.post(
        "/api/storymap/autolayout",
        json={
            "nodes": [{"id": "a"}, {"nodeId": "b"}, {"node_id": "c"}],
            "edges": [
                {"edgeId": "ab", "sourceNodeId": "a", "targetNodeId": "b"},
                {"edgeId": "ac", "sourceNodeId": "a", "targetNodeId": "c"},
            ],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["algorithm_used"] == "dagre"
    assert body["layers"] == [["a"], ["b", "c"]]
    assert body["nodes"] == [
        {"node_id": "a", "x": 0.0, "y": 0.0},
        {"node_id": "b", "x": 320.0, "y": 0.0},
        {"node_id": "c", "x": 320.0, "y": 200.0},
    ]


def test_autolayout_rejects_bad_requests(client: TestClient) -> None:
    missing_id = client.post("/api/storymap/autolayout", json={"nodes": [{"x": 1}]})
    bad_algorithm = client.post(
        "/api/storymap/autolayout",
        json={"nodes": [{"id": "a"}], "algorithm": "force-directed"},
    )

    assert missing_id.status_code == 400
    assert bad_algorithm.status_code == 400


def test_validate_returns_lint_report(client: TestClient, left_right_payload) -> None:
    valid = client.post("/api/storymap/validate", json={"story_map": left_right_payload})
    invalid = client.post(
        "/api/storymap/validate",
        json={"story_map": {"nodes": [{"nodeId": "a", "kind": "scene"}]}},
    )

    assert valid.json()["isValid"] is True
    assert valid.json()["statistics"]["totalNodes"] == 5
    assert invalid.json()["isValid"] is False
    assert invalid.json()["errors"][0]["code"] == "missing_start_node"


def test_delivery_bundle(client: TestClient, left_right_payload) -> None:
    _create(client, "ep-1", left_right_payload)

    response = client.get("/api/episodes/ep-1/delivery", params={"node_id": "intro"})

    assert response.status_code == 200
    body = response.json()
    assert body["scene"]["title"] == "Intro"
    assert [choice["choiceId"] for choice in body["choices"]] == ["go-left", "go-right"]
    assert client.get(
        "/api/episodes/ep-1/delivery", params={"node_id": "nowhere"}
    ).status_code == 404
    assert client.get(
        "/api/episodes/ep-1/delivery", params={"session_id": "ghost"}
    ).status_code == 404


def test_reading_session_lifecycle(client: TestClient, left_right_payload) -> None:
    _create(client, "ep-1", left_right_payload)
    created = _start_session(client, "ep-1")
    session_id = created["session"]["sessionId"]
    assert created["session"]["state"] == {"kind": "at_scene", "nodeId": "start"}
    assert created["session"]["graphVersion"] == 1

    client.post(f"/api/sessions/{session_id}/proceed")
    awaiting = client.post(f"/api/sessions/{session_id}/proceed").json()
    assert awaiting["session"]["state"]["kind"] == "awaiting_choice"
    assert [choice["choice_id"] for choice in awaiting["choices"]] == ["go-left", "go-right"]
    token = awaiting["session"]["state"]["promptToken"]

    stale = client.post(
        f"/api/sessions/{session_id}/choices",
        json={"choice_id": "go-left", "prompt_token": token + 1},
    )
    assert stale.json()["applied"] is False
    assert stale.json()["reason"] == "stale_prompt"

    chosen = client.post(
        f"/api/sessions/{session_id}/choices",
        json={"choice_id": "go-right", "prompt_token": token},
    )
    body = chosen.json()
    assert body["applied"] is True
    assert body["session"]["session"]["status"] == "completed"
    assert body["session"]["session"]["state"]["nodeId"] == "right-end"

    transcript = client.get(f"/api/sessions/{session_id}/transcript").json()
    assert [entry["action"] for entry in transcript["entries"]] == [
        "begin",
        "proceed",
        "proceed",
        "select",
    ]

    assert client.delete(f"/api/sessions/{session_id}").status_code == 204
    assert client.get(f"/api/sessions/{session_id}").status_code == 404


def test_unknown_choice_is_a_conflict(client: TestClient, left_right_payload) -> None:
    _create(client, "ep-1", left_right_payload)
    session_id = _start_session(client, "ep-1")["session"]["sessionId"]
    client.post(f"/api/sessions/{session_id}/proceed")
    token = _prompt_token(client.post(f"/api/sessions/{session_id}/proceed"))

    response = client.post(
        f"/api/sessions/{session_id}/choices",
        json={"choice_id": "fly", "prompt_token": token},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "invalid_state"


def test_timed_choice_expires_on_the_server(
    client: TestClient, manual_scheduler: ManualScheduler, timed_payload
) -> None:
    _create(client, "ep-1", timed_payload)
    session_id = _start_session(client, "ep-1")["session"]["sessionId"]
    prompt = client.post(f"/api/sessions/{session_id}/proceed").json()
    token = prompt["session"]["state"]["promptToken"]
    assert prompt["session"]["state"]["deadlineSeconds"] == 5

    assert manual_scheduler.advance(5) == 1

    state = client.get(f"/api/sessions/{session_id}").json()["session"]["state"]
    assert state["nodeId"] == "safe-end"
    late = client.post(
        f"/api/sessions/{session_id}/choices",
        json={"choice_id": "bold", "prompt_token": token},
    )
    assert late.json()["applied"] is False
    assert late.json()["reason"] == "session_closed"


def test_expire_endpoint_applies_default(client: TestClient, timed_payload) -> None:
    _create(client, "ep-1", timed_payload)
    session_id = _start_session(client, "ep-1")["session"]["sessionId"]
    client.post(f"/api/sessions/{session_id}/proceed")

    response = client.post(f"/api/sessions/{session_id}/expire", json={})

    assert response.json()["applied"] is True
    assert response.json()["session"]["session"]["state"]["nodeId"] == "safe-end"


def test_session_variables_override_initial_values(
    client: TestClient, gold_payload
) -> None:
    _create(client, "ep-1", gold_payload)
    session = _start_session(client, "ep-1", variables={"gold": 15})
    session_id = session["session"]["sessionId"]
    assert session["session"]["variables"] == {"gold": 15}

    token = _prompt_token(client.post(f"/api/sessions/{session_id}/proceed"))
    chosen = client.post(
        f"/api/sessions/{session_id}/choices",
        json={"choice_id": "rest", "prompt_token": token},
    )

    assert chosen.json()["session"]["session"]["state"]["nodeId"] == "rich"


def test_mutation_failures_pause_the_session(client: TestClient) -> None:
    story_map = {
        "nodes": [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "pick"},
            {
                "nodeId": "pick",
                "kind": "choice",
                "choices": [
                    {
                        "choiceId": "spend",
                        "text": "Spend",
                        "targetNodeId": "end",
                        "actions": [
                            {"variableId": "coins", "operation": "subtract", "value": 1}
                        ],
                    }
                ],
            },
            {"nodeId": "end", "kind": "ending"},
        ]
    }
    _create(client, "ep-1", story_map)
    session_id = _start_session(client, "ep-1")["session"]["sessionId"]
    token = _prompt_token(client.post(f"/api/sessions/{session_id}/proceed"))

    response = client.post(
        f"/api/sessions/{session_id}/choices",
        json={"choice_id": "spend", "prompt_token": token},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "mutation_error"
    snapshot = client.get(f"/api/sessions/{session_id}").json()["session"]
    assert snapshot["status"] == "paused"
    assert snapshot["state"]["kind"] == "awaiting_choice"


def test_story_errors_fail_the_session(client: TestClient) -> None:
    story_map = {
        "nodes": [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "pick"},
            {
                "nodeId": "pick",
                "kind": "choice",
                "choices": [
                    {
                        "choiceId": "locked",
                        "text": "Locked door",
                        "targetNodeId": "end",
                        "condition": "exists key",
                    }
                ],
            },
            {"nodeId": "end", "kind": "ending"},
        ]
    }
    _create(client, "ep-1", story_map)
    session_id = _start_session(client, "ep-1")["session"]["sessionId"]

    response = client.post(f"/api/sessions/{session_id}/proceed")

    assert response.status_code == 200
    snapshot = response.json()["session"]
    assert snapshot["status"] == "failed"
    assert snapshot["error"]["code"] == "story_error"


def test_analytics_from_sessions_and_ingested_events(
    client: TestClient, left_right_payload
) -> None:
    _create(client, "ep-1", left_right_payload)
    session_id = _start_session(client, "ep-1")["session"]["sessionId"]
    client.post(f"/api/sessions/{session_id}/proceed")
    token = _prompt_token(client.post(f"/api/sessions/{session_id}/proceed"))
    client.post(
        f"/api/sessions/{session_id}/choices",
        json={"choice_id": "go-left", "prompt_token": token},
    )

    ingested = client.post(
        "/api/analytics/events",
        json={
            "events": [
                {"sessionId": "external", "nodeId": "start", "episodeId": "ep-1"},
                {"sessionId": "external", "nodeId": "intro", "episodeId": "ep-1"},
            ]
        },
    )
    assert ingested.status_code == 202
    assert ingested.json() == {"accepted": 2, "dropped": 0}

    report = client.get("/api/episodes/ep-1/analytics").json()

    assert report["episodeId"] == "ep-1"
    assert report["totalSessions"] == 2
    assert report["completedSessions"] == 1
    reach = {entry["nodeId"]: entry["reachRate"] for entry in report["nodes"]}
    assert reach["start"] == 1.0
    assert reach["intro"] == 1.0
    assert reach["left-end"] == 0.5
    selection = {entry["choiceId"]: entry["selectionRate"] for entry in report["choices"]}
    assert selection["go-left"] == 1.0


def test_analytics_rejects_empty_or_malformed_batches(client: TestClient) -> None:
    assert client.post("/api/analytics/events", json={"events": []}).status_code == 422
    assert (
        client.post(
            "/api/analytics/events", json={"events": [{"nodeId": "start"}]}
        ).status_code
        == 400
    )


def test_choices_require_a_prompt_token(client: TestClient, left_right_payload) -> None:
    _create(client, "ep-1", left_right_payload)
    session_id = _start_session(client, "ep-1")["session"]["sessionId"]
    client.post(f"/api/sessions/{session_id}/proceed")
    client.post(f"/api/sessions/{session_id}/proceed")

    response = client.post(
        f"/api/sessions/{session_id}/choices", json={"choice_id": "go-left"}
    )

    assert response.status_code == 422
    state = client.get(f"/api/sessions/{session_id}").json()["session"]["state"]
    assert state["kind"] == "awaiting_choice"


def test_analytics_events_require_an_episode(
    client: TestClient, left_right_payload
) -> None:
    _create(client, "ep-1", left_right_payload)

    response = client.post(
        "/api/analytics/events",
        json={
            "events": [
                {"sessionId": "external", "nodeId": "start", "episodeId": "ep-1"},
                {"sessionId": "external", "nodeId": "intro"},
            ]
        },
    )

    assert response.status_code == 400
    assert "episodeId" in response.json()["detail"]
    assert client.get("/api/episodes/ep-1/analytics").json()["totalSessions"] == 0


def test_registry_is_exposed_on_app_state(registry: ServiceRegistry) -> None:
    app = create_app(registry)

    assert app.state.registry is registry
