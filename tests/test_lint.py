"""Tests for StoryMap linting and its command line entry point."""

from __future__ import annotations

import json
from pathlib import Path

from storymap.graph import graph_to_payload
from storymap.lint import (
    compute_statistics,
    find_cycle,
    format_lint_report,
    lint_graph,
    main,
    reachable_node_ids,
)


def _codes(issues) -> list[str]:
    return [issue.code for issue in issues]


def test_clean_graph_has_no_findings(left_right_graph) -> None:
    report = lint_graph(left_right_graph)

    assert report.is_valid
    assert report.errors == ()
    assert report.warnings == ()
    assert report.suggestions == ()
    assert "No issues detected." in format_lint_report(report)


def test_statistics_follow_the_scoring_rules(left_right_graph, gold_graph) -> None:
    left_right = compute_statistics(left_right_graph)
    assert left_right.total_nodes == 5
    assert left_right.total_edges == 2
    assert left_right.complexity_score == 5 * 2 + 5 + 2
    assert left_right.estimated_playtime_minutes == 5

    gold = compute_statistics(gold_graph)
    assert gold.complexity_score == 5 * 2 + 5 + 8 + 2 + 1 * 2


def test_playtime_rounds_half_up(graph_factory) -> None:
    graph = graph_factory(
        [
            {"nodeId": "start", "kind": "start"},
            {"nodeId": "a", "kind": "scene"},
            {"nodeId": "b", "kind": "scene"},
            {"nodeId": "c", "kind": "scene"},
            {"nodeId": "end", "kind": "ending"},
        ]
    )

    assert compute_statistics(graph).estimated_playtime_minutes == 9


def test_authoring_mistakes_are_warnings(graph_factory) -> None:
    graph = graph_factory(
        [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "a"},
            {"nodeId": "a", "kind": "scene", "sceneId": "s-a"},
            {"nodeId": "b", "kind": "scene", "sceneId": "s-b", "defaultNextNodeId": "a"},
            {"nodeId": "lost", "kind": "scene", "title": "Lost"},
        ],
        edges=[
            {
                "edgeId": "lucky",
                "sourceNodeId": "a",
                "targetNodeId": "b",
                "condition": "luck > 1",
            }
        ],
    )

    report = lint_graph(graph)
    codes = _codes(report.warnings)

    assert report.is_valid
    assert "missing_ending" in codes
    assert "unknown_condition_variable" in codes
    assert "orphaned_node" in codes
    assert "dead_end" in codes
    assert "scene_without_content" in codes
    assert "unreachable_node" in codes
    assert "cycle" in codes
    cycle = next(issue for issue in report.warnings if issue.code == "cycle")
    assert set(cycle.ids) == {"a", "b"}


def test_choice_warnings(graph_factory) -> None:
    graph = graph_factory(
        [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "one"},
            {
                "nodeId": "one",
                "kind": "choice",
                "timeLimitSeconds": 10,
                "choices": [{"choiceId": "only", "text": "Only", "targetNodeId": "empty"}],
            },
            {"nodeId": "empty", "kind": "choice", "timeLimitSeconds": 5},
        ]
    )

    codes = _codes(lint_graph(graph).warnings)

    assert "single_option_choice" in codes
    assert "choice_without_options" in codes
    assert "timed_choice_without_default" in codes


def test_structural_problems_and_unknown_mutations_are_errors(graph_factory) -> None:
    graph = graph_factory(
        [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "pick"},
            {
                "nodeId": "pick",
                "kind": "choice",
                "choices": [
                    {
                        "choiceId": "pay",
                        "text": "Pay",
                        "targetNodeId": "end",
                        "actions": [
                            {"variableId": "coins", "operation": "subtract", "value": 1}
                        ],
                    },
                    {"choiceId": "run", "text": "Run", "targetNodeId": "nowhere"},
                ],
            },
            {"nodeId": "end", "kind": "ending"},
        ]
    )

    report = lint_graph(graph)

    assert not report.is_valid
    assert _codes(report.errors) == ["missing_choice_target", "unknown_mutation_variable"]
    assert report.errors[0].category == "Connectivity"


def test_large_graphs_receive_suggestions(graph_factory) -> None:
    branches = [{"nodeId": f"b{index}", "kind": "branch"} for index in range(20)]
    complex_graph = graph_factory(
        [{"nodeId": "start", "kind": "start"}, *branches, {"nodeId": "end", "kind": "ending"}]
    )
    assert _codes(lint_graph(complex_graph).suggestions) == ["high_complexity"]

    scenes = [{"nodeId": f"s{index}", "kind": "scene"} for index in range(50)]
    large_graph = graph_factory(
        [{"nodeId": "start", "kind": "start"}, *scenes, {"nodeId": "end", "kind": "ending"}]
    )
    assert _codes(lint_graph(large_graph).suggestions) == ["many_nodes"]


def test_reachability_and_cycle_helpers(left_right_graph, graph_factory) -> None:
    assert reachable_node_ids(left_right_graph) == set(left_right_graph.node_ids)
    assert find_cycle(left_right_graph) is None

    looped = graph_factory(
        [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "x"},
            {"nodeId": "x", "kind": "scene", "defaultNextNodeId": "y"},
            {"nodeId": "y", "kind": "scene", "defaultNextNodeId": "x"},
        ]
    )
    assert find_cycle(looped) == ("x", "y")


def test_cli_exit_codes(tmp_path: Path, left_right_graph, graph_factory, capsys) -> None:
    valid_path = tmp_path / "valid.json"
    valid_path.write_text(json.dumps(graph_to_payload(left_right_graph)), encoding="utf-8")
    assert main([str(valid_path)]) == 0
    assert "Valid: yes" in capsys.readouterr().out

    invalid = graph_factory([{"nodeId": "a", "kind": "ending"}])
    invalid_path = tmp_path / "invalid.json"
    invalid_path.write_text(json.dumps(graph_to_payload(invalid)), encoding="utf-8")
    assert main([str(invalid_path), "--json"]) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["isValid"] is False
    assert payload["errors"][0]["code"] == "missing_start_node"
    assert payload["statistics"]["totalNodes"] == 1

    assert main([str(tmp_path / "missing.json")]) == 2
    assert "Could not load" in capsys.readouterr().out
