"""Pre-publish lint for StoryMaps.

Errors are the structural problems that also block a commit. Warnings point
at authoring mistakes that playback survives (unknown variables in conditions,
dead ends, unreachable nodes, cycles). Suggestions are advisory only.
"""

from __future__ import annotations

import argparse
import json
import math
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence

from .graph import (
    BranchNode,
    ChoiceNode,
    EndingNode,
    SceneNode,
    StartNode,
    StoryGraph,
    find_unknown_variable_references,
    load_graph_from_file,
    validate_graph,
)

COMPLEXITY_SUGGESTION_THRESHOLD = 200
NODE_COUNT_SUGGESTION_THRESHOLD = 50

_ERROR_CATEGORIES = {
    "missing_start_node": "Structure",
    "multiple_start_nodes": "Structure",
    "duplicate_node_id": "Data",
    "duplicate_edge_id": "Data",
    "duplicate_variable_id": "Data",
    "duplicate_choice_id": "Data",
    "dangling_edge": "Connectivity",
    "missing_choice_target": "Connectivity",
    "missing_default_next": "Connectivity",
    "invalid_timeout_choice": "Logic",
    "invalid_condition": "Logic",
    "unknown_mutation_variable": "Data",
    "unset_mutation_variable": "Data",
}


@dataclass(frozen=True)
class LintIssue:
    """A single lint finding."""

    severity: str
    category: str
    code: str
    message: str
    ids: tuple[str, ...] = ()
    fix: str | None = None


@dataclass(frozen=True)
class LintStatistics:
    total_nodes: int
    total_edges: int
    total_variables: int
    complexity_score: int
    estimated_playtime_minutes: int


@dataclass(frozen=True)
class LintReport:
    """Result of linting a StoryMap."""

    errors: tuple[LintIssue, ...]
    warnings: tuple[LintIssue, ...]
    suggestions: tuple[LintIssue, ...]
    statistics: LintStatistics

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_payload(self) -> Dict[str, Any]:
        def _issue(issue: LintIssue) -> Dict[str, Any]:
            return {
                "severity": issue.severity,
                "category": issue.category,
                "code": issue.code,
                "message": issue.message,
                "ids": list(issue.ids),
                "fix": issue.fix,
            }

        statistics = asdict(self.statistics)
        return {
            "isValid": self.is_valid,
            "errors": [_issue(issue) for issue in self.errors],
            "warnings": [_issue(issue) for issue in self.warnings],
            "suggestions": [_issue(issue) for issue in self.suggestions],
            "statistics": {
                "totalNodes": statistics["total_nodes"],
                "totalEdges": statistics["total_edges"],
                "totalVariables": statistics["total_variables"],
                "complexityScore": statistics["complexity_score"],
                "estimatedPlaytimeMinutes": statistics["estimated_playtime_minutes"],
            },
        }


def compute_statistics(graph: StoryGraph) -> LintStatistics:
    """Return size, complexity and playtime estimates for ``graph``.

    Every node scores 2, with 5 extra for choice nodes and 8 for branch nodes;
    edges score 1 and variables 2. Playtime assumes two minutes per scene plus
    thirty seconds per node, with a five-minute floor.
    """

    complexity = len(graph.nodes) * 2
    for node in graph.nodes:
        if isinstance(node, ChoiceNode):
            complexity += 5
        elif isinstance(node, BranchNode):
            complexity += 8
    complexity += len(graph.edges)
    complexity += len(graph.variables) * 2

    scene_count = sum(1 for node in graph.nodes if isinstance(node, SceneNode))
    playtime = max(5.0, scene_count * 2 + len(graph.nodes) * 0.5)
    return LintStatistics(
        total_nodes=len(graph.nodes),
        total_edges=len(graph.edges),
        total_variables=len(graph.variables),
        complexity_score=complexity,
        estimated_playtime_minutes=int(math.floor(playtime + 0.5)),
    )


def reachable_node_ids(graph: StoryGraph) -> set[str]:
    """Return every node reachable from any start node."""

    pending = deque(node.node_id for node in graph.start_nodes())
    seen: set[str] = set()
    while pending:
        node_id = pending.popleft()
        if node_id in seen or not graph.has_node(node_id):
            continue
        seen.add(node_id)
        pending.extend(graph.successors(node_id))
    return seen


def find_cycle(graph: StoryGraph) -> tuple[str, ...] | None:
    """Return the node ids of one cycle, or ``None`` for an acyclic graph."""

    colour: Dict[str, int] = {}
    for root in graph.node_ids:
        if colour.get(root):
            continue
        path: List[str] = [root]
        iterators = [iter(graph.successors(root))]
        colour[root] = 1
        while iterators:
            advanced = False
            for target in iterators[-1]:
                if not graph.has_node(target):
                    continue
                state = colour.get(target, 0)
                if state == 1:
                    return tuple(path[path.index(target):])
                if state == 0:
                    colour[target] = 1
                    path.append(target)
                    iterators.append(iter(graph.successors(target)))
                    advanced = True
                    break
            if not advanced:
                colour[path.pop()] = 2
                iterators.pop()
    return None


def lint_graph(graph: StoryGraph) -> LintReport:
    """Return the full lint report for ``graph``."""

    errors: List[LintIssue] = []
    warnings: List[LintIssue] = []
    suggestions: List[LintIssue] = []

    for issue in validate_graph(graph):
        errors.append(
            LintIssue(
                severity="error",
                category=_ERROR_CATEGORIES.get(issue.code, "Structure"),
                code=issue.code,
                message=issue.message,
                ids=issue.offending_ids,
            )
        )

    for issue in find_unknown_variable_references(graph):
        if issue.code == "unknown_condition_variable":
            warnings.append(
                LintIssue(
                    severity="warning",
                    category="Logic",
                    code=issue.code,
                    message=issue.message,
                    ids=issue.offending_ids,
                    fix="Declare the variable or update the condition.",
                )
            )
        else:
            errors.append(
                LintIssue(
                    severity="error",
                    category="Data",
                    code=issue.code,
                    message=issue.message,
                    ids=issue.offending_ids,
                    fix="Create the referenced variable or update the reference.",
                )
            )

    if not any(isinstance(node, EndingNode) for node in graph.nodes):
        warnings.append(
            LintIssue(
                severity="warning",
                category="Structure",
                code="missing_ending",
                message="No ending nodes found.",
                fix="Add ending nodes to provide closure to your story.",
            )
        )

    incoming: set[str] = set()
    for node in graph.nodes:
        incoming.update(graph.successors(node.node_id))

    for node in graph.nodes:
        successors = graph.successors(node.node_id)
        label = node.title or node.node_id
        if (
            not isinstance(node, StartNode)
            and not successors
            and node.node_id not in incoming
        ):
            warnings.append(
                LintIssue(
                    severity="warning",
                    category="Connectivity",
                    code="orphaned_node",
                    message=f'Orphaned node: "{label}" ({node.node_id}).',
                    ids=(node.node_id,),
                    fix="Connect this node to the story flow or remove it.",
                )
            )
        if not successors and not isinstance(node, EndingNode):
            warnings.append(
                LintIssue(
                    severity="warning",
                    category="Connectivity",
                    code="dead_end",
                    message=f'Dead end node: "{label}" has no outgoing connections.',
                    ids=(node.node_id,),
                    fix="Add connections from this node or convert it to an ending.",
                )
            )
        if isinstance(node, SceneNode) and not node.scene_id:
            warnings.append(
                LintIssue(
                    severity="warning",
                    category="Data",
                    code="scene_without_content",
                    message=f'Scene node "{label}" is not linked to a scene.',
                    ids=(node.node_id,),
                    fix="Link to a scene or create new scene content.",
                )
            )
        if isinstance(node, ChoiceNode):
            if not node.choices:
                warnings.append(
                    LintIssue(
                        severity="warning",
                        category="Logic",
                        code="choice_without_options",
                        message=f'Choice node "{label}" offers no options.',
                        ids=(node.node_id,),
                        fix="Add options or change the node type.",
                    )
                )
            elif len(node.choices) < 2:
                warnings.append(
                    LintIssue(
                        severity="warning",
                        category="Logic",
                        code="single_option_choice",
                        message=f'Choice node "{label}" should have at least 2 options.',
                        ids=(node.node_id,),
                        fix="Add more options or change the node type.",
                    )
                )
            if node.deadline_seconds is not None and (
                not node.choices
                or (
                    node.timeout_choice_id is not None
                    and node.get_choice(node.timeout_choice_id) is None
                )
            ):
                warnings.append(
                    LintIssue(
                        severity="warning",
                        category="Logic",
                        code="timed_choice_without_default",
                        message=(
                            f'Timed choice node "{label}" has no valid option to '
                            "apply when the timer expires."
                        ),
                        ids=(node.node_id,),
                        fix="Set timeoutChoiceId to one of the node's options.",
                    )
                )

    reachable = reachable_node_ids(graph)
    for node in graph.nodes:
        if node.node_id not in reachable and not isinstance(node, StartNode):
            warnings.append(
                LintIssue(
                    severity="warning",
                    category="Logic",
                    code="unreachable_node",
                    message=f'Unreachable node: "{node.title or node.node_id}".',
                    ids=(node.node_id,),
                    fix="Connect this node to the main story flow.",
                )
            )

    cycle = find_cycle(graph)
    if cycle is not None:
        warnings.append(
            LintIssue(
                severity="warning",
                category="Logic",
                code="cycle",
                message="Circular reference detected in story flow: "
                + " -> ".join(cycle + cycle[:1]),
                ids=cycle,
                fix="Make sure every loop has a way out.",
            )
        )

    statistics = compute_statistics(graph)
    if statistics.complexity_score > COMPLEXITY_SUGGESTION_THRESHOLD:
        suggestions.append(
            LintIssue(
                severity="info",
                category="Performance",
                code="high_complexity",
                message="High complexity detected. Consider splitting the StoryMap.",
            )
        )
    if statistics.total_nodes > NODE_COUNT_SUGGESTION_THRESHOLD:
        suggestions.append(
            LintIssue(
                severity="info",
                category="Best Practice",
                code="many_nodes",
                message="Large number of nodes. Consider grouping related nodes.",
            )
        )

    return LintReport(
        errors=tuple(errors),
        warnings=tuple(warnings),
        suggestions=tuple(suggestions),
        statistics=statistics,
    )


def format_lint_report(report: LintReport) -> str:
    """Return a human-friendly rendering of ``report``."""

    statistics = report.statistics
    lines = [
        "StoryMap Lint Report",
        "====================",
        f"Valid: {'yes' if report.is_valid else 'no'}",
        (
            f"Nodes: {statistics.total_nodes}, edges: {statistics.total_edges}, "
            f"variables: {statistics.total_variables}"
        ),
        f"Complexity score: {statistics.complexity_score}",
        f"Estimated playtime: {statistics.estimated_playtime_minutes} min",
    ]

    for heading, issues in (
        ("Errors:", report.errors),
        ("Warnings:", report.warnings),
        ("Suggestions:", report.suggestions),
    ):
        if issues:
            lines.append(heading)
            lines.extend(f"- [{issue.code}] {issue.message}" for issue in issues)

    if not (report.errors or report.warnings or report.suggestions):
        lines.append("No issues detected.")

    return "\n".join(lines)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Lint a StoryMap JSON file before publishing."
    )
    parser.add_argument("storymap_file", type=Path, help="Path to a StoryMap JSON file.")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON instead of text.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by ``python -m storymap.lint``."""

    args = _parse_args(argv)
    try:
        graph = load_graph_from_file(args.storymap_file)
    except (OSError, ValueError) as exc:
        print(f"Could not load {args.storymap_file}: {exc}")
        return 2

    report = lint_graph(graph)
    if args.json:
        print(json.dumps(report.to_payload(), indent=2))
    else:
        print(format_lint_report(report))
    return 0 if report.is_valid else 1


__all__ = [
    "LintIssue",
    "LintStatistics",
    "LintReport",
    "compute_statistics",
    "reachable_node_ids",
    "find_cycle",
    "lint_graph",
    "format_lint_report",
    "main",
]


if __name__ == "__main__":  # pragma: no cover - convenience CLI
    raise SystemExit(main())
