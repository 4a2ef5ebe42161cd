"""Exception hierarchy shared by the StoryMap components."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence


class StoryMapError(RuntimeError):
    """Base exception raised by StoryMap components."""


@dataclass(frozen=True)
class GraphIssue:
    """A single structural problem detected in a story graph."""

    code: str
    message: str
    offending_ids: tuple[str, ...] = ()


class GraphValidationError(StoryMapError):
    """Raised when a graph violates a structural invariant at commit time."""

    def __init__(self, issues: Sequence[GraphIssue]) -> None:
        self.issues: tuple[GraphIssue, ...] = tuple(issues)
        summary = "; ".join(issue.message for issue in self.issues)
        super().__init__(f"Story graph failed validation: {summary}")

    @property
    def offending_ids(self) -> tuple[str, ...]:
        """Return the ids referenced by every issue, without duplicates."""

        return _ordered_unique(
            identifier for issue in self.issues for identifier in issue.offending_ids
        )

    @property
    def codes(self) -> tuple[str, ...]:
        return _ordered_unique(issue.code for issue in self.issues)


class ConflictError(StoryMapError):
    """Raised when an optimistic version check fails."""

    def __init__(self, episode_id: str, *, expected: int, actual: int) -> None:
        super().__init__(
            f"StoryMap for episode '{episode_id}' is at version {actual}, "
            f"expected {expected}. Reload and rebase your changes."
        )
        self.episode_id = episode_id
        self.expected = expected
        self.actual = actual


class GraphNotFoundError(StoryMapError):
    """Raised when no active StoryMap exists for an episode."""

    def __init__(self, episode_id: str, message: str | None = None) -> None:
        super().__init__(message or f"No active StoryMap for episode '{episode_id}'.")
        self.episode_id = episode_id


class EvaluationError(StoryMapError):
    """Raised when a condition cannot be evaluated against a variable bag."""

    def __init__(self, message: str, *, variable_id: str | None = None) -> None:
        super().__init__(message)
        self.variable_id = variable_id


class MutationError(StoryMapError):
    """Raised when a batch of variable mutations cannot be applied."""

    def __init__(self, message: str, *, variable_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.variable_ids = tuple(variable_ids)


class UnresolvedBranchError(StoryMapError):
    """Raised when no outgoing edge of a node qualifies during playback."""

    def __init__(self, node_id: str) -> None:
        super().__init__(
            f"No outgoing edge of node '{node_id}' matches the current story state."
        )
        self.node_id = node_id


class StoryError(StoryMapError):
    """Recoverable runtime failure that ends a reading session."""

    def __init__(self, message: str, *, node_id: str | None = None) -> None:
        super().__init__(message)
        self.node_id = node_id


class PlaybackStateError(StoryMapError):
    """Raised when an operation is not valid in the current playback state."""


def _ordered_unique(values: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return tuple(ordered)


__all__ = [
    "StoryMapError",
    "GraphIssue",
    "GraphValidationError",
    "ConflictError",
    "GraphNotFoundError",
    "EvaluationError",
    "MutationError",
    "UnresolvedBranchError",
    "StoryError",
    "PlaybackStateError",
]
