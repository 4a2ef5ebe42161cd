"""Reader analytics: deduplicated reach and selection statistics.

Playback emits one :class:`PlaybackEvent` per node entered and per choice
taken. The :class:`AnalyticsAggregator` keeps the distinct sessions behind
each node and choice, so replayed or duplicated events never inflate a rate.
Ingestion is decoupled from playback by :class:`BackgroundIngestor`, which
delivers events on a worker thread and retries failed deliveries.
"""

from __future__ import annotations

import argparse
import json
import logging
import queue
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Sequence

from .graph import ChoiceNode, EndingNode, StoryGraph, load_graph_from_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaybackEvent:
    """A reader reaching ``node_id`` or, with ``choice_id``, taking a choice."""

    session_id: str
    node_id: str
    choice_id: str | None = None
    episode_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PlaybackEvent":
        if not isinstance(payload, Mapping):
            raise ValueError("Analytics events must be objects.")
        session_id = payload.get("sessionId")
        node_id = payload.get("nodeId")
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("Analytics events require a 'sessionId'.")
        if not isinstance(node_id, str) or not node_id.strip():
            raise ValueError("Analytics events require a 'nodeId'.")
        return cls(
            session_id=session_id.strip(),
            node_id=node_id.strip(),
            choice_id=_optional_text(payload.get("choiceId")),
            episode_id=_optional_text(payload.get("episodeId")),
        )


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True)
class NodeReach:
    node_id: str
    sessions: int
    reach_rate: float


@dataclass(frozen=True)
class ChoiceSelection:
    choice_id: str
    node_id: str | None
    sessions: int
    selection_rate: float


@dataclass(frozen=True)
class AnalyticsReport:
    """Aggregated statistics for one StoryMap."""

    start_node_id: str | None
    total_sessions: int
    started_sessions: int
    completed_sessions: int
    nodes: tuple[NodeReach, ...]
    choices: tuple[ChoiceSelection, ...]
    endings: tuple[NodeReach, ...]

    @property
    def completion_rate(self) -> float:
        return _safe_ratio(self.completed_sessions, self.started_sessions)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "startNodeId": self.start_node_id,
            "totalSessions": self.total_sessions,
            "startedSessions": self.started_sessions,
            "completedSessions": self.completed_sessions,
            "completionRate": self.completion_rate,
            "nodes": [
                {
                    "nodeId": entry.node_id,
                    "sessions": entry.sessions,
                    "reachRate": entry.reach_rate,
                }
                for entry in self.nodes
            ],
            "choices": [
                {
                    "choiceId": entry.choice_id,
                    "nodeId": entry.node_id,
                    "sessions": entry.sessions,
                    "selectionRate": entry.selection_rate,
                }
                for entry in self.choices
            ],
            "endings": [
                {
                    "nodeId": entry.node_id,
                    "sessions": entry.sessions,
                    "reachRate": entry.reach_rate,
                }
                for entry in self.endings
            ],
        }


def _safe_ratio(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator


class AnalyticsAggregator:
    """Collect playback events and compute reach/selection rates.

    ``(session, node)`` and ``(session, choice)`` pairs are stored as sets so
    that recording is idempotent. Rates are only meaningful relative to a
    graph: the start node anchors :meth:`reach_rate` and the owning choice
    node anchors :meth:`selection_rate`.
    """

    def __init__(self, graph: StoryGraph | None = None) -> None:
        self._graph = graph
        self._lock = threading.Lock()
        self._node_sessions: Dict[str, set[str]] = defaultdict(set)
        self._choice_sessions: Dict[str, set[str]] = defaultdict(set)
        self._observed_owner: Dict[str, str] = {}
        self._sessions: set[str] = set()

    @property
    def graph(self) -> StoryGraph | None:
        return self._graph

    def update_graph(self, graph: StoryGraph) -> None:
        """Use ``graph`` for start and ownership lookups from now on."""

        with self._lock:
            self._graph = graph

    def record(self, event: PlaybackEvent) -> None:
        with self._lock:
            self._sessions.add(event.session_id)
            self._node_sessions[event.node_id].add(event.session_id)
            if event.choice_id is not None:
                self._choice_sessions[event.choice_id].add(event.session_id)
                self._observed_owner.setdefault(event.choice_id, event.node_id)

    def record_many(self, events: Iterable[PlaybackEvent]) -> None:
        for event in events:
            self.record(event)

    def sessions_reaching(self, node_id: str) -> int:
        with self._lock:
            return len(self._node_sessions.get(node_id, ()))

    def sessions_selecting(self, choice_id: str) -> int:
        with self._lock:
            return len(self._choice_sessions.get(choice_id, ()))

    def reach_rate(self, node_id: str) -> float:
        """Distinct sessions reaching ``node_id`` over those reaching the start."""

        with self._lock:
            start_id = self._start_node_id()
            if start_id is None:
                return 0.0
            return _safe_ratio(
                len(self._node_sessions.get(node_id, ())),
                len(self._node_sessions.get(start_id, ())),
            )

    def selection_rate(self, choice_id: str) -> float:
        """Distinct sessions taking ``choice_id`` over those reaching its node."""

        with self._lock:
            owner = self._owner_of(choice_id)
            if owner is None:
                return 0.0
            return _safe_ratio(
                len(self._choice_sessions.get(choice_id, ())),
                len(self._node_sessions.get(owner, ())),
            )

    def summarise(self) -> AnalyticsReport:
        """Build an :class:`AnalyticsReport` for every known node and choice."""

        with self._lock:
            graph = self._graph
            start_id = self._start_node_id()
            started = len(self._node_sessions.get(start_id, ())) if start_id else 0

            if graph is not None:
                node_ids = list(graph.node_ids)
                choice_ids = [
                    choice.choice_id
                    for node in graph.nodes
                    if isinstance(node, ChoiceNode)
                    for choice in node.choices
                ]
                ending_ids = [
                    node.node_id for node in graph.nodes if isinstance(node, EndingNode)
                ]
            else:
                node_ids = sorted(self._node_sessions)
                choice_ids = sorted(self._choice_sessions)
                ending_ids = []

            def _reach(node_id: str) -> NodeReach:
                sessions = len(self._node_sessions.get(node_id, ()))
                return NodeReach(node_id, sessions, _safe_ratio(sessions, started))

            nodes = tuple(_reach(node_id) for node_id in node_ids)
            endings = tuple(_reach(node_id) for node_id in ending_ids)
            choices = []
            for choice_id in choice_ids:
                owner = self._owner_of(choice_id)
                sessions = len(self._choice_sessions.get(choice_id, ()))
                owner_sessions = len(self._node_sessions.get(owner, ())) if owner else 0
                choices.append(
                    ChoiceSelection(
                        choice_id, owner, sessions, _safe_ratio(sessions, owner_sessions)
                    )
                )

            completed: set[str] = set()
            for node_id in ending_ids:
                completed.update(self._node_sessions.get(node_id, ()))

            return AnalyticsReport(
                start_node_id=start_id,
                total_sessions=len(self._sessions),
                started_sessions=started,
                completed_sessions=len(completed),
                nodes=nodes,
                choices=tuple(choices),
                endings=endings,
            )

    def _start_node_id(self) -> str | None:
        if self._graph is None:
            return None
        return self._graph.start_node_id

    def _owner_of(self, choice_id: str) -> str | None:
        if self._graph is not None:
            owner = self._graph.choice_owner(choice_id)
            if owner is not None:
                return owner
        return self._observed_owner.get(choice_id)


class EpisodeAnalytics:
    """Route events to one :class:`AnalyticsAggregator` per episode."""

    def __init__(self, graph_lookup: Callable[[str], StoryGraph | None] | None = None) -> None:
        self._graph_lookup = graph_lookup
        self._aggregators: Dict[str, AnalyticsAggregator] = {}
        self._lock = threading.Lock()

    def aggregator(self, episode_id: str) -> AnalyticsAggregator:
        with self._lock:
            aggregator = self._aggregators.get(episode_id)
            if aggregator is None:
                aggregator = AnalyticsAggregator()
                self._aggregators[episode_id] = aggregator
        if self._graph_lookup is not None:
            graph = self._graph_lookup(episode_id)
            if graph is not None:
                aggregator.update_graph(graph)
        return aggregator

    def record(self, event: PlaybackEvent) -> None:
        if event.episode_id is None:
            logger.warning(
                "Dropping analytics event for session %s without an episode id",
                event.session_id,
            )
            return
        with self._lock:
            aggregator = self._aggregators.get(event.episode_id)
            if aggregator is None:
                aggregator = AnalyticsAggregator()
                self._aggregators[event.episode_id] = aggregator
        aggregator.record(event)


class BackgroundIngestor:
    """Deliver events to ``sink`` on a worker thread with retry and backoff.

    :meth:`submit` never blocks playback. A delivery that keeps failing after
    ``max_attempts`` tries is logged and dropped.
    """

    _STOP = object()

    def __init__(
        self,
        sink: Callable[[PlaybackEvent], None],
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        max_backoff_seconds: float = 1.0,
        max_queue_size: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._sink = sink
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue_size)
        self._worker: threading.Thread | None = None
        self._start_lock = threading.Lock()
        self.delivered = 0
        self.dropped = 0
        self.retries = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        with self._start_lock:
            if self.running:
                return
            self._worker = threading.Thread(
                target=self._run, name="storymap-analytics", daemon=True
            )
            self._worker.start()

    def submit(self, event: PlaybackEvent) -> bool:
        """Queue ``event`` for delivery; returns ``False`` if it was dropped."""

        self.start()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("Analytics queue full; dropping event for %s", event.session_id)
            return False
        return True

    __call__ = submit

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued event was delivered or dropped."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        worker = self._worker
        if worker is None:
            return
        self._queue.put(self._STOP)
        worker.join(timeout)
        self._worker = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: PlaybackEvent) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._sink(event)
            except Exception as exc:  # noqa: BLE001 - sinks are external collaborators
                if attempt == self.max_attempts:
                    self.dropped += 1
                    logger.error(
                        "Dropping analytics event for session %s after %d attempts: %s",
                        event.session_id,
                        attempt,
                        exc,
                    )
                    return
                self.retries += 1
                delay = min(
                    self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds
                )
                logger.warning(
                    "Analytics delivery failed (attempt %d/%d): %s; retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
            else:
                self.delivered += 1
                return


def format_analytics_report(report: AnalyticsReport) -> str:
    """Return a human-friendly summary of reader analytics."""

    lines = [
        "StoryMap Reader Analytics",
        "=========================",
        f"Sessions: {report.total_sessions}",
        f"Sessions reaching the start node: {report.started_sessions}",
        (
            "Completed sessions: "
            f"{report.completed_sessions} ({report.completion_rate:.0%} of started)"
        ),
    ]

    if report.nodes:
        lines.append("Node reach:")
        lines.extend(
            f"- {entry.node_id}: {entry.sessions} session(s), {entry.reach_rate:.0%}"
            for entry in report.nodes
        )

    if report.choices:
        lines.append("Choice selection:")
        lines.extend(
            f"- {entry.choice_id} @ {entry.node_id or '?'}: "
            f"{entry.sessions} session(s), {entry.selection_rate:.0%}"
            for entry in report.choices
        )

    if report.endings:
        lines.append("Endings:")
        lines.extend(
            f"- {entry.node_id}: {entry.sessions} session(s), {entry.reach_rate:.0%}"
            for entry in report.endings
        )

    return "\n".join(lines)


def load_events_from_file(path: str | Path) -> list[PlaybackEvent]:
    """Read newline-delimited JSON events."""

    events = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                events.append(PlaybackEvent.from_payload(json.loads(line)))
            except (ValueError, json.JSONDecodeError) as exc:
                raise ValueError(f"Invalid event on line {line_number}: {exc}") from exc
    return events


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarise reader analytics for a StoryMap."
    )
    parser.add_argument("storymap_file", type=Path, help="Path to a StoryMap JSON file.")
    parser.add_argument(
        "events_file",
        type=Path,
        help="Path to newline-delimited JSON playback events.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by ``python -m storymap.analytics``."""

    args = _parse_args(argv)
    aggregator = AnalyticsAggregator(load_graph_from_file(args.storymap_file))
    aggregator.record_many(load_events_from_file(args.events_file))
    print(format_analytics_report(aggregator.summarise()))
    return 0


__all__ = [
    "PlaybackEvent",
    "NodeReach",
    "ChoiceSelection",
    "AnalyticsReport",
    "AnalyticsAggregator",
    "EpisodeAnalytics",
    "BackgroundIngestor",
    "format_analytics_report",
    "load_events_from_file",
    "main",
]


if __name__ == "__main__":  # pragma: no cover - convenience CLI
    raise SystemExit(main())
