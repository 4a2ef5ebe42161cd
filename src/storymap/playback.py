"""Playback resolution for StoryMap graphs.

:class:`PlaybackResolver` is a pure state machine: given a graph snapshot, a
state and a variable bag it returns the next :class:`Step` without touching any
shared data. :class:`ReaderSession` wraps a resolver for one reader, owns that
reader's bag, schedules timed-choice deadlines and guarantees that a timeout
and a manual selection can never both apply to the same prompt.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Protocol, Union, assert_never

from .analytics import PlaybackEvent
from .conditions import evaluate, parse_condition
from .errors import (
    EvaluationError,
    MutationError,
    PlaybackStateError,
    StoryError,
    UnresolvedBranchError,
)
from .graph import (
    BranchNode,
    Choice,
    ChoiceNode,
    Edge,
    EndingNode,
    SceneNode,
    StartNode,
    StoryGraph,
)
from .variables import VariableBag, apply_mutations, initial_bag

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 64


@dataclass(frozen=True)
class AtScene:
    """The reader is looking at a scene (or the start node)."""

    node_id: str


@dataclass(frozen=True)
class AwaitingChoice:
    """The reader is being offered the options of a choice node."""

    node_id: str
    scene_node_id: str | None
    prompt_token: int
    deadline_seconds: float | None = None
    choice_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Resolving:
    """Transient state between applying a choice and entering its target."""

    choice_id: str
    target_node_id: str


@dataclass(frozen=True)
class AtEnding:
    node_id: str
    outcome: str | None = None


PlaybackState = Union[AtScene, AwaitingChoice, Resolving, AtEnding]


@dataclass(frozen=True)
class TraceEntry:
    """One observable thing that happened while resolving a step."""

    kind: str
    node_id: str | None = None
    choice_id: str | None = None
    edge_id: str | None = None
    message: str = ""


@dataclass(frozen=True)
class Step:
    """Result of a resolver call: the new state, the new bag and a trace."""

    state: PlaybackState
    bag: VariableBag
    trace: tuple[TraceEntry, ...] = ()
    transitions: tuple[PlaybackState, ...] = ()

    @property
    def entered_node_ids(self) -> tuple[str, ...]:
        return tuple(
            entry.node_id
            for entry in self.trace
            if entry.kind == "enter" and entry.node_id is not None
        )


def state_to_payload(state: PlaybackState) -> Dict[str, Any]:
    """Return a JSON-friendly description of ``state``."""

    match state:
        case AtScene():
            return {"kind": "at_scene", "nodeId": state.node_id}
        case AwaitingChoice():
            return {
                "kind": "awaiting_choice",
                "nodeId": state.node_id,
                "sceneNodeId": state.scene_node_id,
                "promptToken": state.prompt_token,
                "deadlineSeconds": state.deadline_seconds,
                "choiceIds": list(state.choice_ids),
            }
        case Resolving():
            return {
                "kind": "resolving",
                "choiceId": state.choice_id,
                "targetNodeId": state.target_node_id,
            }
        case AtEnding():
            return {"kind": "at_ending", "nodeId": state.node_id, "outcome": state.outcome}
        case _:
            assert_never(state)


class PlaybackResolver:
    """Resolve reader transitions over an immutable graph snapshot."""

    def __init__(self, graph: StoryGraph, *, max_hops: int = DEFAULT_MAX_HOPS) -> None:
        if max_hops <= 0:
            raise ValueError("max_hops must be positive")
        self.graph = graph
        self.max_hops = max_hops

    def begin(self, bag: Mapping[str, Any] | None = None) -> Step:
        """Return the opening step positioned on the start node."""

        start_id = self.graph.start_node_id
        if start_id is None:
            raise StoryError("The story has no unique start node.")
        seeded = VariableBag(bag) if bag is not None else initial_bag(self.graph)
        state = AtScene(start_id)
        return Step(
            state=state,
            bag=seeded,
            trace=(TraceEntry("enter", node_id=start_id),),
            transitions=(state,),
        )

    def proceed(
        self, state: PlaybackState, bag: Mapping[str, Any], *, prompt_token: int = 1
    ) -> Step:
        """Leave the current scene through its fallthrough or first qualifying edge."""

        if not isinstance(state, AtScene):
            raise PlaybackStateError(
                f"Cannot proceed from {type(state).__name__}; a scene is required."
            )
        current_bag = VariableBag(bag)
        node = self._node(state.node_id)
        trace: List[TraceEntry] = []

        default_next = None
        if isinstance(node, (StartNode, SceneNode)):
            default_next = node.default_next_node_id
        if default_next is not None:
            target = default_next
        else:
            edge = self._choose_edge(state.node_id, current_bag, trace)
            target = edge.target_node_id

        return self._enter(
            target,
            current_bag,
            trace,
            scene_node_id=state.node_id,
            prompt_token=prompt_token,
        )

    def select(
        self,
        state: PlaybackState,
        bag: Mapping[str, Any],
        choice_id: str,
        *,
        prompt_token: int | None = None,
    ) -> Step:
        """Apply ``choice_id`` and enter its target.

        Raises:
            PlaybackStateError: If no prompt is active or the choice is not
                offered.
            MutationError: If the choice's actions cannot be applied; the
                caller keeps the previous state and bag.
        """

        node, awaiting = self._awaiting(state)
        choice = node.get_choice(choice_id)
        if choice is None or choice.choice_id not in awaiting.choice_ids:
            raise PlaybackStateError(
                f"Choice '{choice_id}' is not available at node '{node.node_id}'."
            )
        return self._resolve(
            awaiting,
            VariableBag(bag),
            choice,
            TraceEntry("select", node_id=node.node_id, choice_id=choice.choice_id),
            prompt_token=prompt_token,
        )

    def expire(
        self,
        state: PlaybackState,
        bag: Mapping[str, Any],
        *,
        prompt_token: int | None = None,
    ) -> Step:
        """Apply the default choice of a timed-out prompt exactly as a selection."""

        node, awaiting = self._awaiting(state)
        choice = self.default_choice(node, bag)
        if choice is None:
            raise StoryError(
                f"Choice node '{node.node_id}' has no option to apply on timeout.",
                node_id=node.node_id,
            )
        return self._resolve(
            awaiting,
            VariableBag(bag),
            choice,
            TraceEntry("expire", node_id=node.node_id, choice_id=choice.choice_id),
            prompt_token=prompt_token,
        )

    def visible_choices(self, node: ChoiceNode, bag: Mapping[str, Any]) -> tuple[Choice, ...]:
        """Return the options of ``node`` whose display condition holds."""

        visible = []
        for choice in node.choices:
            try:
                shown = evaluate(choice.condition, bag)
            except EvaluationError as exc:
                logger.warning(
                    "Hiding choice %s at node %s: %s", choice.choice_id, node.node_id, exc
                )
                shown = False
            if shown:
                visible.append(choice)
        return tuple(visible)

    def default_choice(self, node: ChoiceNode, bag: Mapping[str, Any]) -> Choice | None:
        """Return the option applied when the prompt of ``node`` times out.

        The configured timeout choice is used only while it is visible;
        otherwise the first visible option is taken.
        """

        visible = self.visible_choices(node, bag)
        if node.timeout_choice_id is not None:
            for choice in visible:
                if choice.choice_id == node.timeout_choice_id:
                    return choice
        return visible[0] if visible else None

    def _awaiting(self, state: PlaybackState) -> tuple[ChoiceNode, AwaitingChoice]:
        if not isinstance(state, AwaitingChoice):
            raise PlaybackStateError(
                f"No choice is pending while in {type(state).__name__}."
            )
        node = self._node(state.node_id)
        if not isinstance(node, ChoiceNode):
            raise PlaybackStateError(f"Node '{state.node_id}' is not a choice node.")
        return node, state

    def _resolve(
        self,
        awaiting: AwaitingChoice,
        bag: VariableBag,
        choice: Choice,
        entry: TraceEntry,
        *,
        prompt_token: int | None,
    ) -> Step:
        updated = apply_mutations(bag, choice.actions, declarations=self.graph.variables)
        resolving = Resolving(choice.choice_id, choice.target_node_id)
        step = self._enter(
            choice.target_node_id,
            updated,
            [entry],
            scene_node_id=awaiting.scene_node_id,
            prompt_token=(
                prompt_token if prompt_token is not None else awaiting.prompt_token + 1
            ),
        )
        return Step(
            state=step.state,
            bag=step.bag,
            trace=step.trace,
            transitions=(resolving,) + step.transitions,
        )

    def _enter(
        self,
        node_id: str,
        bag: VariableBag,
        trace: List[TraceEntry],
        *,
        scene_node_id: str | None,
        prompt_token: int,
    ) -> Step:
        transitions: List[PlaybackState] = []
        hops = 0
        while True:
            node = self._node(node_id)
            trace.append(TraceEntry("enter", node_id=node_id))
            match node:
                case StartNode() | SceneNode():
                    state: PlaybackState = AtScene(node_id)
                case ChoiceNode():
                    visible = self.visible_choices(node, bag)
                    if not visible:
                        raise StoryError(
                            f"Choice node '{node_id}' has no available options.",
                            node_id=node_id,
                        )
                    state = AwaitingChoice(
                        node_id=node_id,
                        scene_node_id=scene_node_id,
                        prompt_token=prompt_token,
                        deadline_seconds=node.deadline_seconds,
                        choice_ids=tuple(choice.choice_id for choice in visible),
                    )
                case EndingNode():
                    state = AtEnding(node_id, node.outcome)
                case BranchNode():
                    hops += 1
                    if hops > self.max_hops:
                        raise StoryError(
                            f"Branch routing exceeded {self.max_hops} hops at node "
                            f"'{node_id}'.",
                            node_id=node_id,
                        )
                    edge = self._choose_edge(node_id, bag, trace)
                    node_id = edge.target_node_id
                    continue
                case _:
                    assert_never(node)
            transitions.append(state)
            return Step(
                state=state, bag=bag, trace=tuple(trace), transitions=tuple(transitions)
            )

    def _choose_edge(
        self, node_id: str, bag: Mapping[str, Any], trace: List[TraceEntry]
    ) -> Edge:
        """Return the first outgoing edge whose condition holds.

        Edges are tried in declared order and an unconditioned edge always
        qualifies. If a condition cannot be evaluated the first unconditioned
        edge is used instead.
        """

        edges = self.graph.outgoing_edges(node_id)
        for edge in edges:
            try:
                if evaluate(edge.condition, bag):
                    trace.append(TraceEntry("edge", node_id=node_id, edge_id=edge.edge_id))
                    return edge
            except EvaluationError as exc:
                fallback = _first_unconditioned(edges)
                if fallback is None:
                    logger.error(
                        "Condition on edge %s failed without a fallback: %s",
                        edge.edge_id,
                        exc,
                    )
                    raise StoryError(
                        f"Could not evaluate the condition on edge '{edge.edge_id}': {exc}",
                        node_id=node_id,
                    ) from exc
                logger.warning(
                    "Condition on edge %s failed (%s); falling back to edge %s",
                    edge.edge_id,
                    exc,
                    fallback.edge_id,
                )
                trace.append(
                    TraceEntry(
                        "fallback",
                        node_id=node_id,
                        edge_id=fallback.edge_id,
                        message=str(exc),
                    )
                )
                return fallback
        raise UnresolvedBranchError(node_id)

    def _node(self, node_id: str):
        try:
            return self.graph.get_node(node_id)
        except KeyError as exc:
            raise StoryError(
                f"The story references missing node '{node_id}'.", node_id=node_id
            ) from exc


def _first_unconditioned(edges: tuple[Edge, ...]) -> Edge | None:
    for edge in edges:
        try:
            if parse_condition(edge.condition) is None:
                return edge
        except ValueError:
            continue
    return None


class ScheduledCall(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Runs callbacks after a delay; returned handles can cancel them."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> ScheduledCall:
        ...


class ThreadingScheduler:
    """Scheduler backed by :class:`threading.Timer` daemon threads."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> ScheduledCall:
        timer = threading.Timer(max(0.0, delay_seconds), callback)
        timer.daemon = True
        timer.start()
        return timer


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SelectionOutcome:
    """Result of a selection or expiry attempt on a reader session."""

    applied: bool
    state: PlaybackState
    reason: str | None = None
    step: Step | None = None


@dataclass(frozen=True)
class SessionError:
    code: str
    message: str


@dataclass
class _TranscriptEntry:
    turn: int
    action: str
    state: PlaybackState
    choice_id: str | None = None


class ReaderSession:
    """Playback state for a single reader.

    All state changes happen under one lock. Every prompt carries a token and
    both manual selections and deadline callbacks must present the token of
    the prompt they answer, so whichever arrives second is rejected.
    """

    def __init__(
        self,
        resolver: PlaybackResolver,
        *,
        session_id: str | None = None,
        episode_id: str | None = None,
        graph_version: int | None = None,
        scheduler: Scheduler | None = None,
        event_sink: Callable[[PlaybackEvent], None] | None = None,
        bag: Mapping[str, Any] | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.episode_id = episode_id
        self.graph_version = graph_version
        self._resolver = resolver
        self._scheduler = scheduler or ThreadingScheduler()
        self._event_sink = event_sink
        self._lock = threading.RLock()
        self._timer: ScheduledCall | None = None
        self._prompt_counter = 0
        self._status = SessionStatus.ACTIVE
        self._error: SessionError | None = None
        self._transcript: List[_TranscriptEntry] = []

        step = resolver.begin(bag)
        self._state: PlaybackState = step.state
        self._bag: VariableBag = step.bag
        self._record("begin", step)

    @property
    def state(self) -> PlaybackState:
        with self._lock:
            return self._state

    @property
    def bag(self) -> VariableBag:
        with self._lock:
            return self._bag

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return self._status

    @property
    def error(self) -> SessionError | None:
        with self._lock:
            return self._error

    @property
    def graph(self) -> StoryGraph:
        return self._resolver.graph

    def visible_choices(self) -> tuple[Choice, ...]:
        with self._lock:
            state = self._state
            if not isinstance(state, AwaitingChoice):
                return ()
            node = self._resolver.graph.get_node(state.node_id)
            if not isinstance(node, ChoiceNode):
                raise PlaybackStateError(f"Node '{state.node_id}' is not a choice node.")
            return tuple(
                choice for choice in node.choices if choice.choice_id in state.choice_ids
            )

    def proceed(self) -> Step:
        """Advance from the current scene."""

        with self._lock:
            self._ensure_open()
            step = self._run(
                lambda: self._resolver.proceed(
                    self._state, self._bag, prompt_token=self._prompt_counter + 1
                )
            )
            self._apply(step, "proceed")
            return step

    def select(self, choice_id: str, *, prompt_token: int) -> SelectionOutcome:
        """Apply a manual selection unless its prompt is no longer current.

        ``prompt_token`` names the prompt the reader answered, so a click made
        for an expired prompt never lands on a later one at the same node.
        """

        with self._lock:
            stale = self._stale_reason(prompt_token)
            if stale is not None:
                return SelectionOutcome(applied=False, state=self._state, reason=stale)
            current = self._state
            step = self._run(
                lambda: self._resolver.select(
                    current,
                    self._bag,
                    choice_id,
                    prompt_token=self._prompt_counter + 1,
                )
            )
            self._cancel_timer()
            self._apply(step, "select", choice_id=choice_id)
            return SelectionOutcome(applied=True, state=step.state, step=step)

    def expire(self, *, prompt_token: int | None = None) -> SelectionOutcome:
        """Apply the default choice of the current prompt if it is still pending."""

        with self._lock:
            stale = self._stale_reason(prompt_token)
            if stale is not None:
                return SelectionOutcome(applied=False, state=self._state, reason=stale)
            current = self._state
            step = self._run(
                lambda: self._resolver.expire(
                    current, self._bag, prompt_token=self._prompt_counter + 1
                )
            )
            self._cancel_timer()
            choice_ids = [entry.choice_id for entry in step.trace if entry.kind == "expire"]
            self._apply(step, "expire", choice_id=choice_ids[0] if choice_ids else None)
            return SelectionOutcome(applied=True, state=step.state, step=step)

    def close(self) -> None:
        with self._lock:
            self._cancel_timer()

    def transcript(self) -> tuple[Dict[str, Any], ...]:
        with self._lock:
            return tuple(
                {
                    "turn": entry.turn,
                    "action": entry.action,
                    "choiceId": entry.choice_id,
                    "state": state_to_payload(entry.state),
                }
                for entry in self._transcript
            )

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON-friendly view of the session."""

        with self._lock:
            return {
                "sessionId": self.session_id,
                "episodeId": self.episode_id,
                "graphVersion": self.graph_version,
                "status": self._status.value,
                "state": state_to_payload(self._state),
                "variables": self._bag.to_payload(),
                "error": (
                    {"code": self._error.code, "message": self._error.message}
                    if self._error
                    else None
                ),
            }

    def _on_deadline(self, prompt_token: int) -> None:
        try:
            outcome = self.expire(prompt_token=prompt_token)
        except StoryError:
            return
        except (MutationError, UnresolvedBranchError, PlaybackStateError) as exc:
            logger.warning(
                "Timed choice of session %s could not be applied: %s", self.session_id, exc
            )
            return
        if outcome.applied:
            logger.info(
                "Prompt %s of session %s expired; default choice applied",
                prompt_token,
                self.session_id,
            )

    def _stale_reason(self, prompt_token: int | None) -> str | None:
        if self._status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            return "session_closed"
        if not isinstance(self._state, AwaitingChoice):
            return "no_pending_choice"
        if prompt_token is not None and prompt_token != self._state.prompt_token:
            return "stale_prompt"
        return None

    def _ensure_open(self) -> None:
        if self._status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            raise PlaybackStateError(
                f"Session '{self.session_id}' is {self._status.value}."
            )

    def _run(self, operation: Callable[[], Step]) -> Step:
        try:
            return operation()
        except (MutationError, UnresolvedBranchError) as exc:
            self._status = SessionStatus.PAUSED
            self._error = SessionError(code=_error_code(exc), message=str(exc))
            logger.warning("Session %s paused: %s", self.session_id, exc)
            raise
        except StoryError as exc:
            self._cancel_timer()
            self._status = SessionStatus.FAILED
            self._error = SessionError(code="story_error", message=str(exc))
            logger.error("Session %s ended with a story error: %s", self.session_id, exc)
            raise

    def _apply(self, step: Step, action: str, *, choice_id: str | None = None) -> None:
        self._state = step.state
        self._bag = step.bag
        self._error = None
        self._status = (
            SessionStatus.COMPLETED
            if isinstance(step.state, AtEnding)
            else SessionStatus.ACTIVE
        )
        if isinstance(step.state, AwaitingChoice):
            self._prompt_counter = step.state.prompt_token
        self._record(action, step, choice_id=choice_id)
        self._arm_timer()

    def _record(self, action: str, step: Step, *, choice_id: str | None = None) -> None:
        self._transcript.append(
            _TranscriptEntry(
                turn=len(self._transcript) + 1,
                action=action,
                state=step.state,
                choice_id=choice_id,
            )
        )
        self._emit(step)

    def _emit(self, step: Step) -> None:
        if self._event_sink is None:
            return
        events = []
        for entry in step.trace:
            if entry.kind == "enter" and entry.node_id is not None:
                events.append(
                    PlaybackEvent(self.session_id, entry.node_id, episode_id=self.episode_id)
                )
            elif entry.kind in ("select", "expire") and entry.node_id is not None:
                events.append(
                    PlaybackEvent(
                        self.session_id,
                        entry.node_id,
                        entry.choice_id,
                        episode_id=self.episode_id,
                    )
                )
        for event in events:
            try:
                self._event_sink(event)
            except Exception:  # noqa: BLE001 - analytics must not break playback
                logger.exception("Failed to emit analytics event for %s", self.session_id)

    def _arm_timer(self) -> None:
        self._cancel_timer()
        state = self._state
        if not isinstance(state, AwaitingChoice) or state.deadline_seconds is None:
            return
        token = state.prompt_token
        self._timer = self._scheduler.schedule(
            state.deadline_seconds, lambda: self._on_deadline(token)
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


def _error_code(exc: Exception) -> str:
    if isinstance(exc, MutationError):
        return "mutation_error"
    if isinstance(exc, UnresolvedBranchError):
        return "unresolved_branch"
    return "playback_error"


@dataclass
class ReaderSessionManager:
    """Create and look up reader sessions bound to committed graph versions."""

    graph_loader: Callable[[str], tuple[StoryGraph, int]]
    scheduler: Scheduler = field(default_factory=ThreadingScheduler)
    event_sink: Callable[[PlaybackEvent], None] | None = None
    max_hops: int = DEFAULT_MAX_HOPS
    _sessions: Dict[str, ReaderSession] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def create_session(
        self, episode_id: str, *, bag: Mapping[str, Any] | None = None
    ) -> ReaderSession:
        """Start a session on the active graph; ``bag`` overrides declared initial values."""

        graph, version = self.graph_loader(episode_id)
        if bag is not None:
            bag = initial_bag(graph).updated(bag)
        session = ReaderSession(
            PlaybackResolver(graph, max_hops=self.max_hops),
            episode_id=episode_id,
            graph_version=version,
            scheduler=self.scheduler,
            event_sink=self.event_sink,
            bag=bag,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Started reader session %s for episode %s", session.session_id, episode_id)
        return session

    def get_session(self, session_id: str) -> ReaderSession:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError as exc:
                raise KeyError(f"Reader session '{session_id}' does not exist") from exc

    def close_session(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()


__all__ = [
    "DEFAULT_MAX_HOPS",
    "AtScene",
    "AwaitingChoice",
    "Resolving",
    "AtEnding",
    "PlaybackState",
    "TraceEntry",
    "Step",
    "state_to_payload",
    "PlaybackResolver",
    "ScheduledCall",
    "Scheduler",
    "ThreadingScheduler",
    "SessionStatus",
    "SelectionOutcome",
    "SessionError",
    "ReaderSession",
    "ReaderSessionManager",
]
