"""Helpers for driving StoryMap playback deterministically during tests."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from .playback import (
    AtEnding,
    AtScene,
    AwaitingChoice,
    PlaybackResolver,
    ReaderSession,
    Step,
    state_to_payload,
)


__all__ = [
    "ManualScheduler",
    "SessionDebugSnapshot",
    "debug_snapshot",
    "StepResult",
    "step_through",
]


@dataclass(eq=False)
class _ManualCall:
    due: float
    sequence: int
    callback: Callable[[], None]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ManualScheduler:
    """Scheduler whose clock only moves when a test calls :meth:`advance`.

    Callbacks run on the calling thread in due order, which makes timed-choice
    tests repeatable without sleeping.
    """

    now: float = 0.0
    _calls: list[_ManualCall] = field(default_factory=list, init=False)
    _sequence: int = field(default=0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> _ManualCall:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be non-negative")
        with self._lock:
            self._sequence += 1
            call = _ManualCall(
                due=self.now + delay_seconds, sequence=self._sequence, callback=callback
            )
            self._calls.append(call)
        return call

    @property
    def pending(self) -> int:
        """Number of callbacks that are neither cancelled nor fired."""

        with self._lock:
            return sum(1 for call in self._calls if not (call.cancelled or call.fired))

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run every callback that became due.

        Returns the number of callbacks that fired.
        """

        if seconds < 0:
            raise ValueError("seconds must be non-negative")
        target = self.now + seconds
        fired = 0
        while True:
            with self._lock:
                due = [
                    call
                    for call in self._calls
                    if not (call.cancelled or call.fired) and call.due <= target
                ]
                if not due:
                    self.now = target
                    self._calls = [
                        call for call in self._calls if not (call.cancelled or call.fired)
                    ]
                    return fired
                call = min(due, key=lambda item: (item.due, item.sequence))
                call.fired = True
                self.now = max(self.now, call.due)
            call.callback()
            fired += 1


@dataclass(frozen=True)
class SessionDebugSnapshot:
    """Structured view of a reader session for assertions."""

    status: str
    state: Mapping[str, Any]
    variables: Mapping[str, Any]
    visible_choice_ids: tuple[str, ...]
    actions: tuple[str, ...]


def debug_snapshot(session: ReaderSession) -> SessionDebugSnapshot:
    """Capture a deterministic snapshot of ``session``.

    Variables are copied with sorted keys so snapshots compare equal regardless
    of the order mutations were applied in.
    """

    variables = session.bag.to_payload()
    return SessionDebugSnapshot(
        status=session.status.value,
        state=state_to_payload(session.state),
        variables={key: variables[key] for key in sorted(variables)},
        visible_choice_ids=tuple(choice.choice_id for choice in session.visible_choices()),
        actions=tuple(entry["action"] for entry in session.transcript()),
    )


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single resolver step."""

    choice_id: str | None
    step: Step


def step_through(
    resolver: PlaybackResolver,
    choice_ids: Iterable[str],
    *,
    bag: Mapping[str, Any] | None = None,
) -> Sequence[StepResult]:
    """Play ``choice_ids`` in order, proceeding through scenes automatically.

    Scenes are left as soon as they are entered so only the reader's decisions
    need to be listed. Playback stops at an ending; leftover choices raise.
    """

    steps: list[StepResult] = []
    current = resolver.begin(bag)
    steps.append(StepResult(choice_id=None, step=current))

    def _settle(step: Step) -> Step:
        while isinstance(step.state, AtScene):
            step = resolver.proceed(step.state, step.bag)
            steps.append(StepResult(choice_id=None, step=step))
        return step

    current = _settle(current)
    for raw_choice in choice_ids:
        if isinstance(current.state, AtEnding):
            raise RuntimeError(
                "No further choices can be processed: the story reached an ending."
            )
        if not isinstance(current.state, AwaitingChoice):
            raise RuntimeError(f"Playback is not awaiting a choice: {current.state!r}")
        current = resolver.select(current.state, current.bag, raw_choice)
        steps.append(StepResult(choice_id=raw_choice, step=current))
        current = _settle(current)

    return tuple(steps)
