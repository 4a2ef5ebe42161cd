import pytest

from storymap import PlaybackResolver, ReaderSession
from storymap.playback import AtEnding, AwaitingChoice
from storymap.testing_toolkit import (
    ManualScheduler,
    SessionDebugSnapshot,
    StepResult,
    debug_snapshot,
    step_through,
)


def test_manual_scheduler_runs_callbacks_in_due_order() -> None:
    scheduler = ManualScheduler()
    fired: list[str] = []

    scheduler.schedule(5, lambda: fired.append("late"))
    scheduler.schedule(1, lambda: fired.append("early"))
    scheduler.schedule(1, lambda: fired.append("early-second"))

    assert scheduler.pending == 3
    assert scheduler.advance(2) == 2
    assert fired == ["early", "early-second"]
    assert scheduler.now == 2

    assert scheduler.advance(3) == 1
    assert fired == ["early", "early-second", "late"]
    assert scheduler.pending == 0


def test_manual_scheduler_skips_cancelled_calls() -> None:
    scheduler = ManualScheduler()
    fired: list[str] = []

    handle = scheduler.schedule(1, lambda: fired.append("cancelled"))
    scheduler.schedule(1, lambda: fired.append("kept"))
    handle.cancel()

    assert scheduler.pending == 1
    assert scheduler.advance(10) == 1
    assert fired == ["kept"]


def test_manual_scheduler_fires_callbacks_scheduled_while_advancing() -> None:
    scheduler = ManualScheduler()
    fired: list[float] = []

    def _chain() -> None:
        fired.append(scheduler.now)
        scheduler.schedule(1, lambda: fired.append(scheduler.now))

    scheduler.schedule(1, _chain)

    assert scheduler.advance(3) == 2
    assert fired == [1, 2]
    assert scheduler.now == 3


def test_manual_scheduler_rejects_negative_durations() -> None:
    scheduler = ManualScheduler()

    with pytest.raises(ValueError):
        scheduler.schedule(-1, lambda: None)
    with pytest.raises(ValueError):
        scheduler.advance(-0.5)


def test_debug_snapshot_reports_session_state(gold_graph) -> None:
    session = ReaderSession(PlaybackResolver(gold_graph), scheduler=ManualScheduler())
    session.proceed()

    snapshot = debug_snapshot(session)

    assert isinstance(snapshot, SessionDebugSnapshot)
    assert snapshot.status == "active"
    assert snapshot.state["kind"] == "awaiting_choice"
    assert snapshot.state["nodeId"] == "pick"
    assert snapshot.variables == {"gold": 0}
    assert snapshot.visible_choice_ids == ("dig", "rest")
    assert snapshot.actions == ("begin", "proceed")


def test_debug_snapshot_sorts_variables(graph_factory) -> None:
    graph = graph_factory(
        [
            {"nodeId": "start", "kind": "start", "defaultNextNodeId": "end"},
            {"nodeId": "end", "kind": "ending"},
        ],
        variables=[
            {"variableId": "zeal", "name": "Zeal", "type": "number", "initialValue": 1},
            {"variableId": "alpha", "name": "Alpha", "type": "boolean", "initialValue": True},
        ],
    )
    session = ReaderSession(PlaybackResolver(graph), scheduler=ManualScheduler())

    snapshot = debug_snapshot(session)

    assert list(snapshot.variables) == ["alpha", "zeal"]


def test_step_through_proceeds_past_scenes(left_right_graph) -> None:
    results = step_through(PlaybackResolver(left_right_graph), ["go-left"])

    assert all(isinstance(result, StepResult) for result in results)
    assert [result.choice_id for result in results] == [None, None, None, "go-left"]
    assert isinstance(results[2].step.state, AwaitingChoice)
    final = results[-1].step.state
    assert isinstance(final, AtEnding)
    assert final.node_id == "left-end"
    assert final.outcome == "left"


def test_step_through_tracks_variables(gold_graph) -> None:
    resolver = PlaybackResolver(gold_graph)

    dug = step_through(resolver, ["dig"])
    rested = step_through(resolver, ["rest"], bag={"gold": 15})

    assert dug[-1].step.bag["gold"] == 12
    assert dug[-1].step.state.node_id == "rich"
    assert rested[-1].step.state.node_id == "rich"


def test_step_through_rejects_choices_after_an_ending(left_right_graph) -> None:
    with pytest.raises(RuntimeError, match="reached an ending"):
        step_through(PlaybackResolver(left_right_graph), ["go-left", "go-right"])
