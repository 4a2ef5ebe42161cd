"""Tests for variable bags and atomic mutation batches."""

from __future__ import annotations

import pytest

from storymap.errors import MutationError
from storymap.graph import (
    UNSET,
    MutationOperation,
    StoryVariable,
    VariableMutation,
    VariableType,
)
from storymap.variables import VariableBag, apply_mutations, initial_bag


def _mutation(variable_id, operation: str, value=None) -> VariableMutation:
    return VariableMutation(variable_id, MutationOperation(operation), value)


def test_initial_bag_uses_declared_values_and_type_defaults(graph_factory) -> None:
    graph = graph_factory(
        [{"nodeId": "start", "kind": "start"}],
        variables=[
            {"variableId": "gold", "type": "number", "initialValue": 5},
            {"variableId": "brave", "type": "boolean"},
            {"variableId": "name", "type": "string"},
            {"variableId": "items", "type": "list"},
            {"variableId": None, "name": "blank"},
        ],
    )

    bag = initial_bag(graph)

    assert dict(bag) == {"gold": 5, "brave": False, "name": "", "items": ()}


def test_variable_bag_is_immutable_and_freezes_lists() -> None:
    bag = VariableBag({"items": ["rope"]})

    assert bag["items"] == ("rope",)
    with pytest.raises(TypeError):
        bag["items"] = ()  # type: ignore[index]
    assert bag.updated({"gold": 1}) == {"items": ("rope",), "gold": 1}
    assert "gold" not in bag
    assert bag.to_payload() == {"items": ["rope"]}


def test_apply_mutations_runs_each_operation() -> None:
    bag = VariableBag({"gold": 5, "brave": False, "name": "", "items": ("rope",)})

    result = apply_mutations(
        bag,
        [
            _mutation("gold", "add", 10),
            _mutation("gold", "subtract", 3),
            _mutation("brave", "toggle"),
            _mutation("name", "set", "Ada"),
            _mutation("items", "add", "lamp"),
            _mutation("items", "subtract", "rope"),
        ],
    )

    assert dict(result) == {"gold": 12, "brave": True, "name": "Ada", "items": ("lamp",)}
    assert bag["gold"] == 5


def test_subtracting_a_missing_list_item_is_a_no_op() -> None:
    bag = VariableBag({"items": ("rope",)})

    result = apply_mutations(bag, [_mutation("items", "subtract", "lamp")])

    assert result["items"] == ("rope",)


def test_numeric_results_are_clamped_to_declared_bounds() -> None:
    declarations = [
        StoryVariable(
            "health", "Health", VariableType.NUMBER, 10, min_value=0, max_value=10
        )
    ]
    bag = VariableBag({"health": 8})

    raised = apply_mutations(
        bag, [_mutation("health", "add", 5)], declarations=declarations
    )
    lowered = apply_mutations(
        bag, [_mutation("health", "subtract", 20)], declarations=declarations
    )

    assert raised["health"] == 10
    assert lowered["health"] == 0


def test_failed_batch_reports_every_offender_and_leaves_bag_untouched() -> None:
    bag = VariableBag({"gold": 5, "brave": False})

    with pytest.raises(MutationError) as excinfo:
        apply_mutations(
            bag,
            [
                _mutation("gold", "add", 1),
                _mutation("ghost", "set", 1),
                _mutation("brave", "add", 2),
                _mutation(UNSET, "set", 1),
            ],
        )

    assert excinfo.value.variable_ids == ("ghost", "brave")
    assert dict(bag) == {"gold": 5, "brave": False}


def test_set_is_type_checked_against_declarations() -> None:
    declarations = [StoryVariable("gold", "Gold", VariableType.NUMBER, 0)]

    with pytest.raises(MutationError):
        apply_mutations(
            VariableBag({"gold": 0}),
            [_mutation("gold", "set", "lots")],
            declarations=declarations,
        )


def test_toggle_requires_a_boolean() -> None:
    with pytest.raises(MutationError):
        apply_mutations(VariableBag({"gold": 1}), [_mutation("gold", "toggle")])
