"""Per-session variable state and mutation batches."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from .errors import MutationError
from .graph import (
    MutationOperation,
    StoryGraph,
    StoryVariable,
    VariableMutation,
    VariableType,
)

_TYPE_DEFAULTS: Mapping[VariableType, Any] = MappingProxyType(
    {
        VariableType.NUMBER: 0,
        VariableType.BOOLEAN: False,
        VariableType.STRING: "",
        VariableType.LIST: (),
    }
)


class VariableBag(Mapping[str, Any]):
    """Immutable mapping of variable id to current value.

    List values are stored as tuples; updates return a new bag.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        frozen = {key: _freeze(value) for key, value in (values or {}).items()}
        self._values: Mapping[str, Any] = MappingProxyType(frozen)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableBag({dict(self._values)!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return dict(self._values) == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def updated(self, changes: Mapping[str, Any]) -> "VariableBag":
        """Return a new bag with ``changes`` applied on top of this one."""

        merged = dict(self._values)
        merged.update(changes)
        return VariableBag(merged)

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-friendly copy of the bag."""

        return {
            key: list(value) if isinstance(value, tuple) else value
            for key, value in self._values.items()
        }


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


def default_value(variable: StoryVariable) -> Any:
    if variable.initial_value is not None:
        return _freeze(variable.initial_value)
    return _TYPE_DEFAULTS[variable.type]


def initial_bag(graph: StoryGraph) -> VariableBag:
    """Seed a bag from the graph's declarations, skipping unset slots."""

    values: dict[str, Any] = {}
    for variable in graph.variables:
        if not isinstance(variable.variable_id, str):
            continue
        values.setdefault(variable.variable_id, default_value(variable))
    return VariableBag(values)


def _declaration_index(
    declarations: Mapping[str, StoryVariable] | Iterable[StoryVariable] | None,
) -> Mapping[str, StoryVariable]:
    if declarations is None:
        return {}
    if isinstance(declarations, Mapping):
        return declarations
    return {
        variable.variable_id: variable
        for variable in declarations
        if isinstance(variable.variable_id, str)
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _infer_type(value: Any) -> VariableType | None:
    if isinstance(value, bool):
        return VariableType.BOOLEAN
    if _is_number(value):
        return VariableType.NUMBER
    if isinstance(value, str):
        return VariableType.STRING
    if isinstance(value, (tuple, list)):
        return VariableType.LIST
    return None


def _matches_type(value: Any, variable_type: VariableType) -> bool:
    if variable_type is VariableType.NUMBER:
        return _is_number(value)
    if variable_type is VariableType.BOOLEAN:
        return isinstance(value, bool)
    if variable_type is VariableType.STRING:
        return isinstance(value, str)
    return isinstance(value, (tuple, list))


def _clamp(value: Any, declaration: StoryVariable | None) -> Any:
    if declaration is None or not _is_number(value):
        return value
    if declaration.min_value is not None and value < declaration.min_value:
        return declaration.min_value
    if declaration.max_value is not None and value > declaration.max_value:
        return declaration.max_value
    return value


def _apply_one(
    mutation: VariableMutation,
    current: Any,
    variable_type: VariableType | None,
) -> Any:
    """Return the new value or raise ``TypeError`` describing the problem."""

    operation = mutation.operation
    value = mutation.value

    if operation is MutationOperation.SET:
        if variable_type is not None and not _matches_type(value, variable_type):
            raise TypeError(f"cannot set a {variable_type.value} to {value!r}")
        return _freeze(value)

    if operation is MutationOperation.TOGGLE:
        if not isinstance(current, bool):
            raise TypeError("toggle applies to boolean variables only")
        return not current

    if variable_type is VariableType.LIST:
        items = tuple(current)
        if operation is MutationOperation.ADD:
            return items + (value,)
        if value in items:
            index = items.index(value)
            return items[:index] + items[index + 1 :]
        return items

    if not _is_number(current) or not _is_number(value):
        raise TypeError(f"{operation.value} needs numeric operands, got {value!r}")
    if operation is MutationOperation.ADD:
        return current + value
    return current - value


def apply_mutations(
    bag: Mapping[str, Any],
    mutations: Iterable[VariableMutation],
    *,
    declarations: Mapping[str, StoryVariable] | Iterable[StoryVariable] | None = None,
) -> VariableBag:
    """Apply ``mutations`` in order and return the resulting bag.

    The batch is all-or-nothing. Every mutation is checked against the working
    copy before anything is returned; the first batch containing a missing
    variable, an unset slot or a type error raises :class:`MutationError`
    listing every offending variable id and leaves ``bag`` untouched. Numeric
    results are clamped to the declaration's ``min_value``/``max_value``.
    """

    index = _declaration_index(declarations)
    working: dict[str, Any] = dict(bag)
    problems: list[str] = []
    offending: list[str] = []

    for mutation in mutations:
        variable_id = mutation.variable_id
        if not isinstance(variable_id, str):
            problems.append("mutation targets an unset variable slot")
            continue
        if variable_id not in working:
            problems.append(f"variable '{variable_id}' does not exist")
            offending.append(variable_id)
            continue
        declaration = index.get(variable_id)
        current = working[variable_id]
        variable_type = declaration.type if declaration else _infer_type(current)
        try:
            updated = _apply_one(mutation, current, variable_type)
        except TypeError as exc:
            problems.append(f"variable '{variable_id}': {exc}")
            offending.append(variable_id)
            continue
        working[variable_id] = _clamp(updated, declaration)

    if problems:
        raise MutationError(
            "Mutation batch rejected: " + "; ".join(problems),
            variable_ids=dict.fromkeys(offending),
        )

    return VariableBag(working)


__all__ = ["VariableBag", "default_value", "initial_bag", "apply_mutations"]
