"""Data model for branching story graphs ("StoryMaps").

A :class:`StoryGraph` is an arena of nodes, edges and variable declarations.
Nodes are a tagged union of frozen dataclasses sharing a common base, edges
refer to nodes through the author-assigned ``node_id`` and never through
storage identifiers, so topology survives re-saves of the document.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, ClassVar, Iterable, Mapping, Sequence, Union, assert_never

from .conditions import parse_condition, referenced_variables
from .errors import GraphIssue


class _UnsetVariableId:
    """Explicit marker for a variable slot that has no usable identifier."""

    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial representation
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _UnsetVariableId()

VariableId = Union[str, _UnsetVariableId]

_UNSET_SENTINEL_STRINGS = frozenset({"", "null", "undefined"})


def normalise_variable_id(raw: Any) -> VariableId:
    """Return ``raw`` as a variable id, mapping legacy sentinels to :data:`UNSET`.

    ``None``, empty strings and the literal strings ``"null"`` and
    ``"undefined"`` were historically written by the editor for blank slots.
    They are never treated as real identifiers.
    """

    if raw is None or raw is UNSET:
        return UNSET
    if not isinstance(raw, str):
        raise ValueError(f"Variable ids must be strings, got {type(raw)!r}")
    stripped = raw.strip()
    if stripped in _UNSET_SENTINEL_STRINGS:
        return UNSET
    return stripped


def is_unset(variable_id: VariableId) -> bool:
    return variable_id is UNSET


class NodeKind(str, Enum):
    """Discriminator of the node union."""

    START = "start"
    SCENE = "scene"
    CHOICE = "choice"
    BRANCH = "branch"
    ENDING = "ending"


class VariableType(str, Enum):
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"
    LIST = "list"


class MutationOperation(str, Enum):
    SET = "set"
    ADD = "add"
    SUBTRACT = "subtract"
    TOGGLE = "toggle"


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass(frozen=True)
class StoryVariable:
    """Declaration of an author-defined variable scoped to a reading session."""

    variable_id: VariableId
    name: str
    type: VariableType = VariableType.NUMBER
    initial_value: Any = None
    min_value: float | None = None
    max_value: float | None = None

    @property
    def is_unset(self) -> bool:
        return self.variable_id is UNSET


@dataclass(frozen=True)
class VariableMutation:
    """A single change applied to the variable bag when a choice is taken."""

    variable_id: VariableId
    operation: MutationOperation
    value: Any = None


@dataclass(frozen=True)
class Choice:
    """An option offered to the reader by a choice node."""

    choice_id: str
    text: str
    target_node_id: str
    actions: tuple[VariableMutation, ...] = ()
    time_limit_seconds: float | None = None
    condition: Any = None


@dataclass(frozen=True, kw_only=True)
class NodeBase:
    """Fields shared by every node kind."""

    kind: ClassVar[NodeKind]

    node_id: str
    title: str = ""
    position: Position = field(default_factory=Position)


@dataclass(frozen=True, kw_only=True)
class StartNode(NodeBase):
    kind: ClassVar[NodeKind] = NodeKind.START

    default_next_node_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class SceneNode(NodeBase):
    kind: ClassVar[NodeKind] = NodeKind.SCENE

    scene_id: str | None = None
    default_next_node_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class ChoiceNode(NodeBase):
    kind: ClassVar[NodeKind] = NodeKind.CHOICE

    choices: tuple[Choice, ...] = ()
    time_limit_seconds: float | None = None
    timeout_choice_id: str | None = None

    def get_choice(self, choice_id: str) -> Choice | None:
        for choice in self.choices:
            if choice.choice_id == choice_id:
                return choice
        return None

    @property
    def deadline_seconds(self) -> float | None:
        """Return the effective time limit for the prompt, if any.

        The node-level limit wins; otherwise the shortest per-choice limit is
        used so that a single timed option still bounds the prompt.
        """

        if self.time_limit_seconds is not None:
            return self.time_limit_seconds
        limits = [
            choice.time_limit_seconds
            for choice in self.choices
            if choice.time_limit_seconds is not None
        ]
        return min(limits) if limits else None


@dataclass(frozen=True, kw_only=True)
class BranchNode(NodeBase):
    kind: ClassVar[NodeKind] = NodeKind.BRANCH


@dataclass(frozen=True, kw_only=True)
class EndingNode(NodeBase):
    kind: ClassVar[NodeKind] = NodeKind.ENDING

    ending_title: str = ""
    outcome: str | None = None


Node = Union[StartNode, SceneNode, ChoiceNode, BranchNode, EndingNode]

_NODE_CLASSES: Mapping[NodeKind, type[NodeBase]] = MappingProxyType(
    {
        NodeKind.START: StartNode,
        NodeKind.SCENE: SceneNode,
        NodeKind.CHOICE: ChoiceNode,
        NodeKind.BRANCH: BranchNode,
        NodeKind.ENDING: EndingNode,
    }
)


@dataclass(frozen=True)
class Edge:
    """Directed, optionally conditioned connection between two nodes."""

    edge_id: str
    source_node_id: str
    target_node_id: str
    condition: Any = None
    label: str = ""

    @property
    def is_conditioned(self) -> bool:
        return parse_condition(self.condition) is not None


@dataclass(frozen=True)
class StoryGraph:
    """Immutable arena of nodes, edges and variable declarations.

    Node and edge order is preserved exactly as declared. Lookup indexes are
    computed once so snapshots can be shared between reading sessions.
    """

    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    variables: tuple[StoryVariable, ...] = ()

    _node_index: Mapping[str, int] = field(init=False, repr=False, compare=False)
    _outgoing: Mapping[str, tuple[int, ...]] = field(
        init=False, repr=False, compare=False
    )
    _choice_owner: Mapping[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        object.__setattr__(self, "variables", tuple(self.variables))

        node_index: dict[str, int] = {}
        choice_owner: dict[str, str] = {}
        for index, node in enumerate(self.nodes):
            node_index.setdefault(node.node_id, index)
            if isinstance(node, ChoiceNode):
                for choice in node.choices:
                    choice_owner.setdefault(choice.choice_id, node.node_id)

        outgoing: dict[str, list[int]] = {}
        for index, edge in enumerate(self.edges):
            outgoing.setdefault(edge.source_node_id, []).append(index)

        object.__setattr__(self, "_node_index", MappingProxyType(node_index))
        object.__setattr__(
            self,
            "_outgoing",
            MappingProxyType({key: tuple(value) for key, value in outgoing.items()}),
        )
        object.__setattr__(self, "_choice_owner", MappingProxyType(choice_owner))

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(node.node_id for node in self.nodes)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_index

    def get_node(self, node_id: str) -> Node:
        """Return the node identified by ``node_id``.

        Raises:
            KeyError: If the node does not exist.
        """

        try:
            return self.nodes[self._node_index[node_id]]
        except KeyError as exc:
            raise KeyError(f"Node '{node_id}' does not exist.") from exc

    def start_nodes(self) -> tuple[StartNode, ...]:
        return tuple(node for node in self.nodes if isinstance(node, StartNode))

    @property
    def start_node_id(self) -> str | None:
        """Return the id of the single start node, or ``None`` when ambiguous."""

        starts = self.start_nodes()
        if len(starts) != 1:
            return None
        return starts[0].node_id

    def outgoing_edges(self, node_id: str) -> tuple[Edge, ...]:
        """Return outgoing edges of ``node_id`` in declared order."""

        return tuple(self.edges[index] for index in self._outgoing.get(node_id, ()))

    def choice_owner(self, choice_id: str) -> str | None:
        """Return the id of the choice node that offers ``choice_id``."""

        return self._choice_owner.get(choice_id)

    def declared_variable_ids(self) -> frozenset[str]:
        return frozenset(
            variable.variable_id
            for variable in self.variables
            if isinstance(variable.variable_id, str)
        )

    def get_variable(self, variable_id: str) -> StoryVariable | None:
        for variable in self.variables:
            if variable.variable_id == variable_id:
                return variable
        return None

    def with_nodes(self, nodes: Iterable[Node]) -> "StoryGraph":
        return StoryGraph(nodes=tuple(nodes), edges=self.edges, variables=self.variables)

    def successors(self, node_id: str) -> tuple[str, ...]:
        """Return every node reachable in one hop, through edges or references."""

        targets: list[str] = [edge.target_node_id for edge in self.outgoing_edges(node_id)]
        node = self.get_node(node_id) if self.has_node(node_id) else None
        if isinstance(node, (StartNode, SceneNode)) and node.default_next_node_id:
            targets.append(node.default_next_node_id)
        if isinstance(node, ChoiceNode):
            targets.extend(choice.target_node_id for choice in node.choices)
        return tuple(dict.fromkeys(targets))


def node_default_next(node: Node) -> str | None:
    """Return the author-configured fallthrough target of ``node``."""

    match node:
        case StartNode() | SceneNode():
            return node.default_next_node_id
        case ChoiceNode() | BranchNode() | EndingNode():
            return None
        case _:
            assert_never(node)


def validate_graph(
    graph: StoryGraph, *, strict_references: bool = False
) -> list[GraphIssue]:
    """Return every structural issue found in ``graph``.

    The checks mirror what a commit must reject: duplicate node ids, dangling
    edge endpoints, duplicate variable ids (unset slots excluded), a missing or
    duplicated start node, choice targets that do not exist and broken
    fallthrough/timeout references. When ``strict_references`` is true,
    mutations and conditions naming undeclared variables are also reported.
    """

    issues: list[GraphIssue] = []

    seen_nodes: set[str] = set()
    duplicate_nodes: list[str] = []
    for node in graph.nodes:
        if node.node_id in seen_nodes:
            duplicate_nodes.append(node.node_id)
        seen_nodes.add(node.node_id)
    if duplicate_nodes:
        issues.append(
            GraphIssue(
                code="duplicate_node_id",
                message=f"Duplicate node ids: {', '.join(duplicate_nodes)}.",
                offending_ids=tuple(dict.fromkeys(duplicate_nodes)),
            )
        )

    starts = graph.start_nodes()
    if not starts:
        issues.append(
            GraphIssue(code="missing_start_node", message="No start node is defined.")
        )
    elif len(starts) > 1:
        start_ids = tuple(node.node_id for node in starts)
        issues.append(
            GraphIssue(
                code="multiple_start_nodes",
                message=f"Exactly one start node is allowed, found {len(starts)}.",
                offending_ids=start_ids,
            )
        )

    seen_edges: set[str] = set()
    for edge in graph.edges:
        if edge.edge_id:
            if edge.edge_id in seen_edges:
                issues.append(
                    GraphIssue(
                        code="duplicate_edge_id",
                        message=f"Duplicate edge id '{edge.edge_id}'.",
                        offending_ids=(edge.edge_id,),
                    )
                )
            seen_edges.add(edge.edge_id)
        for endpoint, role in (
            (edge.source_node_id, "source"),
            (edge.target_node_id, "target"),
        ):
            if endpoint not in seen_nodes:
                issues.append(
                    GraphIssue(
                        code="dangling_edge",
                        message=(
                            f"Edge '{edge.edge_id}' references missing {role} "
                            f"node '{endpoint}'."
                        ),
                        offending_ids=tuple(
                            value for value in (edge.edge_id, endpoint) if value
                        ),
                    )
                )
        try:
            parse_condition(edge.condition)
        except ValueError as exc:
            issues.append(
                GraphIssue(
                    code="invalid_condition",
                    message=f"Edge '{edge.edge_id}' has a malformed condition: {exc}",
                    offending_ids=(edge.edge_id,),
                )
            )

    seen_variables: set[str] = set()
    duplicate_variables: list[str] = []
    for variable in graph.variables:
        if not isinstance(variable.variable_id, str):
            continue
        if variable.variable_id in seen_variables:
            duplicate_variables.append(variable.variable_id)
        seen_variables.add(variable.variable_id)
    if duplicate_variables:
        issues.append(
            GraphIssue(
                code="duplicate_variable_id",
                message=f"Duplicate variable ids: {', '.join(duplicate_variables)}.",
                offending_ids=tuple(dict.fromkeys(duplicate_variables)),
            )
        )

    seen_choices: set[str] = set()
    for node in graph.nodes:
        default_next = node_default_next(node)
        if default_next is not None and default_next not in seen_nodes:
            issues.append(
                GraphIssue(
                    code="missing_default_next",
                    message=(
                        f"Node '{node.node_id}' falls through to missing node "
                        f"'{default_next}'."
                    ),
                    offending_ids=(node.node_id, default_next),
                )
            )
        if not isinstance(node, ChoiceNode):
            continue
        for choice in node.choices:
            if choice.choice_id in seen_choices:
                issues.append(
                    GraphIssue(
                        code="duplicate_choice_id",
                        message=f"Duplicate choice id '{choice.choice_id}'.",
                        offending_ids=(choice.choice_id,),
                    )
                )
            seen_choices.add(choice.choice_id)
            if choice.target_node_id not in seen_nodes:
                issues.append(
                    GraphIssue(
                        code="missing_choice_target",
                        message=(
                            f"Choice '{choice.choice_id}' targets missing node "
                            f"'{choice.target_node_id}'."
                        ),
                        offending_ids=(choice.choice_id, choice.target_node_id),
                    )
                )
            try:
                parse_condition(choice.condition)
            except ValueError as exc:
                issues.append(
                    GraphIssue(
                        code="invalid_condition",
                        message=(
                            f"Choice '{choice.choice_id}' has a malformed condition: {exc}"
                        ),
                        offending_ids=(choice.choice_id,),
                    )
                )
        if node.timeout_choice_id is not None and node.get_choice(
            node.timeout_choice_id
        ) is None:
            issues.append(
                GraphIssue(
                    code="invalid_timeout_choice",
                    message=(
                        f"Choice node '{node.node_id}' names unknown timeout choice "
                        f"'{node.timeout_choice_id}'."
                    ),
                    offending_ids=(node.node_id, node.timeout_choice_id),
                )
            )

    if strict_references:
        issues.extend(find_unknown_variable_references(graph))

    return issues


def find_unknown_variable_references(graph: StoryGraph) -> list[GraphIssue]:
    """Report mutations and conditions that name undeclared variables."""

    declared = graph.declared_variable_ids()
    issues: list[GraphIssue] = []

    for node in graph.nodes:
        if not isinstance(node, ChoiceNode):
            continue
        for choice in node.choices:
            for mutation in choice.actions:
                if not isinstance(mutation.variable_id, str):
                    issues.append(
                        GraphIssue(
                            code="unset_mutation_variable",
                            message=(
                                f"Choice '{choice.choice_id}' mutates a variable "
                                "without an id."
                            ),
                            offending_ids=(choice.choice_id,),
                        )
                    )
                elif mutation.variable_id not in declared:
                    issues.append(
                        GraphIssue(
                            code="unknown_mutation_variable",
                            message=(
                                f"Choice '{choice.choice_id}' mutates undeclared "
                                f"variable '{mutation.variable_id}'."
                            ),
                            offending_ids=(choice.choice_id, mutation.variable_id),
                        )
                    )
            issues.extend(
                _unknown_condition_variables(choice.choice_id, choice.condition, declared)
            )

    for edge in graph.edges:
        issues.extend(_unknown_condition_variables(edge.edge_id, edge.condition, declared))

    return issues


def _unknown_condition_variables(
    owner_id: str, condition: Any, declared: frozenset[str]
) -> list[GraphIssue]:
    try:
        variables = referenced_variables(condition)
    except ValueError:
        return []
    return [
        GraphIssue(
            code="unknown_condition_variable",
            message=f"Condition on '{owner_id}' references undeclared variable '{name}'.",
            offending_ids=tuple(value for value in (owner_id, name) if value),
        )
        for name in variables
        if name not in declared
    ]


def drop_unset_variables(graph: StoryGraph) -> tuple[StoryGraph, int]:
    """Return ``graph`` without unset variable slots and the number removed."""

    kept = tuple(variable for variable in graph.variables if not variable.is_unset)
    removed = len(graph.variables) - len(kept)
    if not removed:
        return graph, 0
    return StoryGraph(nodes=graph.nodes, edges=graph.edges, variables=kept), removed


def _coerce_text(value: Any, *, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"Expected a string, got {type(value)!r}")
    return value.strip()


def _coerce_optional_id(value: Any, *, field_name: str, owner: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{owner} must use a string '{field_name}'.")
    stripped = value.strip()
    return stripped or None


def _coerce_required_id(value: Any, *, field_name: str, owner: str) -> str:
    identifier = _coerce_optional_id(value, field_name=field_name, owner=owner)
    if identifier is None:
        raise ValueError(f"{owner} is missing '{field_name}'.")
    return identifier


def _coerce_seconds(value: Any, *, owner: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{owner} must use a numeric 'timeLimitSeconds'.")
    if value <= 0:
        raise ValueError(f"{owner} must use a positive 'timeLimitSeconds'.")
    return float(value)


def _coerce_number(value: Any, *, field_name: str, owner: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{owner} must use a numeric '{field_name}'.")
    return value


def parse_node_kind(raw: Any) -> NodeKind:
    """Return the :class:`NodeKind` for ``raw``.

    Legacy editor values such as ``"scene_node"`` or ``"end"`` are accepted.
    """

    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("Node kind must be a non-empty string.")
    normalised = raw.strip().lower()
    if normalised.endswith("_node"):
        normalised = normalised[: -len("_node")]
    if normalised == "end":
        normalised = NodeKind.ENDING.value
    try:
        return NodeKind(normalised)
    except ValueError as exc:
        raise ValueError(f"Unknown node kind '{raw}'.") from exc


def _parse_position(raw: Any, *, owner: str) -> Position:
    if raw is None:
        return Position()
    if not isinstance(raw, Mapping):
        raise ValueError(f"{owner} must define 'position' as an object.")
    x = _coerce_number(raw.get("x", 0), field_name="position.x", owner=owner)
    y = _coerce_number(raw.get("y", 0), field_name="position.y", owner=owner)
    return Position(x=float(x or 0), y=float(y or 0))


def _parse_mutation(raw: Any, *, owner: str) -> VariableMutation:
    if not isinstance(raw, Mapping):
        raise ValueError(f"Actions of {owner} must be objects.")
    operation_raw = raw.get("operation", "set")
    try:
        operation = MutationOperation(str(operation_raw).strip().lower())
    except ValueError as exc:
        raise ValueError(
            f"{owner} uses unknown mutation operation '{operation_raw}'."
        ) from exc
    return VariableMutation(
        variable_id=normalise_variable_id(raw.get("variableId")),
        operation=operation,
        value=raw.get("value"),
    )


def _parse_choice(raw: Any, *, node_id: str, index: int) -> Choice:
    owner = f"Choice #{index} of node '{node_id}'"
    if not isinstance(raw, Mapping):
        raise ValueError(f"{owner} must be an object definition.")
    choice_id = _coerce_required_id(
        raw.get("choiceId", raw.get("id")), field_name="choiceId", owner=owner
    )
    text = raw.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValueError(f"{owner} must provide a 'text' string.")
    target = _coerce_required_id(
        raw.get("targetNodeId", raw.get("nextNodeId")),
        field_name="targetNodeId",
        owner=owner,
    )
    raw_actions = raw.get("actions") or ()
    if not isinstance(raw_actions, Sequence) or isinstance(raw_actions, str):
        raise ValueError(f"{owner} must define 'actions' as a list.")
    return Choice(
        choice_id=choice_id,
        text=text.strip(),
        target_node_id=target,
        actions=tuple(_parse_mutation(action, owner=owner) for action in raw_actions),
        time_limit_seconds=_coerce_seconds(raw.get("timeLimitSeconds"), owner=owner),
        condition=raw.get("condition"),
    )


def node_from_payload(raw: Any, *, index: int = 0) -> Node:
    """Build a node from its wire representation."""

    if not isinstance(raw, Mapping):
        raise ValueError(f"Node #{index} must be an object definition.")

    payload: dict[str, Any] = {}
    nested = raw.get("nodeSpecificData")
    if isinstance(nested, Mapping):
        payload.update(nested)
    payload.update(raw)

    node_id = _coerce_required_id(
        payload.get("nodeId", payload.get("id")),
        field_name="nodeId",
        owner=f"Node #{index}",
    )
    owner = f"Node '{node_id}'"
    kind = parse_node_kind(payload.get("kind", payload.get("nodeType")))
    common: dict[str, Any] = {
        "node_id": node_id,
        "title": _coerce_text(payload.get("title")),
        "position": _parse_position(payload.get("position"), owner=owner),
    }

    match kind:
        case NodeKind.START:
            return StartNode(
                **common,
                default_next_node_id=_coerce_optional_id(
                    payload.get("defaultNextNodeId"),
                    field_name="defaultNextNodeId",
                    owner=owner,
                ),
            )
        case NodeKind.SCENE:
            return SceneNode(
                **common,
                scene_id=_coerce_optional_id(
                    payload.get("sceneId"), field_name="sceneId", owner=owner
                ),
                default_next_node_id=_coerce_optional_id(
                    payload.get("defaultNextNodeId", payload.get("defaultNextSceneId")),
                    field_name="defaultNextNodeId",
                    owner=owner,
                ),
            )
        case NodeKind.CHOICE:
            raw_choices = payload.get("choices") or ()
            if not isinstance(raw_choices, Sequence) or isinstance(raw_choices, str):
                raise ValueError(f"{owner} must define 'choices' as a list.")
            return ChoiceNode(
                **common,
                choices=tuple(
                    _parse_choice(choice, node_id=node_id, index=position)
                    for position, choice in enumerate(raw_choices)
                ),
                time_limit_seconds=_coerce_seconds(
                    payload.get("timeLimitSeconds"), owner=owner
                ),
                timeout_choice_id=_coerce_optional_id(
                    payload.get("timeoutChoiceId"),
                    field_name="timeoutChoiceId",
                    owner=owner,
                ),
            )
        case NodeKind.BRANCH:
            return BranchNode(**common)
        case NodeKind.ENDING:
            return EndingNode(
                **common,
                ending_title=_coerce_text(payload.get("endingTitle")),
                outcome=_coerce_optional_id(
                    payload.get("outcome"), field_name="outcome", owner=owner
                ),
            )
        case _:
            assert_never(kind)


def edge_from_payload(raw: Any, *, index: int = 0) -> Edge:
    if not isinstance(raw, Mapping):
        raise ValueError(f"Edge #{index} must be an object definition.")
    owner = f"Edge #{index}"
    edge_id = _coerce_optional_id(
        raw.get("edgeId", raw.get("id")), field_name="edgeId", owner=owner
    )
    return Edge(
        edge_id=edge_id or f"edge-{index}",
        source_node_id=_coerce_required_id(
            raw.get("sourceNodeId", raw.get("source")),
            field_name="sourceNodeId",
            owner=owner,
        ),
        target_node_id=_coerce_required_id(
            raw.get("targetNodeId", raw.get("target")),
            field_name="targetNodeId",
            owner=owner,
        ),
        condition=raw.get("condition", raw.get("conditionExpr")),
        label=_coerce_text(raw.get("label")),
    )


def variable_from_payload(raw: Any, *, index: int = 0) -> StoryVariable:
    if not isinstance(raw, Mapping):
        raise ValueError(f"Story variable #{index} must be an object definition.")
    owner = f"Story variable #{index}"
    variable_id = normalise_variable_id(raw.get("variableId"))
    name = raw.get("name", raw.get("variableName"))
    if name is None:
        name = variable_id if isinstance(variable_id, str) else ""
    if not isinstance(name, str):
        raise ValueError(f"{owner} must use a string 'name'.")
    type_raw = raw.get("type", raw.get("dataType", VariableType.NUMBER.value))
    try:
        variable_type = VariableType(str(type_raw).strip().lower())
    except ValueError as exc:
        raise ValueError(f"{owner} uses unknown type '{type_raw}'.") from exc
    initial_value = raw.get("initialValue")
    if isinstance(initial_value, list):
        initial_value = tuple(initial_value)
    return StoryVariable(
        variable_id=variable_id,
        name=name.strip(),
        type=variable_type,
        initial_value=initial_value,
        min_value=_coerce_number(raw.get("minValue"), field_name="minValue", owner=owner),
        max_value=_coerce_number(raw.get("maxValue"), field_name="maxValue", owner=owner),
    )


def _require_list(payload: Mapping[str, Any], key: str) -> Sequence[Any]:
    value = payload.get(key)
    if value is None:
        return ()
    if not isinstance(value, Sequence) or isinstance(value, str):
        raise ValueError(f"StoryMap '{key}' must be a list.")
    return value


def load_graph_from_mapping(payload: Mapping[str, Any]) -> StoryGraph:
    """Convert a wire-format StoryMap mapping into a :class:`StoryGraph`.

    The mapping is typically produced by parsing JSON saved by the editor. It
    should contain ``nodes``, ``edges`` and ``storyVariables`` lists; the
    optional ``startNodeId`` is derived data and is ignored on input.

    Raises:
        ValueError: If an entry is malformed. Structural invariants are
            checked separately by :func:`validate_graph`.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("StoryMap payloads must be objects.")

    nodes = tuple(
        node_from_payload(raw, index=index)
        for index, raw in enumerate(_require_list(payload, "nodes"))
    )
    edges = tuple(
        edge_from_payload(raw, index=index)
        for index, raw in enumerate(_require_list(payload, "edges"))
    )
    variables = tuple(
        variable_from_payload(raw, index=index)
        for index, raw in enumerate(_require_list(payload, "storyVariables"))
    )
    return StoryGraph(nodes=nodes, edges=edges, variables=variables)


def load_graph_from_file(path: str | Path) -> StoryGraph:
    """Load a StoryMap JSON document from disk."""

    data_path = Path(path)
    with data_path.open("r", encoding="utf-8") as handle:
        raw_data = json.load(handle)

    if not isinstance(raw_data, Mapping):
        raise ValueError("StoryMap files must contain an object at the top level.")

    return load_graph_from_mapping(raw_data)


def _plain(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_plain(entry) for entry in value]
    return value


def _mutation_to_payload(mutation: VariableMutation) -> dict[str, Any]:
    return {
        "variableId": mutation.variable_id if isinstance(mutation.variable_id, str) else None,
        "operation": mutation.operation.value,
        "value": _plain(mutation.value),
    }


def _choice_to_payload(choice: Choice) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "choiceId": choice.choice_id,
        "text": choice.text,
        "actions": [_mutation_to_payload(action) for action in choice.actions],
        "targetNodeId": choice.target_node_id,
    }
    if choice.time_limit_seconds is not None:
        payload["timeLimitSeconds"] = choice.time_limit_seconds
    if choice.condition is not None:
        payload["condition"] = choice.condition
    return payload


def node_to_payload(node: Node) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "nodeId": node.node_id,
        "kind": node.kind.value,
        "title": node.title,
        "position": {"x": node.position.x, "y": node.position.y},
    }
    match node:
        case StartNode():
            if node.default_next_node_id is not None:
                payload["defaultNextNodeId"] = node.default_next_node_id
        case SceneNode():
            payload["sceneId"] = node.scene_id
            if node.default_next_node_id is not None:
                payload["defaultNextNodeId"] = node.default_next_node_id
        case ChoiceNode():
            payload["choices"] = [_choice_to_payload(choice) for choice in node.choices]
            if node.time_limit_seconds is not None:
                payload["timeLimitSeconds"] = node.time_limit_seconds
            if node.timeout_choice_id is not None:
                payload["timeoutChoiceId"] = node.timeout_choice_id
        case BranchNode():
            pass
        case EndingNode():
            payload["endingTitle"] = node.ending_title
            if node.outcome is not None:
                payload["outcome"] = node.outcome
        case _:
            assert_never(node)
    return payload


def edge_to_payload(edge: Edge) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "edgeId": edge.edge_id,
        "sourceNodeId": edge.source_node_id,
        "targetNodeId": edge.target_node_id,
    }
    if edge.condition is not None:
        payload["condition"] = edge.condition
    if edge.label:
        payload["label"] = edge.label
    return payload


def variable_to_payload(variable: StoryVariable) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "variableId": variable.variable_id if isinstance(variable.variable_id, str) else None,
        "name": variable.name,
        "type": variable.type.value,
        "initialValue": _plain(variable.initial_value),
    }
    if variable.min_value is not None:
        payload["minValue"] = variable.min_value
    if variable.max_value is not None:
        payload["maxValue"] = variable.max_value
    return payload


def graph_to_payload(graph: StoryGraph) -> dict[str, Any]:
    """Return the JSON-serialisable wire representation of ``graph``."""

    return {
        "nodes": [node_to_payload(node) for node in graph.nodes],
        "edges": [edge_to_payload(edge) for edge in graph.edges],
        "storyVariables": [variable_to_payload(variable) for variable in graph.variables],
        "startNodeId": graph.start_node_id,
    }


def minimal_graph(start_node_id: str = "start") -> StoryGraph:
    """Return the graph every new episode starts from: a lone start node."""

    return StoryGraph(nodes=(StartNode(node_id=start_node_id, title="Start"),))


def reposition(node: Node, position: Position) -> Node:
    return replace(node, position=position)


__all__ = [
    "UNSET",
    "VariableId",
    "normalise_variable_id",
    "is_unset",
    "NodeKind",
    "VariableType",
    "MutationOperation",
    "Position",
    "StoryVariable",
    "VariableMutation",
    "Choice",
    "NodeBase",
    "StartNode",
    "SceneNode",
    "ChoiceNode",
    "BranchNode",
    "EndingNode",
    "Node",
    "Edge",
    "StoryGraph",
    "node_default_next",
    "validate_graph",
    "find_unknown_variable_references",
    "drop_unset_variables",
    "parse_node_kind",
    "node_from_payload",
    "edge_from_payload",
    "variable_from_payload",
    "load_graph_from_mapping",
    "load_graph_from_file",
    "node_to_payload",
    "edge_to_payload",
    "variable_to_payload",
    "graph_to_payload",
    "minimal_graph",
    "reposition",
]
