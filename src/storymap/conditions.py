"""Pure evaluation of edge and choice conditions against a variable bag.

Conditions can be authored in two shapes:

* a structured mapping, as stored by the editor::

    {"variable": "gold", "operator": "greaterThan", "value": 10}
    {"all": [...]} / {"any": [...]} / {"not": {...}}

* a compact text expression::

    gold >= 10 and not exists curse
    inventory includes "key" or mood == "brave"

Both are compiled into the same immutable tree of :class:`Condition` nodes.
Evaluation never performs I/O and never mutates the bag. Referencing a
variable that is absent from the bag raises :class:`EvaluationError` instead of
quietly evaluating to ``False``; ``exists`` is the only operator defined on
absent variables.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Iterator, Mapping, Sequence

from .errors import EvaluationError


class Operator(str, Enum):
    """Comparison operators supported by conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    INCLUDES = "includes"
    NOT_INCLUDES = "notIncludes"
    EXISTS = "exists"


_OPERATOR_ALIASES: dict[str, Operator] = {
    "==": Operator.EQUALS,
    "=": Operator.EQUALS,
    "eq": Operator.EQUALS,
    "!=": Operator.NOT_EQUALS,
    "ne": Operator.NOT_EQUALS,
    ">": Operator.GREATER_THAN,
    "gt": Operator.GREATER_THAN,
    ">=": Operator.GREATER_THAN_OR_EQUAL,
    "gte": Operator.GREATER_THAN_OR_EQUAL,
    "<": Operator.LESS_THAN,
    "lt": Operator.LESS_THAN,
    "<=": Operator.LESS_THAN_OR_EQUAL,
    "lte": Operator.LESS_THAN_OR_EQUAL,
}


def parse_operator(value: str) -> Operator:
    """Return the :class:`Operator` named by ``value`` or one of its aliases."""

    if not isinstance(value, str):
        raise ValueError(f"Condition operator must be a string, got {type(value)!r}")
    stripped = value.strip()
    alias = _OPERATOR_ALIASES.get(stripped) or _OPERATOR_ALIASES.get(stripped.lower())
    if alias is not None:
        return alias
    for operator in Operator:
        if operator.value.lower() == stripped.lower():
            return operator
    raise ValueError(f"Unknown condition operator '{value}'.")


class Condition(ABC):
    """Base class for compiled condition trees."""

    @abstractmethod
    def evaluate(self, bag: Mapping[str, Any]) -> bool:
        """Return the truth value of the condition for ``bag``."""

    @abstractmethod
    def variables(self) -> Iterator[str]:
        """Yield every variable id referenced by the condition."""


@dataclass(frozen=True)
class Comparison(Condition):
    """Compare a single variable against a literal value."""

    variable_id: str
    operator: Operator
    value: Any = None

    def evaluate(self, bag: Mapping[str, Any]) -> bool:
        if self.operator is Operator.EXISTS:
            return self.variable_id in bag and bag[self.variable_id] is not None

        if self.variable_id not in bag:
            raise EvaluationError(
                f"Condition references unknown variable '{self.variable_id}'.",
                variable_id=self.variable_id,
            )

        current = bag[self.variable_id]
        operator = self.operator
        if operator is Operator.EQUALS:
            return _values_equal(current, self.value)
        if operator is Operator.NOT_EQUALS:
            return not _values_equal(current, self.value)
        if operator in (Operator.INCLUDES, Operator.NOT_INCLUDES):
            included = _includes(self.variable_id, current, self.value)
            return included if operator is Operator.INCLUDES else not included

        left, right = _orderable(self.variable_id, current, self.value)
        if operator is Operator.GREATER_THAN:
            return left > right
        if operator is Operator.GREATER_THAN_OR_EQUAL:
            return left >= right
        if operator is Operator.LESS_THAN:
            return left < right
        if operator is Operator.LESS_THAN_OR_EQUAL:
            return left <= right
        raise EvaluationError(  # pragma: no cover - exhaustive enum
            f"Unsupported operator '{operator.value}'.", variable_id=self.variable_id
        )

    def variables(self) -> Iterator[str]:
        yield self.variable_id


@dataclass(frozen=True)
class AllOf(Condition):
    """True when every nested condition is true."""

    conditions: tuple[Condition, ...]

    def evaluate(self, bag: Mapping[str, Any]) -> bool:
        return all(condition.evaluate(bag) for condition in self.conditions)

    def variables(self) -> Iterator[str]:
        for condition in self.conditions:
            yield from condition.variables()


@dataclass(frozen=True)
class AnyOf(Condition):
    """True when at least one nested condition is true."""

    conditions: tuple[Condition, ...]

    def evaluate(self, bag: Mapping[str, Any]) -> bool:
        return any(condition.evaluate(bag) for condition in self.conditions)

    def variables(self) -> Iterator[str]:
        for condition in self.conditions:
            yield from condition.variables()


@dataclass(frozen=True)
class Not(Condition):
    """Negate a nested condition."""

    condition: Condition

    def evaluate(self, bag: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(bag)

    def variables(self) -> Iterator[str]:
        yield from self.condition.variables()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _values_equal(left: Any, right: Any) -> bool:
    # ``True == 1`` must not hold for story variables.
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, tuple):
        left = list(left)
    if isinstance(right, tuple):
        right = list(right)
    return bool(left == right)


def _includes(variable_id: str, container: Any, item: Any) -> bool:
    if isinstance(container, str):
        if not isinstance(item, str):
            raise EvaluationError(
                f"Variable '{variable_id}' is a string; 'includes' needs a string value.",
                variable_id=variable_id,
            )
        return item in container
    if isinstance(container, (list, tuple, frozenset, set)):
        return any(_values_equal(entry, item) for entry in container)
    raise EvaluationError(
        f"Variable '{variable_id}' holds {type(container).__name__}; "
        "'includes' needs a list or string.",
        variable_id=variable_id,
    )


def _orderable(variable_id: str, left: Any, right: Any) -> tuple[Any, Any]:
    if _is_number(left) and _is_number(right):
        return left, right
    if isinstance(left, str) and isinstance(right, str):
        return left, right
    raise EvaluationError(
        f"Cannot order variable '{variable_id}' ({type(left).__name__}) "
        f"against {type(right).__name__}.",
        variable_id=variable_id,
    )


def _parse_mapping(payload: Mapping[str, Any]) -> Condition:
    if "all" in payload or "any" in payload:
        key = "all" if "all" in payload else "any"
        return _group(key, payload[key])

    if "logicOperator" in payload:
        return _group(str(payload["logicOperator"]).lower(), payload.get("conditions"))

    if "not" in payload:
        return Not(parse_condition_required(payload["not"]))

    variable = payload.get("variable", payload.get("variableId"))
    if not isinstance(variable, str) or not variable.strip():
        raise ValueError("Condition mappings must name a 'variable'.")

    operator = parse_operator(payload.get("operator", "equals"))
    if operator is Operator.EXISTS:
        return Comparison(variable.strip(), operator)
    if "value" not in payload:
        raise ValueError(
            f"Condition on '{variable}' using '{operator.value}' requires a 'value'."
        )
    return Comparison(variable.strip(), operator, _freeze(payload["value"]))


def _group(key: str, raw_conditions: Any) -> Condition:
    if not isinstance(raw_conditions, Sequence) or isinstance(raw_conditions, str):
        raise ValueError(f"Condition group '{key}' must contain a list of conditions.")
    conditions = tuple(parse_condition_required(entry) for entry in raw_conditions)
    if key == "all":
        return AllOf(conditions)
    if key == "any":
        return AnyOf(conditions)
    raise ValueError(f"Unknown condition group operator '{key}'.")


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_freeze(entry) for entry in value)
    return value


_TOKEN_PATTERN = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>==|!=|>=|<=|>|<|=)
      | (?P<paren>[()])
      | (?P<word>[A-Za-z_][A-Za-z0-9_.\-]*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "exists", "includes", "true", "false", "null"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str


def _tokenise(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    stripped_length = len(expression.rstrip())
    while position < stripped_length:
        match = _TOKEN_PATTERN.match(expression, position)
        if match is None or match.end() == position:
            raise ValueError(
                f"Unexpected character at position {position} in condition '{expression}'."
            )
        kind = match.lastgroup or ""
        tokens.append(_Token(kind, match.group(kind)))
        position = match.end()
    return tokens


class _ExpressionParser:
    """Recursive-descent parser for the text condition grammar."""

    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = _tokenise(expression)
        self._index = 0

    def parse(self) -> Condition:
        if not self._tokens:
            raise ValueError("Condition expression is empty.")
        condition = self._parse_or()
        if self._index != len(self._tokens):
            raise ValueError(
                f"Unexpected '{self._tokens[self._index].text}' in condition "
                f"'{self._expression}'."
            )
        return condition

    def _peek(self) -> _Token | None:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def _peek_word(self, word: str) -> bool:
        token = self._peek()
        return token is not None and token.kind == "word" and token.text.lower() == word

    def _advance(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ValueError(f"Condition '{self._expression}' ended unexpectedly.")
        self._index += 1
        return token

    def _parse_or(self) -> Condition:
        conditions = [self._parse_and()]
        while self._peek_word("or"):
            self._advance()
            conditions.append(self._parse_and())
        return conditions[0] if len(conditions) == 1 else AnyOf(tuple(conditions))

    def _parse_and(self) -> Condition:
        conditions = [self._parse_not()]
        while self._peek_word("and"):
            self._advance()
            conditions.append(self._parse_not())
        return conditions[0] if len(conditions) == 1 else AllOf(tuple(conditions))

    def _parse_not(self) -> Condition:
        if self._peek_word("not"):
            self._advance()
            return Not(self._parse_not())
        return self._parse_primary()

    def _parse_primary(self) -> Condition:
        token = self._advance()
        if token.kind == "paren" and token.text == "(":
            condition = self._parse_or()
            closing = self._advance()
            if closing.text != ")":
                raise ValueError(f"Missing ')' in condition '{self._expression}'.")
            return condition

        if token.kind == "word" and token.text.lower() == "exists":
            return Comparison(self._identifier(), Operator.EXISTS)

        if token.kind != "word" or token.text.lower() in _KEYWORDS:
            raise ValueError(
                f"Expected a variable name but found '{token.text}' in condition "
                f"'{self._expression}'."
            )

        variable_id = token.text
        following = self._peek()
        if following is None or following.kind == "paren" or (
            following.kind == "word" and following.text.lower() in {"and", "or"}
        ):
            return Comparison(variable_id, Operator.EQUALS, True)

        if self._peek_word("not"):
            self._advance()
            if not self._peek_word("includes"):
                raise ValueError(
                    f"Expected 'includes' after 'not' in condition '{self._expression}'."
                )
            self._advance()
            return Comparison(variable_id, Operator.NOT_INCLUDES, self._literal())

        operator_token = self._advance()
        if operator_token.kind not in {"op", "word"}:
            raise ValueError(
                f"Expected an operator after '{variable_id}' in condition "
                f"'{self._expression}'."
            )
        operator = parse_operator(operator_token.text)
        if operator is Operator.EXISTS:
            raise ValueError("Use 'exists <variable>' to test for presence.")
        return Comparison(variable_id, operator, self._literal())

    def _identifier(self) -> str:
        token = self._advance()
        if token.kind != "word" or token.text.lower() in _KEYWORDS:
            raise ValueError(
                f"Expected a variable name but found '{token.text}' in condition "
                f"'{self._expression}'."
            )
        return token.text

    def _literal(self) -> Any:
        token = self._advance()
        if token.kind == "number":
            return float(token.text) if "." in token.text else int(token.text)
        if token.kind == "string":
            body = token.text[1:-1]
            return re.sub(r"\\(.)", r"\1", body)
        if token.kind == "word":
            lowered = token.text.lower()
            if lowered == "true":
                return True
            if lowered == "false":
                return False
            if lowered == "null":
                return None
        raise ValueError(
            f"Expected a literal value but found '{token.text}' in condition "
            f"'{self._expression}'."
        )


@lru_cache(maxsize=512)
def _parse_expression(expression: str) -> Condition:
    return _ExpressionParser(expression).parse()


def parse_condition(raw: Any) -> Condition | None:
    """Compile ``raw`` into a :class:`Condition`.

    ``None`` and blank strings denote an unconditioned edge and return ``None``.

    Raises:
        ValueError: If ``raw`` is not a recognised condition shape.
    """

    if raw is None:
        return None
    if isinstance(raw, Condition):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return None
        return _parse_expression(raw.strip())
    if isinstance(raw, Mapping):
        if not raw:
            return None
        return _parse_mapping(raw)
    raise ValueError(f"Unsupported condition definition of type {type(raw)!r}.")


def parse_condition_required(raw: Any) -> Condition:
    condition = parse_condition(raw)
    if condition is None:
        raise ValueError("Nested conditions must not be empty.")
    return condition


def evaluate(condition: Any, bag: Mapping[str, Any]) -> bool:
    """Evaluate ``condition`` against ``bag``.

    Unconditioned input (``None`` or an empty expression) is always true.

    Raises:
        EvaluationError: If a referenced variable is missing from ``bag`` or a
            comparison is not defined for the stored value types. Malformed
            conditions are reported the same way.
    """

    try:
        compiled = parse_condition(condition)
    except ValueError as exc:
        raise EvaluationError(f"Malformed condition: {exc}") from exc
    if compiled is None:
        return True
    return compiled.evaluate(bag)


def referenced_variables(condition: Any) -> tuple[str, ...]:
    """Return the variable ids referenced by ``condition`` in first-seen order."""

    compiled = parse_condition(condition)
    if compiled is None:
        return ()
    seen: dict[str, None] = {}
    for variable_id in compiled.variables():
        seen.setdefault(variable_id, None)
    return tuple(seen)


__all__ = [
    "Operator",
    "Condition",
    "Comparison",
    "AllOf",
    "AnyOf",
    "Not",
    "parse_operator",
    "parse_condition",
    "parse_condition_required",
    "evaluate",
    "referenced_variables",
]
