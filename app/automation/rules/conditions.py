# automation/rules/conditions.py
from __future__ import annotations

from typing import Any, Dict, Optional

from .errors import ConditionSyntaxError
from .types import (
    AllOf,
    AnyOf,
    Condition,
    ConditionNode,
    ConditionOperator,
    Not,
)

DEFAULT_MAX_DEPTH = 32

_LEAF_KEYS = {"field", "op", "value"}
_COMBINATORS = ("and", "or", "not")


def parse_conditions(
    payload: Optional[Dict[str, Any]],
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Optional[ConditionNode]:
    """
    JSON → дерево условий.

    Грамматика:
      лист        {"field": "member.age", "op": "gte", "value": 18}
      комбинаторы {"and": [...]}, {"or": [...]}, {"not": {...}}

    None или {} → None ("условий нет", то есть всегда истина).
    Любая ошибка → ConditionSyntaxError с путём до узла.
    """
    if payload is None:
        return None
    if isinstance(payload, dict) and not payload:
        return None
    return _parse_node(payload, "conditions", 1, max_depth)


def validate_conditions(
    payload: Optional[Dict[str, Any]],
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> None:
    """То же, что parse_conditions, но результат не нужен: только проверка."""
    parse_conditions(payload, max_depth=max_depth)


def _parse_node(node: Any, path: str, depth: int, max_depth: int) -> ConditionNode:
    if depth > max_depth:
        raise ConditionSyntaxError(path, f"nesting deeper than {max_depth} levels")

    if not isinstance(node, dict):
        raise ConditionSyntaxError(path, "expected an object")

    combinators = [k for k in _COMBINATORS if k in node]
    if combinators:
        if len(node) != 1:
            raise ConditionSyntaxError(
                path, "a combinator must be the only key of its object"
            )
        key = combinators[0]
        child = node[key]
        child_path = f"{path}.{key}"

        if key == "not":
            return Not(_parse_node(child, child_path, depth + 1, max_depth))

        if not isinstance(child, list):
            raise ConditionSyntaxError(child_path, "expected a list of conditions")
        items = tuple(
            _parse_node(c, f"{child_path}[{i}]", depth + 1, max_depth)
            for i, c in enumerate(child)
        )
        return AllOf(items) if key == "and" else AnyOf(items)

    return _parse_leaf(node, path)


def _parse_leaf(node: Dict[str, Any], path: str) -> Condition:
    extra = sorted(set(node) - _LEAF_KEYS)
    if extra:
        raise ConditionSyntaxError(path, f"unknown keys: {', '.join(extra)}")

    field = node.get("field")
    if not isinstance(field, str) or not field.strip():
        raise ConditionSyntaxError(f"{path}.field", "must be a non-empty string")
    if any(not part for part in field.split(".")):
        raise ConditionSyntaxError(f"{path}.field", f"invalid path {field!r}")

    raw_op = node.get("op")
    try:
        op = ConditionOperator(str(raw_op).strip().lower())
    except ValueError:
        raise ConditionSyntaxError(f"{path}.op", f"unsupported operator {raw_op!r}")

    if "value" not in node:
        raise ConditionSyntaxError(f"{path}.value", "is required")
    value = node["value"]

    if op in (ConditionOperator.IN, ConditionOperator.NOT_IN) and not isinstance(value, list):
        raise ConditionSyntaxError(f"{path}.value", f"'{op.value}' expects a list")

    if isinstance(value, (dict, list)) and op not in (
        ConditionOperator.IN,
        ConditionOperator.NOT_IN,
        ConditionOperator.EQ,
        ConditionOperator.NEQ,
    ):
        raise ConditionSyntaxError(
            f"{path}.value", f"'{op.value}' expects a scalar value"
        )

    if isinstance(value, list):
        value = tuple(value)

    return Condition(field=field.strip(), op=op, value=value)
