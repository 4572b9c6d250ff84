# automation/rules/evaluator.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from .conditions import DEFAULT_MAX_DEPTH, parse_conditions
from .errors import ConditionEvaluationError
from .types import (
    AllOf,
    AnyOf,
    Condition,
    ConditionNode,
    ConditionOperator,
    NEGATED_OPERATORS,
    Not,
    ORDERING_OPERATORS,
)

# маркер "поля нет" (отличаем от значения null)
_MISSING = object()

# только строки, похожие на ISO-8601 дату: 2024-05-01, 2024-05-01T10:00:00Z ...
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ].*)?$")


class ConditionEvaluator:
    """
    Проверяет дерево условий правила на trigger data.

    Чистая функция: ничего не меняет ни в дереве, ни в данных,
    никакого состояния между вызовами. Одинаковый вход → одинаковый ответ,
    поэтому запуск можно "переиграть" по сохранённому журналу.
    """

    def __init__(self, *, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self._max_depth = max_depth

    # ------------------------------------------------------------------
    def evaluate_payload(
        self,
        payload: Optional[Dict[str, Any]],
        data: Mapping[str, Any],
    ) -> Optional[bool]:
        """
        Сырой JSON условий → результат.
        None: условий нет (для журнала conditionResult = null).
        ConditionSyntaxError пробрасывается как есть.
        """
        tree = parse_conditions(payload, max_depth=self._max_depth)
        if tree is None:
            return None
        return self.evaluate(tree, data)

    # ------------------------------------------------------------------
    def evaluate(self, node: ConditionNode, data: Mapping[str, Any]) -> bool:
        try:
            return _eval(node, data)
        except RecursionError as exc:
            raise ConditionEvaluationError("condition tree is too deep to evaluate") from exc


def evaluate(node: ConditionNode, data: Mapping[str, Any]) -> bool:
    """Короткий вход без объекта-оценщика."""
    return ConditionEvaluator().evaluate(node, data)


# ----------------------------------------------------------------------
# рекурсия по дереву
# ----------------------------------------------------------------------
def _eval(node: ConditionNode, data: Mapping[str, Any]) -> bool:
    if isinstance(node, Condition):
        return _eval_leaf(node, data)

    if isinstance(node, AllOf):
        # пустой and → True
        for child in node.items:
            if not _eval(child, data):
                return False
        return True

    if isinstance(node, AnyOf):
        # пустой or → False
        for child in node.items:
            if _eval(child, data):
                return True
        return False

    if isinstance(node, Not):
        return not _eval(node.item, data)

    raise ConditionEvaluationError(f"unknown condition node: {type(node).__name__}")


def _eval_leaf(cond: Condition, data: Mapping[str, Any]) -> bool:
    actual = resolve_path(data, cond.field)

    if actual is _MISSING:
        # отсутствующее поле "не равно ничему"
        return cond.op in NEGATED_OPERATORS

    op = cond.op
    expected = cond.value

    if op == ConditionOperator.EQ:
        return _equals(actual, expected)
    if op == ConditionOperator.NEQ:
        return not _equals(actual, expected)

    if op in ORDERING_OPERATORS:
        pair = _comparable(actual, expected)
        if pair is None:
            # несовместимые типы: не ошибка, а ложь
            return False
        left, right = pair
        if op == ConditionOperator.GT:
            return left > right
        if op == ConditionOperator.GTE:
            return left >= right
        if op == ConditionOperator.LT:
            return left < right
        return left <= right

    if op == ConditionOperator.CONTAINS:
        return _contains(actual, expected)
    if op == ConditionOperator.NOT_CONTAINS:
        return not _contains(actual, expected)

    if op == ConditionOperator.IN:
        return any(_equals(actual, v) for v in expected)
    if op == ConditionOperator.NOT_IN:
        return not any(_equals(actual, v) for v in expected)

    return False


# ----------------------------------------------------------------------
# вспомогательные
# ----------------------------------------------------------------------
def resolve_path(data: Any, path: str) -> Any:
    """
    "member.address.city" → значение или _MISSING.
    Числовой сегмент индексирует список: "tags.0".
    """
    cur = data
    for part in path.split("."):
        if isinstance(cur, Mapping):
            if part not in cur:
                return _MISSING
            cur = cur[part]
        elif isinstance(cur, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(cur):
                return _MISSING
            cur = cur[idx]
        else:
            return _MISSING
    return cur


def is_missing(value: Any) -> bool:
    return value is _MISSING


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _equals(a: Any, b: Any) -> bool:
    # True != 1 для данных из JSON
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(_equals(x, y) for x, y in zip(a, b))
    if isinstance(a, (list, tuple)) or isinstance(b, (list, tuple)):
        return False
    return a == b


def _comparable(a: Any, b: Any) -> Optional[Tuple[Any, Any]]:
    """Оба числа или обе ISO-даты → пара для сравнения, иначе None."""
    if _is_number(a) and _is_number(b):
        return a, b
    if isinstance(a, str) and isinstance(b, str):
        da, db = parse_instant(a), parse_instant(b)
        if da is not None and db is not None:
            return da, db
    return None


def parse_instant(value: str) -> Optional[datetime]:
    """
    ISO-8601 строка → aware datetime (naive считаем UTC).
    Не дата → None.
    """
    s = value.strip()
    if not _ISO_DATE_RE.match(s):
        return None
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple)):
        return any(_equals(item, expected) for item in actual)
    return False
