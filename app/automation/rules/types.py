# automation/rules/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# === 1. СЛОВАРИ ТЕГОВ =========================================================

class TriggerType(Enum):
    """
    Откуда приходит событие. Для движка: непрозрачный тег,
    смысл он имеет только для внешнего источника событий.
    """
    MEMBER_CREATED = "MEMBER_CREATED"
    MEMBER_UPDATED = "MEMBER_UPDATED"
    MEMBER_INACTIVE = "MEMBER_INACTIVE"
    BIRTHDAY = "BIRTHDAY"
    ANNIVERSARY = "ANNIVERSARY"
    SCHEDULE = "SCHEDULE"
    MANUAL = "MANUAL"
    MESSAGE_SENT = "MESSAGE_SENT"
    CUSTOM = "CUSTOM"


class ActionType(Enum):
    """Какой обработчик действия выполнит правило."""
    SEND_MESSAGE = "SEND_MESSAGE"   # SMS
    SEND_EMAIL = "SEND_EMAIL"
    WEBHOOK = "WEBHOOK"
    TAG_MEMBER = "TAG_MEMBER"


class ExecutionStatus(Enum):
    """Итог одного запуска правила."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"     # обработчик вернул ошибку
    SKIPPED = "SKIPPED"   # условие ложно
    ERROR = "ERROR"       # сбой вычисления условия


class ConditionOperator(Enum):
    """Операторы листа условия."""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"          # подстрока / элемент массива
    NOT_CONTAINS = "not_contains"
    IN = "in"                      # значение входит в набор
    NOT_IN = "not_in"


# отрицающие операторы: отсутствующее поле → True
NEGATED_OPERATORS = frozenset({
    ConditionOperator.NEQ,
    ConditionOperator.NOT_CONTAINS,
    ConditionOperator.NOT_IN,
})

ORDERING_OPERATORS = frozenset({
    ConditionOperator.GT,
    ConditionOperator.GTE,
    ConditionOperator.LT,
    ConditionOperator.LTE,
})


def _parse_tag(enum_cls, raw: Any):
    if isinstance(raw, enum_cls):
        return raw
    return enum_cls(str(raw).strip().upper())


def parse_trigger_type(raw: Any) -> TriggerType:
    """"member_created" / "MEMBER_CREATED" → TriggerType. Иначе ValueError."""
    return _parse_tag(TriggerType, raw)


def parse_action_type(raw: Any) -> ActionType:
    return _parse_tag(ActionType, raw)


# === 2. ДЕРЕВО УСЛОВИЙ ========================================================
#
# Сумма из четырёх вариантов: лист, all_of (and), any_of (or), not.

@dataclass(frozen=True)
class Condition:
    """
    Лист: {field, op, value}.
    field: путь через точку в trigger data, например "member.age".
    """
    field: str
    op: ConditionOperator
    value: Any = None


@dataclass(frozen=True)
class AllOf:
    items: tuple = ()


@dataclass(frozen=True)
class AnyOf:
    items: tuple = ()


@dataclass(frozen=True)
class Not:
    item: "ConditionNode"


ConditionNode = Union[Condition, AllOf, AnyOf, Not]


# === 3. ПРАВИЛО ===============================================================

@dataclass
class RuleStats:
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_run_at: Optional[datetime] = None


@dataclass
class AutomationRule:
    """Правило автоматизации в том виде, в каком его хранят хранилища."""
    id: str
    name: str
    trigger_type: TriggerType
    action_type: ActionType
    created_by: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    action_config: Dict[str, Any] = field(default_factory=dict)
    # сырой JSON дерева; None / {} → "всегда истина"
    conditions: Optional[Dict[str, Any]] = None
    is_active: bool = True
    stats: RuleStats = field(default_factory=RuleStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "triggerType": self.trigger_type.value,
            "triggerConfig": self.trigger_config,
            "actionType": self.action_type.value,
            "actionConfig": self.action_config,
            "conditions": self.conditions,
            "isActive": self.is_active,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "runCount": self.stats.run_count,
            "successCount": self.stats.success_count,
            "failureCount": self.stats.failure_count,
            "lastRunAt": _iso(self.stats.last_run_at),
        }


# === 4. РЕЗУЛЬТАТ ДЕЙСТВИЯ ====================================================

@dataclass
class ActionOutcome:
    """
    Нормализованный ответ обработчика действия.
    Ровно одно из полей осмысленно: summary при успехе, error при отказе.
    """
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, **summary: Any) -> "ActionOutcome":
        return cls(summary=dict(summary))

    @classmethod
    def failure(cls, error: str) -> "ActionOutcome":
        return cls(error=error or "action failed")


# === 5. ЖУРНАЛ ВЫПОЛНЕНИЯ =====================================================

@dataclass(frozen=True)
class ExecutionLog:
    """
    Неизменяемая запись аудита: один вызов execute → одна запись.
    """
    id: str
    rule_id: str
    rule_name: str
    triggered_at: datetime
    trigger_data: Dict[str, Any]
    condition_result: Optional[bool]
    status: ExecutionStatus
    duration_ms: int
    action_result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "triggeredAt": _iso(self.triggered_at),
            "triggerData": self.trigger_data,
            "conditionResult": self.condition_result,
            "status": self.status.value,
            "actionResult": self.action_result,
            "errorMessage": self.error_message,
            "durationMs": self.duration_ms,
        }


@dataclass
class RulePage:
    items: List[AutomationRule]
    total: int
    page: int
    limit: int


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if isinstance(ts, datetime) else None
